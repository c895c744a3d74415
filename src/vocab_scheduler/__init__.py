"""Vocabulary delivery scheduler.

Schedules daily vocabulary words per subscriber, stores them as pending
outbox messages and dispatches them through SMS or WhatsApp.
"""

__version__ = "1.0.0"

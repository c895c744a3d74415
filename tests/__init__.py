"""Test package for the Vocabulary Delivery Scheduler application.

This package contains tests for all system components:
- Word catalog, send history and outbox storage
- Delivery settings and send-time generation
- Daily scheduling and outbox dispatch
- Messaging channels, templates and status callbacks
- Security and credential management
- Command line interface
"""

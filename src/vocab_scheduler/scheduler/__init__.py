"""
Vocabulary Delivery Scheduler - Scheduling and Dispatch Module

Builds each subscriber's daily outbox batch, dispatches due messages exactly
once and reports on outbox health.
"""

from .delivery_settings import (
    DeliverySettingsResolver,
    DuplicateTimePolicy,
    NotConfiguredError,
    SchedulingError,
    generate_auto_times,
)
from .scheduler import (
    BatchScheduleResult,
    DailyScheduler,
    NoWordsAvailableError,
    ScheduleResult,
    SchedulerConfig,
    error_payload,
)
from .dispatcher import DispatchOutcome, OutboxDispatcher, SweepResult
from .monitor import HealthMonitor, HealthStatus, OutboxMetrics

__all__ = [
    'DeliverySettingsResolver',
    'DuplicateTimePolicy',
    'NotConfiguredError',
    'SchedulingError',
    'generate_auto_times',
    'BatchScheduleResult',
    'DailyScheduler',
    'NoWordsAvailableError',
    'ScheduleResult',
    'SchedulerConfig',
    'error_payload',
    'DispatchOutcome',
    'OutboxDispatcher',
    'SweepResult',
    'HealthMonitor',
    'HealthStatus',
    'OutboxMetrics',
]

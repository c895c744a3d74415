"""
Utility functions and helpers for the vocabulary delivery scheduler
"""

from .validation_utils import validate_phone_number, normalize_phone_number, validate_time_format
from .time_utils import (
    utc_now,
    ensure_utc,
    to_db_timestamp,
    from_db_timestamp,
    parse_clock_time,
    format_clock_time,
    local_today,
    slot_instant,
)

__all__ = [
    'validate_phone_number',
    'normalize_phone_number',
    'validate_time_format',
    'utc_now',
    'ensure_utc',
    'to_db_timestamp',
    'from_db_timestamp',
    'parse_clock_time',
    'format_clock_time',
    'local_today',
    'slot_instant',
]

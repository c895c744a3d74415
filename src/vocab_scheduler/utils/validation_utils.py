"""Validation utilities."""

from __future__ import annotations

import re


def validate_phone_number(phone: str) -> bool:
    """Validate phone number format (E.164, leading '+' optional)."""
    pattern = r'^\+?[1-9][0-9]{7,14}$'
    return bool(re.match(pattern, phone.strip()))


def normalize_phone_number(phone: str) -> str:
    """Return the phone number in +E.164 form.

    Raises:
        ValueError: If the number is not a valid phone number.
    """
    cleaned = re.sub(r'[\s\-()]', '', phone)
    if not validate_phone_number(cleaned):
        raise ValueError(f"Invalid phone number: {phone!r}")
    return cleaned if cleaned.startswith('+') else f"+{cleaned}"


def validate_time_format(time_str: str) -> bool:
    """Validate time format (HH:MM)."""
    pattern = r'^([01]?[0-9]|2[0-3]):([0-5][0-9])$'
    return bool(re.match(pattern, time_str))

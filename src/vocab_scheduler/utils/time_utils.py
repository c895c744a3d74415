"""Time conversion helpers.

Every instant the database stores is a UTC ISO-8601 string with an explicit
offset, so string comparison orders them correctly.
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .validation_utils import validate_time_format


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(moment: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken to be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def to_db_timestamp(moment: datetime) -> str:
    """Serialize a datetime for storage."""
    return ensure_utc(moment).isoformat()


def from_db_timestamp(value: str) -> datetime:
    """Parse a stored timestamp back into an aware UTC datetime."""
    return ensure_utc(datetime.fromisoformat(str(value)))


def parse_clock_time(value: str) -> time:
    """Parse ``HH:MM`` (or ``HH:MM:SS`` as stored by older rows) into a time.

    Raises:
        ValueError: If the value is not a valid wall-clock time.
    """
    parts = str(value).strip().split(":")
    candidate = ":".join(parts[:2]) if len(parts) >= 2 else f"{parts[0]}:00"
    if not validate_time_format(candidate):
        raise ValueError(f"Invalid time of day: {value!r}")
    hour, minute = (int(part) for part in candidate.split(":"))
    return time(hour=hour, minute=minute)


def format_clock_time(value: time) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


def get_zone(name: str) -> ZoneInfo:
    """Look up an IANA timezone.

    Raises:
        ValueError: If the timezone is unknown.
    """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {name!r}") from e


def local_today(zone_name: str, now: datetime | None = None) -> date:
    """The calendar date in the given timezone."""
    moment = ensure_utc(now) if now is not None else utc_now()
    return moment.astimezone(get_zone(zone_name)).date()


def slot_instant(day: date, clock_time: str, zone_name: str) -> datetime:
    """Convert a local wall-clock slot on ``day`` into a UTC instant."""
    local = datetime.combine(day, parse_clock_time(clock_time), tzinfo=get_zone(zone_name))
    return local.astimezone(timezone.utc)

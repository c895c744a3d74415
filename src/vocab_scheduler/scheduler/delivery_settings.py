"""Per-user delivery settings and send-time generation."""

from __future__ import annotations

import math
from enum import Enum
from pathlib import Path
from typing import Final, Iterable, List, Optional, Sequence

from loguru import logger

from ..database.models import DeliverySettings, ScheduleMode
from ..database.operations import (
    DATABASE_PATH,
    load_delivery_settings,
    save_delivery_settings,
)
from ..utils.time_utils import format_clock_time, get_zone, parse_clock_time


MIN_WORDS_PER_DAY: Final[int] = 1
MAX_WORDS_PER_DAY: Final[int] = 10
MINUTES_PER_DAY: Final[int] = 24 * 60


class SchedulingError(Exception):
    """Base exception for scheduling errors."""
    pass


class NotConfiguredError(SchedulingError):
    """Raised when a user has no delivery settings."""
    pass


class DuplicateTimePolicy(Enum):
    """What to do when two auto-generated slots round to the same hour."""
    STAGGER = "stagger"
    ALLOW = "allow"


def _round_half_up(value: float) -> int:
    # round() would turn 10.5 into 10
    return int(math.floor(value + 0.5))


def generate_auto_times(
    n: int,
    start_hour: int = 9,
    end_hour: int = 21,
    policy: DuplicateTimePolicy = DuplicateTimePolicy.STAGGER,
    stagger_minutes: int = 5
) -> List[str]:
    """Spread ``n`` send times evenly over a daily window.

    Each slot is ``start + i * interval`` hours rounded half up, where the
    interval is ``(end - start) / max(1, n - 1)``. A single word goes out at
    the start of the window.

    Args:
        n: Number of times to produce.
        start_hour: First hour of the window.
        end_hour: Last hour of the window.
        policy: Handling of slots that round to the same hour.
        stagger_minutes: Step used to push a colliding slot forward.

    Returns:
        ``HH:MM`` strings in slot order.

    Raises:
        ValueError: If the arguments are out of range or staggering runs
            past midnight.
    """
    if n < 1:
        raise ValueError("Number of auto times must be at least 1")
    if not 0 <= start_hour <= end_hour <= 23:
        raise ValueError(f"Invalid auto window: {start_hour}..{end_hour}")
    if stagger_minutes < 1:
        raise ValueError("Stagger step must be at least one minute")

    interval: float = (end_hour - start_hour) / max(1, n - 1)
    slots: List[int] = [_round_half_up(start_hour + i * interval) * 60 for i in range(n)]

    if policy is DuplicateTimePolicy.STAGGER:
        taken: set[int] = set()
        staggered: List[int] = []
        for slot in slots:
            while slot in taken:
                slot += stagger_minutes
            if slot >= MINUTES_PER_DAY:
                raise ValueError(f"Cannot fit {n} distinct times after {start_hour:02d}:00")
            taken.add(slot)
            staggered.append(slot)
        slots = staggered

    return [f"{slot // 60:02d}:{slot % 60:02d}" for slot in slots]


def _normalize_custom_times(custom_times: Iterable[str]) -> List[str]:
    normalized: List[str] = []
    for value in custom_times:
        clock_time: str = format_clock_time(parse_clock_time(value))
        if clock_time in normalized:
            raise ValueError(f"Duplicate custom time: {clock_time}")
        normalized.append(clock_time)
    return normalized


class DeliverySettingsResolver:
    """Reads and writes per-user delivery settings."""

    def __init__(
        self,
        db_path: Path = DATABASE_PATH,
        start_hour: int = 9,
        end_hour: int = 21,
        duplicate_policy: DuplicateTimePolicy = DuplicateTimePolicy.STAGGER,
        stagger_minutes: int = 5
    ) -> None:
        self.db_path: Path = db_path
        self.start_hour: int = start_hour
        self.end_hour: int = end_hour
        self.duplicate_policy: DuplicateTimePolicy = duplicate_policy
        self.stagger_minutes: int = stagger_minutes

    def resolve(self, user_id: str) -> DeliverySettings:
        """Load settings for a user.

        Raises:
            NotConfiguredError: If the user has never saved settings.
        """
        settings: Optional[DeliverySettings] = load_delivery_settings(user_id, self.db_path)
        if settings is None:
            logger.warning(f"No delivery settings for user {user_id}")
            raise NotConfiguredError(f"Delivery settings not configured for user {user_id}")
        return settings

    def schedule_times(self, settings: DeliverySettings) -> List[str]:
        """Return the ordered send times for a day.

        Custom mode yields the stored times in position order, which may be
        fewer than ``words_per_day``; the scheduler clamps to the shorter list.
        """
        if settings.mode is ScheduleMode.CUSTOM:
            return list(settings.custom_times)

        return generate_auto_times(
            settings.words_per_day,
            start_hour=self.start_hour,
            end_hour=self.end_hour,
            policy=self.duplicate_policy,
            stagger_minutes=self.stagger_minutes
        )

    def save(
        self,
        user_id: str,
        words_per_day: int,
        mode: str | ScheduleMode,
        custom_times: Sequence[str] = (),
        timezone: Optional[str] = None
    ) -> DeliverySettings:
        """Validate and store a user's settings.

        Custom times beyond ``words_per_day`` are dropped.

        Raises:
            ValueError: If any field is invalid.
            DatabaseError: If the settings cannot be stored.
        """
        if not user_id or not user_id.strip():
            raise ValueError("User id cannot be empty")
        if not MIN_WORDS_PER_DAY <= words_per_day <= MAX_WORDS_PER_DAY:
            raise ValueError(
                f"Words per day must be between {MIN_WORDS_PER_DAY} and {MAX_WORDS_PER_DAY}"
            )

        try:
            schedule_mode: ScheduleMode = ScheduleMode(mode) if isinstance(mode, str) else mode
        except ValueError:
            raise ValueError(f"Mode must be 'auto' or 'custom', got {mode!r}") from None

        normalized_times: List[str] = _normalize_custom_times(custom_times)
        if schedule_mode is ScheduleMode.CUSTOM and not normalized_times:
            raise ValueError("Custom mode requires at least one time")

        if timezone is not None:
            get_zone(timezone)

        settings = DeliverySettings(
            user_id=user_id.strip(),
            words_per_day=words_per_day,
            mode=schedule_mode,
            custom_times=tuple(normalized_times[:words_per_day]),
            timezone=timezone
        )
        save_delivery_settings(settings, self.db_path)
        return settings

"""
Daily scheduler for the vocabulary delivery system.

Selects each subscriber's words for the day, assigns send times and stores
them as pending outbox messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from ..channel.templates import DEFAULT_TEMPLATE_ID
from ..config.logging_config import StructuredLogger, LoggedOperation, get_logger
from ..database.models import Category, DeliverySettings, OutboxMessage, Subscriber, VocabularyWord
from ..database.operations import (
    DATABASE_PATH,
    ConcurrencyConflictError,
    WordAlreadyBookedError,
    find_unsent_words,
    get_active_subscribers,
)
from ..database.outbox import get_messages_for_day, insert_outbox_batch
from ..utils.time_utils import format_clock_time, get_zone, local_today, slot_instant
from ..utils.validation_utils import normalize_phone_number
from .delivery_settings import (
    DeliverySettingsResolver,
    DuplicateTimePolicy,
    NotConfiguredError,
    SchedulingError,
)


BOOKING_ATTEMPTS: int = 3


class NoWordsAvailableError(SchedulingError):
    """Raised when a user has received every word in their category."""
    pass


@dataclass(frozen=True)
class SchedulerConfig:
    """Configuration for scheduling and dispatch."""
    timezone: str = "Asia/Kolkata"
    auto_window_start_hour: int = 9
    auto_window_end_hour: int = 21
    duplicate_policy: DuplicateTimePolicy = DuplicateTimePolicy.STAGGER
    stagger_minutes: int = 5
    batch_limit: int = 500
    send_timeout_seconds: float = 30.0
    stale_after_minutes: Optional[int] = None
    template_id: str = DEFAULT_TEMPLATE_ID
    selection_seed: Optional[int] = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        get_zone(self.timezone)
        if not 0 <= self.auto_window_start_hour <= self.auto_window_end_hour <= 23:
            raise ValueError("Auto window hours must satisfy 0 <= start <= end <= 23")
        if self.stagger_minutes < 1:
            raise ValueError("Stagger step must be at least one minute")
        if self.batch_limit <= 0:
            raise ValueError("Batch limit must be positive")
        if self.send_timeout_seconds <= 0:
            raise ValueError("Send timeout must be positive")
        if self.stale_after_minutes is not None and self.stale_after_minutes <= 0:
            raise ValueError("Stale cutoff must be positive when set")
        if not self.template_id.strip():
            raise ValueError("Template id cannot be empty")


@dataclass(frozen=True)
class ScheduleResult:
    """One user's outbox batch for a day."""
    user_id: str
    schedule_date: date
    timezone: str
    messages: List[OutboxMessage]
    already_scheduled: bool = False

    @property
    def scheduled_count(self) -> int:
        return len(self.messages)

    def to_payload(self) -> Dict[str, Any]:
        """Response body for the external scheduling trigger."""
        zone = get_zone(self.timezone)
        return {
            "success": True,
            "scheduledMessages": self.scheduled_count,
            "schedule": [
                {
                    "time": format_clock_time(message.send_at.astimezone(zone).time()),
                    "word": message.variables.get("word", ""),
                }
                for message in self.messages
            ],
        }


def error_payload(error: BaseException) -> Dict[str, Any]:
    """Response body for a failed scheduling request."""
    return {"error": str(error)}


@dataclass
class BatchScheduleResult:
    """Outcome of scheduling every active subscriber."""
    schedule_date: date
    scheduled: Dict[str, int] = field(default_factory=dict)
    already_scheduled: List[str] = field(default_factory=list)
    not_configured: List[str] = field(default_factory=list)
    no_words: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def total_messages(self) -> int:
        return sum(self.scheduled.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schedule_date": self.schedule_date.isoformat(),
            "users_scheduled": len(self.scheduled),
            "messages_scheduled": self.total_messages,
            "already_scheduled": len(self.already_scheduled),
            "not_configured": len(self.not_configured),
            "no_words": len(self.no_words),
            "failed": dict(self.failed),
        }


class DailyScheduler:
    """Turns delivery settings and unsent words into pending outbox messages."""

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        db_path: Path = DATABASE_PATH,
        structured_logger: Optional[StructuredLogger] = None
    ) -> None:
        self.config: SchedulerConfig = config or SchedulerConfig()
        self.db_path: Path = db_path
        self.structured_logger: StructuredLogger = structured_logger or get_logger()
        self.resolver: DeliverySettingsResolver = DeliverySettingsResolver(
            db_path=db_path,
            start_hour=self.config.auto_window_start_hour,
            end_hour=self.config.auto_window_end_hour,
            duplicate_policy=self.config.duplicate_policy,
            stagger_minutes=self.config.stagger_minutes
        )
        logger.debug(f"Daily scheduler initialized (timezone {self.config.timezone}, db {db_path})")

    def _zone_for(self, settings: DeliverySettings) -> str:
        return settings.timezone or self.config.timezone

    def _build_variables(self, word: VocabularyWord, position: int, total: int) -> Dict[str, Any]:
        return {
            "word": word.word,
            "definition": word.definition,
            "example": word.example,
            "pronunciation": word.pronunciation or "",
            "part_of_speech": word.part_of_speech or "",
            "memory_hook": word.memory_hook or "",
            "category": word.category.value,
            "word_id": word.id,
            "position": position,
            "total_words": total,
        }

    def _build_batch(
        self,
        user_id: str,
        phone: str,
        category: Category,
        schedule_date: date,
        zone_name: str,
        words: List[VocabularyWord],
        times: List[str],
        words_per_day: int
    ) -> List[OutboxMessage]:
        """Pair words with send times positionally, clamped to the shorter list."""
        total: int = min(len(words), words_per_day, len(times))
        return [
            OutboxMessage(
                id=None,
                user_id=user_id,
                phone=phone,
                schedule_date=schedule_date,
                position=position,
                word_id=int(word.id or 0),
                category=category,
                send_at=slot_instant(schedule_date, clock_time, zone_name),
                template_id=self.config.template_id,
                variables=self._build_variables(word, position, total)
            )
            for position, (word, clock_time) in enumerate(zip(words[:total], times[:total]), 1)
        ]

    def schedule_today(
        self,
        user_id: str,
        phone_number: str,
        category: Category | str,
        today: Optional[date] = None
    ) -> ScheduleResult:
        """Create today's outbox batch for one user.

        Calling this again for the same user and day returns the stored batch
        unchanged.

        Args:
            user_id: User to schedule.
            phone_number: Destination phone number.
            category: Category to draw words from.
            today: Local calendar day; defaults to today in the user's timezone.

        Returns:
            The user's batch for the day.

        Raises:
            NotConfiguredError: If the user has no delivery settings.
            NoWordsAvailableError: If every word in the category has been sent.
            SchedulingError: If no send times are configured.
            ValueError: If the phone number or category is invalid.
            DatabaseError: If the batch cannot be stored.
        """
        phone: str = normalize_phone_number(phone_number)
        parsed_category: Category = Category.parse(category)

        settings: DeliverySettings = self.resolver.resolve(user_id)
        zone_name: str = self._zone_for(settings)
        times: List[str] = self.resolver.schedule_times(settings)
        schedule_date: date = today or local_today(zone_name)

        existing: List[OutboxMessage] = get_messages_for_day(user_id, schedule_date, self.db_path)
        if existing:
            self.structured_logger.log_schedule_batch(user_id, schedule_date.isoformat(), len(existing), False)
            return ScheduleResult(user_id, schedule_date, zone_name, existing, already_scheduled=True)

        if not times:
            raise SchedulingError(f"No send times configured for user {user_id}")

        for attempt in range(1, BOOKING_ATTEMPTS + 1):
            words: List[VocabularyWord] = find_unsent_words(
                user_id,
                parsed_category,
                settings.words_per_day,
                seed=self.config.selection_seed,
                db_path=self.db_path
            )
            if not words:
                logger.warning(f"No unsent {parsed_category.value} words left for user {user_id}")
                raise NoWordsAvailableError(
                    f"No unsent words available in {parsed_category.value} for user {user_id}"
                )

            messages: List[OutboxMessage] = self._build_batch(
                user_id, phone, parsed_category, schedule_date, zone_name, words, times, settings.words_per_day
            )

            try:
                stored: List[OutboxMessage] = insert_outbox_batch(messages, self.db_path)
                break
            except WordAlreadyBookedError as e:
                # Another day's run for this user took some of the words first
                logger.info(f"Reselecting words for user {user_id} (attempt {attempt}): {e}")
            except ConcurrencyConflictError:
                logger.info(f"Concurrent scheduling detected for user {user_id}, returning existing batch")
                stored = get_messages_for_day(user_id, schedule_date, self.db_path)
                return ScheduleResult(user_id, schedule_date, zone_name, stored, already_scheduled=True)
        else:
            raise SchedulingError(
                f"Could not book words for user {user_id} after {BOOKING_ATTEMPTS} attempts"
            )

        self.structured_logger.log_schedule_batch(
            user_id, schedule_date.isoformat(), len(stored), True,
            category=parsed_category.value, timezone=zone_name
        )
        return ScheduleResult(user_id, schedule_date, zone_name, stored)

    def schedule_all(self, today: Optional[date] = None) -> BatchScheduleResult:
        """Schedule every active subscriber, isolating per-user failures.

        Raises:
            DatabaseError: If the subscriber list cannot be read.
        """
        batch_date: date = today or local_today(self.config.timezone)
        result = BatchScheduleResult(schedule_date=batch_date)

        with LoggedOperation(self.structured_logger, "schedule_all", schedule_date=batch_date.isoformat()):
            subscribers: List[Subscriber] = get_active_subscribers(self.db_path)

            for subscriber in subscribers:
                try:
                    user_result: ScheduleResult = self.schedule_today(
                        subscriber.user_id,
                        subscriber.phone,
                        subscriber.category,
                        today=today
                    )
                    if user_result.already_scheduled:
                        result.already_scheduled.append(subscriber.user_id)
                    else:
                        result.scheduled[subscriber.user_id] = user_result.scheduled_count
                except NotConfiguredError:
                    result.not_configured.append(subscriber.user_id)
                except NoWordsAvailableError:
                    result.no_words.append(subscriber.user_id)
                except Exception as e:
                    logger.error(f"Scheduling failed for user {subscriber.user_id}: {e}")
                    result.failed[subscriber.user_id] = str(e)

            self.structured_logger.log_performance_metric(
                "messages_scheduled", result.total_messages, "messages",
                users=len(subscribers)
            )

        logger.info(
            f"Batch scheduling for {batch_date.isoformat()}: {len(result.scheduled)} users, "
            f"{result.total_messages} messages, {len(result.failed)} failures"
        )
        return result


"""Database models for the vocabulary delivery scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Final


class Category(Enum):
    """Valid word categories as ``primary-level`` pairs."""
    DAILY_BEGINNER = "daily-beginner"
    DAILY_INTERMEDIATE = "daily-intermediate"
    DAILY_ADVANCED = "daily-advanced"
    DAILY_PROFESSIONAL = "daily-professional"
    BUSINESS_BEGINNER = "business-beginner"
    BUSINESS_INTERMEDIATE = "business-intermediate"
    BUSINESS_ADVANCED = "business-advanced"
    EXAM_GRE = "exam-gre"
    EXAM_IELTS = "exam-ielts"
    EXAM_TOEFL = "exam-toefl"
    EXAM_CAT = "exam-cat"
    EXAM_GMAT = "exam-gmat"
    SLANG_BEGINNER = "slang-beginner"
    SLANG_INTERMEDIATE = "slang-intermediate"
    INTERVIEW_BEGINNER = "interview-beginner"
    INTERVIEW_INTERMEDIATE = "interview-intermediate"
    INTERVIEW_PROFESSIONAL = "interview-professional"
    RARE_BEGINNER = "rare-beginner"
    RARE_INTERMEDIATE = "rare-intermediate"
    EXPRESSION_BEGINNER = "expression-beginner"
    EXPRESSION_INTERMEDIATE = "expression-intermediate"

    @property
    def primary(self) -> str:
        return self.value.split("-", 1)[0]

    @property
    def level(self) -> str:
        return self.value.split("-", 1)[1]

    @classmethod
    def parse(cls, value: "str | Category") -> Category:
        """Validate a category coming from outside the system.

        Bare primary names stored by older clients are mapped to their
        default level.

        Args:
            value: Category string such as ``"business-intermediate"``.

        Returns:
            The matching Category member.

        Raises:
            ValueError: If the value is not a known category.
        """
        if isinstance(value, Category):
            return value

        normalized: str = str(value).strip().lower()
        if "-" not in normalized and normalized in LEGACY_CATEGORY_DEFAULTS:
            normalized = LEGACY_CATEGORY_DEFAULTS[normalized]

        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown category: {value!r}") from None


LEGACY_CATEGORY_DEFAULTS: Final[Dict[str, str]] = {
    "business": "business-intermediate",
    "exam": "exam-gre",
    "slang": "slang-intermediate",
    "general": "daily-intermediate",
}


class ScheduleMode(Enum):
    """How a user's daily send times are chosen."""
    AUTO = "auto"
    CUSTOM = "custom"


class OutboxStatus(Enum):
    """Lifecycle state of an outbox message."""
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class VocabularyWord:
    """Model representing a catalog word.

    Immutable dataclass to prevent accidental mutation of database records.
    """
    id: int | None
    word: str
    definition: str
    example: str
    category: Category
    part_of_speech: str = ""
    memory_hook: str | None = None
    pronunciation: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class SendRecord:
    """Model representing one word delivered to one user."""
    id: int | None
    user_id: str
    word_id: int
    category: Category
    sent_at: datetime


@dataclass(frozen=True)
class DeliverySettings:
    """Per-user delivery configuration."""
    user_id: str
    words_per_day: int
    mode: ScheduleMode
    custom_times: tuple[str, ...] = ()
    timezone: str | None = None


@dataclass(frozen=True)
class Subscriber:
    """A user taking part in the daily batch scheduling run."""
    user_id: str
    phone: str
    category: Category
    first_name: str = ""
    active: bool = True


@dataclass(frozen=True)
class OutboxMessage:
    """Model representing one scheduled send."""
    id: int | None
    user_id: str
    phone: str
    schedule_date: date
    position: int
    word_id: int
    category: Category
    send_at: datetime
    template_id: str
    variables: Dict[str, Any] = field(default_factory=dict)
    status: OutboxStatus = OutboxStatus.PENDING
    channel_message_id: str | None = None
    delivery_status: str | None = None
    error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class DeliveryStatusEvent:
    """A delivery status callback received from a messaging provider."""
    id: int | None
    channel_message_id: str
    status: str
    error_code: str | None
    error_message: str | None
    received_at: datetime


def create_tables_sql() -> tuple[str, ...]:
    """Return SQL statements for creating the database tables and indexes.

    Returns:
        A tuple of CREATE statements, in dependency order.
    """
    vocabulary_words_sql: Final[str] = """
    CREATE TABLE IF NOT EXISTS vocabulary_words (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        word TEXT NOT NULL,
        definition TEXT NOT NULL,
        example TEXT NOT NULL,
        category TEXT NOT NULL,
        part_of_speech TEXT NOT NULL DEFAULT '',
        memory_hook TEXT,
        pronunciation TEXT,
        created_at TIMESTAMP NOT NULL,
        UNIQUE (word, category)
    )
    """

    send_history_sql: Final[str] = """
    CREATE TABLE IF NOT EXISTS send_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        word_id INTEGER NOT NULL,
        category TEXT NOT NULL,
        sent_at TIMESTAMP NOT NULL,
        UNIQUE (user_id, word_id, category),
        FOREIGN KEY (word_id) REFERENCES vocabulary_words (id)
    )
    """

    delivery_settings_sql: Final[str] = """
    CREATE TABLE IF NOT EXISTS delivery_settings (
        user_id TEXT PRIMARY KEY,
        words_per_day INTEGER NOT NULL,
        mode TEXT NOT NULL,
        timezone TEXT,
        updated_at TIMESTAMP NOT NULL
    )
    """

    custom_times_sql: Final[str] = """
    CREATE TABLE IF NOT EXISTS custom_times (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        time TEXT NOT NULL,
        UNIQUE (user_id, position),
        UNIQUE (user_id, time)
    )
    """

    subscribers_sql: Final[str] = """
    CREATE TABLE IF NOT EXISTS subscribers (
        user_id TEXT PRIMARY KEY,
        phone TEXT NOT NULL,
        category TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        active INTEGER NOT NULL DEFAULT 1
    )
    """

    outbox_messages_sql: Final[str] = """
    CREATE TABLE IF NOT EXISTS outbox_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        phone TEXT NOT NULL,
        schedule_date TEXT NOT NULL,
        position INTEGER NOT NULL,
        word_id INTEGER NOT NULL,
        category TEXT NOT NULL,
        send_at TIMESTAMP NOT NULL,
        template_id TEXT NOT NULL,
        variables TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        channel_message_id TEXT,
        delivery_status TEXT,
        error TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        UNIQUE (user_id, schedule_date, position),
        FOREIGN KEY (word_id) REFERENCES vocabulary_words (id)
    )
    """

    outbox_due_index_sql: Final[str] = """
    CREATE INDEX IF NOT EXISTS idx_outbox_status_send_at
    ON outbox_messages (status, send_at)
    """

    outbox_channel_index_sql: Final[str] = """
    CREATE INDEX IF NOT EXISTS idx_outbox_channel_message_id
    ON outbox_messages (channel_message_id)
    """

    delivery_status_events_sql: Final[str] = """
    CREATE TABLE IF NOT EXISTS delivery_status_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        channel_message_id TEXT NOT NULL,
        status TEXT NOT NULL,
        error_code TEXT,
        error_message TEXT,
        raw_data TEXT,
        received_at TIMESTAMP NOT NULL
    )
    """

    return (
        vocabulary_words_sql,
        send_history_sql,
        delivery_settings_sql,
        custom_times_sql,
        subscribers_sql,
        outbox_messages_sql,
        outbox_due_index_sql,
        outbox_channel_index_sql,
        delivery_status_events_sql,
    )

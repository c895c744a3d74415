"""Database package for the vocabulary delivery scheduler."""

from .models import (
    Category,
    DeliverySettings,
    DeliveryStatusEvent,
    OutboxMessage,
    OutboxStatus,
    ScheduleMode,
    SendRecord,
    Subscriber,
    VocabularyWord,
)
from .operations import (
    DATABASE_PATH,
    DatabaseError,
    WordNotFoundError,
    ConcurrencyConflictError,
    WordAlreadyBookedError,
    initialize_database,
    add_word,
    import_words,
    get_word,
    count_words,
    find_unsent_words,
    record_sent,
    has_been_sent,
    get_send_history,
    save_delivery_settings,
    load_delivery_settings,
    upsert_subscriber,
    get_active_subscribers,
)
from .outbox import (
    insert_outbox_batch,
    get_messages_for_day,
    get_due_messages,
    claim_message,
    mark_message_sent,
    mark_message_failed,
    get_message,
    get_messages_by_status,
    get_outbox_counts,
    count_stuck_messages,
    record_delivery_status,
    get_delivery_events,
)

__all__ = [
    # Models
    "Category",
    "DeliverySettings",
    "DeliveryStatusEvent",
    "OutboxMessage",
    "OutboxStatus",
    "ScheduleMode",
    "SendRecord",
    "Subscriber",
    "VocabularyWord",
    # Exceptions
    "DatabaseError",
    "WordNotFoundError",
    "ConcurrencyConflictError",
    "WordAlreadyBookedError",
    # Operations
    "DATABASE_PATH",
    "initialize_database",
    "add_word",
    "import_words",
    "get_word",
    "count_words",
    "find_unsent_words",
    "record_sent",
    "has_been_sent",
    "get_send_history",
    "save_delivery_settings",
    "load_delivery_settings",
    "upsert_subscriber",
    "get_active_subscribers",
    # Outbox
    "insert_outbox_batch",
    "get_messages_for_day",
    "get_due_messages",
    "claim_message",
    "mark_message_sent",
    "mark_message_failed",
    "get_message",
    "get_messages_by_status",
    "get_outbox_counts",
    "count_stuck_messages",
    "record_delivery_status",
    "get_delivery_events",
]

"""Outbox persistence: scheduled sends and their state transitions.

The dispatcher is the only writer of ``status`` after a row is created. Every
transition out of ``pending`` is a conditional update, so two sweeps racing on
the same row cannot both win it.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Sequence

from loguru import logger

from ..utils.time_utils import from_db_timestamp, to_db_timestamp, utc_now
from .models import Category, DeliveryStatusEvent, OutboxMessage, OutboxStatus
from .operations import (
    DATABASE_PATH,
    ConcurrencyConflictError,
    DatabaseError,
    WordAlreadyBookedError,
    get_db_connection,
)


def _row_to_message(row: sqlite3.Row) -> OutboxMessage:
    return OutboxMessage(
        id=int(row["id"]),
        user_id=str(row["user_id"]),
        phone=str(row["phone"]),
        schedule_date=date.fromisoformat(str(row["schedule_date"])),
        position=int(row["position"]),
        word_id=int(row["word_id"]),
        category=Category(str(row["category"])),
        send_at=from_db_timestamp(row["send_at"]),
        template_id=str(row["template_id"]),
        variables=json.loads(row["variables"]),
        status=OutboxStatus(str(row["status"])),
        channel_message_id=row["channel_message_id"],
        delivery_status=row["delivery_status"],
        error=row["error"],
        created_at=from_db_timestamp(row["created_at"]),
        updated_at=from_db_timestamp(row["updated_at"]),
    )


def _select_day(db_connection: sqlite3.Connection, user_id: str, schedule_date: date) -> list[sqlite3.Row]:
    return db_connection.execute(
        """SELECT * FROM outbox_messages
           WHERE user_id = ? AND schedule_date = ?
           ORDER BY position ASC""",
        (user_id, schedule_date.isoformat())
    ).fetchall()


def _booked_word_ids(
    db_connection: sqlite3.Connection,
    user_id: str,
    category: Category,
    word_ids: Sequence[int]
) -> set[int]:
    """Word ids already sent to, or held in flight for, the user in a category."""
    placeholders: str = ", ".join("?" for _ in word_ids)
    rows: list[sqlite3.Row] = db_connection.execute(
        f"""SELECT word_id FROM outbox_messages
            WHERE user_id = ? AND category = ?
              AND status IN ('pending', 'processing', 'sent')
              AND word_id IN ({placeholders})
            UNION
            SELECT word_id FROM send_history
            WHERE user_id = ? AND category = ? AND word_id IN ({placeholders})""",
        (user_id, category.value, *word_ids, user_id, category.value, *word_ids)
    ).fetchall()
    return {int(row["word_id"]) for row in rows}


def get_messages_for_day(
    user_id: str,
    schedule_date: date,
    db_path: Path = DATABASE_PATH
) -> list[OutboxMessage]:
    """Return a user's outbox batch for one day, in slot order."""
    with get_db_connection(db_path) as db_connection:
        rows: list[sqlite3.Row] = _select_day(db_connection, user_id, schedule_date)
    return [_row_to_message(row) for row in rows]


def insert_outbox_batch(
    messages: Sequence[OutboxMessage],
    db_path: Path = DATABASE_PATH
) -> list[OutboxMessage]:
    """Persist one user's daily batch atomically.

    The existence check, the check that no word is already booked for the
    user and the inserts all run under one write lock. The
    UNIQUE (user_id, schedule_date, position) constraint backs it up.

    Args:
        messages: Messages for a single user and schedule date.
        db_path: Path to the SQLite database file.

    Returns:
        The stored messages with their database ids.

    Raises:
        ConcurrencyConflictError: If a batch for this user and day already exists.
        WordAlreadyBookedError: If another batch for the user holds one of the words.
        DatabaseError: If the database operation fails.
        ValueError: If the batch is empty or mixes users or days.
    """
    if not messages:
        raise ValueError("Outbox batch cannot be empty")
    user_id: str = messages[0].user_id
    schedule_date: date = messages[0].schedule_date
    if any(m.user_id != user_id or m.schedule_date != schedule_date for m in messages):
        raise ValueError("Outbox batch must belong to one user and one day")

    now_text: str = to_db_timestamp(utc_now())

    with get_db_connection(db_path, immediate=True) as db_connection:
        if _select_day(db_connection, user_id, schedule_date):
            raise ConcurrencyConflictError(
                f"Outbox batch already exists for user {user_id} on {schedule_date.isoformat()}"
            )

        booked: set[int] = _booked_word_ids(
            db_connection, user_id, messages[0].category, [m.word_id for m in messages]
        )
        if booked:
            raise WordAlreadyBookedError(
                f"Words {sorted(booked)} are already booked for user {user_id}"
            )

        db_connection.executemany(
            """INSERT INTO outbox_messages
               (user_id, phone, schedule_date, position, word_id, category, send_at,
                template_id, variables, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (m.user_id, m.phone, m.schedule_date.isoformat(), m.position, m.word_id,
                 m.category.value, to_db_timestamp(m.send_at), m.template_id,
                 json.dumps(m.variables, sort_keys=True), OutboxStatus.PENDING.value,
                 now_text, now_text)
                for m in messages
            ]
        )
        rows: list[sqlite3.Row] = _select_day(db_connection, user_id, schedule_date)
        db_connection.commit()

    logger.info(f"Stored {len(rows)} outbox messages for user {user_id} on {schedule_date.isoformat()}")
    return [_row_to_message(row) for row in rows]


def get_due_messages(
    now: datetime,
    limit: int | None = None,
    db_path: Path = DATABASE_PATH
) -> list[OutboxMessage]:
    """Return pending messages whose send time has arrived, oldest first.

    Raises:
        DatabaseError: If the database query fails.
        ValueError: If limit is not positive when provided.
    """
    if limit is not None and limit <= 0:
        raise ValueError("Limit must be positive when provided")

    query: str = """SELECT * FROM outbox_messages
                    WHERE status = ? AND send_at <= ?
                    ORDER BY send_at ASC, id ASC"""
    params: list[Any] = [OutboxStatus.PENDING.value, to_db_timestamp(now)]
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    with get_db_connection(db_path) as db_connection:
        rows: list[sqlite3.Row] = db_connection.execute(query, params).fetchall()

    logger.info(f"Found {len(rows)} due outbox messages")
    return [_row_to_message(row) for row in rows]


def claim_message(message_id: int, db_path: Path = DATABASE_PATH) -> bool:
    """Move a message from pending to processing.

    Returns:
        True if this caller won the claim, False if another sweep got there first
        or the message is no longer pending.
    """
    with get_db_connection(db_path) as db_connection:
        cursor: sqlite3.Cursor = db_connection.execute(
            """UPDATE outbox_messages SET status = ?, updated_at = ?
               WHERE id = ? AND status = ?""",
            (OutboxStatus.PROCESSING.value, to_db_timestamp(utc_now()),
             message_id, OutboxStatus.PENDING.value)
        )
        claimed: bool = cursor.rowcount == 1
        db_connection.commit()

    if not claimed:
        logger.debug(f"Outbox message {message_id} already claimed")
    return claimed


def _finish_message(
    message_id: int,
    status: OutboxStatus,
    channel_message_id: str | None,
    error: str | None,
    db_path: Path
) -> None:
    with get_db_connection(db_path) as db_connection:
        cursor: sqlite3.Cursor = db_connection.execute(
            """UPDATE outbox_messages
               SET status = ?, channel_message_id = ?, error = ?, updated_at = ?
               WHERE id = ? AND status = ?""",
            (status.value, channel_message_id, error, to_db_timestamp(utc_now()),
             message_id, OutboxStatus.PROCESSING.value)
        )
        if cursor.rowcount != 1:
            raise DatabaseError(f"Outbox message {message_id} is not in processing state")
        db_connection.commit()


def mark_message_sent(
    message_id: int,
    channel_message_id: str | None,
    db_path: Path = DATABASE_PATH
) -> None:
    """Record a successful dispatch of a claimed message."""
    _finish_message(message_id, OutboxStatus.SENT, channel_message_id, None, db_path)
    logger.info(f"Outbox message {message_id} marked sent (channel id: {channel_message_id})")


def mark_message_failed(message_id: int, error: str, db_path: Path = DATABASE_PATH) -> None:
    """Record a failed dispatch of a claimed message."""
    _finish_message(message_id, OutboxStatus.FAILED, None, error, db_path)
    logger.warning(f"Outbox message {message_id} marked failed: {error}")


def get_message(message_id: int, db_path: Path = DATABASE_PATH) -> OutboxMessage | None:
    with get_db_connection(db_path) as db_connection:
        row: sqlite3.Row | None = db_connection.execute(
            "SELECT * FROM outbox_messages WHERE id = ?", (message_id,)
        ).fetchone()
    return _row_to_message(row) if row is not None else None


def get_messages_by_status(
    status: OutboxStatus,
    limit: int = 50,
    db_path: Path = DATABASE_PATH
) -> list[OutboxMessage]:
    """Most recently updated messages in one state."""
    with get_db_connection(db_path) as db_connection:
        rows: list[sqlite3.Row] = db_connection.execute(
            """SELECT * FROM outbox_messages WHERE status = ?
               ORDER BY updated_at DESC, id DESC LIMIT ?""",
            (status.value, limit)
        ).fetchall()
    return [_row_to_message(row) for row in rows]


def get_outbox_counts(db_path: Path = DATABASE_PATH) -> Dict[str, int]:
    """Number of outbox messages per status."""
    counts: Dict[str, int] = {status.value: 0 for status in OutboxStatus}
    with get_db_connection(db_path) as db_connection:
        for row in db_connection.execute(
            "SELECT status, COUNT(*) AS total FROM outbox_messages GROUP BY status"
        ):
            counts[str(row["status"])] = int(row["total"])
    return counts


def count_stuck_messages(older_than: datetime, db_path: Path = DATABASE_PATH) -> Dict[str, int]:
    """Count messages that look stuck.

    Returns:
        ``pending`` rows due before ``older_than`` and ``processing`` rows not
        updated since ``older_than``.
    """
    with get_db_connection(db_path) as db_connection:
        pending_row = db_connection.execute(
            "SELECT COUNT(*) AS total FROM outbox_messages WHERE status = ? AND send_at <= ?",
            (OutboxStatus.PENDING.value, to_db_timestamp(older_than))
        ).fetchone()
        processing_row = db_connection.execute(
            "SELECT COUNT(*) AS total FROM outbox_messages WHERE status = ? AND updated_at <= ?",
            (OutboxStatus.PROCESSING.value, to_db_timestamp(older_than))
        ).fetchone()
    return {
        "overdue_pending": int(pending_row["total"]),
        "stuck_processing": int(processing_row["total"]),
    }


def record_delivery_status(
    channel_message_id: str,
    status: str,
    error_code: str | None = None,
    error_message: str | None = None,
    raw_data: Dict[str, Any] | None = None,
    received_at: datetime | None = None,
    db_path: Path = DATABASE_PATH
) -> bool:
    """Log a provider status callback and attach it to its outbox message.

    Args:
        channel_message_id: Provider message id from the callback.
        status: Provider delivery status (queued, sent, delivered, read, failed...).
        error_code: Provider error code, if any.
        error_message: Provider error text, if any.
        raw_data: Original callback payload, kept for auditing.
        received_at: When the callback arrived; defaults to now.
        db_path: Path to the SQLite database file.

    Returns:
        True if an outbox message with this channel id was updated.
    """
    if not channel_message_id.strip():
        raise ValueError("Channel message ID cannot be empty")

    received_text: str = to_db_timestamp(received_at or utc_now())
    with get_db_connection(db_path) as db_connection:
        db_connection.execute(
            """INSERT INTO delivery_status_events
               (channel_message_id, status, error_code, error_message, raw_data, received_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (channel_message_id, status, error_code, error_message,
             json.dumps(raw_data or {}, sort_keys=True), received_text)
        )
        cursor: sqlite3.Cursor = db_connection.execute(
            """UPDATE outbox_messages
               SET delivery_status = ?,
                   error = COALESCE(?, error),
                   updated_at = ?
               WHERE channel_message_id = ?""",
            (status, error_message, received_text, channel_message_id)
        )
        matched: bool = cursor.rowcount > 0
        db_connection.commit()

    if matched:
        logger.info(f"Delivery status '{status}' recorded for channel message {channel_message_id}")
    else:
        logger.warning(f"Delivery status for unknown channel message {channel_message_id}")
    return matched


def get_delivery_events(channel_message_id: str, db_path: Path = DATABASE_PATH) -> list[DeliveryStatusEvent]:
    with get_db_connection(db_path) as db_connection:
        rows: list[sqlite3.Row] = db_connection.execute(
            """SELECT * FROM delivery_status_events
               WHERE channel_message_id = ? ORDER BY id ASC""",
            (channel_message_id,)
        ).fetchall()
    return [
        DeliveryStatusEvent(
            id=int(row["id"]),
            channel_message_id=str(row["channel_message_id"]),
            status=str(row["status"]),
            error_code=row["error_code"],
            error_message=row["error_message"],
            received_at=from_db_timestamp(row["received_at"])
        )
        for row in rows
    ]

"""Database operations for the vocabulary delivery scheduler."""

from __future__ import annotations

import csv
import json
import random
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Final, Generator

from loguru import logger

from ..utils.time_utils import from_db_timestamp, to_db_timestamp, utc_now
from .models import (
    Category,
    DeliverySettings,
    ScheduleMode,
    SendRecord,
    Subscriber,
    VocabularyWord,
    create_tables_sql,
)


DATABASE_PATH: Final[Path] = Path("vocab_scheduler.db")
BUSY_TIMEOUT_SECONDS: Final[float] = 30.0


class DatabaseError(Exception):
    """Base exception for database operations."""
    pass


class WordNotFoundError(DatabaseError):
    """Raised when a catalog word cannot be found."""
    pass


class ConcurrencyConflictError(DatabaseError):
    """Raised when a uniqueness guard rejects a duplicate write."""
    pass


class WordAlreadyBookedError(ConcurrencyConflictError):
    """Raised when a word picked for a batch was booked by another run first."""
    pass


@contextmanager
def get_db_connection(
    db_path: Path = DATABASE_PATH,
    immediate: bool = False
) -> Generator[sqlite3.Connection, None, None]:
    """Context manager for database connections with proper cleanup.

    Args:
        db_path: Path to the SQLite database file.
        immediate: Take the write lock up front with BEGIN IMMEDIATE, so a
            check-then-insert sequence cannot interleave with another writer.

    Yields:
        A configured SQLite connection with row factory enabled.

    Raises:
        ConcurrencyConflictError: If a uniqueness constraint rejects a write.
        DatabaseError: If database connection or operations fail.
    """
    db_connection: sqlite3.Connection | None = None
    try:
        db_connection = sqlite3.connect(str(db_path), timeout=BUSY_TIMEOUT_SECONDS)
        db_connection.row_factory = sqlite3.Row  # Enable dict-like access
        db_connection.execute("PRAGMA foreign_keys = ON")
        if immediate:
            db_connection.execute("BEGIN IMMEDIATE")
        logger.debug(f"Database connection established to {db_path}")
        yield db_connection
    except sqlite3.IntegrityError as e:
        logger.warning(f"Integrity constraint rejected write: {e}")
        if db_connection is not None:
            db_connection.rollback()
        raise ConcurrencyConflictError(f"Conflicting write rejected: {e}") from e
    except sqlite3.Error as e:
        logger.error(f"Database error occurred: {e}")
        if db_connection is not None:
            db_connection.rollback()
        raise DatabaseError(f"Database operation failed: {e}") from e
    except Exception:
        if db_connection is not None:
            db_connection.rollback()
        raise
    finally:
        if db_connection is not None:
            db_connection.close()
            logger.debug("Database connection closed")


def initialize_database(db_path: Path = DATABASE_PATH) -> None:
    """Create database tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file.

    Raises:
        DatabaseError: If table creation fails.
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        with get_db_connection(db_path) as db_connection:
            db_connection.execute("PRAGMA journal_mode = WAL")
            for statement in create_tables_sql():
                db_connection.execute(statement)
            db_connection.commit()

            logger.info("Database tables initialized successfully")

    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise DatabaseError(f"Database initialization failed: {e}") from e


def _row_to_word(row: sqlite3.Row) -> VocabularyWord:
    return VocabularyWord(
        id=int(row["id"]),
        word=str(row["word"]),
        definition=str(row["definition"]),
        example=str(row["example"]),
        category=Category(str(row["category"])),
        part_of_speech=str(row["part_of_speech"] or ""),
        memory_hook=row["memory_hook"],
        pronunciation=row["pronunciation"],
        created_at=from_db_timestamp(row["created_at"]),
    )


# ---------------------------------------------------------------------------
# Word catalog
# ---------------------------------------------------------------------------

def add_word(
    word: str,
    definition: str,
    example: str,
    category: Category | str,
    part_of_speech: str = "",
    memory_hook: str | None = None,
    pronunciation: str | None = None,
    db_path: Path = DATABASE_PATH
) -> int:
    """Add a word to the catalog, returning the existing id on duplicates.

    Args:
        word: The vocabulary word.
        definition: Short meaning.
        example: Example sentence.
        category: Category the word belongs to.
        part_of_speech: Part of speech, if known.
        memory_hook: Optional mnemonic text.
        pronunciation: Optional pronunciation guide.
        db_path: Path to the SQLite database file.

    Returns:
        The database ID of the word.

    Raises:
        DatabaseError: If the database operation fails.
        ValueError: If required fields are empty or the category is invalid.
    """
    parsed_category: Category = Category.parse(category)
    if not word.strip():
        raise ValueError("Word cannot be empty")
    if not definition.strip():
        raise ValueError("Definition cannot be empty")
    if not example.strip():
        raise ValueError("Example cannot be empty")

    try:
        with get_db_connection(db_path) as db_connection:
            cursor: sqlite3.Cursor = db_connection.execute(
                """INSERT OR IGNORE INTO vocabulary_words
                   (word, definition, example, category, part_of_speech,
                    memory_hook, pronunciation, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (word.strip(), definition.strip(), example.strip(), parsed_category.value,
                 part_of_speech.strip(), memory_hook, pronunciation, to_db_timestamp(utc_now()))
            )

            word_id: int
            if cursor.rowcount:
                last_row_id: int | None = cursor.lastrowid
                if last_row_id is None:
                    raise DatabaseError("Failed to get last row ID after insert")
                word_id = last_row_id
                logger.debug(f"Added word '{word}' to {parsed_category.value}")
            else:
                existing: sqlite3.Row = db_connection.execute(
                    "SELECT id FROM vocabulary_words WHERE word = ? AND category = ?",
                    (word.strip(), parsed_category.value)
                ).fetchone()
                word_id = int(existing["id"])
                logger.debug(f"Word '{word}' already in {parsed_category.value} (ID: {word_id})")

            db_connection.commit()
            return word_id

    except DatabaseError:
        raise
    except Exception as e:
        logger.error(f"Failed to add word {word}: {e}")
        raise DatabaseError(f"Failed to add word {word}: {e}") from e


def _read_word_rows(source_path: Path) -> list[Dict[str, Any]]:
    if source_path.suffix.lower() == ".json":
        data: Any = json.loads(source_path.read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get("words", [])
        if not isinstance(data, list):
            raise ValueError("JSON word file must contain a list of word objects")
        return [dict(item) for item in data]

    if source_path.suffix.lower() == ".csv":
        with open(source_path, newline="", encoding="utf-8") as f:
            return [dict(row) for row in csv.DictReader(f)]

    raise ValueError(f"Unsupported word file format: {source_path.suffix}")


def import_words(source_path: Path, db_path: Path = DATABASE_PATH) -> tuple[int, int]:
    """Load catalog words from a JSON or CSV file.

    Each record needs ``word``, ``definition``, ``example`` and ``category``;
    ``part_of_speech``, ``memory_hook`` and ``pronunciation`` are optional.

    Args:
        source_path: JSON (list of objects) or CSV (header row) file.
        db_path: Path to the SQLite database file.

    Returns:
        Tuple of (imported_count, skipped_count).

    Raises:
        DatabaseError: If the database operation fails.
        ValueError: If the file format is not supported.
    """
    rows: list[Dict[str, Any]] = _read_word_rows(source_path)
    imported: int = 0
    skipped: int = 0

    for index, row in enumerate(rows, 1):
        try:
            add_word(
                word=str(row.get("word") or ""),
                definition=str(row.get("definition") or ""),
                example=str(row.get("example") or ""),
                category=str(row.get("category") or ""),
                part_of_speech=str(row.get("part_of_speech") or ""),
                memory_hook=row.get("memory_hook") or None,
                pronunciation=row.get("pronunciation") or None,
                db_path=db_path
            )
            imported += 1
        except ValueError as e:
            logger.warning(f"Skipping word record {index} in {source_path.name}: {e}")
            skipped += 1

    logger.info(f"Imported {imported} words from {source_path} ({skipped} skipped)")
    return imported, skipped


def get_word(word_id: int, db_path: Path = DATABASE_PATH) -> VocabularyWord:
    """Fetch one catalog word.

    Raises:
        WordNotFoundError: If no word has this id.
        DatabaseError: If the query fails.
    """
    with get_db_connection(db_path) as db_connection:
        row: sqlite3.Row | None = db_connection.execute(
            "SELECT * FROM vocabulary_words WHERE id = ?", (word_id,)
        ).fetchone()

    if row is None:
        raise WordNotFoundError(f"Word not found: {word_id}")
    return _row_to_word(row)


def count_words(category: Category | None = None, db_path: Path = DATABASE_PATH) -> int:
    """Count catalog words, optionally within one category."""
    with get_db_connection(db_path) as db_connection:
        if category is None:
            row = db_connection.execute("SELECT COUNT(*) AS total FROM vocabulary_words").fetchone()
        else:
            row = db_connection.execute(
                "SELECT COUNT(*) AS total FROM vocabulary_words WHERE category = ?",
                (category.value,)
            ).fetchone()
    return int(row["total"])


def find_unsent_words(
    user_id: str,
    category: Category | str,
    count: int,
    seed: int | None = None,
    db_path: Path = DATABASE_PATH
) -> list[VocabularyWord]:
    """Return catalog words in a category the user has not received.

    Words already in the user's send history for this category are excluded,
    and so are words held by a pending, processing or sent outbox message.

    Args:
        user_id: User to select words for.
        category: Category to select from.
        count: Maximum number of words to return.
        seed: If given, the eligible words are shuffled with this seed before
              truncation; otherwise they come back in catalog order.
        db_path: Path to the SQLite database file.

    Returns:
        Up to ``count`` words. An empty list means the category is exhausted.

    Raises:
        DatabaseError: If the database query fails.
        ValueError: If count is not positive.

    Examples:
        >>> words = find_unsent_words("user-1", Category.EXAM_GRE, 3)
        >>> shuffled = find_unsent_words("user-1", "exam-gre", 3, seed=42)
    """
    if count <= 0:
        raise ValueError("Count must be positive")
    parsed_category: Category = Category.parse(category)

    try:
        with get_db_connection(db_path) as db_connection:
            base_query: str = """SELECT w.* FROM vocabulary_words w
                                 WHERE w.category = ?
                                   AND NOT EXISTS (
                                       SELECT 1 FROM send_history sh
                                       WHERE sh.word_id = w.id
                                         AND sh.user_id = ?
                                         AND sh.category = w.category
                                   )
                                   AND NOT EXISTS (
                                       SELECT 1 FROM outbox_messages om
                                       WHERE om.word_id = w.id
                                         AND om.user_id = ?
                                         AND om.category = w.category
                                         AND om.status IN ('pending', 'processing', 'sent')
                                   )
                                 ORDER BY w.id ASC"""
            params: tuple[Any, ...] = (parsed_category.value, user_id, user_id)

            rows: list[sqlite3.Row]
            if seed is None:
                rows = db_connection.execute(base_query + " LIMIT ?", params + (count,)).fetchall()
            else:
                rows = db_connection.execute(base_query, params).fetchall()
                random.Random(seed).shuffle(rows)
                rows = rows[:count]

            words: list[VocabularyWord] = [_row_to_word(row) for row in rows]

            logger.info(
                f"Found {len(words)} unsent words in {parsed_category.value} "
                f"for user {user_id} (requested {count})"
            )
            return words

    except DatabaseError:
        raise
    except Exception as e:
        logger.error(f"Failed to find unsent words for user {user_id}: {e}")
        raise DatabaseError(f"Failed to find unsent words for user {user_id}: {e}") from e


# ---------------------------------------------------------------------------
# Send history ledger
# ---------------------------------------------------------------------------

def record_sent(
    user_id: str,
    word_id: int,
    category: Category | str,
    sent_at: datetime,
    db_path: Path = DATABASE_PATH
) -> bool:
    """Append a send record for a delivered word.

    Duplicate records for the same user, word and category are ignored.

    Args:
        user_id: User the word was delivered to.
        word_id: Catalog id of the word.
        category: Category the word was delivered in.
        sent_at: When the word was delivered.
        db_path: Path to the SQLite database file.

    Returns:
        True if a new record was written, False if it already existed.

    Raises:
        DatabaseError: If the database operation fails.
        ValueError: If user_id or word_id is invalid.
    """
    if not user_id.strip():
        raise ValueError("User ID cannot be empty")
    if word_id <= 0:
        raise ValueError("Word ID must be positive")
    parsed_category: Category = Category.parse(category)

    try:
        with get_db_connection(db_path) as db_connection:
            cursor: sqlite3.Cursor = db_connection.execute(
                """INSERT OR IGNORE INTO send_history (user_id, word_id, category, sent_at)
                   VALUES (?, ?, ?, ?)""",
                (user_id, word_id, parsed_category.value, to_db_timestamp(sent_at))
            )
            inserted: bool = cursor.rowcount > 0
            db_connection.commit()

            if inserted:
                logger.info(f"Recorded send of word {word_id} to user {user_id} in {parsed_category.value}")
            else:
                logger.debug(f"Send of word {word_id} to user {user_id} already recorded")
            return inserted

    except DatabaseError:
        raise
    except Exception as e:
        logger.error(f"Failed to record send for word {word_id}: {e}")
        raise DatabaseError(f"Failed to record send for word {word_id}: {e}") from e


def has_been_sent(
    user_id: str,
    word_id: int,
    category: Category | str,
    db_path: Path = DATABASE_PATH
) -> bool:
    """Check whether a word was already delivered to a user in a category."""
    parsed_category: Category = Category.parse(category)
    with get_db_connection(db_path) as db_connection:
        row: sqlite3.Row | None = db_connection.execute(
            """SELECT 1 FROM send_history
               WHERE user_id = ? AND word_id = ? AND category = ?""",
            (user_id, word_id, parsed_category.value)
        ).fetchone()
    return row is not None


def get_send_history(
    user_id: str,
    category: Category | None = None,
    limit: int | None = None,
    db_path: Path = DATABASE_PATH
) -> list[SendRecord]:
    """Return a user's send records, newest first."""
    if limit is not None and limit <= 0:
        raise ValueError("Limit must be positive when provided")

    query: str = "SELECT * FROM send_history WHERE user_id = ?"
    params: list[Any] = [user_id]
    if category is not None:
        query += " AND category = ?"
        params.append(category.value)
    query += " ORDER BY sent_at DESC, id DESC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    with get_db_connection(db_path) as db_connection:
        rows: list[sqlite3.Row] = db_connection.execute(query, params).fetchall()

    return [
        SendRecord(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            word_id=int(row["word_id"]),
            category=Category(str(row["category"])),
            sent_at=from_db_timestamp(row["sent_at"])
        )
        for row in rows
    ]


# ---------------------------------------------------------------------------
# Delivery settings storage
# ---------------------------------------------------------------------------

def save_delivery_settings(settings: DeliverySettings, db_path: Path = DATABASE_PATH) -> None:
    """Upsert a user's delivery settings and replace their custom times.

    Raises:
        DatabaseError: If the database operation fails.
    """
    try:
        with get_db_connection(db_path, immediate=True) as db_connection:
            db_connection.execute(
                """INSERT INTO delivery_settings (user_id, words_per_day, mode, timezone, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT (user_id) DO UPDATE SET
                       words_per_day = excluded.words_per_day,
                       mode = excluded.mode,
                       timezone = excluded.timezone,
                       updated_at = excluded.updated_at""",
                (settings.user_id, settings.words_per_day, settings.mode.value,
                 settings.timezone, to_db_timestamp(utc_now()))
            )
            db_connection.execute("DELETE FROM custom_times WHERE user_id = ?", (settings.user_id,))
            db_connection.executemany(
                "INSERT INTO custom_times (user_id, position, time) VALUES (?, ?, ?)",
                [
                    (settings.user_id, position, clock_time)
                    for position, clock_time in enumerate(settings.custom_times, 1)
                ]
            )
            db_connection.commit()

            logger.info(
                f"Saved delivery settings for user {settings.user_id}: "
                f"{settings.words_per_day}/day, mode={settings.mode.value}"
            )

    except DatabaseError:
        raise
    except Exception as e:
        logger.error(f"Failed to save delivery settings for {settings.user_id}: {e}")
        raise DatabaseError(f"Failed to save delivery settings for {settings.user_id}: {e}") from e


def load_delivery_settings(user_id: str, db_path: Path = DATABASE_PATH) -> DeliverySettings | None:
    """Load a user's delivery settings, or None when none are stored."""
    with get_db_connection(db_path) as db_connection:
        row: sqlite3.Row | None = db_connection.execute(
            "SELECT * FROM delivery_settings WHERE user_id = ?", (user_id,)
        ).fetchone()
        if row is None:
            return None
        time_rows: list[sqlite3.Row] = db_connection.execute(
            "SELECT time FROM custom_times WHERE user_id = ? ORDER BY position ASC",
            (user_id,)
        ).fetchall()

    return DeliverySettings(
        user_id=str(row["user_id"]),
        words_per_day=int(row["words_per_day"]),
        mode=ScheduleMode(str(row["mode"])),
        custom_times=tuple(str(time_row["time"]) for time_row in time_rows),
        timezone=row["timezone"]
    )


# ---------------------------------------------------------------------------
# Subscribers
# ---------------------------------------------------------------------------

def upsert_subscriber(subscriber: Subscriber, db_path: Path = DATABASE_PATH) -> None:
    """Add or update a subscriber taking part in the daily batch run."""
    with get_db_connection(db_path) as db_connection:
        db_connection.execute(
            """INSERT INTO subscribers (user_id, phone, category, first_name, active)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT (user_id) DO UPDATE SET
                   phone = excluded.phone,
                   category = excluded.category,
                   first_name = excluded.first_name,
                   active = excluded.active""",
            (subscriber.user_id, subscriber.phone, subscriber.category.value,
             subscriber.first_name, int(subscriber.active))
        )
        db_connection.commit()
    logger.info(f"Saved subscriber {subscriber.user_id} ({subscriber.category.value})")


def get_active_subscribers(db_path: Path = DATABASE_PATH) -> list[Subscriber]:
    """Return active subscribers; rows with an unknown category are skipped."""
    with get_db_connection(db_path) as db_connection:
        rows: list[sqlite3.Row] = db_connection.execute(
            "SELECT * FROM subscribers WHERE active = 1 ORDER BY user_id ASC"
        ).fetchall()

    subscribers: list[Subscriber] = []
    for row in rows:
        try:
            category: Category = Category.parse(str(row["category"]))
        except ValueError as e:
            logger.warning(f"Skipping subscriber {row['user_id']}: {e}")
            continue
        subscribers.append(
            Subscriber(
                user_id=str(row["user_id"]),
                phone=str(row["phone"]),
                category=category,
                first_name=str(row["first_name"] or ""),
                active=bool(row["active"])
            )
        )

    logger.info(f"Found {len(subscribers)} active subscribers")
    return subscribers


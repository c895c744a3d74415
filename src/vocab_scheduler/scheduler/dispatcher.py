"""
Outbox dispatcher.

Sweeps due pending messages, claims each one, renders it and hands it to the
messaging channel. A message is sent at most once: only the sweep that wins
the pending -> processing claim may send it.
"""

from __future__ import annotations

import concurrent.futures
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from ..channel.service import ChannelError, ChannelResult, MessagingChannel
from ..channel.templates import MessageTemplateManager, TemplateError
from ..config.logging_config import StructuredLogger, LoggedOperation, get_logger
from ..database.models import OutboxMessage
from ..database.operations import DATABASE_PATH, DatabaseError, record_sent
from ..database.outbox import claim_message, get_due_messages, mark_message_failed, mark_message_sent
from ..utils.time_utils import ensure_utc, utc_now
from .scheduler import SchedulerConfig


EXPIRED_ERROR: str = "expired"


class DispatchOutcome(Enum):
    """What happened to one due message during a sweep."""
    SENT = "sent"
    FAILED = "failed"
    EXPIRED = "expired"
    SKIPPED = "skipped"
    # Accepted by the channel but the outbox row could not be marked sent
    UNRECORDED = "unrecorded"


@dataclass(frozen=True)
class MessageDispatch:
    """Per-message record of a sweep."""
    message_id: int
    outcome: DispatchOutcome
    channel_message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SweepResult:
    """Counts and per-message outcomes of one dispatch sweep."""
    started_at: datetime
    dispatches: List[MessageDispatch] = field(default_factory=list)

    def _count(self, outcome: DispatchOutcome) -> int:
        return sum(1 for dispatch in self.dispatches if dispatch.outcome is outcome)

    @property
    def processed(self) -> int:
        return len(self.dispatches)

    @property
    def sent(self) -> int:
        return self._count(DispatchOutcome.SENT)

    @property
    def failed(self) -> int:
        return self._count(DispatchOutcome.FAILED)

    @property
    def expired(self) -> int:
        return self._count(DispatchOutcome.EXPIRED)

    @property
    def skipped(self) -> int:
        return self._count(DispatchOutcome.SKIPPED)

    @property
    def unrecorded(self) -> int:
        return self._count(DispatchOutcome.UNRECORDED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "processed": self.processed,
            "sent": self.sent,
            "failed": self.failed,
            "expired": self.expired,
            "skipped": self.skipped,
            "unrecorded": self.unrecorded,
            "errors": {
                str(dispatch.message_id): dispatch.error
                for dispatch in self.dispatches
                if dispatch.outcome in (DispatchOutcome.FAILED, DispatchOutcome.UNRECORDED)
            },
        }


class OutboxDispatcher:
    """Delivers due outbox messages through a messaging channel."""

    def __init__(
        self,
        channel: MessagingChannel,
        config: Optional[SchedulerConfig] = None,
        template_manager: Optional[MessageTemplateManager] = None,
        db_path: Path = DATABASE_PATH,
        structured_logger: Optional[StructuredLogger] = None
    ) -> None:
        self.channel: MessagingChannel = channel
        self.config: SchedulerConfig = config or SchedulerConfig()
        self.template_manager: MessageTemplateManager = template_manager or MessageTemplateManager()
        self.db_path: Path = db_path
        self.structured_logger: StructuredLogger = structured_logger or get_logger()

    def dispatch_due(self, now: Optional[datetime] = None) -> SweepResult:
        """Run one sweep over messages whose send time has arrived.

        Args:
            now: Sweep time; defaults to the current UTC time.

        Returns:
            Counts of processed, sent, failed, expired and skipped messages.

        Raises:
            DatabaseError: If the due messages cannot be selected.
        """
        sweep_time: datetime = ensure_utc(now) if now is not None else utc_now()
        result = SweepResult(started_at=sweep_time)

        with LoggedOperation(self.structured_logger, "dispatch_due", channel=self.channel.name):
            due: List[OutboxMessage] = get_due_messages(sweep_time, self.config.batch_limit, self.db_path)
            logger.info(f"Dispatch sweep found {len(due)} due messages")

            for message in due:
                result.dispatches.append(self._dispatch_message(message, sweep_time))

            self.structured_logger.log_performance_metric(
                "messages_dispatched", result.sent, "messages",
                failed=result.failed, skipped=result.skipped, expired=result.expired,
                unrecorded=result.unrecorded
            )

        logger.info(
            f"Dispatch sweep complete: {result.sent} sent, {result.failed} failed, "
            f"{result.expired} expired, {result.skipped} skipped, {result.unrecorded} unrecorded"
        )
        return result

    def _dispatch_message(self, message: OutboxMessage, sweep_time: datetime) -> MessageDispatch:
        message_id: int = int(message.id or 0)

        try:
            if not claim_message(message_id, self.db_path):
                logger.debug(f"Outbox message {message_id} claimed by another sweep")
                return MessageDispatch(message_id, DispatchOutcome.SKIPPED)

            if self._is_stale(message, sweep_time):
                mark_message_failed(message_id, EXPIRED_ERROR, self.db_path)
                logger.warning(f"Outbox message {message_id} expired (send_at {message.send_at.isoformat()})")
                return MessageDispatch(message_id, DispatchOutcome.EXPIRED, error=EXPIRED_ERROR)

            try:
                body: str = self.template_manager.render(message.template_id, message.variables)
                channel_result: ChannelResult = self._send_with_timeout(message, body)
            except (TemplateError, ChannelError, TimeoutError, ValueError) as e:
                return self._fail(message, str(e))
            except Exception as e:
                return self._fail(message, f"Unexpected error: {e}")

            if not channel_result.accepted or not channel_result.channel_message_id:
                return self._fail(message, f"Channel did not accept message (status {channel_result.status})")

            try:
                mark_message_sent(message_id, channel_result.channel_message_id, self.db_path)
            except DatabaseError as e:
                # The row stays in processing and the monitor reports it as stuck
                error: str = f"Sent as {channel_result.channel_message_id} but not recorded: {e}"
                logger.error(f"Outbox message {message_id}: {error}")
                return MessageDispatch(
                    message_id, DispatchOutcome.UNRECORDED,
                    channel_message_id=channel_result.channel_message_id, error=error
                )

            try:
                record_sent(
                    message.user_id, message.word_id, message.category,
                    sent_at=utc_now(), db_path=self.db_path
                )
            except DatabaseError as e:
                logger.error(f"Message {message_id} was sent but its send record was not stored: {e}")
            self.structured_logger.log_dispatch_operation(
                message_id, message.phone, True,
                channel_message_id=channel_result.channel_message_id
            )
            return MessageDispatch(
                message_id, DispatchOutcome.SENT,
                channel_message_id=channel_result.channel_message_id
            )

        except Exception as e:
            # Persistence failure; a claimed row stays in processing.
            logger.error(f"Failed to finish outbox message {message_id}: {e}")
            return MessageDispatch(message_id, DispatchOutcome.FAILED, error=str(e))

    def _is_stale(self, message: OutboxMessage, sweep_time: datetime) -> bool:
        if self.config.stale_after_minutes is None:
            return False
        return message.send_at < sweep_time - timedelta(minutes=self.config.stale_after_minutes)

    def _send_with_timeout(self, message: OutboxMessage, body: str) -> ChannelResult:
        """Call the channel, giving up after ``send_timeout_seconds``.

        Raises:
            TimeoutError: If the channel does not answer in time.
        """
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(self.channel.send, message.phone, body, message.template_id)
            return future.result(timeout=self.config.send_timeout_seconds)
        except concurrent.futures.TimeoutError:
            raise TimeoutError(
                f"Channel send timed out after {self.config.send_timeout_seconds}s"
            ) from None
        finally:
            # A hung call keeps its worker thread; never wait on it.
            executor.shutdown(wait=False)

    def _fail(self, message: OutboxMessage, error: str) -> MessageDispatch:
        message_id: int = int(message.id or 0)
        mark_message_failed(message_id, error, self.db_path)
        self.structured_logger.log_dispatch_operation(message_id, message.phone, False, error=error)
        return MessageDispatch(message_id, DispatchOutcome.FAILED, error=error)

#!/usr/bin/env python3
"""Tests for outbox dispatch."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, List, Optional

import pytest
from loguru import logger

from vocab_scheduler.channel.service import ChannelError, ChannelResult, RateLimitError
from vocab_scheduler.config.logging_config import StructuredLogger
from vocab_scheduler.database.models import OutboxStatus
from vocab_scheduler.database.operations import DatabaseError, get_send_history, has_been_sent
from vocab_scheduler.database.outbox import claim_message, get_message, get_messages_for_day
from vocab_scheduler.main import VocabSchedulerApplication
from vocab_scheduler.scheduler.dispatcher import (
    EXPIRED_ERROR,
    DispatchOutcome,
    OutboxDispatcher,
    SweepResult,
)
from vocab_scheduler.scheduler.monitor import HealthMonitor
from vocab_scheduler.scheduler.scheduler import DailyScheduler, ScheduleResult, SchedulerConfig

SCHEDULE_DATE: date = date(2024, 3, 10)
# 09:00 and 12:00 IST have passed, 15:00 has not
MIDDAY_SWEEP: datetime = datetime(2024, 3, 10, 7, 0, tzinfo=timezone.utc)
END_OF_DAY: datetime = datetime(2024, 3, 10, 18, 0, tzinfo=timezone.utc)


def schedule(db_path: Path, config: SchedulerConfig, structured_logger: StructuredLogger) -> ScheduleResult:
    return DailyScheduler(config, db_path, structured_logger).schedule_today(
        "user-1", "+919876543210", "exam-gre", today=SCHEDULE_DATE
    )


@pytest.fixture
def batch(
    db_path: Path,
    scheduler_config: SchedulerConfig,
    structured_logger: StructuredLogger,
    gre_words: List[int],
    configured_user: str
) -> ScheduleResult:
    return schedule(db_path, scheduler_config, structured_logger)


def make_dispatcher(channel, db_path, structured_logger, config: SchedulerConfig = SchedulerConfig()) -> OutboxDispatcher:
    return OutboxDispatcher(channel, config=config, db_path=db_path, structured_logger=structured_logger)


def test_dispatch_sends_due_messages(
    channel, db_path: Path, structured_logger: StructuredLogger, batch: ScheduleResult
) -> None:
    """Test a sweep that finds some of the day's messages due."""
    logger.info("TEST 1: Midday sweep sends the two due messages")
    result = make_dispatcher(channel, db_path, structured_logger).dispatch_due(MIDDAY_SWEEP)

    assert result.processed == 2
    assert result.sent == 2
    assert result.failed == 0
    assert [d.outcome for d in result.dispatches] == [DispatchOutcome.SENT, DispatchOutcome.SENT]
    assert len(channel.sent) == 2
    assert channel.sent[0]["destination"] == "+919876543210"
    assert "abate" in channel.sent[0]["body"]
    assert "EXAM GRE WORD OF THE DAY" in channel.sent[0]["body"]
    assert "Word 1 of 5 for today" in channel.sent[0]["body"]

    logger.info("TEST 2: Outbox rows and send history reflect the sends")
    messages = get_messages_for_day("user-1", SCHEDULE_DATE, db_path)
    assert [m.status for m in messages] == [OutboxStatus.SENT] * 2 + [OutboxStatus.PENDING] * 3
    assert messages[0].channel_message_id == "SM0001"
    assert has_been_sent("user-1", messages[0].word_id, "exam-gre", db_path)
    assert not has_been_sent("user-1", messages[2].word_id, "exam-gre", db_path)

    logger.info("TEST 3: A second sweep at the same time finds nothing")
    again = make_dispatcher(channel, db_path, structured_logger).dispatch_due(MIDDAY_SWEEP)
    assert again.processed == 0
    assert len(channel.sent) == 2

    logger.info("TEST 4: End of day sends the rest")
    rest = make_dispatcher(channel, db_path, structured_logger).dispatch_due(END_OF_DAY)
    assert rest.sent == 3
    assert len(get_send_history("user-1", db_path=db_path)) == 5


def test_concurrent_sweeps_send_each_message_once(
    channel, db_path: Path, structured_logger: StructuredLogger, batch: ScheduleResult
) -> None:
    """Test that overlapping sweeps never double-send."""
    channel.delay_seconds = 0.05
    results: List[SweepResult] = []

    def sweep() -> None:
        results.append(make_dispatcher(channel, db_path, structured_logger).dispatch_due(END_OF_DAY))

    threads = [threading.Thread(target=sweep) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(channel.sent) == 5
    assert sum(result.sent for result in results) == 5
    assert sum(result.failed for result in results) == 0
    assert all(m.status is OutboxStatus.SENT for m in get_messages_for_day("user-1", SCHEDULE_DATE, db_path))


def test_claimed_message_is_skipped(
    channel, db_path: Path, structured_logger: StructuredLogger, batch: ScheduleResult
) -> None:
    dispatcher = make_dispatcher(channel, db_path, structured_logger)
    first = batch.messages[0]
    assert claim_message(int(first.id or 0), db_path)

    outcome = dispatcher._dispatch_message(first, MIDDAY_SWEEP)

    assert outcome.outcome is DispatchOutcome.SKIPPED
    assert channel.sent == []


def test_channel_error_marks_failed_without_send_record(
    channel, db_path: Path, structured_logger: StructuredLogger, batch: ScheduleResult
) -> None:
    channel.error = ChannelError("twilio error 500: upstream unavailable")

    result = make_dispatcher(channel, db_path, structured_logger).dispatch_due(MIDDAY_SWEEP)

    assert result.failed == 2
    assert result.to_dict()["errors"] == {
        str(batch.messages[0].id): "twilio error 500: upstream unavailable",
        str(batch.messages[1].id): "twilio error 500: upstream unavailable",
    }
    failed = get_message(int(batch.messages[0].id or 0), db_path)
    assert failed.status is OutboxStatus.FAILED
    assert failed.error == "twilio error 500: upstream unavailable"
    assert get_send_history("user-1", db_path=db_path) == []


def test_rate_limit_marks_failed(
    channel, db_path: Path, structured_logger: StructuredLogger, batch: ScheduleResult
) -> None:
    channel.error = RateLimitError("Rate limit exceeded")
    result = make_dispatcher(channel, db_path, structured_logger).dispatch_due(MIDDAY_SWEEP)
    assert result.failed == 2


def test_rejected_message_marks_failed(
    channel, db_path: Path, structured_logger: StructuredLogger, batch: ScheduleResult
) -> None:
    channel.accepted = False
    channel.status = "failed"

    result = make_dispatcher(channel, db_path, structured_logger).dispatch_due(MIDDAY_SWEEP)

    assert result.failed == 2
    message = get_message(int(batch.messages[0].id or 0), db_path)
    assert message.status is OutboxStatus.FAILED
    assert "status failed" in (message.error or "")
    assert get_send_history("user-1", db_path=db_path) == []


def test_send_timeout(
    channel, db_path: Path, structured_logger: StructuredLogger, batch: ScheduleResult
) -> None:
    channel.delay_seconds = 1.0
    config = SchedulerConfig(send_timeout_seconds=0.1, batch_limit=1)

    result = make_dispatcher(channel, db_path, structured_logger, config).dispatch_due(MIDDAY_SWEEP)

    assert result.processed == 1
    assert result.failed == 1
    message = get_message(int(batch.messages[0].id or 0), db_path)
    assert message.status is OutboxStatus.FAILED
    assert "timed out" in (message.error or "")


def test_unknown_template_marks_failed(
    channel,
    db_path: Path,
    scheduler_config: SchedulerConfig,
    structured_logger: StructuredLogger,
    gre_words: List[int],
    configured_user: str
) -> None:
    batch = schedule(db_path, replace(scheduler_config, template_id="retired_template"), structured_logger)

    result = make_dispatcher(channel, db_path, structured_logger).dispatch_due(MIDDAY_SWEEP)

    assert result.failed == 2
    assert channel.sent == []
    message = get_message(int(batch.messages[0].id or 0), db_path)
    assert "retired_template" in (message.error or "")


def test_stale_messages_expire(
    channel, db_path: Path, structured_logger: StructuredLogger, batch: ScheduleResult
) -> None:
    config = SchedulerConfig(stale_after_minutes=60)

    # 09:00 IST (03:30 UTC) is over an hour old at 07:00 UTC; 12:00 IST (06:30 UTC) is not
    result = make_dispatcher(channel, db_path, structured_logger, config).dispatch_due(MIDDAY_SWEEP)

    assert result.expired == 1
    assert result.sent == 1
    expired = get_message(int(batch.messages[0].id or 0), db_path)
    assert expired.status is OutboxStatus.FAILED
    assert expired.error == EXPIRED_ERROR
    assert len(channel.sent) == 1


def test_staleness_disabled_by_default(
    channel, db_path: Path, structured_logger: StructuredLogger, batch: ScheduleResult
) -> None:
    late_sweep = END_OF_DAY + timedelta(days=2)
    result = make_dispatcher(channel, db_path, structured_logger).dispatch_due(late_sweep)
    assert result.sent == 5
    assert result.expired == 0


def test_batch_limit_caps_a_sweep(
    channel, db_path: Path, structured_logger: StructuredLogger, batch: ScheduleResult
) -> None:
    config = SchedulerConfig(batch_limit=2)
    dispatcher = make_dispatcher(channel, db_path, structured_logger, config)

    assert dispatcher.dispatch_due(END_OF_DAY).sent == 2
    assert dispatcher.dispatch_due(END_OF_DAY).sent == 2
    assert dispatcher.dispatch_due(END_OF_DAY).sent == 1


def test_one_failure_does_not_stop_the_sweep(
    channel,
    db_path: Path,
    structured_logger: StructuredLogger,
    batch: ScheduleResult,
    monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test a sweep where the first send succeeds and the second raises."""
    deliver = channel.send
    calls: List[str] = []

    def second_send_fails(destination: str, body: str, template_id: Optional[str] = None) -> ChannelResult:
        calls.append(destination)
        if len(calls) == 2:
            raise ChannelError("whatsapp error 500: upstream unavailable")
        return deliver(destination, body, template_id)

    monkeypatch.setattr(channel, "send", second_send_fails)

    result = make_dispatcher(channel, db_path, structured_logger).dispatch_due(MIDDAY_SWEEP)

    assert result.processed == 2
    assert result.sent == 1
    assert result.failed == 1
    first, second = (get_message(int(m.id or 0), db_path) for m in batch.messages[:2])
    assert first.status is OutboxStatus.SENT
    assert second.status is OutboxStatus.FAILED
    assert second.error == "whatsapp error 500: upstream unavailable"
    assert [record.word_id for record in get_send_history("user-1", db_path=db_path)] == [first.word_id]


def test_send_that_cannot_be_recorded_is_reported_separately(
    channel,
    db_path: Path,
    structured_logger: StructuredLogger,
    batch: ScheduleResult,
    monkeypatch: pytest.MonkeyPatch
) -> None:
    def storage_down(*args: Any, **kwargs: Any) -> None:
        raise DatabaseError("database is locked")

    monkeypatch.setattr("vocab_scheduler.scheduler.dispatcher.mark_message_sent", storage_down)

    result = make_dispatcher(channel, db_path, structured_logger, SchedulerConfig(batch_limit=1)).dispatch_due(
        MIDDAY_SWEEP
    )

    assert len(channel.sent) == 1
    assert result.sent == 0
    assert result.failed == 0
    assert result.unrecorded == 1
    assert result.dispatches[0].outcome is DispatchOutcome.UNRECORDED
    assert result.dispatches[0].channel_message_id == "SM0001"
    assert "not recorded" in result.to_dict()["errors"][str(batch.messages[0].id)]
    # Left in processing so it is never sent again
    assert get_message(int(batch.messages[0].id or 0), db_path).status is OutboxStatus.PROCESSING


def test_health_report_reflects_sweep(
    channel, db_path: Path, structured_logger: StructuredLogger, batch: ScheduleResult
) -> None:
    make_dispatcher(channel, db_path, structured_logger).dispatch_due(MIDDAY_SWEEP)

    report = HealthMonitor(db_path, structured_logger=structured_logger).health_report()

    assert report["outbox"]["sent"] == 2
    assert report["outbox"]["pending"] == 3
    assert report["outbox"]["stuck_processing"] == 0
    assert "cpu_percent" in report["system_metrics"]

    not_started = VocabSchedulerApplication(database_path=db_path, console_logging=False)
    assert not_started.get_health_status() == {"is_healthy": False, "error": "Application not initialized"}

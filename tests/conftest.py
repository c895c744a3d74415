"""Shared fixtures for the vocabulary delivery scheduler tests."""

from __future__ import annotations

import itertools
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from loguru import logger

from vocab_scheduler.channel.service import ChannelError, ChannelResult, MessagingChannel
from vocab_scheduler.config.logging_config import LoggingConfig, StructuredLogger
from vocab_scheduler.database.operations import add_word, initialize_database
from vocab_scheduler.scheduler.delivery_settings import DeliverySettingsResolver
from vocab_scheduler.scheduler.scheduler import SchedulerConfig

# Configure loguru for testing
logger.remove()
logger.add("test_vocab_scheduler.log", level="DEBUG")


class FakeChannel(MessagingChannel):
    """Channel double that records sends instead of calling a provider."""

    name = "fake"

    def __init__(
        self,
        status: str = "queued",
        accepted: bool = True,
        error: Optional[Exception] = None,
        delay_seconds: float = 0.0
    ) -> None:
        super().__init__()
        self.status = status
        self.accepted = accepted
        self.error = error
        self.delay_seconds = delay_seconds
        self.sent: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def send(self, destination: str, body: str, template_id: Optional[str] = None) -> ChannelResult:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.error is not None:
            raise self.error
        with self._lock:
            message_id = f"SM{next(self._ids):04d}"
            self.sent.append({"destination": destination, "body": body, "template_id": template_id})
        return ChannelResult(message_id if self.accepted else None, self.status, self.accepted)

    def test_connection(self) -> bool:
        return self.error is None

    def _auth_kwargs(self) -> Dict[str, Any]:
        return {}

    def _send_url(self) -> str:
        return "https://example.invalid/send"

    def _account_url(self) -> str:
        return "https://example.invalid/account"

    def _send_payload(self, recipient: str, body: str) -> Dict[str, Any]:
        return {}

    def _parse_send_response(self, data: Dict[str, Any]) -> ChannelResult:
        raise ChannelError("FakeChannel does not parse responses")

@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "test_vocab.db"
    initialize_database(path)
    return path

@pytest.fixture
def structured_logger(tmp_path: Path) -> StructuredLogger:
    return StructuredLogger(
        LoggingConfig(log_file=tmp_path / "test.log", console_enabled=False, enable_error_context=False)
    )

@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig(timezone="Asia/Kolkata")

@pytest.fixture
def gre_words(db_path: Path) -> List[int]:
    """Eight exam-gre words in catalog order."""
    words = [
        ("abate", "to lessen in intensity", "The storm began to abate by evening."),
        ("capricious", "given to sudden changes of mood", "The capricious weather ruined the picnic."),
        ("enervate", "to weaken", "The heat enervated the hikers."),
        ("laconic", "using very few words", "His laconic reply ended the debate."),
        ("obdurate", "stubbornly refusing to change", "She remained obdurate despite the pleas."),
        ("prodigal", "wastefully extravagant", "The prodigal heir spent his fortune."),
        ("quiescent", "in a state of inactivity", "The volcano has been quiescent for decades."),
        ("venerate", "to regard with great respect", "They venerate their elders."),
    ]
    return [
        add_word(word, definition, example, "exam-gre", part_of_speech="adjective", db_path=db_path)
        for word, definition, example in words
    ]

@pytest.fixture
def configured_user(db_path: Path) -> str:
    """A user with five auto-mode words a day in the default timezone."""
    DeliverySettingsResolver(db_path).save("user-1", 5, "auto")
    return "user-1"

@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()

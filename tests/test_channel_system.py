#!/usr/bin/env python3
"""Tests for messaging channels, message templates and status callbacks."""

from __future__ import annotations

from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List
from unittest.mock import Mock

import pytest
import requests

from vocab_scheduler.channel.service import (
    ChannelAuthenticationError,
    ChannelError,
    RateLimitError,
    TwilioSmsChannel,
    WhatsAppCloudChannel,
    create_channel,
)
from vocab_scheduler.channel.templates import (
    DAILY_VOCAB_COMPACT,
    DAILY_VOCAB_WORD,
    MessageTemplateManager,
    TemplateNotFoundError,
    TemplateRenderError,
)
from vocab_scheduler.channel.webhooks import (
    apply_status_updates,
    parse_meta_status,
    parse_status_payload,
    parse_twilio_status,
)
from vocab_scheduler.database.models import Category, OutboxMessage
from vocab_scheduler.database.outbox import (
    claim_message,
    get_delivery_events,
    get_message,
    insert_outbox_batch,
    mark_message_sent,
)
from vocab_scheduler.security.credentials import ChannelCredentials


def mock_session(status_code: int = 201, payload: Any = None) -> Mock:
    response = Mock(spec=requests.Response)
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {}
    response.text = str(payload)
    session = Mock(spec=requests.Session)
    session.request.return_value = response
    return session


WORD_VARIABLES: Dict[str, Any] = {
    "word": "laconic",
    "definition": "using very few words",
    "example": "His laconic reply ended the debate.",
    "pronunciation": "luh-KON-ik",
    "part_of_speech": "adjective",
    "memory_hook": "",
    "category": "exam-gre",
    "position": 2,
    "total_words": 5,
}


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

def test_twilio_send() -> None:
    session = mock_session(201, {"sid": "SM123", "status": "queued"})
    channel = TwilioSmsChannel("AC123", "secret", "+15005550006", session=session)

    result = channel.send("+91 98765 43210", "Hello", template_id=DAILY_VOCAB_WORD)

    assert result.channel_message_id == "SM123"
    assert result.accepted
    method, url = session.request.call_args.args
    kwargs = session.request.call_args.kwargs
    assert method == "POST"
    assert url == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
    assert kwargs["auth"] == ("AC123", "secret")
    assert kwargs["data"] == {"To": "+919876543210", "From": "+15005550006", "Body": "Hello"}
    assert kwargs["timeout"] == 30
    assert channel.get_rate_limit_status()["messages_sent_last_hour"] == 1


def test_twilio_failed_status_is_not_accepted() -> None:
    session = mock_session(201, {"sid": "SM123", "status": "failed"})
    channel = TwilioSmsChannel("AC123", "secret", "+15005550006", session=session)

    result = channel.send("+919876543210", "Hello")

    assert not result.accepted
    assert channel.get_rate_limit_status()["messages_sent_last_hour"] == 0


def test_whatsapp_send() -> None:
    session = mock_session(200, {"messages": [{"id": "wamid.ABC"}]})
    channel = WhatsAppCloudChannel("10987", "token-xyz", session=session)

    result = channel.send("+919876543210", "Hello")

    assert result.channel_message_id == "wamid.ABC"
    assert result.status == "accepted"
    kwargs = session.request.call_args.kwargs
    assert session.request.call_args.args[1] == "https://graph.facebook.com/v21.0/10987/messages"
    assert kwargs["headers"] == {"Authorization": "Bearer token-xyz"}
    assert kwargs["json"] == {
        "messaging_product": "whatsapp",
        "to": "919876543210",
        "type": "text",
        "text": {"body": "Hello"},
    }


def test_whatsapp_without_message_id_is_not_accepted() -> None:
    channel = WhatsAppCloudChannel("10987", "token-xyz", session=mock_session(200, {"messages": []}))
    assert not channel.send("+919876543210", "Hello").accepted


@pytest.mark.parametrize(
    "status_code, error_type",
    [
        (401, ChannelAuthenticationError),
        (403, ChannelAuthenticationError),
        (429, RateLimitError),
        (400, ChannelError),
        (500, ChannelError),
    ],
)
def test_http_errors_are_mapped(status_code: int, error_type: type) -> None:
    session = mock_session(status_code, {"error": {"message": "nope"}})
    channel = WhatsAppCloudChannel("10987", "token-xyz", session=session)

    with pytest.raises(error_type, match="nope"):
        channel.send("+919876543210", "Hello")


def test_network_failures_are_channel_errors() -> None:
    session = Mock(spec=requests.Session)
    session.request.side_effect = requests.exceptions.Timeout("slow")
    channel = TwilioSmsChannel("AC123", "secret", "+15005550006", session=session)

    with pytest.raises(ChannelError, match="timed out"):
        channel.send("+919876543210", "Hello")

    session.request.side_effect = requests.exceptions.ConnectionError("refused")
    with pytest.raises(ChannelError):
        channel.send("+919876543210", "Hello")


def test_non_json_response() -> None:
    session = mock_session(200)
    session.request.return_value.json.side_effect = ValueError("not json")
    channel = TwilioSmsChannel("AC123", "secret", "+15005550006", session=session)

    with pytest.raises(ChannelError, match="non-JSON"):
        channel.send("+919876543210", "Hello")


def test_send_validation_and_rate_limit() -> None:
    session = mock_session(201, {"sid": "SM1", "status": "queued"})
    channel = TwilioSmsChannel("AC123", "secret", "+15005550006", max_messages_per_hour=1, session=session)

    with pytest.raises(ValueError):
        channel.send("+919876543210", "   ")
    with pytest.raises(ValueError):
        channel.send("12", "Hello")

    channel.send("+919876543210", "Hello")
    with pytest.raises(RateLimitError):
        channel.send("+919876543210", "Hello again")
    assert session.request.call_count == 1


def test_connection_check() -> None:
    channel = TwilioSmsChannel("AC123", "secret", "+15005550006", session=mock_session(200, {"sid": "AC123"}))
    assert channel.test_connection()

    rejected = TwilioSmsChannel("AC123", "wrong", "+15005550006", session=mock_session(401, {"message": "bad"}))
    assert not rejected.test_connection()


def test_create_channel_by_provider() -> None:
    twilio = create_channel(ChannelCredentials("twilio", "AC1", "tok", "+15005550006"))
    whatsapp = create_channel(ChannelCredentials("whatsapp", phone_number_id="1", access_token="t"))
    assert isinstance(twilio, TwilioSmsChannel)
    assert isinstance(whatsapp, WhatsAppCloudChannel)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

def test_render_word_template() -> None:
    body = MessageTemplateManager().render(DAILY_VOCAB_WORD, WORD_VARIABLES)

    assert body.startswith("📚 *EXAM GRE WORD OF THE DAY*")
    assert "*Word:* laconic (adjective)" in body
    assert "*Pronunciation:* luh-KON-ik" in body
    assert "*Memory Hook:* Remember this word!" in body
    assert body.endswith("Word 2 of 5 for today")


def test_render_compact_template() -> None:
    body = MessageTemplateManager().render(DAILY_VOCAB_COMPACT, WORD_VARIABLES)
    assert body == (
        "*laconic*: using very few words\n"
        "e.g. His laconic reply ended the debate.\n"
        "(2/5)"
    )


def test_template_errors() -> None:
    manager = MessageTemplateManager()
    with pytest.raises(TemplateNotFoundError):
        manager.render("missing", WORD_VARIABLES)
    with pytest.raises(TemplateRenderError, match="definition"):
        manager.render(DAILY_VOCAB_WORD, {**WORD_VARIABLES, "definition": ""})


def test_template_overrides(tmp_path: Path) -> None:
    (tmp_path / "weekend.txt").write_text("Weekend word: {{word}} - {{nickname}}", encoding="utf-8")
    manager = MessageTemplateManager(tmp_path)

    assert "weekend" in manager.available_templates()
    assert DAILY_VOCAB_WORD in manager.available_templates()
    with pytest.raises(TemplateRenderError, match="nickname"):
        manager.render("weekend", WORD_VARIABLES)
    assert manager.render("weekend", {**WORD_VARIABLES, "nickname": "Ash"}) == "Weekend word: laconic - Ash"


# ---------------------------------------------------------------------------
# Delivery status callbacks
# ---------------------------------------------------------------------------

def test_parse_twilio_status() -> None:
    updates = parse_twilio_status({
        "MessageSid": "SM123",
        "MessageStatus": "Undelivered",
        "ErrorCode": "30003",
        "ErrorMessage": "Unreachable destination handset",
    })
    assert len(updates) == 1
    assert updates[0].channel_message_id == "SM123"
    assert updates[0].status == "undelivered"
    assert updates[0].error_code == "30003"

    assert parse_twilio_status({"SmsSid": "SM9", "SmsStatus": "delivered"})[0].status == "delivered"
    assert parse_twilio_status({"Body": "STOP", "From": "+919876543210"}) == []


META_PAYLOAD: Dict[str, Any] = {
    "object": "whatsapp_business_account",
    "entry": [{
        "id": "WABA",
        "changes": [{
            "field": "messages",
            "value": {
                "statuses": [
                    {"id": "wamid.A", "status": "delivered", "timestamp": "1710045000"},
                    {"id": "wamid.B", "status": "failed", "timestamp": "1710045060",
                     "errors": [{"code": 131026, "title": "Message undeliverable"}]},
                    {"status": "read"},
                ],
            },
        }],
    }],
}


def test_parse_meta_status() -> None:
    updates = parse_meta_status(META_PAYLOAD)

    assert [u.channel_message_id for u in updates] == ["wamid.A", "wamid.B"]
    assert updates[0].occurred_at is not None
    assert updates[0].occurred_at.timestamp() == 1710045000
    assert updates[1].error_code == "131026"
    assert updates[1].error_message == "Message undeliverable"
    assert parse_status_payload(META_PAYLOAD) == updates
    assert parse_meta_status({"entry": [{"changes": [{"value": {"messages": [{"id": "in"}]}}]}]}) == []


def test_apply_status_updates(db_path: Path, gre_words: List[int]) -> None:
    stored = insert_outbox_batch([
        OutboxMessage(
            id=None, user_id="user-1", phone="+919876543210", schedule_date=date(2024, 3, 10),
            position=1, word_id=gre_words[0], category=Category.EXAM_GRE,
            send_at=datetime(2024, 3, 10, 3, 30, tzinfo=timezone.utc), template_id=DAILY_VOCAB_WORD
        )
    ], db_path)
    message_id = int(stored[0].id or 0)
    claim_message(message_id, db_path)
    mark_message_sent(message_id, "wamid.B", db_path)

    counts = apply_status_updates(parse_status_payload(META_PAYLOAD), db_path)

    assert counts == {"matched": 1, "unmatched": 1}
    message = get_message(message_id, db_path)
    assert message.delivery_status == "failed"
    assert message.error == "Message undeliverable"
    assert [event.error_code for event in get_delivery_events("wamid.B", db_path)] == ["131026"]

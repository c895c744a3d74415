"""Parsing of provider delivery status callbacks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from loguru import logger

from ..database.operations import DATABASE_PATH
from ..database.outbox import record_delivery_status


@dataclass(frozen=True)
class DeliveryStatusUpdate:
    """One status change reported by a provider for a sent message."""
    channel_message_id: str
    status: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    occurred_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def parse_twilio_status(params: Mapping[str, Any]) -> List[DeliveryStatusUpdate]:
    """Parse a Twilio status callback (form fields as a mapping).

    Callbacks without ``MessageSid`` and ``MessageStatus`` are inbound
    messages rather than status reports and yield nothing.
    """
    message_sid: str = str(params.get("MessageSid") or params.get("SmsSid") or "").strip()
    status: str = str(params.get("MessageStatus") or params.get("SmsStatus") or "").strip()
    if not message_sid or not status:
        logger.debug("Twilio callback carries no status update")
        return []

    error_code: Any = params.get("ErrorCode")
    return [
        DeliveryStatusUpdate(
            channel_message_id=message_sid,
            status=status.lower(),
            error_code=str(error_code) if error_code not in (None, "") else None,
            error_message=params.get("ErrorMessage") or None,
            raw=dict(params)
        )
    ]


def _meta_timestamp(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_meta_status(payload: Mapping[str, Any]) -> List[DeliveryStatusUpdate]:
    """Parse a WhatsApp Cloud API webhook body.

    A single body can batch several status objects under
    ``entry[].changes[].value.statuses[]``; inbound messages are ignored.
    """
    updates: List[DeliveryStatusUpdate] = []

    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value: Mapping[str, Any] = change.get("value") or {}
            for status_data in value.get("statuses") or []:
                message_id: str = str(status_data.get("id") or "").strip()
                status: str = str(status_data.get("status") or "").strip()
                if not message_id or not status:
                    logger.warning(f"Skipping malformed WhatsApp status: {status_data}")
                    continue

                errors: List[Mapping[str, Any]] = status_data.get("errors") or []
                first_error: Mapping[str, Any] = errors[0] if errors else {}
                error_code: Any = first_error.get("code")
                updates.append(
                    DeliveryStatusUpdate(
                        channel_message_id=message_id,
                        status=status.lower(),
                        error_code=str(error_code) if error_code is not None else None,
                        error_message=first_error.get("message") or first_error.get("title"),
                        occurred_at=_meta_timestamp(status_data.get("timestamp")),
                        raw=dict(status_data)
                    )
                )

    logger.debug(f"Parsed {len(updates)} WhatsApp status updates")
    return updates


def parse_status_payload(payload: Mapping[str, Any]) -> List[DeliveryStatusUpdate]:
    """Detect the provider from the payload shape and parse it."""
    if "entry" in payload:
        return parse_meta_status(payload)
    return parse_twilio_status(payload)


def apply_status_updates(
    updates: Iterable[DeliveryStatusUpdate],
    db_path: Path = DATABASE_PATH
) -> Dict[str, int]:
    """Store status updates and attach them to their outbox messages.

    Returns:
        Counts of ``matched`` and ``unmatched`` updates.
    """
    counts: Dict[str, int] = {"matched": 0, "unmatched": 0}

    for update in updates:
        matched: bool = record_delivery_status(
            update.channel_message_id,
            update.status,
            error_code=update.error_code,
            error_message=update.error_message,
            raw_data=update.raw,
            received_at=update.occurred_at,
            db_path=db_path
        )
        counts["matched" if matched else "unmatched"] += 1

    logger.info(f"Applied delivery status updates: {counts['matched']} matched, {counts['unmatched']} unmatched")
    return counts

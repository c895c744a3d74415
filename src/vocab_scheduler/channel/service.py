"""Messaging channel module with Twilio SMS and WhatsApp Cloud API support."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Final, List, Optional

import requests
from loguru import logger

from ..security.credentials import ChannelCredentials
from ..utils.validation_utils import normalize_phone_number


class ChannelError(Exception):
    """Base exception for messaging channel operations."""
    pass


class ChannelAuthenticationError(ChannelError):
    """Raised when the provider rejects the credentials."""
    pass


class RateLimitError(ChannelError):
    """Raised when the hourly send limit or the provider's limit is hit."""
    pass


@dataclass(frozen=True)
class ChannelResult:
    """Outcome of handing one message to a provider."""
    channel_message_id: Optional[str]
    status: str
    accepted: bool


@dataclass
class MessageRateTracker:
    """Tracks message sending rate to enforce limits."""
    max_per_hour: int
    sent_times: List[datetime] = field(default_factory=list)

    def _prune(self) -> None:
        cutoff: datetime = datetime.now() - timedelta(hours=1)
        self.sent_times = [t for t in self.sent_times if t > cutoff]

    def can_send(self) -> bool:
        """Check if another message fits within the hourly limit."""
        self._prune()
        return len(self.sent_times) < self.max_per_hour

    def record_sent(self) -> None:
        self.sent_times.append(datetime.now())
        logger.debug(f"Rate tracker: {len(self.sent_times)}/{self.max_per_hour} messages sent in last hour")

    def status(self) -> Dict[str, int]:
        self._prune()
        return {
            "messages_sent_last_hour": len(self.sent_times),
            "max_messages_per_hour": self.max_per_hour,
            "messages_remaining": max(0, self.max_per_hour - len(self.sent_times)),
        }


class MessagingChannel(ABC):
    """Sends a rendered message body to a phone number."""

    name: str = "channel"

    def __init__(
        self,
        max_messages_per_hour: int = 1000,
        timeout_seconds: int = 30,
        session: Optional[requests.Session] = None
    ) -> None:
        if max_messages_per_hour <= 0:
            raise ValueError("Max messages per hour must be positive")
        if timeout_seconds <= 0:
            raise ValueError("Timeout must be positive")

        self.timeout_seconds: int = timeout_seconds
        self.rate_tracker: MessageRateTracker = MessageRateTracker(max_messages_per_hour)
        self.session: requests.Session = session or requests.Session()

    def send(self, destination: str, body: str, template_id: Optional[str] = None) -> ChannelResult:
        """Send one message.

        Args:
            destination: Recipient phone number.
            body: Rendered message text.
            template_id: Template the body was rendered from, for logging.

        Returns:
            The provider's message id and status.

        Raises:
            RateLimitError: If the hourly limit or the provider's limit is hit.
            ChannelAuthenticationError: If the provider rejects the credentials.
            ChannelError: If the request fails for any other reason.
            ValueError: If the destination or body is invalid.
        """
        if not body.strip():
            raise ValueError("Message body cannot be empty")
        if not self.rate_tracker.can_send():
            raise RateLimitError(
                f"Rate limit exceeded: {self.rate_tracker.max_per_hour} messages per hour"
            )

        recipient: str = self._format_destination(normalize_phone_number(destination))
        logger.info(f"Sending {template_id or 'message'} via {self.name} to {recipient}")

        response: requests.Response = self._request("POST", self._send_url(), **self._send_payload(recipient, body))
        try:
            data: Dict[str, Any] = response.json()
        except ValueError as e:
            raise ChannelError(f"{self.name} returned a non-JSON response") from e
        result: ChannelResult = self._parse_send_response(data)

        if result.accepted:
            self.rate_tracker.record_sent()
            logger.info(f"{self.name} accepted message {result.channel_message_id} ({result.status})")
        else:
            logger.warning(f"{self.name} did not accept message to {recipient}: status {result.status}")
        return result

    def test_connection(self) -> bool:
        """Check that the configured credentials are accepted."""
        try:
            logger.info(f"Testing {self.name} connection...")
            self._request("GET", self._account_url())
            logger.info(f"{self.name} connection test successful")
            return True
        except ChannelError as e:
            logger.error(f"{self.name} connection test failed: {e}")
            return False

    def get_rate_limit_status(self) -> Dict[str, int]:
        return self.rate_tracker.status()

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Perform an HTTP call and map failures onto channel errors."""
        try:
            response: requests.Response = self.session.request(
                method, url, timeout=self.timeout_seconds, **self._auth_kwargs(), **kwargs
            )
        except requests.exceptions.Timeout as e:
            logger.error(f"{self.name} request timed out after {self.timeout_seconds}s")
            raise ChannelError(f"{self.name} request timed out") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"{self.name} request failed: {e}")
            raise ChannelError(f"{self.name} request failed: {e}") from e

        if response.status_code in (401, 403):
            raise ChannelAuthenticationError(
                f"{self.name} rejected credentials: {self._error_text(response)}"
            )
        if response.status_code == 429:
            raise RateLimitError(f"{self.name} rate limited: {self._error_text(response)}")
        if response.status_code >= 400:
            raise ChannelError(
                f"{self.name} error {response.status_code}: {self._error_text(response)}"
            )
        return response

    @staticmethod
    def _error_text(response: requests.Response) -> str:
        try:
            data: Any = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(data, dict):
            error: Any = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if data.get("message"):
                return str(data["message"])
        return str(data)[:200]

    def _format_destination(self, phone: str) -> str:
        return phone

    @abstractmethod
    def _auth_kwargs(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    def _send_url(self) -> str:
        ...

    @abstractmethod
    def _account_url(self) -> str:
        ...

    @abstractmethod
    def _send_payload(self, recipient: str, body: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    def _parse_send_response(self, data: Dict[str, Any]) -> ChannelResult:
        ...


class TwilioSmsChannel(MessagingChannel):
    """SMS delivery through the Twilio Messages API."""

    name = "twilio"
    API_BASE: Final[str] = "https://api.twilio.com/2010-04-01"
    ACCEPTED_STATUSES: Final[frozenset[str]] = frozenset(
        {"accepted", "scheduled", "queued", "sending", "sent", "delivered"}
    )

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        max_messages_per_hour: int = 1000,
        timeout_seconds: int = 30,
        session: Optional[requests.Session] = None
    ) -> None:
        super().__init__(max_messages_per_hour, timeout_seconds, session)
        self.account_sid: str = account_sid
        self.auth_token: str = auth_token
        self.from_number: str = from_number
        logger.info(f"Twilio SMS channel initialized for {from_number}")

    def _auth_kwargs(self) -> Dict[str, Any]:
        return {"auth": (self.account_sid, self.auth_token)}

    def _send_url(self) -> str:
        return f"{self.API_BASE}/Accounts/{self.account_sid}/Messages.json"

    def _account_url(self) -> str:
        return f"{self.API_BASE}/Accounts/{self.account_sid}.json"

    def _send_payload(self, recipient: str, body: str) -> Dict[str, Any]:
        return {"data": {"To": recipient, "From": self.from_number, "Body": body}}

    def _parse_send_response(self, data: Dict[str, Any]) -> ChannelResult:
        status: str = str(data.get("status") or "unknown")
        message_id: Optional[str] = data.get("sid")
        return ChannelResult(
            channel_message_id=message_id,
            status=status,
            accepted=bool(message_id) and status in self.ACCEPTED_STATUSES
        )


class WhatsAppCloudChannel(MessagingChannel):
    """WhatsApp text messages through the Meta Graph API."""

    name = "whatsapp"
    API_BASE: Final[str] = "https://graph.facebook.com/v21.0"

    def __init__(
        self,
        phone_number_id: str,
        access_token: str,
        max_messages_per_hour: int = 1000,
        timeout_seconds: int = 30,
        session: Optional[requests.Session] = None
    ) -> None:
        super().__init__(max_messages_per_hour, timeout_seconds, session)
        self.phone_number_id: str = phone_number_id
        self.access_token: str = access_token
        logger.info(f"WhatsApp Cloud channel initialized for phone number id {phone_number_id}")

    def _format_destination(self, phone: str) -> str:
        # Graph API expects digits only
        return phone.lstrip("+")

    def _auth_kwargs(self) -> Dict[str, Any]:
        return {"headers": {"Authorization": f"Bearer {self.access_token}"}}

    def _send_url(self) -> str:
        return f"{self.API_BASE}/{self.phone_number_id}/messages"

    def _account_url(self) -> str:
        return f"{self.API_BASE}/{self.phone_number_id}"

    def _send_payload(self, recipient: str, body: str) -> Dict[str, Any]:
        return {
            "json": {
                "messaging_product": "whatsapp",
                "to": recipient,
                "type": "text",
                "text": {"body": body},
            }
        }

    def _parse_send_response(self, data: Dict[str, Any]) -> ChannelResult:
        messages: List[Dict[str, Any]] = data.get("messages") or []
        message_id: Optional[str] = messages[0].get("id") if messages else None
        status: str = str(messages[0].get("message_status", "accepted")) if messages else "rejected"
        return ChannelResult(channel_message_id=message_id, status=status, accepted=bool(message_id))


def create_channel(
    credentials: ChannelCredentials,
    session: Optional[requests.Session] = None
) -> MessagingChannel:
    """Build the channel for the configured provider."""
    if credentials.provider == "twilio":
        return TwilioSmsChannel(
            account_sid=credentials.account_sid,
            auth_token=credentials.auth_token,
            from_number=credentials.from_number,
            max_messages_per_hour=credentials.max_messages_per_hour,
            timeout_seconds=credentials.timeout_seconds,
            session=session
        )
    if credentials.provider == "whatsapp":
        return WhatsAppCloudChannel(
            phone_number_id=credentials.phone_number_id,
            access_token=credentials.access_token,
            max_messages_per_hour=credentials.max_messages_per_hour,
            timeout_seconds=credentials.timeout_seconds,
            session=session
        )
    raise ValueError(f"Unknown messaging provider: {credentials.provider}")

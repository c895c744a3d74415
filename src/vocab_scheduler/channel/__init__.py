"""Messaging channel package for the vocabulary delivery scheduler."""

from .service import (
    ChannelError,
    ChannelAuthenticationError,
    RateLimitError,
    ChannelResult,
    MessagingChannel,
    TwilioSmsChannel,
    WhatsAppCloudChannel,
    create_channel,
)
from .templates import MessageTemplateManager, TemplateError, TemplateNotFoundError, TemplateRenderError
from .webhooks import (
    DeliveryStatusUpdate,
    parse_twilio_status,
    parse_meta_status,
    parse_status_payload,
    apply_status_updates,
)

__all__ = [
    # Service
    "ChannelError",
    "ChannelAuthenticationError",
    "RateLimitError",
    "ChannelResult",
    "MessagingChannel",
    "TwilioSmsChannel",
    "WhatsAppCloudChannel",
    "create_channel",
    # Templates
    "MessageTemplateManager",
    "TemplateError",
    "TemplateNotFoundError",
    "TemplateRenderError",
    # Webhooks
    "DeliveryStatusUpdate",
    "parse_twilio_status",
    "parse_meta_status",
    "parse_status_payload",
    "apply_status_updates",
]

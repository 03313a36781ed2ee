"""Unified message model shared by every channel adapter."""
from chatbridge.models.channel_config import ChannelConfig, ChannelRecord
from chatbridge.models.unified_message import (
    ChannelPlatform,
    ChatType,
    HealthStatus,
    InboundMessage,
    MediaAttachment,
    MediaType,
    OutboundMessage,
    ParseMode,
    SendResult,
    WebhookVerification,
)
from chatbridge.models.webhook_request import WebhookRequest

__all__ = [
    "ChannelConfig",
    "ChannelPlatform",
    "ChannelRecord",
    "ChatType",
    "HealthStatus",
    "InboundMessage",
    "MediaAttachment",
    "MediaType",
    "OutboundMessage",
    "ParseMode",
    "SendResult",
    "WebhookRequest",
    "WebhookVerification",
]

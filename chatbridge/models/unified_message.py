"""Unified message model and enums for channel-agnostic processing.

This module defines the platform-neutral vocabulary shared by every channel
adapter: inbound/outbound messages, media attachments and the result shapes
returned by verification, sending and health checks.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ChannelPlatform(str, Enum):
    """Supported platforms."""
    TELEGRAM = "telegram"
    DISCORD = "discord"
    FEISHU = "feishu"
    WEB = "web"


class ChatType(str, Enum):
    PRIVATE = "private"
    GROUP = "group"
    CHANNEL = "channel"


class MediaType(str, Enum):
    """Supported attachment types across channels."""
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"


class ParseMode(str, Enum):
    MARKDOWN = "markdown"
    HTML = "html"
    PLAIN = "plain"


@dataclass(frozen=True)
class MediaAttachment:
    """A media reference carried by a message.

    Attributes:
        type: One of MediaType values.
        url: Platform file reference. For Telegram this is a `file_id` that must
            be resolved with `get_file_url` before it can be downloaded.
        filename: Original file name, when the platform reports one.
        mime_type: MIME type, when known.
        size: Size in bytes, when known.
        caption: Caption attached to the media.
    """
    type: MediaType
    url: str
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    size: Optional[int] = None
    caption: Optional[str] = None


@dataclass(frozen=True)
class InboundMessage:
    """Normalized message or interaction event received from a platform.

    Attributes:
        channel: Platform tag.
        sender_id: Platform user identifier. Telegram encodes `"<id>|<username>"`
            when the user has a username.
        chat_id: Conversation/channel identifier on the platform.
        content: Plain text. Never None; pure-media messages and control frames
            carry a bracketed placeholder or a sentinel value.
        id: Platform message/interaction id.
        sender_name: Display name.
        sender_username: Username/handle, when known.
        chat_type: One of ChatType values.
        media: Attachments, empty when the message has none.
        reply_to: Id of the message being replied to.
        metadata: Platform-specific values (command names, interaction tokens,
            tenant keys, ...).
        timestamp: When the platform says the message was sent.
        raw: The original decoded payload.
    """
    channel: ChannelPlatform
    sender_id: str
    chat_id: str
    content: str
    id: Optional[str] = None
    sender_name: Optional[str] = None
    sender_username: Optional[str] = None
    chat_type: ChatType = ChatType.PRIVATE
    media: List[MediaAttachment] = field(default_factory=list)
    reply_to: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    raw: Any = None


@dataclass
class OutboundMessage:
    """What calling code wants delivered to a platform.

    `content` may be any length; adapters split it to the platform limit.
    """
    channel: ChannelPlatform
    chat_id: str
    content: str
    reply_to: Optional[str] = None
    media: List[MediaAttachment] = field(default_factory=list)
    parse_mode: ParseMode = ParseMode.MARKDOWN
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookVerification:
    """Result of authenticating a webhook request.

    `challenge` carries a handshake value (Feishu `url_verification`) that must
    be echoed back verbatim in the HTTP response.
    """
    valid: bool
    error: Optional[str] = None
    challenge: Optional[str] = None


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class HealthStatus:
    healthy: bool
    error: Optional[str] = None

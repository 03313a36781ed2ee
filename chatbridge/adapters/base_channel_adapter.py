"""Abstract base interface for channel adapters.

Adapters normalize platform-specific webhook payloads to the unified message
model and provide a uniform API for sending responses back through that
platform.

Note: Keep implementations platform-specific in concrete adapters; only
behavior every platform shares (splitting, escaping, HTTP client handling)
lives here.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

import httpx

from chatbridge import config
from chatbridge.models.channel_config import ChannelConfig
from chatbridge.models.unified_message import (
    HealthStatus,
    InboundMessage,
    OutboundMessage,
    ParseMode,
    SendResult,
    WebhookVerification,
)
from chatbridge.models.webhook_request import WebhookRequest
from chatbridge.utils.message_splitter import escape_html, split_message

logger = logging.getLogger(__name__)

OPTIONAL_CAPABILITIES = ("get_file_url", "download_media", "send_typing_indicator")


class WebhookParseError(ValueError):
    """Raised when a webhook payload carries no actionable message.

    Callers acknowledge these with HTTP 200 so the platform does not retry.
    """


@dataclass
class ChannelAdapterOptions:
    config: ChannelConfig
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    # Shared client; when None each call opens its own short-lived client
    http_client: Optional[httpx.AsyncClient] = None


class BaseChannel(ABC):
    """Base adapter contract for all platforms."""

    name: str = ""
    platform: str = ""

    def __init__(self, options: ChannelAdapterOptions):
        self.config = options.config
        self.user_id = options.user_id
        self.conversation_id = options.conversation_id
        self._http_client = options.http_client

    @abstractmethod
    async def verify_webhook(self, request: WebhookRequest) -> WebhookVerification:
        """Authenticate that the request really comes from the platform."""
        raise NotImplementedError

    @abstractmethod
    async def parse_webhook(self, request: WebhookRequest) -> InboundMessage:
        """Translate a webhook request into exactly one `InboundMessage`.

        Raises:
            WebhookParseError: for payloads with no user or no recognizable message.
        """
        raise NotImplementedError

    @abstractmethod
    async def send_message(self, message: OutboundMessage) -> SendResult:
        """Deliver a message, splitting it to the platform limit.

        Never raises; failures are reported through `SendResult.error`.
        """
        raise NotImplementedError

    @abstractmethod
    def format_content(self, content: str, parse_mode: ParseMode = ParseMode.MARKDOWN) -> str:
        """Render Markdown-ish source into the platform's rich-text dialect."""
        raise NotImplementedError

    # Optional capabilities. Adapters that support one override it.

    async def get_file_url(self, file_id: str) -> str:
        """Resolve a platform file reference into a download URL."""
        raise NotImplementedError(f"{self.name} does not resolve file ids")

    async def download_media(self, file_id: str) -> bytes:
        """Download the bytes behind a platform file reference."""
        raise NotImplementedError(f"{self.name} does not download media")

    async def send_typing_indicator(self, chat_id: str) -> None:
        """Show a typing indicator in the chat."""
        raise NotImplementedError(f"{self.name} has no typing indicator")

    def supports(self, capability: str) -> bool:
        """Whether this adapter overrides the named optional capability."""
        if capability not in OPTIONAL_CAPABILITIES:
            return False
        return getattr(type(self), capability) is not getattr(BaseChannel, capability)

    async def health_check(self) -> HealthStatus:
        """Check the credentials. Platforms override this with a real API call."""
        return HealthStatus(healthy=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def split_message(self, content: str, max_length: int) -> List[str]:
        return split_message(content, max_length)

    def escape_html(self, text: str) -> str:
        return escape_html(text)

    def sanitize_content(self, content: str) -> str:
        return content.strip()

    @asynccontextmanager
    async def http_client(self) -> AsyncIterator[httpx.AsyncClient]:
        """Yield the injected client, or a fresh one closed on exit."""
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS) as client:
            yield client

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} platform={self.platform}>"

"""Discord channel adapter.

Webhook-based implementation on top of Discord Interactions (API v10).
Handles slash commands and message components; replies go out either as an
interaction response (within 3 seconds), an interaction follow-up (any time
after), or a plain channel message.
"""
from __future__ import annotations

import asyncio
import logging
from enum import IntEnum
from typing import Any, Dict, List, Optional

import httpx

from chatbridge.adapters.base_channel_adapter import (
    BaseChannel,
    ChannelAdapterOptions,
    WebhookParseError,
)
from chatbridge.adapters.registry import register_channel
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
from chatbridge.security import Ed25519Verifier, create_ed25519_verifier

logger = logging.getLogger(__name__)

DISCORD_API_BASE = "https://discord.com/api/v10"
DISCORD_MAX_MESSAGE_LENGTH = 2000
SIGNATURE_HEADER = "X-Signature-Ed25519"
TIMESTAMP_HEADER = "X-Signature-Timestamp"

# Content of the InboundMessage produced for a PING; callers answer it with PONG
DISCORD_PING_CONTENT = "__DISCORD_PING__"

EPHEMERAL_FLAG = 64
DEFAULT_RETRY_AFTER_SECONDS = 1.0


class InteractionType(IntEnum):
    PING = 1
    APPLICATION_COMMAND = 2
    MESSAGE_COMPONENT = 3
    APPLICATION_COMMAND_AUTOCOMPLETE = 4


class InteractionResponseType(IntEnum):
    PONG = 1
    CHANNEL_MESSAGE_WITH_SOURCE = 4
    DEFERRED_CHANNEL_MESSAGE_WITH_SOURCE = 5
    APPLICATION_COMMAND_AUTOCOMPLETE_RESULT = 8


def pong_response() -> Dict[str, Any]:
    return {"type": InteractionResponseType.PONG.value}


def deferred_response() -> Dict[str, Any]:
    return {"type": InteractionResponseType.DEFERRED_CHANNEL_MESSAGE_WITH_SOURCE.value}


def message_response(content: str, ephemeral: bool = False) -> Dict[str, Any]:
    return {
        "type": InteractionResponseType.CHANNEL_MESSAGE_WITH_SOURCE.value,
        "data": {"content": content, "flags": EPHEMERAL_FLAG if ephemeral else 0},
    }


class DiscordChannel(BaseChannel):
    """Adapter for Discord Interactions.

    The Ed25519 check is delegated to an injected verifier so the crypto
    backend can be swapped; see `chatbridge.security.create_ed25519_verifier`.
    """

    name = "Discord"
    platform = ChannelPlatform.DISCORD.value

    def __init__(self, options: ChannelAdapterOptions, verify_fn: Optional[Ed25519Verifier] = None):
        super().__init__(options)
        self.bot_token = self.config.discord_bot_token or ""
        self.application_id = self.config.discord_application_id or ""
        self.public_key = self.config.discord_public_key or ""
        # Registry-built adapters get the PyNaCl verifier
        self._verify_ed25519 = verify_fn if verify_fn is not None else create_ed25519_verifier()

    def set_verify_function(self, verify_fn: Ed25519Verifier) -> None:
        self._verify_ed25519 = verify_fn

    def _bot_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bot {self.bot_token}"}

    async def verify_webhook(self, request: WebhookRequest) -> WebhookVerification:
        if not self.public_key or not self._verify_ed25519:
            # Development mode only
            logger.warning("[DISCORD] No public key or verifier configured, skipping signature check")
            return WebhookVerification(valid=True)

        signature = request.header(SIGNATURE_HEADER)
        timestamp = request.header(TIMESTAMP_HEADER)
        if not signature or not timestamp:
            return WebhookVerification(valid=False, error="Missing signature headers")

        try:
            body = request.text
        except UnicodeDecodeError:
            return WebhookVerification(valid=False, error="Invalid request body")

        if not self._verify_ed25519(self.public_key, signature, timestamp, body):
            return WebhookVerification(valid=False, error="Invalid request signature")

        return WebhookVerification(valid=True)

    async def parse_webhook(self, request: WebhookRequest) -> InboundMessage:
        try:
            body = request.json()
        except ValueError as e:
            raise WebhookParseError(f"Invalid JSON in Discord interaction: {e}") from e

        interaction_type = body.get("type")

        if interaction_type == InteractionType.PING:
            return InboundMessage(
                id=body.get("id"),
                channel=ChannelPlatform.DISCORD,
                sender_id="system",
                chat_id="",
                content=DISCORD_PING_CONTENT,
                metadata={"type": "ping", "interactionId": body.get("id")},
                raw=body,
            )

        member = body.get("member") or {}
        user = member.get("user") or body.get("user")
        if not user:
            raise WebhookParseError("No user in Discord interaction")

        data = body.get("data") or {}
        content = ""
        command_name = ""

        if interaction_type == InteractionType.APPLICATION_COMMAND:
            command_name = data.get("name", "")
            content = self._join_option_values(data.get("options") or []) or command_name
        elif interaction_type == InteractionType.MESSAGE_COMPONENT:
            resolved_messages = (data.get("resolved") or {}).get("messages") or {}
            if resolved_messages:
                first = next(iter(resolved_messages.values()))
                content = first.get("content") or ""
            elif body.get("message"):
                content = body["message"].get("content") or ""
            command_name = data.get("name") or data.get("custom_id") or "component"
        elif interaction_type == InteractionType.APPLICATION_COMMAND_AUTOCOMPLETE:
            options = data.get("options") or []
            if options:
                content = str(options[0].get("value", ""))
            command_name = data.get("name", "")
        else:
            raise WebhookParseError(f"Unsupported Discord interaction type: {interaction_type}")

        guild_id = body.get("guild_id")
        message = body.get("message")

        return InboundMessage(
            id=body.get("id"),
            channel=ChannelPlatform.DISCORD,
            sender_id=str(user["id"]),
            sender_name=member.get("nick") or user.get("global_name") or user.get("username"),
            sender_username=user.get("username"),
            chat_id=body.get("channel_id") or "",
            chat_type=ChatType.GROUP if guild_id else ChatType.PRIVATE,
            content=content,
            media=self._extract_media(message),
            reply_to=message.get("id") if message else None,
            metadata={
                "type": "interaction",
                "interactionType": interaction_type,
                "interactionId": body.get("id"),
                "interactionToken": body.get("token"),
                "commandName": command_name,
                "commandData": data,
                "guildId": guild_id,
                "memberId": (member.get("user") or {}).get("id"),
                "applicationId": body.get("application_id"),
                "isBot": bool(user.get("bot", False)),
            },
            raw=body,
        )

    @staticmethod
    def _join_option_values(options: List[Dict[str, Any]]) -> str:
        return " ".join(str(opt.get("value")) for opt in options if opt.get("value") is not None)

    @staticmethod
    def _extract_media(message: Optional[Dict[str, Any]]) -> List[MediaAttachment]:
        if not message:
            return []
        media: List[MediaAttachment] = []
        for attachment in message.get("attachments") or []:
            content_type = attachment.get("content_type") or ""
            if content_type.startswith("image/"):
                media_type = MediaType.IMAGE
            elif content_type.startswith("video/"):
                media_type = MediaType.VIDEO
            elif content_type.startswith("audio/"):
                media_type = MediaType.AUDIO
            else:
                media_type = MediaType.DOCUMENT
            media.append(MediaAttachment(
                type=media_type,
                url=attachment.get("url", ""),
                filename=attachment.get("filename"),
                mime_type=content_type or None,
                size=attachment.get("size"),
            ))
        return media

    async def _post_with_rate_limit(
        self,
        client: httpx.AsyncClient,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """POST once; on 429 wait `retry_after` and retry exactly once."""
        response = await client.post(url, json=payload, headers=headers)
        if response.status_code != 429:
            return response

        try:
            retry_after = float(response.json().get("retry_after", DEFAULT_RETRY_AFTER_SECONDS))
        except (ValueError, AttributeError):
            retry_after = DEFAULT_RETRY_AFTER_SECONDS
        logger.warning(f"[DISCORD] Rate limited on {url}, retrying in {retry_after}s")
        await asyncio.sleep(retry_after)
        return await client.post(url, json=payload, headers=headers)

    @staticmethod
    def _error_from(response: httpx.Response) -> str:
        try:
            message = response.json().get("message")
        except (ValueError, AttributeError):
            message = None
        if response.status_code == 429:
            return message or "Rate limited"
        return message or f"HTTP {response.status_code}"

    async def send_message(self, message: OutboundMessage) -> SendResult:
        """Post to a channel outside the interaction flow (e.g. scheduled notifications)."""
        if not self.bot_token:
            return SendResult(success=False, error="Discord bot token not configured")
        if not message.chat_id:
            return SendResult(success=False, error="Invalid channel ID")

        url = f"{DISCORD_API_BASE}/channels/{message.chat_id}/messages"
        headers = self._bot_headers()
        last_message_id: Optional[str] = None

        try:
            async with self.http_client() as client:
                for chunk in self.split_message(message.content, DISCORD_MAX_MESSAGE_LENGTH):
                    payload: Dict[str, Any] = {"content": self.format_content(chunk, message.parse_mode)}
                    if message.reply_to:
                        payload["message_reference"] = {"message_id": message.reply_to}
                        payload["allowed_mentions"] = {"replied_user": False}

                    response = await self._post_with_rate_limit(client, url, payload, headers)
                    if not response.is_success:
                        error = self._error_from(response)
                        logger.error(f"[DISCORD] Send to channel {message.chat_id} failed: {error}")
                        return SendResult(success=False, error=error)
                    last_message_id = response.json().get("id")
        except (httpx.HTTPError, ValueError) as e:
            logger.exception(f"[DISCORD] Error sending message to {message.chat_id}: {e}")
            return SendResult(success=False, error=str(e))

        return SendResult(success=True, message_id=last_message_id)

    async def respond_to_interaction(
        self,
        interaction_id: str,
        interaction_token: str,
        content: str,
        ephemeral: bool = False,
    ) -> SendResult:
        """Send the initial interaction response. Must happen within 3 seconds of receipt."""
        url = f"{DISCORD_API_BASE}/interactions/{interaction_id}/{interaction_token}/callback"
        payload = message_response(content[:DISCORD_MAX_MESSAGE_LENGTH], ephemeral)
        try:
            async with self.http_client() as client:
                response = await self._post_with_rate_limit(client, url, payload)
        except httpx.HTTPError as e:
            return SendResult(success=False, error=str(e))

        if not response.is_success:
            return SendResult(success=False, error=self._error_from(response))
        return SendResult(success=True)

    async def follow_up_interaction(self, interaction_token: str, content: str) -> SendResult:
        """Deliver a (possibly slow) reply after the initial 3-second window."""
        if not self.application_id:
            return SendResult(success=False, error="Discord application ID not configured")

        url = f"{DISCORD_API_BASE}/webhooks/{self.application_id}/{interaction_token}"
        last_message_id: Optional[str] = None
        try:
            async with self.http_client() as client:
                for chunk in self.split_message(content, DISCORD_MAX_MESSAGE_LENGTH):
                    response = await self._post_with_rate_limit(client, url, {"content": chunk})
                    if not response.is_success:
                        return SendResult(success=False, error=self._error_from(response))
                    last_message_id = response.json().get("id")
        except (httpx.HTTPError, ValueError) as e:
            logger.exception(f"[DISCORD] Error sending follow-up: {e}")
            return SendResult(success=False, error=str(e))

        return SendResult(success=True, message_id=last_message_id)

    def format_content(self, content: str, parse_mode: ParseMode = ParseMode.MARKDOWN) -> str:
        if parse_mode == ParseMode.PLAIN:
            return "".join(f"\\{char}" if char in "*_~`|>" else char for char in content)
        # Discord renders Markdown natively
        return content

    async def send_typing_indicator(self, chat_id: str) -> None:
        if not self.bot_token:
            return
        try:
            async with self.http_client() as client:
                await client.post(f"{DISCORD_API_BASE}/channels/{chat_id}/typing", headers=self._bot_headers())
        except httpx.HTTPError as e:
            logger.warning(f"[DISCORD] Typing indicator failed for {chat_id}: {e}")

    async def health_check(self) -> HealthStatus:
        if not self.bot_token:
            return HealthStatus(healthy=False, error="Bot token not configured")
        try:
            async with self.http_client() as client:
                response = await client.get(f"{DISCORD_API_BASE}/users/@me", headers=self._bot_headers())
        except httpx.HTTPError as e:
            return HealthStatus(healthy=False, error=str(e))

        if response.is_success:
            return HealthStatus(healthy=True)
        return HealthStatus(healthy=False, error=self._error_from(response))

    async def register_commands(self, commands: List[Dict[str, Any]]) -> SendResult:
        """Bulk-overwrite the application's global slash commands."""
        if not self.bot_token or not self.application_id:
            return SendResult(success=False, error="Bot token or application ID not configured")

        url = f"{DISCORD_API_BASE}/applications/{self.application_id}/commands"
        try:
            async with self.http_client() as client:
                response = await client.put(url, json=commands, headers=self._bot_headers())
        except httpx.HTTPError as e:
            return SendResult(success=False, error=str(e))

        if not response.is_success:
            return SendResult(success=False, error=self._error_from(response))
        logger.info(f"[DISCORD] Registered {len(commands)} slash commands")
        return SendResult(success=True)


register_channel(ChannelPlatform.DISCORD.value, DiscordChannel)

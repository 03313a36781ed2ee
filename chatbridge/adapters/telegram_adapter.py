"""Telegram channel adapter.

Webhook-based implementation for the Telegram Bot API. Inbound updates carry
either a message (`message`/`edited_message`) or an inline-button press
(`callback_query`); outbound text is rendered to Telegram's HTML dialect.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

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
from chatbridge.security import hash_secret, secrets_match

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org/bot"
TELEGRAM_FILE_BASE = "https://api.telegram.org/file/bot"
SECRET_TOKEN_HEADER = "X-Telegram-Bot-Api-Secret-Token"

TELEGRAM_MAX_MESSAGE_LENGTH = 4096
# Split a little under the hard limit; HTML tags added per chunk take room
TELEGRAM_SPLIT_LENGTH = 4000

CHAT_TYPE_MAP = {
    "private": ChatType.PRIVATE,
    "group": ChatType.GROUP,
    "supergroup": ChatType.GROUP,
    "channel": ChatType.CHANNEL,
}

_CODE_BLOCK_RE = re.compile(r"```\w*\n?([\s\S]*?)```")
_INLINE_CODE_RE = re.compile(r"`([^`]+)`")
_HEADING_RE = re.compile(r"^#{1,6}[ \t]+(.+)$", re.MULTILINE)
_BLOCKQUOTE_RE = re.compile(r"^>[ \t]*(.*)$", re.MULTILINE)
_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
_BOLD_STARS_RE = re.compile(r"\*\*(.+?)\*\*")
_BOLD_UNDERSCORES_RE = re.compile(r"__(.+?)__")
_ITALIC_RE = re.compile(r"(?<![a-zA-Z0-9])_([^_]+)_(?![a-zA-Z0-9])")
_STRIKE_RE = re.compile(r"~~(.+?)~~")
_BULLET_RE = re.compile(r"^[-*][ \t]+", re.MULTILINE)


def sender_matches_allowlist(sender_id: str, allowed: Iterable[str]) -> bool:
    """Match a `"<id>|<username>"` sender id against ids and/or usernames."""
    allowed_set = {entry.strip().lstrip("@") for entry in allowed if entry and entry.strip()}
    user_id, _, username = sender_id.partition("|")
    return user_id in allowed_set or bool(username and username in allowed_set)


def _escape_code(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def markdown_to_telegram_html(text: str) -> str:
    """Convert Markdown to the HTML subset Telegram accepts.

    Code is swapped out for placeholders first so no later rule touches it.
    """
    if not text:
        return ""

    code_blocks: List[str] = []

    def _stash_block(match: re.Match) -> str:
        code_blocks.append(match.group(1))
        return f"\x00CB{len(code_blocks) - 1}\x00"

    text = _CODE_BLOCK_RE.sub(_stash_block, text)

    inline_codes: List[str] = []

    def _stash_inline(match: re.Match) -> str:
        inline_codes.append(match.group(1))
        return f"\x00IC{len(inline_codes) - 1}\x00"

    text = _INLINE_CODE_RE.sub(_stash_inline, text)

    # Headings become bold; the ** markers are turned into <b> after escaping
    text = _HEADING_RE.sub(r"**\1**", text)
    text = _BLOCKQUOTE_RE.sub(r"\1", text)

    text = _escape_code(text)

    # Links before bold/italic so emphasis inside link text is handled once
    text = _LINK_RE.sub(r'<a href="\2">\1</a>', text)
    text = _BOLD_STARS_RE.sub(r"<b>\1</b>", text)
    text = _BOLD_UNDERSCORES_RE.sub(r"<b>\1</b>", text)
    text = _ITALIC_RE.sub(r"<i>\1</i>", text)
    text = _STRIKE_RE.sub(r"<s>\1</s>", text)
    text = _BULLET_RE.sub("• ", text)

    for i, code in enumerate(inline_codes):
        text = text.replace(f"\x00IC{i}\x00", f"<code>{_escape_code(code)}</code>")
    for i, code in enumerate(code_blocks):
        text = text.replace(f"\x00CB{i}\x00", f"<pre><code>{_escape_code(code)}</code></pre>")

    return text


class TelegramChannel(BaseChannel):
    """Adapter for the Telegram Bot API."""

    name = "Telegram"
    platform = ChannelPlatform.TELEGRAM.value

    def __init__(self, options: ChannelAdapterOptions):
        super().__init__(options)
        self.bot_token = self.config.telegram_bot_token or ""
        self.secret_token: Optional[str] = self.config.custom_settings.get("telegramSecretToken")

    def _api_url(self, method: str) -> str:
        return f"{TELEGRAM_API_BASE}{self.bot_token}/{method}"

    async def _call(self, client: httpx.AsyncClient, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        # Telegram answers errors with a JSON body too, so the status code is not checked
        response = await client.post(self._api_url(method), json=payload)
        return response.json()

    async def verify_webhook(self, request: WebhookRequest) -> WebhookVerification:
        # Without a configured secret every request is accepted
        if self.secret_token:
            provided = request.header(SECRET_TOKEN_HEADER)
            if not secrets_match(provided, self.secret_token):
                if provided:
                    logger.warning(f"[TELEGRAM] Secret token mismatch (got hash {hash_secret(provided)})")
                return WebhookVerification(valid=False, error="Invalid secret token")
        return WebhookVerification(valid=True)

    async def parse_webhook(self, request: WebhookRequest) -> InboundMessage:
        try:
            body = request.json()
        except ValueError as e:
            raise WebhookParseError(f"Invalid JSON in Telegram update: {e}") from e

        if body.get("callback_query"):
            return self._parse_callback_query(body)

        message = body.get("message") or body.get("edited_message")
        if not message:
            raise WebhookParseError("No message in Telegram update")

        user = message.get("from")
        if not user:
            raise WebhookParseError("No user in Telegram message")

        content_parts = [part for part in (message.get("text"), message.get("caption")) if part]
        media = self._extract_media(message)

        if content_parts:
            content = "\n".join(content_parts)
        else:
            content = self._media_placeholder(message)

        chat = message.get("chat") or {}
        reply = message.get("reply_to_message")
        message_id = message.get("message_id")

        return InboundMessage(
            id=str(message_id) if message_id is not None else None,
            channel=ChannelPlatform.TELEGRAM,
            sender_id=self.build_sender_id(user),
            sender_name=self._full_name(user),
            sender_username=user.get("username"),
            chat_id=str(chat.get("id", "")),
            chat_type=self.map_chat_type(chat.get("type", "private")),
            content=content,
            media=media,
            reply_to=str(reply["message_id"]) if reply else None,
            metadata={
                "userId": user.get("id"),
                "username": user.get("username"),
                "firstName": user.get("first_name"),
                "lastName": user.get("last_name"),
                "languageCode": user.get("language_code"),
                "isBot": user.get("is_bot", False),
                "isGroup": chat.get("type") != "private",
                "messageId": message_id,
                "editDate": message.get("edit_date"),
            },
            timestamp=datetime.fromtimestamp(message.get("date", 0), tz=timezone.utc),
            raw=body,
        )

    def _parse_callback_query(self, body: Dict[str, Any]) -> InboundMessage:
        """Parse an inline button press."""
        callback = body["callback_query"]
        user = callback.get("from")
        if not user:
            raise WebhookParseError("No user in Telegram callback query")
        message = callback.get("message") or {}
        chat = message.get("chat")

        return InboundMessage(
            id=str(callback.get("id")),
            channel=ChannelPlatform.TELEGRAM,
            sender_id=self.build_sender_id(user),
            sender_name=self._full_name(user),
            sender_username=user.get("username"),
            chat_id=str(chat["id"]) if chat else "",
            chat_type=self.map_chat_type(chat.get("type", "private")) if chat else ChatType.PRIVATE,
            content=callback.get("data") or "",
            metadata={
                "type": "callback_query",
                "callbackId": callback.get("id"),
                "queryData": callback.get("data"),
                "userId": user.get("id"),
                "username": user.get("username"),
            },
            raw=body,
        )

    def _extract_media(self, message: Dict[str, Any]) -> List[MediaAttachment]:
        media: List[MediaAttachment] = []
        caption = message.get("caption")

        photos = message.get("photo") or []
        if photos:
            largest = max(photos, key=lambda p: (p.get("width", 0) * p.get("height", 0), p.get("file_size", 0)))
            media.append(MediaAttachment(
                type=MediaType.IMAGE,
                url=largest["file_id"],
                mime_type="image/jpeg",
                size=largest.get("file_size"),
                caption=caption,
            ))

        for key, media_type in (("document", MediaType.DOCUMENT), ("video", MediaType.VIDEO), ("audio", MediaType.AUDIO)):
            item = message.get(key)
            if item:
                media.append(MediaAttachment(
                    type=media_type,
                    url=item["file_id"],
                    filename=item.get("file_name"),
                    mime_type=item.get("mime_type"),
                    size=item.get("file_size"),
                    caption=caption,
                ))

        voice = message.get("voice")
        if voice:
            media.append(MediaAttachment(
                type=MediaType.AUDIO,
                url=voice["file_id"],
                mime_type=voice.get("mime_type") or "audio/ogg",
                size=voice.get("file_size"),
            ))

        sticker = message.get("sticker")
        if sticker:
            media.append(MediaAttachment(
                type=MediaType.STICKER,
                url=sticker["file_id"],
                size=sticker.get("file_size"),
            ))

        return media

    @staticmethod
    def _media_placeholder(message: Dict[str, Any]) -> str:
        for key in ("photo", "document", "video", "audio", "voice", "sticker"):
            if message.get(key):
                return f"[{key}]"
        return "[media]"

    @staticmethod
    def _full_name(user: Dict[str, Any]) -> str:
        return " ".join(part for part in (user.get("first_name"), user.get("last_name")) if part)

    @staticmethod
    def build_sender_id(user: Optional[Dict[str, Any]]) -> str:
        """Encode `"<id>|<username>"` for allowlist matching, or just the id."""
        if not user:
            return "unknown"
        user_id = str(user.get("id"))
        username = user.get("username")
        return f"{user_id}|{username}" if username else user_id

    @staticmethod
    def map_chat_type(chat_type: str) -> ChatType:
        return CHAT_TYPE_MAP.get(chat_type, ChatType.PRIVATE)

    async def send_message(self, message: OutboundMessage) -> SendResult:
        if not self.bot_token:
            return SendResult(success=False, error="Telegram bot token not configured")

        chat_id = self._coerce_chat_id(message.chat_id)
        if chat_id is None:
            return SendResult(success=False, error="Invalid chat ID")

        reply_to = int(message.reply_to) if message.reply_to and message.reply_to.isdigit() else None
        disable_preview = bool(message.metadata.get("disablePreview", False))

        last_message_id: Optional[str] = None
        try:
            async with self.http_client() as client:
                for chunk, rendered in self._render_chunks(message.content, message.parse_mode):
                    payload: Dict[str, Any] = {
                        "chat_id": chat_id,
                        "disable_web_page_preview": disable_preview,
                    }
                    if reply_to is not None:
                        payload["reply_to_message_id"] = reply_to
                    if rendered is None:
                        payload["text"] = chunk
                    else:
                        payload["text"] = rendered
                        payload["parse_mode"] = "HTML"

                    result = await self._call(client, "sendMessage", payload)

                    if not result.get("ok"):
                        description = result.get("description") or "Unknown Telegram error"
                        if "parse_mode" not in payload or "parse" not in description.lower():
                            logger.error(f"[TELEGRAM] sendMessage to {chat_id} failed: {description}")
                            return SendResult(success=False, error=description)

                        logger.warning(f"[TELEGRAM] HTML rejected ({description}), resending as plain text")
                        payload.pop("parse_mode")
                        payload["text"] = chunk
                        result = await self._call(client, "sendMessage", payload)
                        if not result.get("ok"):
                            return SendResult(success=False, error=result.get("description"))

                    last_message_id = str(result["result"]["message_id"])
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.exception(f"[TELEGRAM] Error sending message to {chat_id}: {e}")
            return SendResult(success=False, error=str(e))

        return SendResult(success=True, message_id=last_message_id)

    def _render_chunks(
        self,
        content: str,
        parse_mode: ParseMode,
        max_length: int = TELEGRAM_SPLIT_LENGTH,
    ) -> List[Tuple[str, Optional[str]]]:
        """Split the source text, then render each chunk.

        Returns `(source, rendered)` pairs; `rendered` is None for plain text.
        A chunk whose HTML outgrows the hard limit is split again at half the length.
        """
        pieces: List[Tuple[str, Optional[str]]] = []
        for chunk in self.split_message(content, max_length):
            if parse_mode == ParseMode.PLAIN:
                pieces.append((chunk, None))
                continue
            rendered = self.format_content(chunk, parse_mode)
            if len(rendered) > TELEGRAM_MAX_MESSAGE_LENGTH and max_length // 2 >= 2:
                pieces.extend(self._render_chunks(chunk, parse_mode, max_length // 2))
            else:
                pieces.append((chunk, rendered))
        return pieces

    @staticmethod
    def _coerce_chat_id(chat_id: str) -> Optional[Union[int, str]]:
        try:
            return int(chat_id)
        except (TypeError, ValueError):
            # Public channels may be addressed by @username
            return chat_id if chat_id and chat_id.startswith("@") else None

    def format_content(self, content: str, parse_mode: ParseMode = ParseMode.MARKDOWN) -> str:
        if parse_mode in (ParseMode.PLAIN, ParseMode.HTML):
            return content
        return markdown_to_telegram_html(content)

    async def get_file_url(self, file_id: str) -> str:
        """Resolve a `file_id` into a download URL via `getFile`."""
        if not self.bot_token:
            raise ValueError("Bot token not configured")

        async with self.http_client() as client:
            response = await client.get(self._api_url("getFile"), params={"file_id": file_id})
            result = response.json()

        if not result.get("ok"):
            raise ValueError(result.get("description") or "Failed to get file info")

        return f"{TELEGRAM_FILE_BASE}{self.bot_token}/{result['result']['file_path']}"

    async def download_media(self, file_id: str) -> bytes:
        url = await self.get_file_url(file_id)
        async with self.http_client() as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.content

    async def send_typing_indicator(self, chat_id: str) -> None:
        if not self.bot_token:
            return
        try:
            async with self.http_client() as client:
                await self._call(client, "sendChatAction", {"chat_id": self._coerce_chat_id(chat_id), "action": "typing"})
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[TELEGRAM] Typing indicator failed for {chat_id}: {e}")

    async def health_check(self) -> HealthStatus:
        if not self.bot_token:
            return HealthStatus(healthy=False, error="Bot token not configured")
        try:
            async with self.http_client() as client:
                response = await client.get(self._api_url("getMe"))
                result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            return HealthStatus(healthy=False, error=str(e))

        if result.get("ok"):
            return HealthStatus(healthy=True)
        return HealthStatus(healthy=False, error=result.get("description"))

    async def answer_callback_query(self, callback_query_id: str, text: Optional[str] = None) -> bool:
        """Acknowledge an inline button press so the client stops its spinner."""
        if not self.bot_token:
            return False
        payload: Dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
        try:
            async with self.http_client() as client:
                result = await self._call(client, "answerCallbackQuery", payload)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[TELEGRAM] answerCallbackQuery failed: {e}")
            return False
        return bool(result.get("ok"))

    async def set_webhook(self, webhook_url: str, secret_token: Optional[str] = None) -> SendResult:
        """Point the bot's webhook at `webhook_url`."""
        if not self.bot_token:
            return SendResult(success=False, error="Bot token not configured")

        payload: Dict[str, Any] = {
            "url": webhook_url,
            "allowed_updates": ["message", "edited_message", "callback_query"],
        }
        if secret_token:
            payload["secret_token"] = secret_token

        try:
            async with self.http_client() as client:
                result = await self._call(client, "setWebhook", payload)
        except (httpx.HTTPError, ValueError) as e:
            return SendResult(success=False, error=str(e))

        if result.get("ok"):
            logger.info(f"[TELEGRAM] Webhook set to {webhook_url}")
            return SendResult(success=True)
        return SendResult(success=False, error=result.get("description"))


register_channel(ChannelPlatform.TELEGRAM.value, TelegramChannel)

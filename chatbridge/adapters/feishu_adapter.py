"""Feishu/Lark channel adapter.

Webhook-based implementation on the Feishu Open Platform event subscription
API. Replies are always sent as interactive cards so Markdown tables and
headings render natively.
"""
from __future__ import annotations

import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
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
    OutboundMessage,
    ParseMode,
    SendResult,
    WebhookVerification,
)
from chatbridge.models.webhook_request import WebhookRequest
from chatbridge.security import hash_secret, secrets_match
from chatbridge.utils.message_splitter import split_message

logger = logging.getLogger(__name__)

FEISHU_API_BASE = "https://open.feishu.cn/open-apis"
LARK_API_BASE = "https://open.larksuite.com/open-apis"

# Content of the InboundMessage produced for a url_verification handshake
FEISHU_CHALLENGE_CONTENT = "__FEISHU_CHALLENGE__"

# Refresh the tenant token this many seconds before it actually expires
TOKEN_REFRESH_MARGIN_SECONDS = 300
DEFAULT_TOKEN_TTL_SECONDS = 7200

FEISHU_CARD_SPLIT_LENGTH = 8000

POST_LOCALES = ("zh_cn", "en_us", "ja_jp")

MSG_TYPE_MAP = {
    "image": "[image]",
    "audio": "[audio]",
    "file": "[file]",
    "sticker": "[sticker]",
    "video": "[video]",
    "media": "[video]",
}

SIGNATURE_HEADER = "X-Lark-Signature"
TIMESTAMP_HEADER = "X-Lark-Request-Timestamp"
NONCE_HEADER = "X-Lark-Request-Nonce"

_TABLE_RE = re.compile(
    r"((?:^[ \t]*\|.+\|[ \t]*\n)(?:^[ \t]*\|[-:\s|]+\|[ \t]*\n)(?:^[ \t]*\|.+\|[ \t]*\n?)+)",
    re.MULTILINE,
)
_HEADING_RE = re.compile(r"^(#{1,6})[ \t]+(.+)$", re.MULTILINE)
_CODE_BLOCK_RE = re.compile(r"(```[\s\S]*?```)")
_CODE_PLACEHOLDER_RE = re.compile(r"\x00CODE(\d+)\x00")


def is_url_verification(body: Dict[str, Any]) -> bool:
    header = body.get("header") or {}
    return body.get("type") == "url_verification" or header.get("event_type") == "url_verification"


def extract_post_text(content_json: Dict[str, Any]) -> str:
    """Flatten a `post` (rich text) message into plain text.

    The post may be keyed by locale or given directly; the first locale that
    yields text wins, then the direct form.
    """
    def _extract(post: Any) -> Optional[str]:
        if not isinstance(post, dict):
            return None
        blocks = post.get("content")
        if not isinstance(blocks, list):
            return None

        parts: List[str] = []
        title = post.get("title") or ""
        if title:
            parts.append(title)

        for block in blocks:
            if not isinstance(block, list):
                continue
            for element in block:
                if not isinstance(element, dict):
                    continue
                tag = element.get("tag")
                if tag in ("text", "a"):
                    parts.append(element.get("text") or "")
                elif tag == "at":
                    parts.append(f"@{element.get('user_name') or 'user'}")

        text = " ".join(parts).strip()
        return text or None

    for locale in POST_LOCALES:
        result = _extract(content_json.get(locale))
        if result:
            return result

    return _extract(content_json) or ""


def parse_markdown_table(table_text: str) -> Optional[Dict[str, Any]]:
    """Convert a GitHub-style pipe table into a Feishu `table` card element."""
    lines = [line.strip() for line in table_text.strip().split("\n") if line.strip()]
    if len(lines) < 3:
        return None

    def _split_row(line: str) -> List[str]:
        return [cell.strip() for cell in re.sub(r"\|$", "", re.sub(r"^\|", "", line)).split("|")]

    headers = _split_row(lines[0])
    rows = [_split_row(line) for line in lines[2:]]

    columns = [
        {"tag": "column", "name": f"c{i}", "display_name": header, "width": "auto"}
        for i, header in enumerate(headers)
    ]
    row_data = [
        {f"c{i}": row[i] if i < len(row) else "" for i in range(len(headers))}
        for row in rows
    ]

    return {
        "tag": "table",
        "page_size": len(rows) + 1,
        "columns": columns,
        "rows": row_data,
    }


def split_by_headings(content: str) -> List[Dict[str, Any]]:
    """Turn ATX headings into bold `div` elements and the rest into `markdown` blocks."""
    elements: List[Dict[str, Any]] = []
    last_end = 0

    for match in _HEADING_RE.finditer(content):
        before = content[last_end:match.start()].strip()
        if before:
            elements.append({"tag": "markdown", "content": before})
        elements.append({
            "tag": "div",
            "text": {"tag": "lark_md", "content": f"**{match.group(2).strip()}**"},
        })
        last_end = match.end()

    remaining = content[last_end:].strip()
    if remaining:
        elements.append({"tag": "markdown", "content": remaining})

    return elements or [{"tag": "markdown", "content": content}]


def build_card_elements(content: str) -> List[Dict[str, Any]]:
    """Build card elements from Markdown, rendering pipe tables as native tables."""
    code_blocks: List[str] = []

    def _stash(match: re.Match) -> str:
        code_blocks.append(match.group(1))
        return f"\x00CODE{len(code_blocks) - 1}\x00"

    # Code is hidden from the table and heading patterns
    protected = _CODE_BLOCK_RE.sub(_stash, content)

    elements: List[Dict[str, Any]] = []
    last_end = 0
    for match in _TABLE_RE.finditer(protected):
        before = protected[last_end:match.start()].strip()
        if before:
            elements.extend(split_by_headings(before))
        table = parse_markdown_table(match.group(1))
        elements.append(table if table else {"tag": "markdown", "content": match.group(1)})
        last_end = match.end()

    remaining = protected[last_end:].strip()
    if remaining:
        elements.extend(split_by_headings(remaining))

    def _restore(text: str) -> str:
        return _CODE_PLACEHOLDER_RE.sub(lambda m: code_blocks[int(m.group(1))], text)

    restored: List[Dict[str, Any]] = []
    for element in elements:
        if element["tag"] == "markdown":
            # Fenced code gets its own element so card splitting never cuts into it
            for i, part in enumerate(_CODE_PLACEHOLDER_RE.split(element["content"])):
                if i % 2:
                    restored.append({"tag": "markdown", "content": code_blocks[int(part)]})
                elif part.strip():
                    restored.append({"tag": "markdown", "content": part.strip()})
        else:
            if element["tag"] == "div":
                element["text"]["content"] = _restore(element["text"]["content"])
            restored.append(element)

    return restored or [{"tag": "markdown", "content": content}]


def _card(elements: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"config": {"wide_screen_mode": True}, "elements": elements}


def build_card(content: str) -> Dict[str, Any]:
    return _card(build_card_elements(content))


def _split_markdown_element(element: Dict[str, Any], max_length: int) -> List[Dict[str, Any]]:
    """Break an oversized markdown element; code blocks are re-fenced piece by piece."""
    content = element["content"]
    if len(content) <= max_length:
        return [element]

    if content.startswith("```") and content.endswith("```") and "\n" in content:
        fence, _, body = content[:-3].partition("\n")
        room = max_length - len(fence) - len("\n\n```")
        if room >= 2 and body.strip():
            return [
                {"tag": "markdown", "content": f"{fence}\n{piece}\n```"}
                for piece in split_message(body, room)
            ]

    return [{"tag": "markdown", "content": piece} for piece in split_message(content, max_length)]


def build_cards(content: str, max_length: int = FEISHU_CARD_SPLIT_LENGTH) -> List[Dict[str, Any]]:
    """Build as many cards as needed, packing whole elements up to `max_length` each."""
    cards: List[List[Dict[str, Any]]] = []
    current: List[Dict[str, Any]] = []
    size = 0

    for element in build_card_elements(content):
        pieces = _split_markdown_element(element, max_length) if element["tag"] == "markdown" else [element]
        for piece in pieces:
            piece_size = len(json.dumps(piece, ensure_ascii=False))
            if current and size + piece_size > max_length:
                cards.append(current)
                current, size = [], 0
            current.append(piece)
            size += piece_size
    if current:
        cards.append(current)

    return [_card(elements) for elements in cards]


@dataclass
class _TokenCache:
    access_token: str
    expires_at: float


class FeishuChannel(BaseChannel):
    """Adapter for Feishu (China) and Lark (international)."""

    name = "Feishu"
    platform = ChannelPlatform.FEISHU.value

    def __init__(self, options: ChannelAdapterOptions):
        super().__init__(options)
        self.app_id = self.config.feishu_app_id or ""
        self.app_secret = self.config.feishu_app_secret or ""
        self.encrypt_key = self.config.feishu_encrypt_key
        self.verification_token = self.config.feishu_verification_token
        self.use_lark = bool(self.config.custom_settings.get("useLark"))
        # One slot: an adapter instance serves exactly one app credential set
        self._token_cache: Optional[_TokenCache] = None

    @property
    def api_base(self) -> str:
        return LARK_API_BASE if self.use_lark else FEISHU_API_BASE

    async def verify_webhook(self, request: WebhookRequest) -> WebhookVerification:
        try:
            body: Optional[Dict[str, Any]] = request.json()
        except ValueError:
            body = None

        # The registration handshake is answered before any token check
        if body is not None and is_url_verification(body):
            return WebhookVerification(valid=True, challenge=body.get("challenge"))

        signature = request.header(SIGNATURE_HEADER)
        if self.encrypt_key and signature:
            timestamp = request.header(TIMESTAMP_HEADER) or ""
            nonce = request.header(NONCE_HEADER) or ""
            expected = hashlib.sha256(
                f"{timestamp}{nonce}{self.encrypt_key}".encode() + request.body
            ).hexdigest()
            if not secrets_match(signature, expected):
                return WebhookVerification(valid=False, error="Invalid request signature")

        if body is None:
            # No token to check; parse_webhook rejects the payload and it is acknowledged
            return WebhookVerification(valid=True)

        if self.verification_token:
            # v2 events carry the token in the header, v1 at the top level
            token = (body.get("header") or {}).get("token") or body.get("token")
            if not secrets_match(token, self.verification_token):
                if token:
                    logger.warning(f"[FEISHU] Verification token mismatch (got hash {hash_secret(str(token))})")
                return WebhookVerification(valid=False, error="Invalid verification token")

        return WebhookVerification(valid=True)

    async def parse_webhook(self, request: WebhookRequest) -> InboundMessage:
        try:
            body = request.json()
        except ValueError as e:
            raise WebhookParseError(f"Invalid JSON in Feishu event: {e}") from e

        if is_url_verification(body):
            return InboundMessage(
                id="challenge",
                channel=ChannelPlatform.FEISHU,
                sender_id="system",
                chat_id="",
                content=FEISHU_CHALLENGE_CONTENT,
                metadata={"type": "challenge", "challenge": body.get("challenge")},
                raw=body,
            )

        if "encrypt" in body:
            raise WebhookParseError("Encrypted Feishu events are not supported; disable the encrypt key")

        header = body.get("header") or {}
        event = body.get("event") or {}
        message = event.get("message")
        sender = event.get("sender")
        if not message or not sender:
            raise WebhookParseError(f"No message in Feishu event {header.get('event_type')!r}")

        sender_ids = sender.get("sender_id") or {}
        open_id = sender_ids.get("open_id")
        if not open_id:
            raise WebhookParseError("No sender in Feishu message")

        msg_type = message.get("message_type", "")
        content = self._parse_content(msg_type, message.get("content") or "")

        # Group chats are addressed by chat id, one-to-one chats by the sender's open id
        chat_type = message.get("chat_type") or "p2p"
        chat_id = message.get("chat_id", "") if chat_type == "group" else open_id

        create_time = message.get("create_time")
        timestamp = (
            datetime.fromtimestamp(int(create_time) / 1000, tz=timezone.utc)
            if create_time and str(create_time).isdigit()
            else datetime.now(timezone.utc)
        )

        return InboundMessage(
            id=message.get("message_id"),
            channel=ChannelPlatform.FEISHU,
            sender_id=open_id,
            sender_name=sender_ids.get("union_id"),
            chat_id=chat_id,
            chat_type=ChatType.GROUP if chat_type == "group" else ChatType.PRIVATE,
            content=content,
            reply_to=message.get("parent_id") or message.get("root_id"),
            metadata={
                "eventId": header.get("event_id"),
                "eventType": header.get("event_type"),
                "messageId": message.get("message_id"),
                "chatType": chat_type,
                "msgType": msg_type,
                "createTime": create_time,
                "tenantKey": header.get("tenant_key"),
                "appId": header.get("app_id"),
                "senderType": sender.get("sender_type"),
                "mentions": message.get("mentions"),
            },
            timestamp=timestamp,
            raw=body,
        )

    @staticmethod
    def _parse_content(msg_type: str, raw_content: str) -> str:
        if msg_type in ("text", "post"):
            try:
                content_json = json.loads(raw_content)
            except ValueError:
                return raw_content
            if not isinstance(content_json, dict):
                return raw_content
            if msg_type == "text":
                return content_json.get("text") or ""
            return extract_post_text(content_json)
        return MSG_TYPE_MAP.get(msg_type, f"[{msg_type}]")

    async def _get_access_token(self, client: httpx.AsyncClient) -> Optional[str]:
        """Return the cached tenant token, fetching a new one when near expiry."""
        if self._token_cache and self._token_cache.expires_at > time.time():
            return self._token_cache.access_token

        try:
            response = await client.post(
                f"{self.api_base}/auth/v3/tenant_access_token/internal",
                json={"app_id": self.app_id, "app_secret": self.app_secret},
            )
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[FEISHU] Error getting tenant access token: {e}")
            return None

        if result.get("code") != 0 or not result.get("tenant_access_token"):
            logger.error(f"[FEISHU] Failed to get tenant access token: {result.get('msg')}")
            return None

        expires_in = result.get("expire") or DEFAULT_TOKEN_TTL_SECONDS
        self._token_cache = _TokenCache(
            access_token=result["tenant_access_token"],
            expires_at=time.time() + expires_in - TOKEN_REFRESH_MARGIN_SECONDS,
        )
        return self._token_cache.access_token

    async def send_message(self, message: OutboundMessage) -> SendResult:
        if not self.app_id or not self.app_secret:
            return SendResult(success=False, error="Feishu app ID or secret not configured")

        # chat ids start with "oc_", open ids with "ou_"
        receive_id_type = "chat_id" if message.chat_id.startswith("oc_") else "open_id"
        last_message_id: Optional[str] = None

        try:
            async with self.http_client() as client:
                access_token = await self._get_access_token(client)
                if not access_token:
                    return SendResult(success=False, error="Failed to get access token")
                headers = {"Authorization": f"Bearer {access_token}"}

                # Split after building elements so code blocks and tables stay whole
                cards = build_cards(self.format_content(message.content, message.parse_mode))
                for index, card_body in enumerate(cards):
                    card = json.dumps(card_body, ensure_ascii=False)
                    if index == 0 and message.reply_to:
                        url = f"{self.api_base}/im/v1/messages/{message.reply_to}/reply"
                        payload = {"msg_type": "interactive", "content": card}
                    else:
                        url = f"{self.api_base}/im/v1/messages?receive_id_type={receive_id_type}"
                        payload = {"receive_id": message.chat_id, "msg_type": "interactive", "content": card}

                    response = await client.post(url, json=payload, headers=headers)
                    result = response.json()
                    if result.get("code") != 0:
                        error = result.get("msg") or f"Error code: {result.get('code')}"
                        logger.error(f"[FEISHU] Send to {message.chat_id} failed: {error}")
                        return SendResult(success=False, error=error)
                    last_message_id = (result.get("data") or {}).get("message_id")
        except (httpx.HTTPError, ValueError) as e:
            logger.exception(f"[FEISHU] Error sending message to {message.chat_id}: {e}")
            return SendResult(success=False, error=str(e))

        return SendResult(success=True, message_id=last_message_id)

    async def add_reaction(self, message_id: str, emoji_type: str = "THUMBSUP") -> SendResult:
        """React to a message, used to show the bot has seen it."""
        if not self.app_id or not self.app_secret:
            return SendResult(success=False, error="Feishu app ID or secret not configured")

        try:
            async with self.http_client() as client:
                access_token = await self._get_access_token(client)
                if not access_token:
                    return SendResult(success=False, error="Failed to get access token")
                response = await client.post(
                    f"{self.api_base}/im/v1/messages/{message_id}/reactions",
                    json={"reaction_type": {"emoji_type": emoji_type}},
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            return SendResult(success=False, error=str(e))

        if result.get("code") != 0:
            return SendResult(success=False, error=result.get("msg"))
        return SendResult(success=True)

    def format_content(self, content: str, parse_mode: ParseMode = ParseMode.MARKDOWN) -> str:
        # Cards render lark_md natively
        return content

    async def health_check(self) -> HealthStatus:
        if not self.app_id or not self.app_secret:
            return HealthStatus(healthy=False, error="App ID or secret not configured")
        async with self.http_client() as client:
            token = await self._get_access_token(client)
        if token:
            return HealthStatus(healthy=True)
        return HealthStatus(healthy=False, error="Failed to get access token")


register_channel(ChannelPlatform.FEISHU.value, FeishuChannel)

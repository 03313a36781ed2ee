"""Chat pipeline client.

Forwards a platform user's message to the external channel chat API and
returns the assistant's reply. Conversation lookup, history and tool use all
happen on the far side of this call.

Follows the usual client error-handling pattern: raise_for_status with
HTTPStatusError logging, returning None on error.
"""
from __future__ import annotations

from typing import Optional
import logging

import httpx

from chatbridge import config

logger = logging.getLogger(__name__)


async def request_reply(
    platform: str,
    platform_user_id: str,
    platform_user_name: Optional[str],
    platform_chat_id: str,
    message: str,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Optional[str]:
    """Ask the chat pipeline for a reply to `message`. Returns None on failure."""
    api_url = f"{config.CHAT_API_URL.rstrip('/')}/api/channels/chat"
    headers = {
        "X-Channel-API-Key": config.CHANNEL_API_KEY,
        "Content-Type": "application/json",
    }
    payload = {
        "platform": platform,
        "platformUserId": platform_user_id,
        "platformUserName": platform_user_name,
        "platformChatId": platform_chat_id,
        "message": message,
    }

    async def _post(client: httpx.AsyncClient) -> Optional[str]:
        try:
            response = await client.post(api_url, json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"[CHAT] Chat API error for {platform}:{platform_chat_id}: {e.response.text}")
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[CHAT] Chat API unreachable for {platform}:{platform_chat_id}: {e}")
            return None
        logger.info(f"[CHAT] Reply received for {platform}:{platform_chat_id} ({len(data.get('content') or '')} chars)")
        return data.get("content") or None

    if http_client is not None:
        return await _post(http_client)
    async with httpx.AsyncClient(timeout=config.CHAT_API_TIMEOUT_SECONDS) as client:
        return await _post(client)

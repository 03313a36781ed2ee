# Entry point for the FastAPI app
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from typing import Any, Awaitable, Callable, Dict, Optional
import logging

import httpx

from . import security
from chatbridge.adapters import (
    BaseChannel,
    ChannelAdapterOptions,
    DiscordChannel,
    FeishuChannel,
    TelegramChannel,
    WebhookParseError,
    get_channel_adapter,
    get_registered_platforms,
)
from chatbridge.adapters.discord_adapter import (
    DISCORD_PING_CONTENT,
    InteractionResponseType,
    InteractionType,
    deferred_response,
    message_response,
    pong_response,
)
from chatbridge.adapters.feishu_adapter import FEISHU_CHALLENGE_CONTENT
from chatbridge.adapters.telegram_adapter import sender_matches_allowlist
from chatbridge.clients import chat_client
from chatbridge.models import ChannelConfig, InboundMessage, OutboundMessage, WebhookRequest

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI()

default_message = "Channel bridge is running."

# (platform, platform_user_id, platform_user_name, platform_chat_id, message) -> reply
ChatHandler = Callable[[str, str, Optional[str], str, str], Awaitable[Optional[str]]]

DISCORD_ASK_COMMANDS = ("ask", "chat")
DISCORD_HELP_TEXT = """**AI Agent on Discord**

Commands:
`/ask <message>` - Chat with the AI agent
`/chat <message>` - Same as /ask
`/whoami` - Show your Discord ID
`/help` - Show this help message"""

ERROR_REPLIES = {
    "telegram": "❌ Sorry, I encountered an error processing your message. Please try again.",
    "discord": "❌ Sorry, I encountered an error processing your message. Please try again.",
    "feishu": "❌ 抱歉，处理消息时遇到了错误。",
}


# ----------------------------- Dependencies -----------------------------
def get_channel_config() -> ChannelConfig:
    return ChannelConfig.from_env()


def get_http_client() -> Optional[httpx.AsyncClient]:
    """Shared outbound client; None lets each adapter call open its own."""
    return None


def get_chat_handler() -> ChatHandler:
    return chat_client.request_reply


# ------------------------------ Background ------------------------------
async def ask_chat_pipeline(chat_handler: ChatHandler, inbound: InboundMessage) -> str:
    """Get a reply for `inbound`, falling back to an apology on failure."""
    try:
        reply = await chat_handler(
            inbound.channel.value,
            inbound.sender_id,
            inbound.sender_name,
            inbound.chat_id,
            inbound.content,
        )
    except Exception:
        logger.exception(f"[WEBHOOK] Chat pipeline failed for {inbound.channel.value}:{inbound.chat_id}")
        reply = None
    return reply or ERROR_REPLIES.get(inbound.channel.value, ERROR_REPLIES["telegram"])


async def reply_via_channel(adapter: BaseChannel, inbound: InboundMessage, chat_handler: ChatHandler) -> None:
    """Run the chat pipeline and send the reply back through the adapter."""
    if isinstance(adapter, FeishuChannel) and inbound.id:
        # Show the message has been seen
        await adapter.add_reaction(inbound.id, "THUMBSUP")
    elif adapter.supports("send_typing_indicator"):
        await adapter.send_typing_indicator(inbound.chat_id)

    # Only Telegram threads the reply; callback query ids are not message ids
    reply_to = None
    if isinstance(adapter, TelegramChannel) and inbound.metadata.get("type") != "callback_query":
        reply_to = inbound.id

    reply = await ask_chat_pipeline(chat_handler, inbound)
    result = await adapter.send_message(OutboundMessage(
        channel=inbound.channel,
        chat_id=inbound.chat_id,
        content=reply,
        reply_to=reply_to,
    ))
    if result.success:
        logger.info(f"[WEBHOOK] Reply delivered to {inbound.channel.value}:{inbound.chat_id} (message {result.message_id})")
    else:
        logger.error(f"[WEBHOOK] Reply to {inbound.channel.value}:{inbound.chat_id} failed: {result.error}")


async def follow_up_discord(adapter: DiscordChannel, inbound: InboundMessage, chat_handler: ChatHandler) -> None:
    reply = await ask_chat_pipeline(chat_handler, inbound)
    result = await adapter.follow_up_interaction(inbound.metadata["interactionToken"], reply)
    if not result.success:
        logger.error(f"[DISCORD] Follow-up for interaction {inbound.id} failed: {result.error}")


# ------------------------------- Handlers -------------------------------
def handle_telegram(
    adapter: TelegramChannel,
    inbound: InboundMessage,
    channel_config: ChannelConfig,
    background_tasks: BackgroundTasks,
    chat_handler: ChatHandler,
) -> Dict[str, Any]:
    allowed = channel_config.custom_settings.get("telegramAllowedUsers") or []
    if allowed and not sender_matches_allowlist(inbound.sender_id, allowed):
        logger.warning(f"[TELEGRAM] Sender {inbound.sender_id} not in allowlist, ignoring")
        return {"ok": True, "status": "ignored"}

    if inbound.metadata.get("type") == "callback_query":
        background_tasks.add_task(adapter.answer_callback_query, inbound.metadata["callbackId"])
        if not inbound.content or not inbound.chat_id:
            return {"ok": True}

    if inbound.content.strip() == "/start":
        greeting = f"👋 Hi {inbound.sender_name or 'there'}! Send me a message and I'll respond!"
        background_tasks.add_task(adapter.send_message, OutboundMessage(
            channel=inbound.channel, chat_id=inbound.chat_id, content=greeting,
        ))
        return {"ok": True}

    background_tasks.add_task(reply_via_channel, adapter, inbound, chat_handler)
    return {"ok": True}


def handle_discord(
    adapter: DiscordChannel,
    inbound: InboundMessage,
    background_tasks: BackgroundTasks,
    chat_handler: ChatHandler,
) -> Dict[str, Any]:
    if inbound.content == DISCORD_PING_CONTENT:
        logger.info("[DISCORD] PING received, sending PONG")
        return pong_response()

    if inbound.metadata.get("isBot"):
        logger.info(f"[DISCORD] Ignoring bot-authored interaction {inbound.id}")
        return pong_response()

    interaction_type = inbound.metadata.get("interactionType")
    command_name = inbound.metadata.get("commandName", "")

    if interaction_type == InteractionType.APPLICATION_COMMAND_AUTOCOMPLETE:
        return {"type": InteractionResponseType.APPLICATION_COMMAND_AUTOCOMPLETE_RESULT.value, "data": {"choices": []}}

    if interaction_type == InteractionType.APPLICATION_COMMAND:
        if command_name == "help":
            return message_response(DISCORD_HELP_TEXT)
        if command_name == "whoami":
            return message_response(f"Your Discord ID: {inbound.sender_id}\nUsername: {inbound.sender_username}")
        if command_name == "status":
            return message_response("Agent is running! Use /ask to chat.")
        if command_name not in DISCORD_ASK_COMMANDS:
            return message_response(f"Unknown command: {command_name}")

    if not inbound.content:
        return message_response("Nothing to answer.", ephemeral=True)

    # Acknowledge within Discord's 3-second window; the reply follows later
    background_tasks.add_task(follow_up_discord, adapter, inbound, chat_handler)
    return deferred_response()


def handle_feishu(
    adapter: FeishuChannel,
    inbound: InboundMessage,
    background_tasks: BackgroundTasks,
    chat_handler: ChatHandler,
) -> Dict[str, Any]:
    if inbound.content == FEISHU_CHALLENGE_CONTENT:
        return {"challenge": inbound.metadata.get("challenge")}
    if not inbound.content:
        return {"status": "ignored"}
    background_tasks.add_task(reply_via_channel, adapter, inbound, chat_handler)
    return {"status": "ok"}


# -------------------------------- Routes --------------------------------
@app.get("/")
def root():
    return default_message


@app.get("/channels")
def list_channels():
    return {"platforms": get_registered_platforms()}


@app.get("/channels/{platform}/health")
async def channel_health(
    platform: str,
    channel_config: ChannelConfig = Depends(get_channel_config),
    http_client: Optional[httpx.AsyncClient] = Depends(get_http_client),
):
    adapter = get_channel_adapter(platform, ChannelAdapterOptions(config=channel_config, http_client=http_client))
    if adapter is None:
        raise HTTPException(status_code=404, detail=f"Platform not configured: {platform}")
    status = await adapter.health_check()
    return {"platform": platform, "healthy": status.healthy, "error": status.error}


@app.post("/webhook/{platform}")
async def channel_webhook(
    platform: str,
    request: Request,
    background_tasks: BackgroundTasks,
    channel_config: ChannelConfig = Depends(get_channel_config),
    http_client: Optional[httpx.AsyncClient] = Depends(get_http_client),
    chat_handler: ChatHandler = Depends(get_chat_handler),
):
    """Unified webhook handler for every registered platform.

    - Resolves the adapter from the registry.
    - Answers platform handshakes (Feishu challenge, Discord PING).
    - Verifies the request, then parses it into an InboundMessage.
    - Hands chat messages to a background task so the platform gets its
      acknowledgement immediately.
    """
    adapter = get_channel_adapter(platform, ChannelAdapterOptions(config=channel_config, http_client=http_client))
    if adapter is None:
        raise HTTPException(status_code=404, detail=f"Platform not configured: {platform}")

    client_ip = security.get_client_ip(request)
    webhook_request = await WebhookRequest.from_request(request, client_ip)

    verification = await adapter.verify_webhook(webhook_request)
    if verification.challenge is not None:
        logger.info(f"[WEBHOOK] Answering {platform} verification challenge")
        return {"challenge": verification.challenge}

    if not verification.valid:
        security.log_security_event(
            "webhook_verification_failure",
            client_ip,
            {
                "platform": platform,
                "reason": verification.error,
                "user_agent": request.headers.get('User-Agent', 'unknown'),
            },
        )
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    try:
        inbound = await adapter.parse_webhook(webhook_request)
    except WebhookParseError as e:
        # Acknowledge so the platform does not retry
        logger.info(f"[WEBHOOK] Ignoring {platform} payload: {e}")
        return {"ok": True, "status": "ignored"}

    logger.info(f"[WEBHOOK] {platform} message from {inbound.sender_id} in {inbound.chat_id}: {inbound.content[:50]!r}")

    if isinstance(adapter, DiscordChannel):
        return handle_discord(adapter, inbound, background_tasks, chat_handler)
    if isinstance(adapter, FeishuChannel):
        return handle_feishu(adapter, inbound, background_tasks, chat_handler)
    if isinstance(adapter, TelegramChannel):
        return handle_telegram(adapter, inbound, channel_config, background_tasks, chat_handler)

    background_tasks.add_task(reply_via_channel, adapter, inbound, chat_handler)
    return {"status": "ok"}

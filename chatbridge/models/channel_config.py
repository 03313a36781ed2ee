"""Per-platform credentials and channel bookkeeping records.

Credentials are owned by the calling application and injected into adapters;
adapters never persist them.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from chatbridge import config
from chatbridge.models.unified_message import ChannelPlatform


@dataclass
class ChannelConfig:
    # Telegram
    telegram_bot_token: Optional[str] = None

    # Discord
    discord_bot_token: Optional[str] = None
    discord_application_id: Optional[str] = None
    discord_public_key: Optional[str] = None

    # Feishu
    feishu_app_id: Optional[str] = None
    feishu_app_secret: Optional[str] = None
    feishu_encrypt_key: Optional[str] = None
    feishu_verification_token: Optional[str] = None

    # Generic
    webhook_url: Optional[str] = None
    custom_settings: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "ChannelConfig":
        """Build a config from the values loaded in `chatbridge.config`."""
        custom_settings: Dict[str, Any] = {"useLark": config.FEISHU_USE_LARK}
        if config.TELEGRAM_SECRET_TOKEN:
            custom_settings["telegramSecretToken"] = config.TELEGRAM_SECRET_TOKEN
        if config.TELEGRAM_ALLOWED_USERS:
            custom_settings["telegramAllowedUsers"] = list(config.TELEGRAM_ALLOWED_USERS)
        return cls(
            telegram_bot_token=config.TELEGRAM_BOT_TOKEN,
            discord_bot_token=config.DISCORD_BOT_TOKEN,
            discord_application_id=config.DISCORD_APPLICATION_ID,
            discord_public_key=config.DISCORD_PUBLIC_KEY,
            feishu_app_id=config.FEISHU_APP_ID,
            feishu_app_secret=config.FEISHU_APP_SECRET,
            feishu_encrypt_key=config.FEISHU_ENCRYPT_KEY,
            feishu_verification_token=config.FEISHU_VERIFICATION_TOKEN,
            webhook_url=config.PUBLIC_WEBHOOK_BASE_URL,
            custom_settings=custom_settings,
        )


@dataclass
class ChannelRecord:
    """Links a platform chat to an internal conversation (persisted externally)."""
    id: str
    user_id: str
    platform: ChannelPlatform
    platform_user_id: str
    platform_chat_id: str
    config: ChannelConfig
    conversation_id: Optional[str] = None
    enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

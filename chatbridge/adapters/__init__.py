"""Adapters package entry.

Importing this package loads every platform module, each of which registers
itself with the channel registry. Use `get_channel_adapter` to obtain an
adapter by platform string.
"""
from chatbridge.adapters.base_channel_adapter import (
    BaseChannel,
    ChannelAdapterOptions,
    WebhookParseError,
)
from chatbridge.adapters.registry import (
    get_channel_adapter,
    get_registered_platforms,
    register_channel,
    remove_channel,
)
from chatbridge.adapters.discord_adapter import DiscordChannel
from chatbridge.adapters.feishu_adapter import FeishuChannel
from chatbridge.adapters.telegram_adapter import TelegramChannel

__all__ = [
    "BaseChannel",
    "ChannelAdapterOptions",
    "DiscordChannel",
    "FeishuChannel",
    "TelegramChannel",
    "WebhookParseError",
    "get_channel_adapter",
    "get_registered_platforms",
    "register_channel",
    "remove_channel",
]

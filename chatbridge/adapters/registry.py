"""
Channel registry: maps platform names to adapter classes.

Each adapter module registers itself when imported, so a platform can be
added without touching this module. Registration happens at startup; lookups
during request handling are read-only.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from chatbridge.adapters.base_channel_adapter import BaseChannel, ChannelAdapterOptions

logger = logging.getLogger(__name__)

ChannelConstructor = Callable[[ChannelAdapterOptions], BaseChannel]

_REGISTRY: Dict[str, ChannelConstructor] = {}


def register_channel(platform: str, adapter: ChannelConstructor) -> None:
    """Insert or replace the adapter constructor for a platform."""
    if platform in _REGISTRY:
        logger.warning(f"[REGISTRY] Replacing existing {platform} adapter")
    _REGISTRY[platform] = adapter
    logger.info(f"[REGISTRY] Registered channel: {platform}")


def remove_channel(platform: str) -> bool:
    """Remove a platform. Returns False if it was not registered."""
    removed = _REGISTRY.pop(platform, None) is not None
    if removed:
        logger.info(f"[REGISTRY] Removed channel: {platform}")
    return removed


def get_channel_adapter(platform: str, options: ChannelAdapterOptions) -> Optional[BaseChannel]:
    """Instantiate the adapter for a platform, or None if it is not registered."""
    adapter = _REGISTRY.get(platform)
    if adapter is None:
        return None
    return adapter(options)


def get_registered_platforms() -> List[str]:
    return list(_REGISTRY.keys())

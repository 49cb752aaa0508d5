"""Platform-keyed lookup of channel adapters."""

from __future__ import annotations

import enum

from app.services.channels.adapters import MetaMessengerAdapter, MockAdapter, TikTokAdapter, WhatsAppCloudAdapter
from app.services.channels.adapters.base import ChannelAdapter
from app.services.channels.adapters.meta import FACEBOOK, INSTAGRAM
from app.services.channels.errors import AdapterNotFoundError
from app.services.channels.media import MediaUrlMapper


def _platform_key(platform: str | enum.Enum) -> str:
    if isinstance(platform, enum.Enum):
        platform = platform.value
    return str(platform).strip().lower()


class AdapterRegistry:
    def __init__(self, adapters: dict[str, ChannelAdapter]):
        self._adapters = {_platform_key(key): adapter for key, adapter in adapters.items()}

    def get(self, platform: str | enum.Enum) -> ChannelAdapter | None:
        return self._adapters.get(_platform_key(platform))

    def require(self, platform: str | enum.Enum) -> ChannelAdapter:
        adapter = self.get(platform)
        if adapter is None:
            raise AdapterNotFoundError(_platform_key(platform))
        return adapter

    def platforms(self) -> list[str]:
        return sorted(self._adapters)


def build_registry(media_mapper: MediaUrlMapper | None = None) -> AdapterRegistry:
    media_mapper = media_mapper or MediaUrlMapper()
    return AdapterRegistry(
        {
            "whatsapp": WhatsAppCloudAdapter(media_mapper),
            "instagram": MetaMessengerAdapter(INSTAGRAM, media_mapper),
            "facebook": MetaMessengerAdapter(FACEBOOK, media_mapper),
            "tiktok": TikTokAdapter(media_mapper),
            "mock": MockAdapter(media_mapper),
        }
    )


_registry: AdapterRegistry | None = None


def get_registry() -> AdapterRegistry:
    global _registry
    if _registry is None:
        _registry = build_registry()
    return _registry


def get_adapter(platform: str | enum.Enum) -> ChannelAdapter | None:
    return get_registry().get(platform)

from app.services.channels.adapters.base import ChannelAdapter
from app.services.channels.adapters.meta import MetaMessengerAdapter
from app.services.channels.adapters.mock import MockAdapter
from app.services.channels.adapters.tiktok import TikTokAdapter
from app.services.channels.adapters.whatsapp import WhatsAppCloudAdapter

__all__ = [
    "ChannelAdapter",
    "MetaMessengerAdapter",
    "MockAdapter",
    "TikTokAdapter",
    "WhatsAppCloudAdapter",
]

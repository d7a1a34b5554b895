"""Platform chat adapters."""

from .base import AdapterError, BaseChatAdapter, ConnectionLost, StreamEnded, StreamNotFound
from .tiktok import TikTokAdapter
from .twitch import TwitchAdapter
from .youtube import YouTubeAdapter

__all__ = [
    "AdapterError",
    "BaseChatAdapter",
    "ConnectionLost",
    "StreamEnded",
    "StreamNotFound",
    "TikTokAdapter",
    "TwitchAdapter",
    "YouTubeAdapter",
]

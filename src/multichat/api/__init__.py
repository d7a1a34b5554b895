"""HTTP API clients."""

from .base import BaseApiClient, safe_json
from .twitch import TwitchBadgeApi

__all__ = ["BaseApiClient", "TwitchBadgeApi", "safe_json"]

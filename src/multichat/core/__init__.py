"""Core models and settings for multichat."""

from .models import (
    AdapterEvent,
    AdapterState,
    AdapterStatus,
    ChatMessage,
    Platform,
    RetryPolicy,
)
from .settings import Settings

__all__ = [
    "AdapterEvent",
    "AdapterState",
    "AdapterStatus",
    "ChatMessage",
    "Platform",
    "RetryPolicy",
    "Settings",
]

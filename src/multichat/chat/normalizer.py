"""Normalize raw adapter events into chat messages."""

import logging
import time
import uuid
from collections.abc import Callable
from typing import Any

from ..core.models import AdapterEvent, ChatMessage, Platform

logger = logging.getLogger(__name__)


class MonotonicClock:
    """Wall clock in epoch milliseconds that never goes backwards."""

    def __init__(self, source: Callable[[], float] = time.time):
        self._source = source
        self._last = 0

    def __call__(self) -> int:
        now = int(self._source() * 1000)
        if now < self._last:
            now = self._last
        self._last = now
        return now


_default_clock = MonotonicClock()


def _new_id() -> str:
    return str(uuid.uuid4())


def _text(value: Any, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, str):
        return value
    try:
        return str(value)
    except Exception:
        return default


def normalize(
    platform: Platform,
    event: AdapterEvent | Any,
    clock: Callable[[], int] = _default_clock,
    id_factory: Callable[[], str] = _new_id,
) -> ChatMessage:
    """Build a ChatMessage from an adapter event.

    Never raises: missing or malformed fields fall back to defaults
    (username "unknown", empty message, no badges, no color, empty raw).
    """
    username = _text(getattr(event, "username", None)).strip() or "unknown"
    message = _text(getattr(event, "message", None))

    badges = getattr(event, "badges", None)
    if isinstance(badges, (list, tuple)):
        badges = [_text(b) for b in badges if b is not None]
    else:
        badges = []

    color = getattr(event, "color", None)
    if not isinstance(color, str) or not color:
        color = None

    raw = getattr(event, "raw", None)
    if not isinstance(raw, dict):
        raw = {}

    return ChatMessage(
        id=id_factory(),
        ts=clock(),
        platform=platform,
        username=username,
        message=message,
        badges=badges,
        color=color,
        raw=raw,
    )

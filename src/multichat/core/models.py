"""Core data models for multichat."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class Platform(str, Enum):
    """Supported streaming platforms."""

    TWITCH = "twitch"
    YOUTUBE = "youtube"
    TIKTOK = "tiktok"


class AdapterState(str, Enum):
    """Lifecycle states of a platform adapter."""

    STOPPED = "stopped"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    RETRYING = "retrying"


# States in which an adapter owns (or is about to own) a live connection
RUNNING_STATES = frozenset({AdapterState.CONNECTING, AdapterState.CONNECTED, AdapterState.RETRYING})


@dataclass(frozen=True)
class AdapterStatus:
    """Snapshot of an adapter's connection status."""

    state: AdapterState = AdapterState.STOPPED
    message: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.state in RUNNING_STATES

    def with_state(self, state: AdapterState, message: str | None = None) -> "AdapterStatus":
        """Return a copy with a new state and message, keeping the context."""
        return replace(self, state=state, message=message)

    def to_payload(self) -> dict[str, Any]:
        """Build the ``data`` object of a ``<platform>-status`` envelope."""
        payload: dict[str, Any] = dict(self.context)
        payload["status"] = self.state.value
        if self.message:
            payload["message"] = self.message
        payload["isRunning"] = self.is_running
        return payload


@dataclass
class AdapterEvent:
    """A raw chat event as produced by a platform adapter."""

    username: str
    message: str = ""
    badges: list[str] | None = None
    color: str | None = None
    raw: dict[str, Any] | None = None


@dataclass
class ChatMessage:
    """A normalized chat event, as sent to display clients."""

    id: str
    ts: int  # Ingestion time in epoch milliseconds
    platform: Platform
    username: str
    message: str
    badges: list[str] = field(default_factory=list)
    color: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ts": self.ts,
            "platform": self.platform.value,
            "username": self.username,
            "message": self.message,
            "badges": list(self.badges),
            "color": self.color,
            "raw": self.raw,
        }


@dataclass
class RetryPolicy:
    """Reconnect policy for a platform adapter.

    Transport failures back off exponentially from ``base_delay`` by ``factor``
    up to ``max_delay``, with +/- ``jitter`` randomization. After
    ``max_failures`` consecutive failures the adapter gives up (0 = never).

    A stream that ended normally is retried after ``ended_delay`` when
    ``retry_on_end`` is set. A stream that is not found (or not live) is
    retried after ``not_found_delay`` at most ``max_not_found`` times before
    the adapter stops.
    """

    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.3
    max_failures: int = 10
    retry_on_end: bool = True
    ended_delay: float = 30.0
    not_found_delay: float = 60.0
    max_not_found: int = 3
    connect_timeout: float = 30.0
    close_timeout: float = 5.0

    def base_delay_for(self, failures: int) -> float:
        """Un-jittered delay after ``failures`` previous consecutive failures."""
        exponent = max(failures, 0)
        try:
            delay = self.base_delay * (self.factor**exponent)
        except OverflowError:
            delay = self.max_delay
        return min(delay, self.max_delay)

    def apply_jitter(self, delay: float, rand: float) -> float:
        """Spread ``delay`` by +/- jitter using ``rand`` in [0, 1), capped at max_delay."""
        jittered = delay + delay * self.jitter * (2 * rand - 1)
        return max(0.0, min(jittered, self.max_delay))


DEFAULT_RETRY_POLICIES: dict[Platform, RetryPolicy] = {
    # IRC drops are usually short-lived; reconnect quickly
    Platform.TWITCH: RetryPolicy(
        base_delay=1.0,
        max_delay=60.0,
        max_failures=10,
        ended_delay=5.0,
        not_found_delay=60.0,
        max_not_found=3,
    ),
    # Every attempt launches a browser page, so back off harder
    Platform.YOUTUBE: RetryPolicy(
        base_delay=5.0,
        max_delay=120.0,
        max_failures=5,
        ended_delay=30.0,
        not_found_delay=60.0,
        max_not_found=5,
        connect_timeout=60.0,
    ),
    # Rooms are often offline for long stretches before going live
    Platform.TIKTOK: RetryPolicy(
        base_delay=2.0,
        max_delay=120.0,
        max_failures=8,
        ended_delay=60.0,
        not_found_delay=120.0,
        max_not_found=10,
    ),
}


def default_retry_policy(platform: Platform) -> RetryPolicy:
    """Get a fresh copy of the default retry policy for a platform."""
    return replace(DEFAULT_RETRY_POLICIES[platform])

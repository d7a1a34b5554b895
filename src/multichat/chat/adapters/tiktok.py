"""TikTok LIVE chat adapter using the TikTokLive push connection."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ...core.models import AdapterEvent, Platform
from .base import BaseChatAdapter, ConnectionLost, StreamEnded, StreamNotFound

logger = logging.getLogger(__name__)

# TikTokLive error classes meaning the room can't be joined right now
NOT_FOUND_ERRORS = frozenset({"UserOfflineError", "UserNotFoundError"})


def normalize_username(username: str) -> str:
    """Strip whitespace and a leading '@' from a TikTok unique id."""
    return username.strip().lstrip("@")


def _user_names(event: Any) -> tuple[str, str]:
    user = getattr(event, "user", None)
    nickname = getattr(user, "nickname", None) or ""
    unique_id = getattr(user, "unique_id", None) or getattr(user, "uniqueId", None) or ""
    return str(nickname), str(unique_id)


def comment_to_event(event: Any) -> AdapterEvent:
    """Map a TikTok comment to an adapter event."""
    nickname, unique_id = _user_names(event)
    comment = getattr(event, "comment", None) or ""
    return AdapterEvent(
        username=nickname or unique_id or "unknown",
        message=str(comment),
        badges=[],
        raw={"type": "chat", "nickname": nickname, "uniqueId": unique_id, "comment": comment},
    )


def is_streak_tick(event: Any) -> bool:
    """Whether a gift event is an in-progress tick of a gift streak."""
    gift = getattr(event, "gift", None)
    streakable = getattr(gift, "streakable", None)
    if streakable is None:
        streakable = getattr(gift, "type", None) == 1 or getattr(event, "gift_type", None) == 1
    if not streakable:
        return False
    repeat_end = getattr(event, "repeat_end", None)
    if repeat_end is None:
        repeat_end = getattr(event, "repeatEnd", None)
    return not repeat_end


def gift_to_event(event: Any) -> AdapterEvent | None:
    """Map a TikTok gift to an adapter event.

    Returns None for the intermediate ticks of a gift streak, so a streak
    produces exactly one event when it ends.
    """
    if is_streak_tick(event):
        return None

    nickname, unique_id = _user_names(event)
    username = nickname or unique_id or "Someone"
    gift = getattr(event, "gift", None)
    gift_name = getattr(gift, "name", None) or "a gift"
    try:
        count = int(getattr(event, "repeat_count", None) or 1)
    except (TypeError, ValueError):
        count = 1

    return AdapterEvent(
        username=username,
        message=f"{username} sent {gift_name} x{count}",
        badges=["gift"],
        raw={
            "type": "gift",
            "nickname": nickname,
            "uniqueId": unique_id,
            "giftName": gift_name,
            "giftId": getattr(gift, "id", None),
            "repeatCount": count,
            "diamondCount": getattr(gift, "diamond_count", None),
        },
    )


def classify_error(exc: BaseException) -> Exception:
    """Map a TikTokLive connect error onto the adapter error classes."""
    name = exc.__class__.__name__
    if name in NOT_FOUND_ERRORS:
        return StreamNotFound(str(exc) or f"TikTok user is offline ({name})")
    if isinstance(exc, OSError):
        return ConnectionLost(str(exc) or name)
    return exc if isinstance(exc, Exception) else ConnectionLost(name)


@dataclass
class TikTokHandlers:
    """Callbacks a client factory wires to the client's events."""

    on_comment: Callable[[Any], Any]
    on_gift: Callable[[Any], Any]
    on_connect: Callable[[Any], Any]
    on_disconnect: Callable[[Any], Any]
    on_live_end: Callable[[Any], Any]


ClientFactory = Callable[[str, TikTokHandlers], Any]


def create_tiktok_client(username: str, handlers: TikTokHandlers) -> Any:
    """Create a TikTokLiveClient with the handlers attached."""
    from TikTokLive import TikTokLiveClient
    from TikTokLive.events import (
        CommentEvent,
        ConnectEvent,
        DisconnectEvent,
        GiftEvent,
        LiveEndEvent,
    )

    client = TikTokLiveClient(unique_id=f"@{username}")
    client.add_listener(CommentEvent, handlers.on_comment)
    client.add_listener(GiftEvent, handlers.on_gift)
    client.add_listener(ConnectEvent, handlers.on_connect)
    client.add_listener(DisconnectEvent, handlers.on_disconnect)
    client.add_listener(LiveEndEvent, handlers.on_live_end)
    return client


@dataclass
class TikTokSession:
    """One connected TikTokLive client and the task pumping its events."""

    client: Any
    task: asyncio.Task | None = None
    ended: bool = False
    closed: bool = False
    room_id: str = ""


class TikTokAdapter(BaseChatAdapter[TikTokSession]):
    """TikTok LIVE chat adapter.

    Events are pushed by the client; reconnecting means building a new
    client and running the connect sequence again.
    """

    platform = Platform.TIKTOK

    def __init__(self, username: str, client_factory: ClientFactory | None = None, **kwargs):
        self._username = normalize_username(username)
        self._client_factory = client_factory or create_tiktok_client
        super().__init__(**kwargs)

    @property
    def username(self) -> str:
        return self._username

    def _status_context(self) -> dict:
        return {"username": self._username}

    def _connecting_message(self) -> str:
        return f"Connecting to TikTok LIVE: @{self._username}"

    def _connected_message(self) -> str:
        return f"Connected to TikTok LIVE: @{self._username}"

    def _handlers_for(self, session_ref: list) -> TikTokHandlers:
        def current() -> TikTokSession | None:
            session = session_ref[0] if session_ref else None
            return None if session is None or session.closed else session

        async def on_comment(event):
            if current() is None:
                return
            try:
                self._emit(comment_to_event(event))
            except Exception as e:
                logger.warning(f"TikTok: dropping malformed comment: {e}")

        async def on_gift(event):
            if current() is None:
                return
            try:
                mapped = gift_to_event(event)
            except Exception as e:
                logger.warning(f"TikTok: dropping malformed gift: {e}")
                return
            if mapped is not None:
                self._emit(mapped)

        async def on_connect(event):
            session = current()
            if session is None:
                return
            room_id = getattr(event, "room_id", None)
            if room_id:
                session.room_id = str(room_id)
                self._update_context(roomId=session.room_id)
            logger.debug(f"TikTok: connected to room {room_id}")

        async def on_disconnect(event):
            logger.debug(f"TikTok: client disconnected from @{self._username}")

        async def on_live_end(event):
            session = current()
            if session is not None:
                logger.info(f"TikTok: @{self._username} ended the LIVE")
                session.ended = True

        return TikTokHandlers(on_comment, on_gift, on_connect, on_disconnect, on_live_end)

    async def _open(self) -> TikTokSession:
        session_ref: list = []
        client = self._client_factory(self._username, self._handlers_for(session_ref))
        session = TikTokSession(client=client)
        session_ref.append(session)
        try:
            session.task = await client.start()
        except asyncio.CancelledError:
            await self._close_quietly(session)
            raise
        except Exception as e:
            await self._close_quietly(session)
            mapped = classify_error(e)
            if mapped is e:
                raise
            raise mapped from e
        return session

    async def _listen(self, session: TikTokSession) -> None:
        task = session.task
        if task is not None:
            await asyncio.wait({task})
            if not task.cancelled() and task.exception() is not None:
                exc = task.exception()
                mapped = classify_error(exc)
                if mapped is exc:
                    raise exc
                raise mapped from exc

        if session.ended:
            raise StreamEnded(f"TikTok LIVE ended: @{self._username}")
        raise ConnectionLost(f"Disconnected from TikTok LIVE: @{self._username}")

    async def _close(self, session: TikTokSession) -> None:
        session.closed = True
        try:
            await session.client.disconnect()
        finally:
            task = session.task
            if task is not None and not task.done():
                task.cancel()

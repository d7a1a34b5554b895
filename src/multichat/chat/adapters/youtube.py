"""YouTube live chat adapter polling the live chat of a video."""

import asyncio
import hashlib
import json
import logging
import re
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Protocol

import aiohttp

from ...core.models import AdapterEvent, AdapterState, Platform
from .base import BaseChatAdapter, ConnectionLost, StreamEnded, StreamNotFound

logger = logging.getLogger(__name__)

LIVE_CHAT_POPOUT_URL = "https://www.youtube.com/live_chat?is_popout=1&v={video_id}"

# Text shown by the chat page when there is nothing live to read
OFFLINE_RE = re.compile(
    r"chat is disabled|live chat is unavailable|waiting for|premieres|ended", re.IGNORECASE
)

# HTTP headers for fetching the channel /live page
SCRAPE_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
    ),
    "Accept-Language": "en-US,en;q=0.9",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}

DEFAULT_SEEN_CAPACITY = 5000


class ChatPage(Protocol):
    """A live chat source the scraper can query."""

    async def open(self, video_id: str) -> None: ...

    async def read_items(self) -> list[dict]: ...

    async def advance(self) -> None: ...

    async def body_text(self) -> str: ...

    async def reload(self) -> None: ...

    async def close(self) -> None: ...


def live_chat_url(video_id: str) -> str:
    return LIVE_CHAT_POPOUT_URL.format(video_id=video_id)


def build_channel_live_url(channel_id: str) -> str:
    """Build the /live URL for a channel."""
    if channel_id.startswith("UC"):
        return f"https://www.youtube.com/channel/{channel_id}/live"
    elif channel_id.startswith("@"):
        return f"https://www.youtube.com/{channel_id}/live"
    else:
        return f"https://www.youtube.com/@{channel_id}/live"


def parse_player_response(html: str) -> dict | None:
    """Extract ytInitialPlayerResponse JSON from page HTML."""
    marker = "var ytInitialPlayerResponse = "
    start_idx = html.find(marker)
    if start_idx == -1:
        return None

    start_idx += len(marker)

    # Find the matching closing brace by counting braces
    brace_count = 0
    in_string = False
    escape_next = False
    end_idx = start_idx

    for i, char in enumerate(html[start_idx:], start_idx):
        if escape_next:
            escape_next = False
            continue

        if char == "\\":
            escape_next = True
            continue

        if char == '"':
            in_string = not in_string
            continue

        if in_string:
            continue

        if char == "{":
            brace_count += 1
        elif char == "}":
            brace_count -= 1
            if brace_count == 0:
                end_idx = i + 1
                break

    if brace_count != 0:
        return None

    try:
        return json.loads(html[start_idx:end_idx])
    except json.JSONDecodeError as e:
        logger.debug(f"Failed to parse ytInitialPlayerResponse: {e}")
        return None


def extract_live_video_id(html: str) -> str | None:
    """Get the video id of a channel's current livestream from its /live page."""
    data = parse_player_response(html)
    if not data:
        return None
    video_details = data.get("videoDetails", {})
    if not video_details.get("isLive", False):
        return None
    return video_details.get("videoId") or None


async def resolve_live_video_id(channel_id: str) -> str:
    """Resolve a channel id or handle to its live video id.

    Raises StreamNotFound if the channel doesn't exist or isn't live.
    """
    url = build_channel_live_url(channel_id)
    timeout = aiohttp.ClientTimeout(total=15)
    async with aiohttp.ClientSession() as session:
        async with session.get(url, headers=SCRAPE_HEADERS, timeout=timeout) as resp:
            if resp.status == 404:
                raise StreamNotFound(f"YouTube channel not found: {channel_id}")
            if resp.status != 200:
                raise ConnectionLost(f"YouTube /live page returned {resp.status}")
            html = await resp.text()

    video_id = extract_live_video_id(html)
    if not video_id:
        raise StreamNotFound(f"No live stream for channel {channel_id}")
    return video_id


def derive_message_id(item: dict) -> str:
    """Stable id for a scraped chat item.

    Uses the element's own id when present, otherwise a hash of
    author, text and displayed timestamp.
    """
    native = item.get("id")
    if native and isinstance(native, str):
        return native
    key = "\x1f".join(
        str(item.get(k) or "").strip() for k in ("username", "message", "time")
    )
    return "h-" + hashlib.sha1(key.encode("utf-8")).hexdigest()


def item_to_event(item: dict, message_id: str) -> AdapterEvent:
    """Map a scraped chat item to an adapter event."""
    badges = item.get("badges")
    if not isinstance(badges, list):
        badges = []
    username = item.get("username")
    return AdapterEvent(
        username=username.strip() if isinstance(username, str) and username.strip() else "unknown",
        message=str(item.get("message") or ""),
        badges=[b for b in badges if isinstance(b, str)],
        raw={**item, "id": message_id},
    )


class SeenIds:
    """Insertion-ordered set of message ids that forgets the oldest past capacity."""

    def __init__(self, capacity: int = DEFAULT_SEEN_CAPACITY):
        self._capacity = max(capacity, 1)
        self._order: deque[str] = deque()
        self._ids: set[str] = set()

    def add(self, key: str) -> bool:
        """Record ``key``; returns False if it was already seen."""
        if key in self._ids:
            return False
        self._ids.add(key)
        self._order.append(key)
        while len(self._order) > self._capacity:
            self._ids.discard(self._order.popleft())
        return True

    def __contains__(self, key: str) -> bool:
        return key in self._ids

    def __len__(self) -> int:
        return len(self._ids)


def _default_page_factory() -> ChatPage:
    from .youtube_page import PytchatChatPage

    return PytchatChatPage()


class YouTubeAdapter(BaseChatAdapter[ChatPage]):
    """YouTube live chat adapter.

    Opens the live chat of a video (or of a channel's current livestream)
    and polls its message list at a fixed interval. Items are deduplicated against a bounded set of
    seen ids that survives reloads and reconnects, so history re-rendered by
    the page is never emitted twice.
    """

    platform = Platform.YOUTUBE

    def __init__(
        self,
        video_id: str = "",
        channel_id: str = "",
        retry_when_offline: bool = True,
        poll_interval: float = 1.0,
        offline_retry_delay: float = 15.0,
        scroll_every: int = 1,
        max_page_errors: int = 10,
        seen_capacity: int = DEFAULT_SEEN_CAPACITY,
        page_factory: Callable[[], ChatPage] | None = None,
        resolver: Callable[[str], Awaitable[str]] | None = None,
        **kwargs,
    ):
        if not video_id and not channel_id:
            raise ValueError("YouTube adapter needs a video_id or channel_id")
        self._video_id = video_id
        self._channel_id = channel_id
        self._retry_when_offline = retry_when_offline
        self._poll_interval = poll_interval
        self._offline_retry_delay = offline_retry_delay
        self._scroll_every = max(scroll_every, 1)
        self._max_page_errors = max_page_errors
        self._seen = SeenIds(seen_capacity)
        self._page_factory = page_factory or _default_page_factory
        self._resolver = resolver or resolve_live_video_id
        super().__init__(**kwargs)
        if not retry_when_offline:
            self.policy = replace(self.policy, retry_on_end=False)

    def _status_context(self) -> dict:
        context = {}
        if self._channel_id:
            context["channelId"] = self._channel_id
        if self._video_id:
            context["videoId"] = self._video_id
        return context

    def _connecting_message(self) -> str:
        return f"Connecting to YouTube chat: {self._video_id or self._channel_id}"

    def _connected_message(self) -> str:
        return f"Connected to YouTube chat: {self._video_id or self._channel_id}"

    async def _open(self) -> ChatPage:
        video_id = self._video_id
        if not video_id:
            video_id = await self._resolver(self._channel_id)
            logger.info(f"YouTube: channel {self._channel_id} is live on {video_id}")
            self._update_context(videoId=video_id)

        page = self._page_factory()
        try:
            await page.open(video_id)
        except (Exception, asyncio.CancelledError):
            await page.close()
            raise
        logger.info(f"YouTube: reading chat {live_chat_url(video_id)}")
        return page

    async def _listen(self, page: ChatPage) -> None:
        cycle = 0
        errors = 0
        while True:
            try:
                items = await page.read_items()
                errors = 0
            except Exception as e:
                errors += 1
                logger.debug(f"YouTube scrape error ({errors}): {e}")
                items = None

            if items:
                self.process_items(items)
            elif await self._handle_offline(page):
                continue

            if errors > self._max_page_errors:
                raise ConnectionLost(f"YouTube chat page failed {errors} times in a row")

            cycle += 1
            if cycle % self._scroll_every == 0:
                try:
                    await page.advance()
                except Exception as e:
                    logger.debug(f"YouTube scroll failed: {e}")

            await asyncio.sleep(self._poll_interval)

    def process_items(self, items: list) -> int:
        """Emit the items not seen before; returns how many were emitted."""
        emitted = 0
        for item in items:
            if not isinstance(item, dict):
                logger.warning(f"YouTube: dropping malformed chat item: {item!r:.200}")
                continue
            if not item.get("message"):
                continue
            message_id = derive_message_id(item)
            if not self._seen.add(message_id):
                continue
            self._emit(item_to_event(item, message_id))
            emitted += 1
        return emitted

    async def _handle_offline(self, page: ChatPage) -> bool:
        """Check for an offline marker; reload and return True if retrying.

        Raises StreamEnded when offline and retrying is disabled.
        """
        try:
            text = await page.body_text()
        except Exception as e:
            logger.debug(f"YouTube: could not read page text: {e}")
            return False
        if not OFFLINE_RE.search(text or ""):
            return False

        if not self._retry_when_offline:
            raise StreamEnded("YouTube chat is offline")

        delay = self._offline_retry_delay
        self._set_status(AdapterState.RETRYING, f"Chat offline; reloading in {delay:.0f}s")
        await asyncio.sleep(delay)
        await page.reload()
        self._set_status(AdapterState.CONNECTED, self._connected_message())
        return True

    async def _close(self, page: ChatPage) -> None:
        await page.close()

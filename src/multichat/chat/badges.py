"""Twitch badge catalogs and the per-channel badge cache."""

import asyncio
import copy
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..api.twitch import TwitchBadgeApi
from .adapters.twitch import normalize_channel

logger = logging.getLogger(__name__)

# Global 1-month subscriber badge, used when no catalog is available
DEFAULT_BADGE_URL = (
    "https://static-cdn.jtvnw.net/badges/v1/5d9f2208-5dd8-11e7-8513-2ff4adfae661/1"
)

SUBSCRIBER_SET = "subscriber"


def resolve_tier(
    tiers: Sequence[tuple[int, str]], value: int, default: str = DEFAULT_BADGE_URL
) -> str:
    """Pick the image for ``value`` from ascending (threshold, image) pairs.

    Returns the image of the largest threshold <= value, else the lowest
    tier's image, else ``default`` when there are no tiers at all.
    """
    if not tiers:
        return default
    chosen = None
    for threshold, image in tiers:
        if threshold <= value:
            chosen = image
        else:
            break
    return chosen if chosen is not None else tiers[0][1]


@dataclass(frozen=True)
class BadgeCatalog:
    """Badge sets for one channel, in Twitch's badge_sets layout.

    ``badge_sets`` maps set id -> {"versions": {version: {image_url_1x, ...}}}.
    Treat instances as immutable; a refresh builds a new catalog.
    """

    channel: str
    badge_sets: dict[str, dict] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.badge_sets

    def versions(self, set_key: str) -> dict[str, dict]:
        badge_set = self.badge_sets.get(set_key)
        if not isinstance(badge_set, dict):
            return {}
        versions = badge_set.get("versions")
        return versions if isinstance(versions, dict) else {}

    def tiers(self, set_key: str, family: int = 0, size: str = "1x") -> list[tuple[int, str]]:
        """Numeric versions of a set as ascending (threshold, image) pairs.

        Twitch numbers tier 2 and 3 subscriber badges 2000+ and 3000+;
        ``family`` selects which thousand to read (0 for tier 1).
        """
        tiers = []
        for version, images in self.versions(set_key).items():
            try:
                number = int(version)
            except (TypeError, ValueError):
                continue
            if number // 1000 != family or not isinstance(images, dict):
                continue
            image = images.get(f"image_url_{size}") or images.get("image_url_1x")
            if image:
                tiers.append((number % 1000, image))
        tiers.sort()
        return tiers

    def resolve(self, set_key: str, value: int, family: int = 0) -> str:
        """Image for tier ``value`` of ``set_key`` with the usual fallbacks."""
        return resolve_tier(self.tiers(set_key, family), value)

    def subscription_badge_urls(self) -> dict[str, str]:
        """Map subscriber badge versions to their 1x image URLs."""
        return {
            version: images.get("image_url_1x", "")
            for version, images in self.versions(SUBSCRIBER_SET).items()
            if isinstance(images, dict)
        }

    def to_payload(self) -> dict[str, Any]:
        """Build the ``data`` object of a ``badges`` envelope."""
        return {"channel": self.channel, "badge_sets": copy.deepcopy(self.badge_sets)}


class BadgeCache:
    """Per-channel badge catalogs, fetched on demand and kept until refreshed.

    Fetch failures never raise: the cache keeps whatever it had (possibly
    nothing) and lookups fall back to ``DEFAULT_BADGE_URL``.
    """

    def __init__(
        self,
        api: TwitchBadgeApi | None = None,
        on_update: Callable[[BadgeCatalog], None] | None = None,
    ) -> None:
        self._api = api or TwitchBadgeApi()
        self._on_update = on_update
        self._catalogs: dict[str, BadgeCatalog] = {}
        self._room_ids: dict[str, str] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self.primary_channel = ""

    def set_update_callback(self, callback: Callable[[BadgeCatalog], None] | None) -> None:
        self._on_update = callback

    def get(self, channel: str) -> BadgeCatalog | None:
        return self._catalogs.get(normalize_channel(channel))

    @property
    def current(self) -> BadgeCatalog | None:
        """Catalog of the configured Twitch channel, if fetched."""
        if not self.primary_channel:
            return None
        return self.get(self.primary_channel)

    def remember_room_id(self, channel: str, room_id: str) -> None:
        """Record a channel's user id as seen in IRC ROOMSTATE."""
        if room_id:
            self._room_ids[normalize_channel(channel)] = room_id

    def resolve(self, channel: str, set_key: str, value: int, family: int = 0) -> str:
        catalog = self.get(channel)
        if catalog is None:
            return DEFAULT_BADGE_URL
        return catalog.resolve(set_key, value, family)

    def subscription_badge_url(self, channel: str, months: int | None) -> str | None:
        """Subscriber badge image for ``months``, or None when not subscribed."""
        if months is None:
            return None
        return self.resolve(channel, SUBSCRIBER_SET, months)

    async def fetch(
        self, channel: str, room_id: str | None = None, refresh: bool = False
    ) -> BadgeCatalog | None:
        """Get a channel's catalog, fetching it unless cached.

        Concurrent calls for the same channel share one fetch.
        """
        channel = normalize_channel(channel)
        if not channel:
            return None
        if room_id:
            self.remember_room_id(channel, room_id)
        if not refresh and channel in self._catalogs:
            return self._catalogs[channel]

        task = self._inflight.get(channel)
        if task is None:
            task = asyncio.create_task(self._fetch(channel))
            self._inflight[channel] = task
            task.add_done_callback(lambda _: self._inflight.pop(channel, None))
        return await asyncio.shield(task)

    async def _fetch(self, channel: str) -> BadgeCatalog | None:
        try:
            badge_sets = await self._fetch_badge_sets(channel)
        except Exception as e:
            logger.warning(f"Badge fetch for {channel} failed: {e}")
            return self._catalogs.get(channel)

        if not badge_sets:
            logger.info(f"No badges available for {channel}, using defaults")
            return self._catalogs.get(channel)

        catalog = BadgeCatalog(channel=channel, badge_sets=badge_sets)
        self._catalogs[channel] = catalog
        logger.info(f"Cached {len(badge_sets)} badge sets for {channel}")
        if self._on_update is not None:
            try:
                self._on_update(catalog)
            except Exception:
                logger.exception("Badge update callback failed")
        return catalog

    async def _fetch_badge_sets(self, channel: str) -> dict[str, dict] | None:
        broadcaster_id = self._room_ids.get(channel)
        if not broadcaster_id:
            broadcaster_id = await self._api.get_broadcaster_id(channel)
            if broadcaster_id:
                self._room_ids[channel] = broadcaster_id

        channel_sets = None
        if broadcaster_id:
            channel_sets = await self._api.get_channel_badges(broadcaster_id)
        if channel_sets and SUBSCRIBER_SET in channel_sets:
            return channel_sets

        # No custom subscriber badges: layer the channel's sets over the global ones
        global_sets = await self._api.get_global_badges()
        if not global_sets:
            return channel_sets
        return {**global_sets, **(channel_sets or {})}

    async def close(self) -> None:
        for task in list(self._inflight.values()):
            task.cancel()
        await self._api.close()

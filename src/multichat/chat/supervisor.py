"""Adapter supervisor: owns one adapter per platform and publishes their status."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from ..core.models import AdapterEvent, AdapterState, AdapterStatus, ChatMessage, Platform
from ..core.settings import Settings
from .adapters.base import BaseChatAdapter
from .adapters.tiktok import TikTokAdapter
from .adapters.twitch import TwitchAdapter, normalize_channel
from .adapters.youtube import YouTubeAdapter
from .badges import BadgeCache, BadgeCatalog
from .hub import BroadcastHub
from .normalizer import normalize

logger = logging.getLogger(__name__)

NOT_CONFIGURED_MESSAGES = {
    Platform.TWITCH: "No Twitch channel configured",
    Platform.YOUTUBE: "No YouTube channel or video configured",
    Platform.TIKTOK: "No TikTok username configured",
}

AdapterFactory = Callable[..., BaseChatAdapter]


def create_twitch_adapter(settings: Settings, **callbacks) -> TwitchAdapter:
    s = settings.twitch
    return TwitchAdapter(s.channel, policy=replace(s.retry), **callbacks)


def create_youtube_adapter(settings: Settings, **callbacks) -> YouTubeAdapter:
    s = settings.youtube
    return YouTubeAdapter(
        video_id=s.video_id,
        channel_id=s.channel_id,
        retry_when_offline=s.retry_when_offline,
        poll_interval=s.poll_interval,
        offline_retry_delay=s.offline_retry_delay,
        policy=replace(s.retry),
        **callbacks,
    )


def create_tiktok_adapter(settings: Settings, **callbacks) -> TikTokAdapter:
    s = settings.tiktok
    return TikTokAdapter(s.username, policy=replace(s.retry), **callbacks)


DEFAULT_FACTORIES: dict[Platform, AdapterFactory] = {
    Platform.TWITCH: create_twitch_adapter,
    Platform.YOUTUBE: create_youtube_adapter,
    Platform.TIKTOK: create_tiktok_adapter,
}


class AdapterHandle:
    """Supervisor-owned record of one platform's adapter and last known status."""

    def __init__(
        self,
        platform: Platform,
        adapter: BaseChatAdapter | None,
        status: AdapterStatus,
        autostart: bool = False,
    ):
        self.platform = platform
        self.adapter = adapter
        self.status = status
        self.autostart = autostart

    def __repr__(self) -> str:
        return f"<AdapterHandle {self.platform.value} {self.status.state.value}>"

    @property
    def configured(self) -> bool:
        return self.adapter is not None

    def get_status(self) -> AdapterStatus:
        return self.status

    async def start(self) -> bool:
        if self.adapter is None:
            return False
        return await self.adapter.start()

    async def stop(self) -> None:
        if self.adapter is not None:
            await self.adapter.stop()


class AdapterSupervisor:
    """Builds the platform adapters from settings and wires them to the hub.

    Chat flows adapter -> normalize -> hub; status flows adapter -> handle ->
    hub. Platforms without configuration get a handle with no adapter that
    stays ``stopped``.
    """

    def __init__(
        self,
        settings: Settings,
        hub: BroadcastHub,
        badges: BadgeCache | None = None,
        factories: dict[Platform, AdapterFactory] | None = None,
        normalizer: Callable[[Platform, AdapterEvent], ChatMessage] = normalize,
    ):
        self._settings = settings
        self._hub = hub
        self._badges = badges
        self._factories = {**DEFAULT_FACTORIES, **(factories or {})}
        self._normalize = normalizer
        self._twitch_channel = normalize_channel(settings.twitch.channel)
        self._background: set[asyncio.Task] = set()
        self._handles: dict[Platform, AdapterHandle] = {
            platform: self._build_handle(platform) for platform in Platform
        }

        hub.set_snapshot_providers(statuses=self.statuses, badges=self.current_badges)
        if badges is not None:
            badges.primary_channel = self._twitch_channel
            badges.set_update_callback(self._on_badges_updated)

    # -- construction --------------------------------------------------------

    def _platform_settings(self, platform: Platform) -> Any:
        return {
            Platform.TWITCH: self._settings.twitch,
            Platform.YOUTUBE: self._settings.youtube,
            Platform.TIKTOK: self._settings.tiktok,
        }[platform]

    def _build_handle(self, platform: Platform) -> AdapterHandle:
        platform_settings = self._platform_settings(platform)
        if not platform_settings.configured:
            logger.info(f"{platform.value}: not configured")
            return AdapterHandle(
                platform,
                None,
                AdapterStatus(AdapterState.STOPPED, NOT_CONFIGURED_MESSAGES[platform]),
            )

        callbacks: dict[str, Any] = {
            "on_message": lambda event: self._on_message(platform, event),
            "on_status_change": lambda status: self._on_status_change(platform, status),
        }
        if platform is Platform.TWITCH:
            callbacks["on_room_id"] = self._on_room_id

        try:
            adapter = self._factories[platform](self._settings, **callbacks)
        except Exception as e:
            logger.error(f"{platform.value}: failed to create adapter: {e}")
            return AdapterHandle(
                platform, None, AdapterStatus(AdapterState.ERROR, f"Failed to create adapter: {e}")
            )

        status = AdapterStatus(AdapterState.STOPPED, "Not started", adapter.get_status().context)
        return AdapterHandle(platform, adapter, status, autostart=platform_settings.autostart)

    # -- adapter callbacks ---------------------------------------------------

    def _on_message(self, platform: Platform, event: AdapterEvent) -> None:
        message = self._normalize(platform, event)
        if platform is Platform.TWITCH:
            self._add_subscription_badge(message)
        self._hub.broadcast_chat(message)

    def _add_subscription_badge(self, message: ChatMessage) -> None:
        if self._badges is None:
            return
        months = message.raw.get("subscriptionMonths")
        if not isinstance(months, int):
            return
        channel = normalize_channel(str(message.raw.get("channel") or self._twitch_channel))
        message.raw["subscriptionBadgeUrl"] = self._badges.subscription_badge_url(channel, months)

    def _on_status_change(self, platform: Platform, status: AdapterStatus) -> None:
        self._handles[platform].status = status
        self._hub.broadcast_status(platform, status)

    def _on_room_id(self, room_id: str) -> None:
        if self._badges is None or not self._twitch_channel:
            return
        self._badges.remember_room_id(self._twitch_channel, room_id)
        if self._badges.get(self._twitch_channel) is None:
            self._spawn(self._badges.fetch(self._twitch_channel, room_id=room_id))

    def _on_badges_updated(self, catalog: BadgeCatalog) -> None:
        if catalog.channel == self._twitch_channel:
            self._hub.broadcast_badges(catalog)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -- control surface -----------------------------------------------------

    @property
    def handles(self) -> dict[Platform, AdapterHandle]:
        return dict(self._handles)

    def handle(self, platform: Platform) -> AdapterHandle:
        return self._handles[platform]

    def status(self, platform: Platform) -> AdapterStatus:
        return self._handles[platform].get_status()

    def statuses(self) -> dict[Platform, AdapterStatus]:
        return {platform: handle.status for platform, handle in self._handles.items()}

    def status_payloads(self) -> dict[str, dict]:
        return {platform.value: status.to_payload() for platform, status in self.statuses().items()}

    def current_badges(self) -> BadgeCatalog | None:
        return self._badges.current if self._badges is not None else None

    async def start(self, platform: Platform) -> bool:
        """Start a platform's adapter; returns whether it is connected."""
        handle = self._handles[platform]
        if handle.adapter is None:
            logger.info(f"{platform.value}: start ignored, {handle.status.message}")
            return False
        return await handle.start()

    async def stop(self, platform: Platform) -> None:
        """Stop a platform's adapter and release its resources."""
        await self._handles[platform].stop()

    def autostart(self) -> list[asyncio.Task]:
        """Start every configured adapter flagged for autostart in the background."""
        return [
            self._spawn(self.start(platform))
            for platform, handle in self._handles.items()
            if handle.adapter is not None and handle.autostart
        ]

    async def fetch_badges(self) -> BadgeCatalog | None:
        """Fetch the badge catalog of the configured Twitch channel."""
        if self._badges is None or not self._twitch_channel:
            return None
        return await self._badges.fetch(self._twitch_channel)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop every adapter, giving up on stragglers after ``timeout`` seconds."""
        for task in list(self._background):
            task.cancel()

        stops = [
            asyncio.create_task(handle.stop())
            for handle in self._handles.values()
            if handle.adapter is not None
        ]
        if stops:
            done, pending = await asyncio.wait(stops, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"{len(pending)} adapter(s) did not stop within {timeout:.0f}s")
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(f"Error stopping adapter: {task.exception()!r}")
        logger.info("All adapters stopped")

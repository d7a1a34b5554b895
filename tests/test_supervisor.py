"""Tests for the adapter supervisor."""

import asyncio

import pytest

from multichat.chat.adapters.twitch import TwitchAdapter, parse_irc_message
from multichat.chat.badges import DEFAULT_BADGE_URL, BadgeCache
from multichat.chat.hub import BroadcastHub
from multichat.chat.supervisor import NOT_CONFIGURED_MESSAGES, AdapterSupervisor
from multichat.core.models import AdapterEvent, AdapterState, Platform

from fakes import FakeAdapter, FakeBadgeApi, FakeWebSocket, badge_versions, wait_until


def _fake_factories(created=None):
    created = created if created is not None else {}

    def make(platform):
        def factory(settings, **callbacks):
            adapter = FakeAdapter(platform=platform, **callbacks)
            created[platform] = adapter
            return adapter

        return factory

    return {platform: make(platform) for platform in Platform}


def _supervisor(settings, badges=None, overrides=None):
    created = {}
    factories = _fake_factories(created)
    factories.update(overrides or {})
    hub = BroadcastHub()
    ws = FakeWebSocket()
    supervisor = AdapterSupervisor(settings, hub, badges=badges, factories=factories)
    hub.register(ws)
    return supervisor, created, ws


# --- configuration ---


@pytest.mark.asyncio
async def test_unconfigured_platforms_stay_stopped(empty_settings):
    supervisor, created, _ = _supervisor(empty_settings)

    assert created == {}
    for platform in Platform:
        handle = supervisor.handle(platform)
        assert handle.configured is False
        assert handle.status.state is AdapterState.STOPPED
        assert handle.status.message == NOT_CONFIGURED_MESSAGES[platform]
        assert await supervisor.start(platform) is False

    payloads = supervisor.status_payloads()
    assert payloads["tiktok"] == {
        "status": "stopped",
        "message": "No TikTok username configured",
        "isRunning": False,
    }


@pytest.mark.asyncio
async def test_configured_platforms_start_not_started(configured_settings):
    supervisor, created, ws = _supervisor(configured_settings)

    assert set(created) == set(Platform)
    for platform in Platform:
        assert supervisor.status(platform).message == "Not started"
        assert created[platform].attempts == 0

    await wait_until(lambda: len(ws.sent) == 4)
    assert [f["data"]["message"] for f in ws.frames[1:]] == ["Not started"] * 3


@pytest.mark.asyncio
async def test_factory_failure_reports_error(configured_settings):
    def broken(settings, **callbacks):
        raise RuntimeError("pytchat missing")

    supervisor, _, _ = _supervisor(configured_settings, overrides={Platform.YOUTUBE: broken})
    status = supervisor.status(Platform.YOUTUBE)
    assert status.state is AdapterState.ERROR
    assert status.message == "Failed to create adapter: pytchat missing"
    assert await supervisor.start(Platform.YOUTUBE) is False
    assert supervisor.status(Platform.TWITCH).state is AdapterState.STOPPED


# --- lifecycle ---


@pytest.mark.asyncio
async def test_status_changes_are_tracked_and_broadcast(configured_settings):
    supervisor, _, ws = _supervisor(configured_settings)

    assert await supervisor.start(Platform.TWITCH) is True
    assert supervisor.status(Platform.TWITCH).state is AdapterState.CONNECTED

    await wait_until(lambda: len(ws.of_type("twitch-status")) == 3)
    statuses = [f["data"]["status"] for f in ws.of_type("twitch-status")]
    assert statuses == ["stopped", "connecting", "connected"]
    await supervisor.shutdown(timeout=1.0)


@pytest.mark.asyncio
async def test_repeated_start_opens_one_connection(configured_settings):
    supervisor, created, _ = _supervisor(configured_settings)
    adapter = created[Platform.TIKTOK]
    adapter.open_gate = asyncio.Event()

    first = asyncio.create_task(supervisor.start(Platform.TIKTOK))
    await asyncio.sleep(0)
    assert await supervisor.start(Platform.TIKTOK) is False
    adapter.open_gate.set()
    assert await first is True
    assert await supervisor.start(Platform.TIKTOK) is True
    assert len(adapter.opened) == 1
    await supervisor.shutdown(timeout=1.0)


@pytest.mark.asyncio
async def test_stop_then_start(configured_settings):
    supervisor, created, _ = _supervisor(configured_settings)
    await supervisor.start(Platform.YOUTUBE)
    await supervisor.stop(Platform.YOUTUBE)
    assert supervisor.status(Platform.YOUTUBE).state is AdapterState.STOPPED
    assert created[Platform.YOUTUBE].opened[0].closed is True

    assert await supervisor.start(Platform.YOUTUBE) is True
    assert len(created[Platform.YOUTUBE].opened) == 2
    await supervisor.shutdown(timeout=1.0)


@pytest.mark.asyncio
async def test_autostart_skips_youtube_by_default(configured_settings):
    supervisor, created, _ = _supervisor(configured_settings)
    tasks = supervisor.autostart()
    assert len(tasks) == 2
    await asyncio.gather(*tasks)

    assert supervisor.status(Platform.TWITCH).state is AdapterState.CONNECTED
    assert supervisor.status(Platform.TIKTOK).state is AdapterState.CONNECTED
    assert created[Platform.YOUTUBE].attempts == 0
    await supervisor.shutdown(timeout=1.0)


@pytest.mark.asyncio
async def test_shutdown_stops_everything(configured_settings):
    supervisor, created, _ = _supervisor(configured_settings)
    for platform in Platform:
        await supervisor.start(platform)

    await supervisor.shutdown(timeout=1.0)
    for platform in Platform:
        assert supervisor.status(platform).state is AdapterState.STOPPED
        assert created[platform].opened[0].closed is True


# --- chat routing ---


@pytest.mark.asyncio
async def test_chat_is_normalized_and_broadcast(configured_settings):
    supervisor, created, ws = _supervisor(configured_settings)
    await supervisor.start(Platform.YOUTUBE)

    created[Platform.YOUTUBE]._emit(AdapterEvent(username="  ", message="hello"))
    await wait_until(lambda: len(ws.of_type("chat")) == 1)
    data = ws.of_type("chat")[0]["data"]
    assert data["platform"] == "youtube"
    assert data["username"] == "unknown"
    assert data["message"] == "hello"
    assert data["id"]
    await supervisor.shutdown(timeout=1.0)


def _twitch_factory(settings, **callbacks):
    return TwitchAdapter(settings.twitch.channel, **callbacks)


def _badge_api():
    return FakeBadgeApi(
        broadcaster_id="1234",
        channel_sets={
            "subscriber": badge_versions(v0="https://sub/0", v3="https://sub/3", v6="https://sub/6")
        },
    )


@pytest.mark.asyncio
async def test_twitch_chat_gets_subscription_badge_url(configured_settings):
    badges = BadgeCache(api=_badge_api())
    supervisor, _, ws = _supervisor(
        configured_settings, badges=badges, overrides={Platform.TWITCH: _twitch_factory}
    )
    assert (await supervisor.fetch_badges()).channel == "somestreamer"

    adapter = supervisor.handle(Platform.TWITCH).adapter
    adapter.handle_message(
        parse_irc_message(
            "@badges=subscriber/8;display-name=Viewer :viewer!viewer@viewer.tmi.twitch.tv "
            "PRIVMSG #somestreamer :hello"
        )
    )
    adapter.handle_message(
        parse_irc_message(
            "@badges=;display-name=Lurker :lurker!lurker@lurker.tmi.twitch.tv "
            "PRIVMSG #somestreamer :hi"
        )
    )

    await wait_until(lambda: len(ws.of_type("chat")) == 2)
    subbed, plain = (f["data"] for f in ws.of_type("chat"))
    assert subbed["raw"]["subscriptionMonths"] == 8
    assert subbed["raw"]["subscriptionBadgeUrl"] == "https://sub/6"
    assert "subscriptionBadgeUrl" not in plain["raw"]


@pytest.mark.asyncio
async def test_subscription_badge_url_defaults_without_catalog(configured_settings):
    badges = BadgeCache(api=FakeBadgeApi())
    supervisor, _, ws = _supervisor(
        configured_settings, badges=badges, overrides={Platform.TWITCH: _twitch_factory}
    )
    supervisor.handle(Platform.TWITCH).adapter.handle_message(
        parse_irc_message(
            "@badges=subscriber/3;display-name=Viewer :viewer!viewer@viewer.tmi.twitch.tv "
            "PRIVMSG #somestreamer :hello"
        )
    )
    await wait_until(lambda: len(ws.of_type("chat")) == 1)
    assert ws.of_type("chat")[0]["data"]["raw"]["subscriptionBadgeUrl"] == DEFAULT_BADGE_URL


@pytest.mark.asyncio
async def test_room_id_triggers_badge_fetch_and_broadcast(configured_settings):
    api = _badge_api()
    badges = BadgeCache(api=api)
    supervisor, _, ws = _supervisor(
        configured_settings, badges=badges, overrides={Platform.TWITCH: _twitch_factory}
    )

    supervisor.handle(Platform.TWITCH).adapter.handle_message(
        parse_irc_message("@room-id=999;slow=0 :tmi.twitch.tv ROOMSTATE #somestreamer")
    )

    await wait_until(lambda: len(ws.of_type("badges")) == 1)
    assert api.calls == ["channel:999"]
    assert ws.of_type("badges")[0]["data"]["channel"] == "somestreamer"
    assert supervisor.current_badges() is badges.get("somestreamer")
    assert supervisor.status(Platform.TWITCH).context["roomId"] == "999"
    await supervisor.shutdown(timeout=1.0)

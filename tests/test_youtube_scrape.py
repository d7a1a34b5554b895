"""Tests for the YouTube chat scraper."""

import json
from types import SimpleNamespace

import pytest

from multichat.chat.adapters.base import StreamNotFound
from multichat.chat.adapters.youtube import (
    OFFLINE_RE,
    SeenIds,
    YouTubeAdapter,
    build_channel_live_url,
    derive_message_id,
    extract_live_video_id,
    item_to_event,
    live_chat_url,
    parse_player_response,
)
from multichat.chat.adapters.youtube_page import pytchat_item_to_dict
from multichat.core.models import AdapterState

from fakes import FakeChatPage, fast_policy, wait_for_state, wait_until


def _item(**overrides) -> dict:
    item = {"id": "", "username": "Viewer", "message": "hello", "time": "12:01 PM", "badges": []}
    item.update(overrides)
    return item


def _player_html(details: dict) -> str:
    payload = json.dumps({"videoDetails": details})
    return f"<script>var ytInitialPlayerResponse = {payload};</script>"


# --- URLs ---


def test_live_chat_url():
    assert live_chat_url("abc123") == "https://www.youtube.com/live_chat?is_popout=1&v=abc123"


def test_build_channel_live_url_channel_id():
    assert build_channel_live_url("UC1234") == "https://www.youtube.com/channel/UC1234/live"


def test_build_channel_live_url_handle():
    assert build_channel_live_url("@someone") == "https://www.youtube.com/@someone/live"
    assert build_channel_live_url("someone") == "https://www.youtube.com/@someone/live"


# --- /live page parsing ---


def test_parse_player_response_missing_marker():
    assert parse_player_response("<html></html>") is None


def test_parse_player_response_braces_in_strings():
    html = _player_html({"title": "a {weird} \"title\"", "isLive": True, "videoId": "v1"})
    data = parse_player_response(html)
    assert data["videoDetails"]["title"] == 'a {weird} "title"'


def test_extract_live_video_id_live():
    assert extract_live_video_id(_player_html({"isLive": True, "videoId": "v1"})) == "v1"


def test_extract_live_video_id_not_live():
    assert extract_live_video_id(_player_html({"isLive": False, "videoId": "v1"})) is None


# --- message ids and dedup ---


def test_derive_message_id_prefers_native_id():
    assert derive_message_id(_item(id="ChwKGkNJ")) == "ChwKGkNJ"


def test_derive_message_id_hash_is_stable():
    assert derive_message_id(_item()) == derive_message_id(_item())
    assert derive_message_id(_item()).startswith("h-")


def test_derive_message_id_hash_differs_by_timestamp():
    assert derive_message_id(_item(time="12:01 PM")) != derive_message_id(_item(time="12:02 PM"))


def test_seen_ids_rejects_duplicates():
    seen = SeenIds(capacity=10)
    assert seen.add("a") is True
    assert seen.add("a") is False
    assert "a" in seen


def test_seen_ids_forgets_oldest_past_capacity():
    seen = SeenIds(capacity=2)
    for key in ("a", "b", "c"):
        seen.add(key)
    assert "a" not in seen
    assert len(seen) == 2


def test_item_to_event_defaults():
    event = item_to_event({"message": "hi", "badges": "nope"}, "h-1")
    assert event.username == "unknown"
    assert event.badges == []
    assert event.raw["id"] == "h-1"


def test_process_items_twice_emits_once():
    events = []
    adapter = YouTubeAdapter(video_id="v1", on_message=events.append)
    items = [_item(id="m1", message="first"), _item(id="m2", message="second")]

    assert adapter.process_items(items) == 2
    assert adapter.process_items(items) == 0
    assert [e.message for e in events] == ["first", "second"]


def test_process_items_skips_malformed_and_empty():
    events = []
    adapter = YouTubeAdapter(video_id="v1", on_message=events.append)
    assert adapter.process_items(["junk", None, _item(message=""), _item(id="ok")]) == 1
    assert len(events) == 1


# --- offline markers ---


@pytest.mark.parametrize(
    "text",
    [
        "Chat is disabled for this live stream.",
        "Live chat is unavailable",
        "Waiting for Streamer...",
        "Premieres in 3 hours",
        "This live event has ended.",
    ],
)
def test_offline_markers(text):
    assert OFFLINE_RE.search(text)


def test_offline_markers_ignore_normal_chat():
    assert not OFFLINE_RE.search("Welcome to live chat! Remember to be kind.")


# --- adapter ---


def test_adapter_requires_an_id():
    with pytest.raises(ValueError):
        YouTubeAdapter()


def test_adapter_without_offline_retry_does_not_retry_on_end():
    adapter = YouTubeAdapter(video_id="v1", retry_when_offline=False, policy=fast_policy())
    assert adapter.policy.retry_on_end is False


def _youtube(page, **kwargs):
    events = []
    adapter = YouTubeAdapter(
        on_message=events.append,
        page_factory=lambda: page,
        poll_interval=0.01,
        offline_retry_delay=0.01,
        policy=fast_policy(),
        **kwargs,
    )
    return adapter, events


@pytest.mark.asyncio
async def test_scrape_loop_dedups_across_polls():
    page = FakeChatPage(
        batches=[
            [_item(id="m1", message="one")],
            [_item(id="m1", message="one"), _item(id="m2", message="two")],
        ]
    )
    adapter, events = _youtube(page, video_id="v1")
    assert await adapter.start() is True
    assert page.opened == ["v1"]

    await wait_until(lambda: page.reads >= 4)
    assert [e.message for e in events] == ["one", "two"]
    assert page.advances >= 1
    await adapter.stop()
    assert page.closed is True


@pytest.mark.asyncio
async def test_offline_page_reloads_and_keeps_going():
    page = FakeChatPage(batches=[[]], body="Waiting for streamer")
    adapter, _ = _youtube(page, video_id="v1")
    await adapter.start()

    await wait_until(lambda: page.reloads >= 2)
    assert adapter.is_running()
    await adapter.stop()


@pytest.mark.asyncio
async def test_offline_page_without_retry_ends():
    page = FakeChatPage(batches=[[]], body="This live event has ended.")
    adapter, _ = _youtube(page, video_id="v1", retry_when_offline=False)
    await adapter.start()

    await wait_for_state(adapter, AdapterState.STOPPED)
    assert page.reloads == 0
    assert page.closed is True


@pytest.mark.asyncio
async def test_channel_id_is_resolved_to_live_video():
    page = FakeChatPage()
    resolved = []

    async def resolver(channel_id):
        resolved.append(channel_id)
        return "live123"

    adapter, _ = _youtube(page, channel_id="UCabc", resolver=resolver)
    assert await adapter.start() is True
    assert resolved == ["UCabc"]
    assert page.opened == ["live123"]
    assert adapter.get_status().context == {"channelId": "UCabc", "videoId": "live123"}
    await adapter.stop()


@pytest.mark.asyncio
async def test_channel_not_live_is_not_found():
    async def resolver(channel_id):
        raise StreamNotFound(f"No live stream for channel {channel_id}")

    adapter, _ = _youtube(FakeChatPage(), channel_id="UCabc", resolver=resolver)
    assert await adapter.start() is False
    assert adapter.get_status().state is AdapterState.RETRYING
    assert "No live stream" in adapter.get_status().message
    await adapter.stop()


# --- pytchat source ---


def _pytchat_item(**overrides):
    author = SimpleNamespace(
        name="Viewer",
        channelId="UCviewer",
        isChatOwner=False,
        isChatModerator=True,
        isChatSponsor=True,
        isVerified=False,
    )
    values = dict(
        type="textMessage",
        id="ChwKGkNJ",
        message="hello",
        timestamp=1700000000000,
        amountString="",
        author=author,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_pytchat_item_to_dict():
    item = pytchat_item_to_dict(_pytchat_item())
    assert item == {
        "id": "ChwKGkNJ",
        "username": "Viewer",
        "message": "hello",
        "time": "1700000000000",
        "badges": ["moderator", "member"],
    }


def test_pytchat_superchat_without_text_uses_amount():
    item = pytchat_item_to_dict(_pytchat_item(type="superChat", message="", amountString="$5.00"))
    assert item["message"] == "$5.00"
    assert item["type"] == "superChat"
    assert item["amount"] == "$5.00"


def test_pytchat_items_flow_through_dedup():
    events = []
    adapter = YouTubeAdapter(video_id="v1", on_message=events.append)
    items = [pytchat_item_to_dict(_pytchat_item()), pytchat_item_to_dict(_pytchat_item())]
    assert adapter.process_items(items) == 1
    assert events[0].badges == ["moderator", "member"]

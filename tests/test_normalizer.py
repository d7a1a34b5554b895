"""Tests for event normalization."""

from types import SimpleNamespace

from multichat.chat.normalizer import MonotonicClock, normalize
from multichat.core.models import AdapterEvent, Platform


def test_normalize_copies_fields():
    event = AdapterEvent(
        username="Viewer", message="hi", badges=["moderator"], color="#FF0000", raw={"k": 1}
    )
    msg = normalize(Platform.TWITCH, event)
    assert msg.platform is Platform.TWITCH
    assert msg.username == "Viewer"
    assert msg.message == "hi"
    assert msg.badges == ["moderator"]
    assert msg.color == "#FF0000"
    assert msg.raw == {"k": 1}


def test_normalize_defaults():
    msg = normalize(Platform.YOUTUBE, AdapterEvent(username="Viewer"))
    assert msg.id
    assert msg.ts >= 0
    assert msg.message == ""
    assert msg.badges == []
    assert msg.color is None
    assert msg.raw == {}


def test_normalize_empty_username_is_unknown():
    assert normalize(Platform.TIKTOK, AdapterEvent(username="   ")).username == "unknown"


def test_normalize_ids_are_unique():
    ids = {normalize(Platform.TWITCH, AdapterEvent(username="a")).id for _ in range(500)}
    assert len(ids) == 500


def test_normalize_malformed_fields_degrade():
    event = SimpleNamespace(username=None, message=42, badges="vip", color=7, raw=["x"])
    msg = normalize(Platform.TWITCH, event)
    assert msg.username == "unknown"
    assert msg.message == "42"
    assert msg.badges == []
    assert msg.color is None
    assert msg.raw == {}


def test_normalize_never_raises_on_garbage():
    msg = normalize(Platform.TWITCH, object())
    assert msg.username == "unknown"
    assert msg.message == ""


def test_normalize_drops_none_badges():
    msg = normalize(Platform.TWITCH, AdapterEvent(username="a", badges=["vip", None, "premium"]))
    assert msg.badges == ["vip", "premium"]


def test_normalize_uses_supplied_clock_and_ids():
    msg = normalize(
        Platform.TWITCH, AdapterEvent(username="a"), clock=lambda: 1234, id_factory=lambda: "id-1"
    )
    assert msg.ts == 1234
    assert msg.id == "id-1"


def test_clock_is_non_decreasing():
    readings = iter([10.0, 9.0, 11.0])
    clock = MonotonicClock(source=lambda: next(readings))
    assert [clock(), clock(), clock()] == [10000, 10000, 11000]


def test_to_dict_uses_platform_value():
    msg = normalize(Platform.TIKTOK, AdapterEvent(username="a"), id_factory=lambda: "x")
    data = msg.to_dict()
    assert data["platform"] == "tiktok"
    assert data["id"] == "x"

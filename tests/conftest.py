"""Shared test fixtures for multichat tests."""

import pytest

from multichat.core.settings import Settings


@pytest.fixture
def empty_settings(tmp_path):
    return Settings.load(tmp_path / "settings.json", environ={})


@pytest.fixture
def configured_settings(tmp_path):
    return Settings.load(
        tmp_path / "settings.json",
        environ={
            "TWITCH_CHANNEL": "#SomeStreamer",
            "YT_VIDEO_ID": "dQw4w9WgXcQ",
            "TIKTOK_USERNAME": "@tiktoker",
        },
    )

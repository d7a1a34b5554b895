"""Settings management for multichat."""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

from appdirs import user_config_dir

from .models import Platform, RetryPolicy, default_retry_policy

logger = logging.getLogger(__name__)

APP_NAME = "multichat"
APP_AUTHOR = "multichat"

DEFAULT_PORT = 8787


def get_config_dir() -> Path:
    """Get the configuration directory."""
    path = Path(user_config_dir(APP_NAME, APP_AUTHOR))
    path.mkdir(parents=True, exist_ok=True)
    return path


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ServerSettings:
    """WebSocket/HTTP server settings."""

    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    client_queue_size: int = 256  # Pending frames per display client before it is dropped
    shutdown_timeout: float = 5.0


@dataclass
class TwitchSettings:
    """Twitch chat and badge API settings."""

    channel: str = ""
    client_id: str = ""
    oauth_token: str = ""  # Only used for Helix badge lookups
    autostart: bool = True
    retry: RetryPolicy = field(default_factory=lambda: default_retry_policy(Platform.TWITCH))

    @property
    def configured(self) -> bool:
        return bool(self.channel.strip().lstrip("#"))


@dataclass
class YouTubeSettings:
    """YouTube live chat scraper settings."""

    channel_id: str = ""  # UC... id or @handle, resolved to the current live video
    video_id: str = ""  # Takes precedence over channel_id
    retry_when_offline: bool = True
    autostart: bool = False
    poll_interval: float = 1.0
    offline_retry_delay: float = 15.0
    retry: RetryPolicy = field(default_factory=lambda: default_retry_policy(Platform.YOUTUBE))

    @property
    def configured(self) -> bool:
        return bool(self.video_id or self.channel_id)


@dataclass
class TikTokSettings:
    """TikTok live room settings."""

    username: str = ""
    autostart: bool = True
    retry: RetryPolicy = field(default_factory=lambda: default_retry_policy(Platform.TIKTOK))

    @property
    def configured(self) -> bool:
        return bool(self.username.strip().lstrip("@"))


@dataclass
class Settings:
    """Application settings."""

    server: ServerSettings = field(default_factory=ServerSettings)
    twitch: TwitchSettings = field(default_factory=TwitchSettings)
    youtube: YouTubeSettings = field(default_factory=YouTubeSettings)
    tiktok: TikTokSettings = field(default_factory=TikTokSettings)
    debug: bool = False

    @classmethod
    def load(cls, path: Path | None = None, environ: dict[str, str] | None = None) -> "Settings":
        """Load settings from the config file, then apply environment overrides."""
        if path is None:
            path = get_config_dir() / "settings.json"

        data: dict = {}
        if path.exists():
            try:
                with open(path, encoding="utf-8") as f:
                    data = json.load(f)
                logger.info(f"Loaded settings from {path}")
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Failed to load settings from {path}: {e}")
                data = {}

        settings = cls._from_dict(data if isinstance(data, dict) else {})
        settings.apply_env(os.environ if environ is None else environ)
        return settings

    def apply_env(self, environ) -> None:
        """Override settings from environment variables."""
        if environ.get("HOST"):
            self.server.host = environ["HOST"]
        if environ.get("PORT"):
            self.server.port = self._validate_int(
                environ["PORT"], DEFAULT_PORT, min_val=1, max_val=65535
            )
        if environ.get("TWITCH_CHANNEL"):
            self.twitch.channel = environ["TWITCH_CHANNEL"]
        if environ.get("TWITCH_CLIENT_ID"):
            self.twitch.client_id = environ["TWITCH_CLIENT_ID"]
        if environ.get("TWITCH_OAUTH"):
            self.twitch.oauth_token = environ["TWITCH_OAUTH"]
        if environ.get("YT_CHANNEL_ID"):
            self.youtube.channel_id = environ["YT_CHANNEL_ID"]
        if environ.get("YT_VIDEO_ID"):
            self.youtube.video_id = environ["YT_VIDEO_ID"]
        if environ.get("YT_RETRY_WHEN_OFFLINE"):
            self.youtube.retry_when_offline = _env_bool(environ["YT_RETRY_WHEN_OFFLINE"])
        if environ.get("TIKTOK_USERNAME"):
            self.tiktok.username = environ["TIKTOK_USERNAME"]
        if environ.get("MULTICHAT_DEBUG"):
            self.debug = _env_bool(environ["MULTICHAT_DEBUG"])

    @staticmethod
    def _validate_int(value, default: int, min_val: int = 0, max_val: int | None = None) -> int:
        """Validate and clamp an integer setting value."""
        try:
            result = int(value)
        except (ValueError, TypeError):
            return default
        if result < min_val:
            return min_val
        if max_val is not None and result > max_val:
            return max_val
        return result

    @staticmethod
    def _validate_float(value, default: float, min_val: float = 0.0) -> float:
        """Validate and clamp a float setting value."""
        try:
            result = float(value)
        except (ValueError, TypeError):
            return default
        return max(result, min_val)

    @classmethod
    def _retry_from_dict(cls, data, platform: Platform) -> RetryPolicy:
        """Overlay a partial retry dict on the platform's default policy."""
        policy = default_retry_policy(platform)
        if not isinstance(data, dict):
            return policy
        for f in fields(RetryPolicy):
            if f.name not in data:
                continue
            current = getattr(policy, f.name)
            value = data[f.name]
            if isinstance(current, bool):
                setattr(policy, f.name, bool(value))
            elif isinstance(current, int):
                setattr(policy, f.name, cls._validate_int(value, current))
            else:
                setattr(policy, f.name, cls._validate_float(value, current))
        return policy

    @classmethod
    def _from_dict(cls, data: dict) -> "Settings":
        """Create settings from a dictionary."""
        settings = cls()
        settings.debug = bool(data.get("debug", False))

        if "server" in data and isinstance(data["server"], dict):
            s = data["server"]
            settings.server = ServerSettings(
                host=s.get("host", "0.0.0.0"),
                port=cls._validate_int(s.get("port", DEFAULT_PORT), DEFAULT_PORT, 1, 65535),
                client_queue_size=cls._validate_int(s.get("client_queue_size", 256), 256, 1),
                shutdown_timeout=cls._validate_float(s.get("shutdown_timeout", 5.0), 5.0),
            )

        if "twitch" in data and isinstance(data["twitch"], dict):
            t = data["twitch"]
            settings.twitch = TwitchSettings(
                channel=t.get("channel", ""),
                client_id=t.get("client_id", ""),
                oauth_token=t.get("oauth_token", ""),
                autostart=bool(t.get("autostart", True)),
                retry=cls._retry_from_dict(t.get("retry"), Platform.TWITCH),
            )

        if "youtube" in data and isinstance(data["youtube"], dict):
            y = data["youtube"]
            settings.youtube = YouTubeSettings(
                channel_id=y.get("channel_id", ""),
                video_id=y.get("video_id", ""),
                retry_when_offline=bool(y.get("retry_when_offline", True)),
                autostart=bool(y.get("autostart", False)),
                poll_interval=cls._validate_float(y.get("poll_interval", 1.0), 1.0, 0.1),
                offline_retry_delay=cls._validate_float(
                    y.get("offline_retry_delay", 15.0), 15.0
                ),
                retry=cls._retry_from_dict(y.get("retry"), Platform.YOUTUBE),
            )

        if "tiktok" in data and isinstance(data["tiktok"], dict):
            k = data["tiktok"]
            settings.tiktok = TikTokSettings(
                username=k.get("username", ""),
                autostart=bool(k.get("autostart", True)),
                retry=cls._retry_from_dict(k.get("retry"), Platform.TIKTOK),
            )

        return settings

    def to_dict(self, exclude_secrets: bool = False) -> dict:
        """Convert settings to a dictionary."""

        def retry_dict(policy: RetryPolicy) -> dict:
            return {f.name: getattr(policy, f.name) for f in fields(RetryPolicy)}

        return {
            "debug": self.debug,
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "client_queue_size": self.server.client_queue_size,
                "shutdown_timeout": self.server.shutdown_timeout,
            },
            "twitch": {
                "channel": self.twitch.channel,
                "client_id": self.twitch.client_id,
                "oauth_token": "" if exclude_secrets else self.twitch.oauth_token,
                "autostart": self.twitch.autostart,
                "retry": retry_dict(self.twitch.retry),
            },
            "youtube": {
                "channel_id": self.youtube.channel_id,
                "video_id": self.youtube.video_id,
                "retry_when_offline": self.youtube.retry_when_offline,
                "autostart": self.youtube.autostart,
                "poll_interval": self.youtube.poll_interval,
                "offline_retry_delay": self.youtube.offline_retry_delay,
                "retry": retry_dict(self.youtube.retry),
            },
            "tiktok": {
                "username": self.tiktok.username,
                "autostart": self.tiktok.autostart,
                "retry": retry_dict(self.tiktok.retry),
            },
        }

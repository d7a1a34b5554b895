"""Twitch IRC chat adapter over WebSocket."""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import aiohttp

from ...core.models import AdapterEvent, Platform
from .base import AdapterError, BaseChatAdapter, ConnectionLost, StreamNotFound

logger = logging.getLogger(__name__)

TWITCH_IRC_WS_URL = "wss://irc-ws.chat.twitch.tv:443"

# IRC capabilities to request
IRC_CAPS = [
    "twitch.tv/membership",
    "twitch.tv/tags",
    "twitch.tv/commands",
]

# NOTICE msg-ids meaning the channel can't be joined at all
NOT_FOUND_NOTICES = frozenset({"msg_channel_suspended", "msg_channel_blocked", "tos_ban"})

# Seconds to wait for the server welcome (001) after sending NICK
WELCOME_TIMEOUT = 15.0


def normalize_channel(channel: str) -> str:
    """Strip a leading '#' and lowercase a channel name for IRC."""
    channel = channel.strip()
    if channel.startswith("#"):
        channel = channel[1:]
    return channel.lower()


def parse_irc_tags(tag_string: str) -> dict[str, str]:
    """Parse IRC tags string into a dictionary.

    Tags format: @key1=value1;key2=value2;...
    """
    tags: dict[str, str] = {}
    if not tag_string:
        return tags

    if tag_string.startswith("@"):
        tag_string = tag_string[1:]

    for pair in tag_string.split(";"):
        if "=" in pair:
            key, value = pair.split("=", 1)
            # Unescape IRC tag values
            value = (
                value.replace("\\:", ";")
                .replace("\\s", " ")
                .replace("\\\\", "\\")
                .replace("\\r", "\r")
                .replace("\\n", "\n")
            )
            tags[key] = value
        else:
            tags[pair] = ""

    return tags


def parse_irc_message(raw: str) -> dict:
    """Parse a raw IRC message into components.

    Returns dict with keys: tags, prefix, command, params, trailing
    """
    result: dict = {"tags": {}, "prefix": "", "command": "", "params": [], "trailing": ""}

    pos = 0

    if raw.startswith("@"):
        space_idx = raw.find(" ")
        if space_idx < 0:
            return result
        result["tags"] = parse_irc_tags(raw[:space_idx])
        pos = space_idx + 1

    if pos >= len(raw):
        return result

    if raw[pos] == ":":
        space_idx = raw.find(" ", pos)
        if space_idx < 0:
            return result
        result["prefix"] = raw[pos + 1 : space_idx]
        pos = space_idx + 1

    trailing_idx = raw.find(" :", pos)
    if trailing_idx >= 0:
        result["trailing"] = raw[trailing_idx + 2 :]
        remaining = raw[pos:trailing_idx]
    else:
        remaining = raw[pos:]

    parts = remaining.split(" ")
    result["command"] = parts[0]
    result["params"] = parts[1:] if len(parts) > 1 else []

    return result


def parse_badge_versions(badges_tag: str) -> dict[str, str]:
    """Parse a Twitch badges tag into an ordered name -> version mapping.

    Format: badge_name/version,badge_name/version
    """
    badges: dict[str, str] = {}
    if not badges_tag:
        return badges

    for badge_str in badges_tag.split(","):
        if "/" in badge_str:
            name, version = badge_str.split("/", 1)
            if name:
                badges[name] = version
        elif badge_str:
            badges[badge_str] = ""

    return badges


def subscription_months(tags: dict[str, str], badges: dict[str, str]) -> int | None:
    """Work out a chatter's subscription months from message tags.

    Checks the subscriber badge version, then badge-info, then the legacy
    subscriber flag (which only says "at least one month").
    """
    version = badges.get("subscriber")
    if version:
        try:
            return int(version)
        except ValueError:
            pass

    badge_info = parse_badge_versions(tags.get("badge-info", ""))
    months = badge_info.get("subscriber")
    if months:
        try:
            return int(months)
        except ValueError:
            pass

    if tags.get("subscriber") == "1":
        return 1
    return None


def _username(parsed: dict) -> str:
    tags = parsed["tags"]
    login = parsed["prefix"].split("!")[0] if "!" in parsed["prefix"] else ""
    return tags.get("display-name") or tags.get("login") or login or "unknown"


def privmsg_to_event(parsed: dict) -> AdapterEvent:
    """Map a parsed PRIVMSG to an adapter event."""
    tags = parsed["tags"]
    text = parsed["trailing"]
    channel = parsed["params"][0] if parsed["params"] else ""

    is_action = False
    if text.startswith("\x01ACTION ") and text.endswith("\x01"):
        is_action = True
        text = text[8:-1]

    badges = parse_badge_versions(tags.get("badges", ""))
    raw = {
        "channel": channel,
        "tags": tags,
        "badges": badges,
        "subscriptionMonths": subscription_months(tags, badges),
    }
    if is_action:
        raw["isAction"] = True

    return AdapterEvent(
        username=_username(parsed),
        message=text,
        badges=list(badges),
        color=tags.get("color") or None,
        raw=raw,
    )


def usernotice_to_event(parsed: dict) -> AdapterEvent:
    """Map a USERNOTICE (sub, resub, gift sub, raid, announcement) to an adapter event."""
    tags = parsed["tags"]
    user_text = parsed.get("trailing", "")
    system_msg = tags.get("system-msg", "")
    text = f"{system_msg} {user_text}".strip() if user_text else system_msg

    badges = parse_badge_versions(tags.get("badges", ""))
    return AdapterEvent(
        username=_username(parsed),
        message=text,
        badges=list(badges),
        color=tags.get("color") or None,
        raw={
            "channel": parsed["params"][0] if parsed["params"] else "",
            "tags": tags,
            "badges": badges,
            "subscriptionMonths": subscription_months(tags, badges),
            "noticeType": tags.get("msg-id", ""),
            "systemMessage": system_msg,
            "userMessage": user_text,
        },
    )


@dataclass
class IrcConnection:
    """An open IRC WebSocket and the session that owns it."""

    session: aiohttp.ClientSession
    ws: aiohttp.ClientWebSocketResponse


class TwitchAdapter(BaseChatAdapter[IrcConnection]):
    """Twitch IRC chat adapter.

    Joins the channel anonymously (read-only) over the IRC WebSocket endpoint
    and emits PRIVMSG and USERNOTICE events.
    """

    platform = Platform.TWITCH

    def __init__(
        self,
        channel: str,
        on_room_id: Callable[[str], None] | None = None,
        ws_url: str = TWITCH_IRC_WS_URL,
        **kwargs,
    ):
        self._channel = normalize_channel(channel)
        self._on_room_id = on_room_id
        self._ws_url = ws_url
        self._room_id = ""
        super().__init__(**kwargs)

    @property
    def channel(self) -> str:
        return self._channel

    def _status_context(self) -> dict:
        return {"channel": self._channel}

    def _connecting_message(self) -> str:
        return f"Connecting to Twitch IRC for #{self._channel}"

    def _connected_message(self) -> str:
        return f"Connected to Twitch IRC for #{self._channel}"

    async def _open(self) -> IrcConnection:
        session = aiohttp.ClientSession()
        try:
            ws = await session.ws_connect(self._ws_url, heartbeat=60)
            conn = IrcConnection(session=session, ws=ws)

            for cap in IRC_CAPS:
                await ws.send_str(f"CAP REQ :{cap}")

            nick = f"justinfan{int(time.time()) % 100000}"
            logger.info(f"Twitch IRC: connecting as {nick} to #{self._channel}")
            await ws.send_str(f"NICK {nick}")
            await self._wait_for_welcome(conn)
            await ws.send_str(f"JOIN #{self._channel}")
            return conn
        except (Exception, asyncio.CancelledError):
            await session.close()
            raise

    async def _wait_for_welcome(self, conn: IrcConnection) -> None:
        """Read until the server welcome (001), answering PINGs on the way."""
        deadline = time.monotonic() + WELCOME_TIMEOUT
        while True:
            remaining = deadline - time.monotonic()
            try:
                if remaining <= 0:
                    raise asyncio.TimeoutError
                msg = await conn.ws.receive(timeout=remaining)
            except asyncio.TimeoutError:
                raise ConnectionLost("Timed out waiting for Twitch IRC welcome") from None
            if msg.type != aiohttp.WSMsgType.TEXT:
                raise ConnectionLost(f"Twitch IRC closed during login ({msg.type.name})")
            for line in msg.data.split("\r\n"):
                if not line:
                    continue
                if line.startswith("PING"):
                    await conn.ws.send_str(f"PONG {line[5:]}")
                    continue
                if parse_irc_message(line)["command"] == "001":
                    return

    async def _listen(self, conn: IrcConnection) -> None:
        async for msg in conn.ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                for line in msg.data.split("\r\n"):
                    if line:
                        await self._handle_line(conn, line)
            elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                break

        raise ConnectionLost("Disconnected from Twitch IRC")

    async def _handle_line(self, conn: IrcConnection, raw: str) -> None:
        """Handle a single IRC line."""
        if raw.startswith("PING"):
            if not conn.ws.closed:
                await conn.ws.send_str(f"PONG {raw[5:]}")
            return
        self.handle_message(parse_irc_message(raw))

    def handle_message(self, parsed: dict) -> None:
        """Dispatch a parsed IRC message."""
        command = parsed["command"]
        try:
            if command == "PRIVMSG":
                self._emit(privmsg_to_event(parsed))
            elif command == "USERNOTICE":
                self._emit(usernotice_to_event(parsed))
            elif command == "ROOMSTATE":
                self._handle_roomstate(parsed)
            elif command == "RECONNECT":
                raise ConnectionLost("Twitch requested a reconnect")
            elif command == "NOTICE":
                self._handle_notice(parsed)
        except AdapterError:
            raise
        except Exception as e:
            logger.warning(f"Twitch IRC: dropping malformed {command}: {e}")

    def _handle_roomstate(self, parsed: dict) -> None:
        room_id = parsed["tags"].get("room-id", "")
        if not room_id or room_id == self._room_id:
            return
        self._room_id = room_id
        self._update_context(roomId=room_id)
        if self._on_room_id is not None:
            try:
                self._on_room_id(room_id)
            except Exception:
                logger.exception("Twitch: room id callback failed")

    def _handle_notice(self, parsed: dict) -> None:
        msg_id = parsed["tags"].get("msg-id", "")
        text = parsed.get("trailing", "")
        if msg_id in NOT_FOUND_NOTICES:
            raise StreamNotFound(f"Channel #{self._channel} unavailable: {text or msg_id}")
        logger.info(f"Twitch IRC notice ({msg_id or 'none'}): {text}")

    async def _close(self, conn: IrcConnection) -> None:
        if not conn.ws.closed:
            await conn.ws.close()
        if not conn.session.closed:
            await conn.session.close()

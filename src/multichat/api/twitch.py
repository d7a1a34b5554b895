"""Twitch Helix client for chat badge lookups."""

import asyncio
import logging
from typing import Any

import aiohttp

from .base import BaseApiClient, safe_json

logger = logging.getLogger(__name__)

# Public web client id, used when no client id is configured
DEFAULT_CLIENT_ID = "kimne78kx3ncx6brgo4mv6wki5h1ko"


def helix_badges_to_sets(data: Any) -> dict[str, dict]:
    """Convert a Helix chat/badges ``data`` list to the badge_sets form.

    Missing image sizes are filled in from the other sizes.
    """
    badge_sets: dict[str, dict] = {}
    if not isinstance(data, list):
        return badge_sets

    for badge in data:
        if not isinstance(badge, dict):
            continue
        set_id = badge.get("set_id")
        versions_in = badge.get("versions")
        if not set_id or not isinstance(versions_in, list):
            continue

        versions: dict[str, dict[str, str]] = {}
        for version in versions_in:
            if not isinstance(version, dict) or not version.get("id"):
                continue
            url_1x = version.get("image_url_1x") or ""
            url_2x = version.get("image_url_2x") or ""
            url_4x = version.get("image_url_4x") or ""
            versions[str(version["id"])] = {
                "image_url_1x": url_1x or url_2x or url_4x,
                "image_url_2x": url_2x or url_1x or url_4x,
                "image_url_4x": url_4x or url_2x or url_1x,
            }
        badge_sets[str(set_id)] = {"versions": versions}

    return badge_sets


class TwitchBadgeApi(BaseApiClient):
    """Fetches broadcaster ids and badge sets from Twitch.

    Helix calls need both a client id and an OAuth token; without a token
    every lookup returns None.
    """

    name = "Twitch"
    BASE_URL = "https://api.twitch.tv/helix"

    def __init__(
        self,
        client_id: str = "",
        oauth_token: str = "",
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__(session)
        self.client_id = client_id or DEFAULT_CLIENT_ID
        token = oauth_token.strip()
        if token.startswith("oauth:"):
            token = token[len("oauth:") :]
        self.oauth_token = token

    @property
    def authorized(self) -> bool:
        return bool(self.oauth_token)

    def _get_headers(self) -> dict[str, str]:
        """Get headers for API requests."""
        return {
            "Client-ID": self.client_id,
            "Authorization": f"Bearer {self.oauth_token}",
            "Accept": "application/json",
        }

    async def _get_helix(self, path: str, params: dict | None = None) -> dict | None:
        if not self.authorized:
            return None
        try:
            async with self.session.get(
                f"{self.BASE_URL}/{path}", headers=self._get_headers(), params=params
            ) as resp:
                if resp.status != 200:
                    log = logger.warning if self._is_retryable_status(resp.status) else logger.debug
                    log(f"Twitch Helix {path} returned {resp.status}")
                    return None
                data = await safe_json(resp)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Twitch Helix {path} failed: {e}")
            return None
        return data if isinstance(data, dict) else None

    async def get_broadcaster_id(self, login: str) -> str | None:
        """Look up a channel's user id via Helix."""
        data = await self._get_helix("users", {"login": login.lower()})
        users = data.get("data") if data else None
        if not users or not isinstance(users, list) or not isinstance(users[0], dict):
            return None
        user_id = users[0].get("id")
        if user_id:
            logger.info(f"Twitch: broadcaster id for {login} is {user_id}")
        return str(user_id) if user_id else None

    async def get_channel_badges(self, broadcaster_id: str) -> dict[str, dict] | None:
        """Get a channel's custom badge sets via Helix."""
        data = await self._get_helix("chat/badges", {"broadcaster_id": broadcaster_id})
        if data is None or not isinstance(data.get("data"), list):
            return None
        return helix_badges_to_sets(data["data"])

    async def get_global_badges(self) -> dict[str, dict] | None:
        """Get global badge sets via Helix."""
        data = await self._get_helix("chat/badges/global")
        if data is None or not isinstance(data.get("data"), list):
            return None
        return helix_badges_to_sets(data["data"])

"""YouTube live chat page backed by pytchat."""

import asyncio
import logging
from functools import partial

from .base import AdapterError, StreamNotFound

logger = logging.getLogger(__name__)

# pytchat errors meaning the video has no chat to read
NOT_FOUND_ERRORS = {"InvalidVideoIdException", "NoContents", "ChatDataFinished"}

# Shown as page text once pytchat reports the chat is no longer alive
OFFLINE_TEXT = "Live chat is unavailable"


def _author_badges(item) -> list[str]:
    """Badge names from a pytchat item's author flags."""
    author = getattr(item, "author", None)

    def flag(name: str) -> bool:
        return bool(getattr(item, name, False) or getattr(author, name, False))

    badges = []
    if flag("isChatOwner"):
        badges.append("owner")
    if flag("isChatModerator"):
        badges.append("moderator")
    if flag("isChatSponsor"):
        badges.append("member")
    if flag("isVerified"):
        badges.append("verified")
    return badges


def pytchat_item_to_dict(item) -> dict:
    """Map a pytchat chat item to the scraped item layout."""
    author = getattr(item, "author", None)
    username = getattr(author, "name", "") if author else getattr(item, "authorName", "")
    text = getattr(item, "message", "") or ""
    item_type = getattr(item, "type", "textMessage")

    # SuperChat/SuperSticker with no text gets the amount
    if not text and item_type in ("superChat", "superSticker"):
        text = getattr(item, "amountString", "") or f"[{item_type}]"

    result = {
        "id": getattr(item, "id", "") or "",
        "username": username or "",
        "message": text,
        "time": str(getattr(item, "timestamp", "") or ""),
        "badges": _author_badges(item),
    }
    if item_type != "textMessage":
        result["type"] = item_type
        result["amount"] = getattr(item, "amountString", "") or ""
    return result


class PytchatChatPage:
    """Live chat read through pytchat's continuation polling.

    pytchat is blocking, so every call runs in the default executor.
    It follows continuations itself, so ``advance`` has nothing to do.
    """

    def __init__(self):
        self._chat = None
        self._video_id = ""

    async def _create(self) -> None:
        try:
            import pytchat
        except ImportError as e:
            raise AdapterError(
                "pytchat library not installed. Install with: pip install pytchat"
            ) from e

        loop = asyncio.get_running_loop()
        try:
            self._chat = await loop.run_in_executor(
                None, partial(pytchat.create, video_id=self._video_id, interruptable=False)
            )
        except Exception as e:
            if type(e).__name__ in NOT_FOUND_ERRORS:
                raise StreamNotFound(f"No live chat for video {self._video_id}: {e}") from e
            raise

    def _require_chat(self):
        if self._chat is None:
            raise AdapterError("YouTube chat is not open")
        return self._chat

    async def open(self, video_id: str) -> None:
        self._video_id = video_id
        logger.debug(f"Opening YouTube chat for {video_id}")
        await self._create()

    async def read_items(self) -> list[dict]:
        chat = self._require_chat()
        if not chat.is_alive():
            return []
        loop = asyncio.get_running_loop()
        chat_data = await loop.run_in_executor(None, chat.get)
        # get() returns [] when the stream is no longer alive
        if not chat_data or not hasattr(chat_data, "items"):
            return []
        return [pytchat_item_to_dict(item) for item in chat_data.items]

    async def advance(self) -> None:
        return None

    async def body_text(self) -> str:
        chat = self._require_chat()
        return "" if chat.is_alive() else OFFLINE_TEXT

    async def reload(self) -> None:
        await self.close()
        await self._create()

    async def close(self) -> None:
        chat, self._chat = self._chat, None
        if chat is None:
            return
        try:
            chat.terminate()
        except Exception as e:
            logger.debug(f"Error terminating pytchat: {e}")

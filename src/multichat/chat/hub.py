"""Broadcast hub fanning chat, status and badge updates out to display clients."""

import asyncio
import itertools
import json
import logging
from collections.abc import Callable
from typing import Any

import aiohttp
from aiohttp import web

from ..core.models import AdapterState, AdapterStatus, ChatMessage, Platform
from .badges import BadgeCatalog

logger = logging.getLogger(__name__)

CONNECTION_MESSAGE = "Connected to multichat server"

StatusProvider = Callable[[], dict[Platform, AdapterStatus]]
BadgeProvider = Callable[[], BadgeCatalog | None]


def chat_envelope(message: ChatMessage) -> dict[str, Any]:
    return {"type": "chat", "data": message.to_dict()}


def status_envelope(platform: Platform, status: AdapterStatus) -> dict[str, Any]:
    return {"type": f"{platform.value}-status", "data": status.to_payload()}


def badges_envelope(catalog: BadgeCatalog) -> dict[str, Any]:
    return {"type": "badges", "data": catalog.to_payload()}


def connection_envelope(message: str = CONNECTION_MESSAGE) -> dict[str, Any]:
    return {"type": "connection", "message": message}


def encode(envelope: dict[str, Any]) -> str | None:
    """Serialize an envelope, or None if it can't be encoded."""
    try:
        return json.dumps(envelope, default=str)
    except (TypeError, ValueError) as e:
        logger.warning(f"Dropping unserializable {envelope.get('type')} event: {e}")
        return None


class BroadcastClient:
    """One connected display client with its own outbound queue and writer task.

    The hub only ever enqueues; the writer drains the queue onto the socket,
    so a slow client delays nobody but itself.
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        ws,
        queue_size: int,
        on_failed: Callable[["BroadcastClient", str], None],
        greeting: list[str] | None = None,
    ):
        self.id = next(self._ids)
        self.ws = ws
        greeting = greeting or []
        # Greeting frames never count against the live-event limit
        maxsize = max(queue_size, 1) + len(greeting)
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        for frame in greeting:
            self._queue.put_nowait(frame)
        self._on_failed = on_failed
        self._writer: asyncio.Task | None = None

    def __repr__(self) -> str:
        return f"<BroadcastClient #{self.id}>"

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, frame: str) -> bool:
        """Queue a frame; returns False if the client has fallen too far behind."""
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())

    async def _write_loop(self) -> None:
        try:
            while True:
                frame = await self._queue.get()
                await self.ws.send_str(frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._on_failed(self, f"send failed: {e}")

    async def close(self, timeout: float = 2.0) -> None:
        writer, self._writer = self._writer, None
        if writer is not None and not writer.done() and writer is not asyncio.current_task():
            writer.cancel()
            await asyncio.wait({writer}, timeout=timeout)
        if not getattr(self.ws, "closed", False):
            try:
                await asyncio.wait_for(self.ws.close(), timeout=timeout)
            except (asyncio.TimeoutError, ConnectionError, RuntimeError) as e:
                logger.debug(f"{self!r}: error closing socket: {e}")


class BroadcastHub:
    """Live set of display clients.

    ``broadcast`` serializes each event once and queues it on every client.
    A client whose send fails or whose queue overflows is dropped and logged
    without affecting anyone else.
    """

    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._clients: set[BroadcastClient] = set()
        self._closing: set[asyncio.Task] = set()
        self._status_provider: StatusProvider | None = None
        self._badge_provider: BadgeProvider | None = None

    def set_snapshot_providers(
        self,
        statuses: StatusProvider | None = None,
        badges: BadgeProvider | None = None,
    ) -> None:
        """Set where new clients' current-state snapshot comes from."""
        self._status_provider = statuses
        self._badge_provider = badges

    @property
    def clients(self) -> frozenset[BroadcastClient]:
        return frozenset(self._clients)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    # -- client lifecycle ----------------------------------------------------

    def register(self, ws) -> BroadcastClient:
        """Add a client, queueing its greeting ahead of any live event."""
        frames = [frame for frame in map(encode, self.greeting()) if frame is not None]
        client = BroadcastClient(ws, self._queue_size, self._client_failed, greeting=frames)
        self._clients.add(client)
        client.start()
        logger.info(f"Display client {client.id} connected ({len(self._clients)} total)")
        return client

    async def unregister(self, client: BroadcastClient) -> None:
        if client in self._clients:
            self._clients.discard(client)
            logger.info(f"Display client {client.id} disconnected ({len(self._clients)} total)")
        await client.close()

    def greeting(self) -> list[dict[str, Any]]:
        """Envelopes a newly connected client receives: ack, badges, statuses."""
        envelopes = [connection_envelope()]

        catalog = self._snapshot(self._badge_provider, "badge")
        if catalog is not None:
            envelopes.append(badges_envelope(catalog))

        statuses = self._snapshot(self._status_provider, "status") or {}
        for platform in Platform:
            status = statuses.get(platform) or AdapterStatus(AdapterState.STOPPED, "Not started")
            envelopes.append(status_envelope(platform, status))
        return envelopes

    @staticmethod
    def _snapshot(provider, what: str):
        if provider is None:
            return None
        try:
            return provider()
        except Exception:
            logger.exception(f"Failed to read {what} snapshot for new client")
            return None

    async def serve(self, ws: web.WebSocketResponse) -> None:
        """Register a prepared WebSocket and hold it until the client goes away."""
        client = self.register(ws)
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.ERROR:
                    logger.debug(f"{client!r}: socket error {ws.exception()}")
                    break
                # Display clients are receive-only; anything they send is ignored
        finally:
            await self.unregister(client)

    def _client_failed(self, client: BroadcastClient, reason: str) -> None:
        if client not in self._clients:
            return
        self._clients.discard(client)
        logger.warning(f"Dropping display client {client.id}: {reason}")
        task = asyncio.create_task(client.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    # -- fan-out -------------------------------------------------------------

    def broadcast(self, envelope: dict[str, Any]) -> int:
        """Queue one event on every client; returns how many accepted it."""
        frame = encode(envelope)
        if frame is None:
            return 0

        delivered = 0
        for client in list(self._clients):
            if client.offer(frame):
                delivered += 1
            else:
                self._client_failed(client, f"send queue full ({client.pending} pending)")
        return delivered

    def broadcast_chat(self, message: ChatMessage) -> int:
        return self.broadcast(chat_envelope(message))

    def broadcast_status(self, platform: Platform, status: AdapterStatus) -> int:
        return self.broadcast(status_envelope(platform, status))

    def broadcast_badges(self, catalog: BadgeCatalog) -> int:
        return self.broadcast(badges_envelope(catalog))

    async def close(self) -> None:
        """Disconnect every client."""
        clients = list(self._clients)
        self._clients.clear()
        await asyncio.gather(*(client.close() for client in clients), return_exceptions=True)
        if self._closing:
            await asyncio.wait(set(self._closing), timeout=2.0)

"""Base platform adapter with lifecycle state machine and reconnect backoff."""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, Generic, TypeVar

from ...core.models import (
    AdapterEvent,
    AdapterState,
    AdapterStatus,
    Platform,
    RetryPolicy,
    default_retry_policy,
)

logger = logging.getLogger(__name__)

MessageCallback = Callable[[AdapterEvent], None]
StatusCallback = Callable[[AdapterStatus], None]

ConnT = TypeVar("ConnT")


class AdapterError(Exception):
    """Base class for adapter failures."""


class ConnectionLost(AdapterError):
    """The transport dropped; reported as ``disconnected`` and retried with backoff."""


class StreamNotFound(AdapterError):
    """The target stream/room doesn't exist or isn't live."""


class StreamEnded(AdapterError):
    """The stream ended normally."""


class BaseChatAdapter(ABC, Generic[ConnT]):
    """Abstract base class for platform chat adapters.

    Subclasses implement three coroutines around a per-attempt connection
    object: ``_open()`` establishes it, ``_listen(conn)`` pumps events until the
    connection ends, and ``_close(conn)`` releases it. The base class owns the
    state machine, retry timer and callback isolation.

    Every connect attempt gets a new generation number. ``stop()`` bumps the
    generation, so anything still running on behalf of an older attempt
    notices and backs out instead of touching the current state.
    """

    platform: Platform

    def __init__(
        self,
        on_message: MessageCallback | None = None,
        on_status_change: StatusCallback | None = None,
        policy: RetryPolicy | None = None,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self._on_message = on_message
        self._on_status_change = on_status_change
        self.policy = policy or default_retry_policy(self.platform)
        self._rand = rand
        self._status = AdapterStatus(context=self._status_context())
        self._generation = 0
        self._failures = 0  # Consecutive transport failures
        self._not_found = 0  # Consecutive not-found attempts
        self._conn: ConnT | None = None
        self._open_task: asyncio.Task | None = None
        self._listen_task: asyncio.Task | None = None
        self._retry_handle: asyncio.TimerHandle | None = None
        self._background: set[asyncio.Task] = set()
        self._stopping: list[asyncio.Event] = []  # One per in-flight stop()

    # -- public contract -----------------------------------------------------

    @property
    def name(self) -> str:
        return self.platform.value

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def get_status(self) -> AdapterStatus:
        """Current status snapshot."""
        return self._status

    def is_running(self) -> bool:
        """Whether the adapter is connected or working towards a connection."""
        return self._status.is_running

    @property
    def retry_pending(self) -> bool:
        return self._retry_handle is not None

    async def start(self) -> bool:
        """Start the adapter.

        Returns True once connected. Calling this while already connecting or
        connected is a no-op that reports the current state. A pending retry is
        cancelled and replaced by an immediate attempt.
        """
        while self._stopping:
            await self._stopping[-1].wait()

        state = self._status.state
        session_live = self._listen_task is not None and not self._listen_task.done()
        if state in (AdapterState.CONNECTING, AdapterState.CONNECTED) or session_live:
            logger.debug(f"{self.name}: start ignored, already {state.value}")
            return state is AdapterState.CONNECTED

        self._cancel_retry()
        self._failures = 0
        self._not_found = 0
        return await self._attempt()

    async def stop(self) -> None:
        """Stop the adapter, cancelling retries and closing the connection.

        A start() issued while this is still closing waits for it to finish.
        """
        done = asyncio.Event()
        self._stopping.append(done)
        self._generation += 1
        self._cancel_retry()

        tasks = [
            task
            for task in (self._open_task, self._listen_task, *self._background)
            if task is not None and not task.done() and task is not asyncio.current_task()
        ]
        for task in tasks:
            task.cancel()

        try:
            conn, self._conn = self._conn, None
            if conn is not None:
                await self._close_quietly(conn)
            if tasks:
                await asyncio.wait(tasks, timeout=self.policy.close_timeout)

            self._open_task = None
            self._listen_task = None
            self._set_status(AdapterState.STOPPED, "Stopped")
        finally:
            self._stopping.remove(done)
            done.set()

    # -- subclass hooks ------------------------------------------------------

    @abstractmethod
    async def _open(self) -> ConnT:
        """Establish a connection, raising on failure.

        Implementations must release anything they allocated if they raise or
        are cancelled part way through.
        """

    @abstractmethod
    async def _listen(self, conn: ConnT) -> None:
        """Pump events from ``conn`` until it ends.

        Returning normally means the stream ended. Raise ``ConnectionLost``,
        ``StreamNotFound`` or ``StreamEnded`` to classify the ending; any other
        exception counts as a transport error.
        """

    @abstractmethod
    async def _close(self, conn: ConnT) -> None:
        """Release ``conn``."""

    def _status_context(self) -> dict[str, Any]:
        """Platform context included with every status (channel name, ...)."""
        return {}

    def _connecting_message(self) -> str:
        return f"Connecting to {self.name}"

    def _connected_message(self) -> str:
        return f"Connected to {self.name}"

    # -- state machine -------------------------------------------------------

    async def _attempt(self) -> bool:
        """Run one connect attempt and, on success, spawn the listen loop."""
        self._generation += 1
        generation = self._generation
        self._set_status(AdapterState.CONNECTING, self._connecting_message())

        task = asyncio.create_task(self._open_with_timeout())
        self._open_task = task
        await asyncio.wait({task})
        if self._open_task is task:
            self._open_task = None

        if task.cancelled():
            return False
        exc = task.exception()
        if generation != self._generation:
            # stop() ran while we were connecting
            if exc is None:
                await self._close_quietly(task.result())
            return False
        if exc is not None:
            self._handle_ending(exc)
            return False

        conn = task.result()
        self._conn = conn
        self._failures = 0
        self._set_status(AdapterState.CONNECTED, self._connected_message())
        self._listen_task = asyncio.create_task(self._run_session(generation, conn))
        return True

    async def _open_with_timeout(self) -> ConnT:
        try:
            return await asyncio.wait_for(self._open(), timeout=self.policy.connect_timeout)
        except asyncio.TimeoutError:
            raise ConnectionLost(
                f"Timed out connecting after {self.policy.connect_timeout:.0f}s"
            ) from None

    async def _run_session(self, generation: int, conn: ConnT) -> None:
        try:
            await self._listen(conn)
            reason: Exception = StreamEnded("Stream ended")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = e

        if generation != self._generation:
            return
        if self._conn is conn:
            self._conn = None
        await self._close_quietly(conn)
        if generation != self._generation:
            return
        self._listen_task = None
        self._handle_ending(reason)

    def _handle_ending(self, exc: Exception) -> None:
        """Classify why a connection attempt or session ended and schedule a retry."""
        policy = self.policy
        message = str(exc) or exc.__class__.__name__

        if isinstance(exc, StreamNotFound):
            self._not_found += 1
            if self._not_found > policy.max_not_found:
                logger.warning(
                    f"{self.name}: not found {self._not_found} times in a row, stopping: {message}"
                )
                self._set_status(AdapterState.STOPPED, message)
                return
            self._set_status(AdapterState.DISCONNECTED, message)
            self._schedule_retry(policy.not_found_delay, message)
            return

        # Anything other than not-found means the target exists
        self._not_found = 0

        if isinstance(exc, StreamEnded):
            self._set_status(AdapterState.DISCONNECTED, message)
            if policy.retry_on_end:
                self._schedule_retry(policy.ended_delay, message)
            else:
                self._set_status(AdapterState.STOPPED, message)
            return

        if isinstance(exc, ConnectionLost):
            self._set_status(AdapterState.DISCONNECTED, message)
        else:
            logger.error(f"{self.name}: adapter error: {exc!r}")
            self._set_status(AdapterState.ERROR, message)

        self._failures += 1
        if policy.max_failures and self._failures > policy.max_failures:
            logger.error(
                f"{self.name}: giving up after {self._failures} consecutive failures"
            )
            self._set_status(
                AdapterState.ERROR,
                f"Giving up after {self._failures} consecutive failures: {message}",
            )
            return
        self._schedule_retry(self._next_backoff(), message)

    def _next_backoff(self) -> float:
        """Jittered backoff delay for the current failure count."""
        delay = self.policy.base_delay_for(self._failures - 1)
        return self.policy.apply_jitter(delay, self._rand())

    def _schedule_retry(self, delay: float, reason: str) -> None:
        self._cancel_retry()
        generation = self._generation
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(delay, self._fire_retry, generation)
        logger.info(f"{self.name}: reconnecting in {delay:.1f}s ({reason})")
        self._set_status(AdapterState.RETRYING, f"{reason}; retrying in {delay:.0f}s")

    def _fire_retry(self, generation: int) -> None:
        self._retry_handle = None
        if generation != self._generation:
            return
        task = asyncio.create_task(self._attempt())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    async def _close_quietly(self, conn: ConnT) -> None:
        try:
            await asyncio.wait_for(self._close(conn), timeout=self.policy.close_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{self.name}: timed out closing connection")
        except Exception as e:
            logger.debug(f"{self.name}: error during close: {e}")

    # -- callbacks -----------------------------------------------------------

    def _set_status(self, state: AdapterState, message: str | None = None) -> None:
        """Update the status and notify the listener when it changed."""
        new_status = self._status.with_state(state, message)
        if new_status == self._status:
            return
        self._status = new_status
        logger.info(f"{self.name}: {state.value}" + (f" - {message}" if message else ""))
        if self._on_status_change is None:
            return
        try:
            self._on_status_change(new_status)
        except Exception:
            logger.exception(f"{self.name}: status callback failed")

    def _update_context(self, **context: Any) -> None:
        """Merge platform context into the status without a state change."""
        merged = {**self._status.context, **context}
        if merged == self._status.context:
            return
        self._status = AdapterStatus(self._status.state, self._status.message, merged)
        if self._on_status_change is None:
            return
        try:
            self._on_status_change(self._status)
        except Exception:
            logger.exception(f"{self.name}: status callback failed")

    def _emit(self, event: AdapterEvent) -> None:
        """Deliver one event to the message callback, isolating failures."""
        self._not_found = 0
        if self._on_message is None:
            return
        try:
            self._on_message(event)
        except Exception:
            logger.exception(f"{self.name}: message callback failed")

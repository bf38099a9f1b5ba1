"""Lazily opened persistent push connection with outbound queueing."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import Any

import aiohttp

from .errors import MalformedMessage

logger = logging.getLogger(__name__)

QUEUE_WARN_SIZE = 5


class ConnectionState(str, Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"


class QueuePolicy(str, Enum):
    """What happens to queued-but-unsent messages when the connection closes.

    RETAIN keeps them for the next successful open, so a subscribe issued just
    before a drop still goes out after reconnecting. DISCARD drops them.
    """

    RETAIN = "retain"
    DISCARD = "discard"


MessageHandler = Callable[[Any], None]


class PushConnection:
    """One persistent WebSocket connection to a push endpoint.

    States: CLOSED -> CONNECTING on the first send(), CONNECTING -> OPEN once
    the socket is up (the queue is drained in FIFO order, then the idle timer
    is armed), and back to CLOSED on remote close, error, idle expiry, or
    close(). Every successful transmission pushes the idle deadline back;
    inbound traffic does not.

    Inbound frames are JSON-decoded and handed to ``on_message``. A frame that
    fails to decode, or that the handler rejects with MalformedMessage, is
    logged and skipped; the connection stays up.
    """

    def __init__(
        self,
        url: str,
        on_message: MessageHandler,
        idle_timeout: float = 0.0,
        queue_policy: QueuePolicy = QueuePolicy.RETAIN,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.url = url
        self._on_message = on_message
        self._idle_timeout = idle_timeout  # 0 disables auto-close
        self._queue_policy = queue_policy
        self._session = session
        self._owns_session = session is None

        self._state = ConnectionState.CLOSED
        self._queue: deque[Any] = deque()
        self._draining = False
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._task: asyncio.Task | None = None
        self._idle_handle: asyncio.TimerHandle | None = None
        self._idle_close_task: asyncio.Task | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def queued(self) -> list[Any]:
        """Messages waiting for the connection to open, oldest first."""
        return list(self._queue)

    @property
    def queue_policy(self) -> QueuePolicy:
        return self._queue_policy

    async def send(self, message: Any) -> None:
        """Transmit ``message`` now if open, otherwise queue it and open if needed.

        Never waits for the connection to be established.
        """
        if self._state is not ConnectionState.OPEN or self._draining:
            self._queue.append(message)
            if len(self._queue) > QUEUE_WARN_SIZE:
                logger.warning("Push queue size is now %d", len(self._queue))
            if self._state is ConnectionState.CLOSED:
                self._open()
            return

        try:
            await self._transmit(message)
        except (aiohttp.ClientError, ConnectionError) as e:
            logger.warning("Push send failed (%s), message queued for the next connection", e)
            self._queue.append(message)

    async def close(self) -> None:
        """Tear the connection down. Safe to call in any state."""
        self._cancel_idle_timer()
        task, self._task = self._task, None
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close()
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._set_closed()

    async def shutdown(self) -> None:
        """close() and release the HTTP session if this connection created it."""
        await self.close()
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        if self._owns_session:
            self._session = None

    # --- Internal ---

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _open(self) -> None:
        self._state = ConnectionState.CONNECTING
        self._task = asyncio.get_running_loop().create_task(self._run(), name="push-connection")

    async def _run(self) -> None:
        """Connect, drain the queue, then read frames until the socket closes."""
        logger.info("Push connecting to %s", self.url)
        start = time.perf_counter()
        try:
            ws = await self._get_session().ws_connect(self.url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Push connection to %s failed: %s", self.url, e)
            self._finish()
            return

        self._ws = ws
        self._state = ConnectionState.OPEN
        logger.info(
            "Push connected after %.1f ms, sending %d queued messages",
            (time.perf_counter() - start) * 1000,
            len(self._queue),
        )
        try:
            await self._drain()
            self._arm_idle_timer()
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error("Push connection error: %s", ws.exception())
                    break
        except (aiohttp.ClientError, ConnectionError) as e:
            logger.error("Push connection lost: %s", e)
        finally:
            if not ws.closed:
                await ws.close()
            self._finish()

    async def _drain(self) -> None:
        # Messages sent while draining land behind the existing queue
        self._draining = True
        try:
            while self._queue:
                await self._transmit(self._queue[0], rearm=False)
                self._queue.popleft()
        finally:
            self._draining = False

    async def _transmit(self, message: Any, rearm: bool = True) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise ConnectionError("push connection is not open")
        text = json.dumps(message)
        logger.debug("Push sending: %s", text)
        await ws.send_str(text)
        if rearm:
            self._arm_idle_timer()

    def _dispatch(self, raw: str) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Malformed push frame (invalid JSON): %r", raw)
            return
        try:
            self._on_message(data)
        except MalformedMessage as e:
            logger.warning("Malformed push frame: %s, payload %r", e, raw)
        except Exception:
            logger.exception("Push message handler failed for frame %r", raw)

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        if self._idle_timeout > 0:
            self._idle_handle = asyncio.get_running_loop().call_later(
                self._idle_timeout, self._on_idle
            )

    def _cancel_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _on_idle(self) -> None:
        self._idle_handle = None
        logger.info("Push connection idle for %.1fs, closing", self._idle_timeout)
        self._idle_close_task = asyncio.ensure_future(self.close())

    def _finish(self) -> None:
        # A stale task must not clobber a connection opened after close()
        if self._task is None or self._task is asyncio.current_task():
            self._task = None
            self._set_closed()

    def _set_closed(self) -> None:
        if self._state is ConnectionState.CLOSED:
            return
        self._cancel_idle_timer()
        self._ws = None
        self._state = ConnectionState.CLOSED
        if self._queue and self._queue_policy is QueuePolicy.DISCARD:
            logger.info("Push disconnected, discarding %d queued messages", len(self._queue))
            self._queue.clear()
        elif self._queue:
            logger.info("Push disconnected, %d messages stay queued", len(self._queue))
        else:
            logger.info("Push disconnected from %s", self.url)

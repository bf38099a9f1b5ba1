"""SSE streaming endpoint for mirror events."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from .interface import MarketObserver
from .models import Diff, OrderBook
from .registry import MarketRegistry

logger = logging.getLogger(__name__)


def reset_event(registry: MarketRegistry) -> dict:
    return {"type": "reset", "markets": [m.to_dict() for m in registry.sorted_by_label()]}


class EventHub(MarketObserver):
    """MarketObserver that fans events out to every connected SSE client.

    Each client gets a bounded queue; a client too slow to keep up loses its
    oldest events rather than stalling the mirror.
    """

    def __init__(self, max_queue: int = 100) -> None:
        self._max_queue = max_queue
        self._subscribers: set[asyncio.Queue] = set()

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def __len__(self) -> int:
        return len(self._subscribers)

    def on_registry_reset(self, registry: MarketRegistry) -> None:
        self._publish(reset_event(registry))

    def on_diff_applied(self, registry: MarketRegistry, diff: Diff) -> None:
        event = {"type": "diff", **diff.to_dict()}
        # Direction of each price move, for up/down highlighting
        event["directions"] = {
            mid: fields["last"].direction for mid, fields in diff.changes.items() if "last" in fields
        }
        self._publish(event)

    def on_books_received(self, books: OrderBook) -> None:
        self._publish({"type": "books", **books.to_dict()})

    def _publish(self, event: dict) -> None:
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # Drop oldest, put newest
                queue.get_nowait()
                queue.put_nowait(event)


def create_stream_router(mirror, hub: EventHub) -> APIRouter:
    """Create the market routes with references to the mirror and its event hub.

    This factory pattern lets us inject both without globals.
    """
    router = APIRouter(prefix="/api", tags=["markets"])

    @router.get("/markets")
    async def list_markets() -> dict:
        """Current registry contents, sorted by label."""
        return {
            "ready": mirror.registry.ready,
            "markets": [m.to_dict() for m in mirror.registry.sorted_by_label()],
        }

    @router.get("/stream/markets")
    async def stream_markets(request: Request) -> StreamingResponse:
        """SSE endpoint for mirror events.

        The client connects with EventSource and receives events in the format:

            data: {"type": "diff", "changes": {"148": {"last": ["0.05", "0.06"]}}, ...}

        A "reset" event with the full registry comes first when markets are
        already loaded, so late joiners need no separate snapshot request.
        """
        return StreamingResponse(
            _generate_events(mirror, hub, request),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",  # Disable nginx buffering if proxied
            },
        )

    return router


def _format_event(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


async def _generate_events(
    mirror,
    hub: EventHub,
    request: Request,
    poll_interval: float = 0.5,
) -> AsyncGenerator[str, None]:
    """Async generator that yields SSE-formatted mirror events.

    Stops when the client disconnects (checked at least every `poll_interval`).
    """
    # Tell the client to retry after 1 second if the connection drops
    yield "retry: 1000\n\n"

    queue = hub.subscribe()
    client_ip = request.client.host if request.client else "unknown"
    logger.info("SSE client connected: %s", client_ip)

    try:
        if mirror.registry.ready:
            yield _format_event(reset_event(mirror.registry))

        while True:
            if await request.is_disconnected():
                logger.info("SSE client disconnected: %s", client_ip)
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=poll_interval)
            except asyncio.TimeoutError:
                continue
            yield _format_event(event)
    finally:
        hub.unsubscribe(queue)

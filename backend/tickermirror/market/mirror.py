"""MarketMirror: the coordinator that owns all mirror state."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import aiohttp

from .config import MirrorSettings
from .errors import MalformedMessage, MirrorError
from .frames import (
    Channel,
    Heartbeat,
    SubscriptionAck,
    TickerRecord,
    TickerUpdate,
    decode_frame,
)
from .interface import MarketObserver
from .models import Diff, OrderBook
from .push import PushConnection
from .registry import MarketRegistry, compute_http_diff, compute_ws_diff, create_markets
from .request_client import Endpoint, RequestClient
from .scheduler import UpdateLoop

logger = logging.getLogger(__name__)


@dataclass
class PushStats:
    """Counters for push traffic, logged every so often rather than per event."""

    heartbeats: int = 0
    price_changes: int = 0
    price_unchanged: int = 0

    def record_heartbeat(self) -> None:
        self.heartbeats += 1
        if self.heartbeats % 10 == 0:
            logger.debug("Push heartbeats: %d", self.heartbeats)

    def record_price(self, previous: str, last: str) -> None:
        if previous == last:
            self.price_unchanged += 1
            if self.price_unchanged % 400 == 0:
                logger.debug("Push ticker price unchanged: %d", self.price_unchanged)
        else:
            self.price_changes += 1
            if self.price_changes % 40 == 0:
                logger.debug("Push ticker price changes: %d", self.price_changes)


class MarketMirror:
    """Keeps a local MarketRegistry in sync with the exchange.

    Two sources feed the registry: the ticker snapshot, polled by
    ``markets_loop``, and ticker push updates arriving over ``push`` once
    connect() has subscribed. Both go through the same diff-and-apply path, and
    whichever settles last wins a conflicting write.

    Order books for the selected market are polled separately by
    ``books_loop``. Observers are told about every reset, applied diff, and
    received book.
    """

    def __init__(
        self,
        settings: MirrorSettings | None = None,
        observers: Iterable[MarketObserver] = (),
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.settings = settings or MirrorSettings()
        self.registry = MarketRegistry()
        self.stats = PushStats()
        self.books: OrderBook | None = None
        self.selected_market_id: int | None = None
        self.ticker_subscribed = False
        self._observers: list[MarketObserver] = list(observers)

        self._client = RequestClient(session=session, timeout=self.settings.request_timeout)
        self.ticker_endpoint = Endpoint("ticker", self.settings.ticker_url)
        self.order_book_endpoint = Endpoint("order-book", self.settings.order_book_url)
        self.push = PushConnection(
            self.settings.push_url,
            self._on_push_message,
            idle_timeout=self.settings.push_idle_timeout,
            queue_policy=self.settings.push_queue_policy,
            session=session,
        )
        self.markets_loop = UpdateLoop(
            "markets",
            self.fetch_markets,
            self.settings.markets_interval,
            cancel=lambda: self._client.cancel(self.ticker_endpoint),
        )
        self.books_loop = UpdateLoop(
            "books",
            self.update_selected_books,
            self.settings.books_interval,
            cancel=lambda: self._client.cancel(self.order_book_endpoint),
        )

    # --- Observers ---

    def add_observer(self, observer: MarketObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def remove_observer(self, observer: MarketObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _notify(self, event: str, *args: Any) -> None:
        for observer in list(self._observers):
            try:
                getattr(observer, event)(*args)
            except Exception:
                logger.exception("Observer %r failed handling %s", observer, event)

    # --- Markets ---

    async def fetch_markets(self) -> MarketRegistry:
        """Fetch one ticker snapshot and fold it into the registry.

        The first successful fetch builds the registry; later ones diff
        against it.
        """
        snapshot = await self._client.request(self.ticker_endpoint)
        if not isinstance(snapshot, dict):
            raise MalformedMessage("ticker response is not an object", snapshot)
        if not self.registry.ready:
            self.registry.reset(create_markets(snapshot))
            self._notify("on_registry_reset", self.registry)
        else:
            self._apply(compute_http_diff(self.registry, snapshot))
        return self.registry

    def _apply(self, diff: Diff | None) -> Diff | None:
        if diff is None:
            return None
        self.registry.apply_diff(diff)
        self._notify("on_diff_applied", self.registry, diff)
        return diff

    # --- Order books ---

    def select_market(self, market_id: int) -> None:
        if market_id not in self.registry:
            raise KeyError(f"unknown market id {market_id}")
        self.selected_market_id = market_id
        logger.info("Selected market %s", self.registry.get(market_id).label)

    async def fetch_books(self, market_id: int | None = None, depth: int | None = None) -> OrderBook:
        """Fetch the order book of ``market_id`` (default: the selected market)."""
        if market_id is None:
            market_id = self.selected_market_id
        market = self.registry.get(market_id) if market_id is not None else None
        if market is None:
            raise KeyError(f"unknown market id {market_id}")
        depth = depth or self.settings.book_depth
        logger.debug("Fetching book for %s (%d), depth %d", market.pair, market.id, depth)
        payload = await self._client.request(self.order_book_endpoint, pair=market.pair, depth=depth)
        self.books = OrderBook.from_response(market, payload)
        self._notify("on_books_received", self.books)
        return self.books

    async def update_selected_books(self) -> OrderBook | None:
        if self.selected_market_id is None:
            logger.debug("Skipping books update until a market is selected")
            return None
        return await self.fetch_books(self.selected_market_id)

    # --- Auto-update ---

    def set_markets_autoupdate(self, enabled: bool) -> None:
        if enabled:
            self.markets_loop.start()
        else:
            self.markets_loop.stop()

    def set_books_autoupdate(self, enabled: bool) -> None:
        if enabled:
            self.books_loop.start()
        else:
            self.books_loop.stop()

    def set_autoupdate(self, enabled: bool) -> None:
        self.set_markets_autoupdate(enabled)
        self.set_books_autoupdate(enabled)

    # --- Push ---

    async def connect(self) -> bool:
        """Subscribe to ticker pushes, loading the markets first if needed.

        Returns False, without subscribing, when the first snapshot fails:
        updates for an empty registry would only produce placeholders.
        """
        if self.registry.ready:
            logger.info("Reusing existing markets data")
        else:
            logger.info("Fetching markets data for the first time")
            try:
                await self.fetch_markets()
            except MirrorError as e:
                logger.warning("Not subscribing to ticker, markets fetch failed: %s", e)
                return False
        await self.subscribe_ticker()
        return True

    async def disconnect(self) -> None:
        await self.push.close()
        self._client.cancel(self.ticker_endpoint)
        self.ticker_subscribed = False

    async def subscribe_ticker(self) -> None:
        await self.push.send({"command": "subscribe", "channel": int(Channel.TICKER)})

    async def unsubscribe_ticker(self) -> None:
        await self.push.send({"command": "unsubscribe", "channel": int(Channel.TICKER)})

    def _on_push_message(self, data: Any) -> None:
        frame = decode_frame(data)
        if isinstance(frame, Heartbeat):
            self.stats.record_heartbeat()
        elif isinstance(frame, SubscriptionAck):
            if frame.channel == Channel.TICKER:
                self.ticker_subscribed = frame.subscribed
            logger.info(
                "Push %s ack for channel %d",
                "subscription" if frame.subscribed else "unsubscription",
                frame.channel,
            )
        elif isinstance(frame, TickerUpdate):
            self._merge_ticker(frame.records)
        else:
            logger.warning("Received data we didn't subscribe for: %r", data)

    def _merge_ticker(self, records: tuple[TickerRecord, ...]) -> None:
        if not self.registry.ready:
            logger.debug("Ignoring ticker push until the markets snapshot is loaded")
            return
        if len(records) > 1:
            logger.debug("Got %d ticker records in one frame", len(records))
        for record in records:
            market = self.registry.get(record.market_id)
            if market is not None:
                self.stats.record_price(market.last, record.last)
        self._apply(compute_ws_diff(self.registry, records))

    async def aclose(self) -> None:
        """Stop both loops and release every connection."""
        self.set_autoupdate(False)
        await self.markets_loop.join()
        await self.books_loop.join()
        await self.push.shutdown()
        await self._client.close()

"""GBM-based exchange simulator speaking the live exchange's wire formats.

Run standalone and point the mirror at it:

    python -m tickermirror.market.simulator --port 8080
    MIRROR_EXCHANGE_URL=http://127.0.0.1:8080 ...
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import math
import random

import numpy as np
from aiohttp import WSMsgType, web

from .errors import MalformedMessage
from .frames import Channel, coerce_channel_id
from .seed_markets import (
    CROSS_QUOTE_CORR,
    DEFAULT_PARAMS,
    LISTING_CANDIDATES,
    PRICE_DECIMALS,
    QUOTE_PARAMS,
    SAME_QUOTE_CORR,
    SEED_MARKETS,
)

logger = logging.getLogger(__name__)


def format_price(price: float) -> str:
    return f"{price:.{PRICE_DECIMALS}f}"


class ExchangeSimulator:
    """Geometric Brownian Motion simulator for correlated market prices.

    Math:
        S(t+dt) = S(t) * exp((mu - sigma^2/2) * dt + sigma * sqrt(dt) * Z)

    Z is drawn from a correlated standard normal: pairs sharing a quote
    currency move together. Markets never close, so dt is one tick as a
    fraction of a calendar year.
    """

    SECONDS_PER_YEAR = 365 * 24 * 3600
    DEFAULT_DT = 1.0 / SECONDS_PER_YEAR  # one-second ticks

    def __init__(
        self,
        markets: dict[str, tuple[int, float]] | None = None,
        dt: float = DEFAULT_DT,
        event_probability: float = 0.0005,
        listing_probability: float = 0.0,
    ) -> None:
        self._dt = dt
        self._event_prob = event_probability
        self._listing_prob = listing_probability  # Per tick, for the whole exchange

        # Per-pair state
        self._pairs: list[str] = []
        self._ids: dict[str, int] = {}
        self._prices: dict[str, float] = {}
        self._opens: dict[str, float] = {}
        self._highs: dict[str, float] = {}
        self._lows: dict[str, float] = {}
        self._frozen: dict[str, bool] = {}
        self._params: dict[str, dict[str, float]] = {}

        self._cholesky: np.ndarray | None = None

        for pair, (market_id, price) in (SEED_MARKETS if markets is None else markets).items():
            self._add_market_internal(pair, market_id, price)
        self._rebuild_cholesky()

    # --- Public API ---

    @property
    def pairs(self) -> list[str]:
        return list(self._pairs)

    def market_id(self, pair: str) -> int:
        return self._ids[pair]

    def get_price(self, pair: str) -> float | None:
        return self._prices.get(pair)

    def step(self) -> list[str]:
        """Advance every market by one tick. Returns pairs whose ticker changed."""
        n = len(self._pairs)
        if n == 0:
            return []

        z_independent = np.random.standard_normal(n)
        if self._cholesky is not None:
            z_correlated = self._cholesky @ z_independent
        else:
            z_correlated = z_independent

        changed: list[str] = []
        for i, pair in enumerate(self._pairs):
            before = (format_price(self._prices[pair]), self._frozen[pair])

            if not self._frozen[pair]:
                params = self._params[pair]
                drift = (params["mu"] - 0.5 * params["sigma"] ** 2) * self._dt
                diffusion = params["sigma"] * math.sqrt(self._dt) * z_correlated[i]
                price = self._prices[pair] * math.exp(drift + diffusion)
                self._prices[pair] = price
                self._highs[pair] = max(self._highs[pair], price)
                self._lows[pair] = min(self._lows[pair], price)

            # Rare trading halt or resumption
            if random.random() < self._event_prob:
                self._frozen[pair] = not self._frozen[pair]
                logger.debug("Market %s %s", pair, "frozen" if self._frozen[pair] else "unfrozen")

            if (format_price(self._prices[pair]), self._frozen[pair]) != before:
                changed.append(pair)

        if self._pairs and random.random() < self._listing_prob:
            delisted = self._listing_event()
            if delisted in changed:
                changed.remove(delisted)
        return changed

    def add_market(self, pair: str, market_id: int | None = None, price: float | None = None) -> None:
        """List a new market. Rebuilds the correlation matrix."""
        if pair in self._ids:
            return
        if market_id is None:
            market_id = max(self._ids.values(), default=0) + 1
        self._add_market_internal(pair, market_id, price if price is not None else random.uniform(0.001, 1.0))
        self._rebuild_cholesky()

    def remove_market(self, pair: str) -> None:
        """Delist a market. Rebuilds the correlation matrix."""
        if pair not in self._ids:
            return
        self._pairs.remove(pair)
        for state in (self._ids, self._prices, self._opens, self._highs, self._lows, self._frozen, self._params):
            del state[pair]
        self._rebuild_cholesky()

    def set_frozen(self, pair: str, frozen: bool) -> None:
        self._frozen[pair] = frozen

    def ticker(self) -> dict[str, dict]:
        """Body of a returnTicker response."""
        result = {}
        for pair in self._pairs:
            price = self._prices[pair]
            result[pair] = {
                "id": self._ids[pair],
                "last": format_price(price),
                "lowestAsk": format_price(price * 1.0005),
                "highestBid": format_price(price * 0.9995),
                "percentChange": f"{price / self._opens[pair] - 1:.8f}",
                "baseVolume": "0.00000000",
                "quoteVolume": "0.00000000",
                "isFrozen": "1" if self._frozen[pair] else "0",
                "high24hr": format_price(self._highs[pair]),
                "low24hr": format_price(self._lows[pair]),
            }
        return result

    def ticker_record(self, pair: str) -> list:
        """One ticker push record, positional as on the live push channel."""
        item = self.ticker()[pair]
        return [
            item["id"],
            item["last"],
            item["lowestAsk"],
            item["highestBid"],
            item["percentChange"],
            item["baseVolume"],
            item["quoteVolume"],
            1 if self._frozen[pair] else 0,
            item["high24hr"],
            item["low24hr"],
        ]

    def order_book(self, pair: str, depth: int = 50) -> dict:
        """Body of a returnOrderBook response. Raises KeyError for unknown pairs."""
        price = self._prices[pair]
        tick = price * 0.0005
        depth = max(0, min(depth, 1000))
        asks = [[format_price(price + tick * (i + 1)), round(random.uniform(0.1, 50.0), 8)] for i in range(depth)]
        bids = [[format_price(price - tick * (i + 1)), round(random.uniform(0.1, 50.0), 8)] for i in range(depth)]
        return {
            "asks": asks,
            "bids": bids,
            "isFrozen": "1" if self._frozen[pair] else "0",
            "seq": random.randint(1, 10**9),
        }

    # --- Internals ---

    def _listing_event(self) -> str | None:
        """Delist a random market, or list one from LISTING_CANDIDATES.

        Returns the delisted pair, if any. A new listing is left for the next
        ticker snapshot to announce.
        """
        unlisted = [pair for pair in LISTING_CANDIDATES if pair not in self._ids]
        if len(self._pairs) > 1 and (not unlisted or random.random() < 0.5):
            pair = random.choice(self._pairs)
            self.remove_market(pair)
            logger.info("Market %s delisted", pair)
            return pair
        if unlisted:
            pair = random.choice(unlisted)
            self.add_market(pair)
            logger.info("Market %s listed with id %d", pair, self._ids[pair])
        return None

    def _add_market_internal(self, pair: str, market_id: int, price: float) -> None:
        quote = pair.partition("_")[0]
        self._pairs.append(pair)
        self._ids[pair] = market_id
        self._prices[pair] = price
        self._opens[pair] = price
        self._highs[pair] = price
        self._lows[pair] = price
        self._frozen[pair] = False
        self._params[pair] = QUOTE_PARAMS.get(quote, dict(DEFAULT_PARAMS))

    def _rebuild_cholesky(self) -> None:
        """Rebuild the Cholesky decomposition of the pair correlation matrix."""
        n = len(self._pairs)
        if n <= 1:
            self._cholesky = None
            return

        corr = np.eye(n)
        for i in range(n):
            for j in range(i + 1, n):
                rho = self._pairwise_correlation(self._pairs[i], self._pairs[j])
                corr[i, j] = rho
                corr[j, i] = rho

        self._cholesky = np.linalg.cholesky(corr)

    @staticmethod
    def _pairwise_correlation(p1: str, p2: str) -> float:
        if p1.partition("_")[0] == p2.partition("_")[0]:
            return SAME_QUOTE_CORR
        return CROSS_QUOTE_CORR


# --- aiohttp application ---

SIMULATOR = web.AppKey("simulator", ExchangeSimulator)
SOCKETS = web.AppKey("sockets", set)
TICKER_SUBSCRIBERS = web.AppKey("ticker_subscribers", set)


async def handle_public(request: web.Request) -> web.Response:
    """The exchange's public REST resource. Errors come back as 200 + {"error": ...}."""
    sim = request.app[SIMULATOR]
    command = request.query.get("command")
    if command == "returnTicker":
        return web.json_response(sim.ticker())
    if command == "returnOrderBook":
        pair = request.query.get("currencyPair", "")
        try:
            depth = int(request.query.get("depth", "50"))
        except ValueError:
            return web.json_response({"error": "Invalid depth."})
        try:
            return web.json_response(sim.order_book(pair, depth))
        except KeyError:
            return web.json_response({"error": "Invalid currency pair."})
    return web.json_response({"error": "Invalid command."})


async def handle_push(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    request.app[SOCKETS].add(ws)
    logger.info("Push client connected: %s", request.remote)
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                await _handle_command(request.app, ws, msg.data)
            elif msg.type == WSMsgType.ERROR:
                break
    finally:
        request.app[SOCKETS].discard(ws)
        request.app[TICKER_SUBSCRIBERS].discard(ws)
        logger.info("Push client disconnected: %s", request.remote)
    return ws


async def _handle_command(app: web.Application, ws: web.WebSocketResponse, raw: str) -> None:
    try:
        command = json.loads(raw)
        channel = coerce_channel_id(command["channel"])
        action = command["command"]
    except (ValueError, TypeError, KeyError, MalformedMessage):
        logger.warning("Ignoring malformed push command: %r", raw)
        return

    if channel != Channel.TICKER:
        logger.info("Ignoring %s for unsupported channel %d", action, channel)
        return
    if action == "subscribe":
        app[TICKER_SUBSCRIBERS].add(ws)
        await ws.send_json([int(Channel.TICKER), 1])
    elif action == "unsubscribe":
        app[TICKER_SUBSCRIBERS].discard(ws)
        # The live exchange sends this channel id as text
        await ws.send_json([str(int(Channel.TICKER)), 0])
    else:
        logger.warning("Ignoring unknown push command: %r", raw)


async def _broadcast(sockets: set, frames: list) -> None:
    for ws in list(sockets):
        try:
            for frame in frames:
                await ws.send_json(frame)
        except ConnectionError:
            sockets.discard(ws)


def create_exchange_app(
    simulator: ExchangeSimulator | None = None,
    tick_interval: float = 1.0,
    heartbeat_interval: float = 1.0,
) -> web.Application:
    """Build the simulated exchange: REST at /public, push WebSocket at /."""
    app = web.Application()
    app[SIMULATOR] = simulator or ExchangeSimulator()
    app[SOCKETS] = set()
    app[TICKER_SUBSCRIBERS] = set()
    app.router.add_get("/public", handle_public)
    app.router.add_get("/", handle_push)

    async def run_ticks() -> None:
        loop = asyncio.get_running_loop()
        next_heartbeat = loop.time() + heartbeat_interval
        while True:
            await asyncio.sleep(tick_interval)
            try:
                sim = app[SIMULATOR]
                frames = [[int(Channel.TICKER), None, sim.ticker_record(pair)] for pair in sim.step()]
                if frames:
                    await _broadcast(app[TICKER_SUBSCRIBERS], frames)
                if loop.time() >= next_heartbeat:
                    await _broadcast(app[SOCKETS], [[int(Channel.HEARTBEAT)]])
                    next_heartbeat = loop.time() + heartbeat_interval
            except Exception:
                logger.exception("Simulator tick failed")

    tick_task: asyncio.Task | None = None

    async def start_ticks(app_ctx: web.Application) -> None:
        nonlocal tick_task
        tick_task = asyncio.ensure_future(run_ticks())

    async def stop_ticks(app_ctx: web.Application) -> None:
        if tick_task is not None:
            tick_task.cancel()
            try:
                await tick_task
            except asyncio.CancelledError:
                pass

    app.on_startup.append(start_ticks)
    app.on_cleanup.append(stop_ticks)
    return app


def main() -> None:
    parser = argparse.ArgumentParser(description="Simulated exchange for tickermirror")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--tick-interval", type=float, default=1.0)
    parser.add_argument("--listing-probability", type=float, default=0.001)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    simulator = ExchangeSimulator(listing_probability=args.listing_probability)
    app = create_exchange_app(simulator, tick_interval=args.tick_interval)
    web.run_app(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()

"""Tests for ExchangeSimulator and the simulated exchange app."""

from unittest.mock import patch

import aiohttp
import pytest
from aiohttp.test_utils import TestServer

from tickermirror.market.frames import TickerUpdate, decode_frame
from tickermirror.market.seed_markets import LISTING_CANDIDATES, SEED_MARKETS
from tickermirror.market.simulator import ExchangeSimulator, create_exchange_app, format_price


class TestExchangeSimulator:
    """Unit tests for the GBM market simulator."""

    def test_seeds_by_default(self):
        """Test that the simulator starts with the seed markets."""
        sim = ExchangeSimulator()
        assert sim.pairs == list(SEED_MARKETS)
        assert sim.market_id("BTC_ETH") == 148
        assert sim.get_price("BTC_ETH") == SEED_MARKETS["BTC_ETH"][1]

    def test_prices_stay_positive(self):
        """Test that GBM prices never go non-positive."""
        sim = ExchangeSimulator(markets={"BTC_ETH": (1, 0.05)})
        for _ in range(10_000):
            sim.step()
            assert sim.get_price("BTC_ETH") > 0

    def test_prices_change_over_time(self):
        """Test that steps move the price."""
        sim = ExchangeSimulator(markets={"USDT_BTC": (1, 9000.0)})
        changed = set()
        for _ in range(100):
            changed.update(sim.step())
        assert changed == {"USDT_BTC"}
        assert sim.get_price("USDT_BTC") != 9000.0

    def test_empty_step(self):
        sim = ExchangeSimulator(markets={})
        assert sim.step() == []

    def test_add_market(self):
        """Test that add_market picks the next id and a random price."""
        sim = ExchangeSimulator(markets={"BTC_ETH": (1, 0.05)})
        sim.add_market("BTC_LTC")
        assert "BTC_LTC" in sim.pairs
        assert sim.market_id("BTC_LTC") == 2
        assert 0.001 <= sim.get_price("BTC_LTC") <= 1.0

    def test_add_duplicate_is_noop(self):
        """Test that adding a listed pair changes nothing."""
        sim = ExchangeSimulator(markets={"BTC_ETH": (1, 0.05)})
        sim.add_market("BTC_ETH", market_id=9, price=1.0)
        assert sim.market_id("BTC_ETH") == 1
        assert len(sim.pairs) == 1

    def test_remove_market(self):
        """Test delisting a market."""
        sim = ExchangeSimulator(markets={"BTC_ETH": (1, 0.05), "BTC_LTC": (2, 0.007)})
        sim.remove_market("BTC_LTC")
        sim.remove_market("BTC_NOPE")  # Should not raise
        assert sim.pairs == ["BTC_ETH"]
        assert sim.get_price("BTC_LTC") is None

    def test_frozen_market_holds_price(self):
        """Test that a frozen market keeps its price."""
        sim = ExchangeSimulator(markets={"BTC_ETH": (1, 0.05)}, event_probability=0.0)
        sim.set_frozen("BTC_ETH", True)
        for _ in range(100):
            assert sim.step() == []
        assert sim.get_price("BTC_ETH") == 0.05
        assert sim.ticker()["BTC_ETH"]["isFrozen"] == "1"

    def test_cholesky_rebuilds_on_add(self):
        """Test that the correlation factor is rebuilt when a market is listed."""
        sim = ExchangeSimulator(markets={"BTC_ETH": (1, 0.05)})
        assert sim._cholesky is None
        sim.add_market("BTC_LTC", 2, 0.007)
        assert sim._cholesky is not None

    def test_pairwise_correlation(self):
        assert ExchangeSimulator._pairwise_correlation("BTC_ETH", "BTC_LTC") == 0.5
        assert ExchangeSimulator._pairwise_correlation("BTC_ETH", "USDT_ETH") == 0.2

    def test_seed_correlation_matrix_is_positive_definite(self):
        """Test that the seed correlation matrix factors."""
        sim = ExchangeSimulator()
        assert sim._cholesky.shape == (len(SEED_MARKETS), len(SEED_MARKETS))

    def test_ticker_shape(self):
        """Test the fields of a returnTicker entry."""
        sim = ExchangeSimulator(markets={"BTC_ETH": (1, 0.05)})
        item = sim.ticker()["BTC_ETH"]
        assert item["id"] == 1
        assert item["last"] == "0.05000000"
        assert item["isFrozen"] == "0"

    def test_ticker_record_is_positional(self):
        """Test the positional layout of a push ticker record."""
        sim = ExchangeSimulator(markets={"BTC_ETH": (1, 0.05)})
        record = sim.ticker_record("BTC_ETH")
        assert record[0] == 1
        assert record[1] == "0.05000000"
        assert record[7] == 0

    def test_order_book(self):
        """Test that asks sit above and bids below the price."""
        sim = ExchangeSimulator(markets={"BTC_ETH": (1, 0.05)})
        book = sim.order_book("BTC_ETH", depth=3)
        assert len(book["asks"]) == 3
        assert len(book["bids"]) == 3
        assert float(book["asks"][0][0]) > 0.05 > float(book["bids"][0][0])

    def test_order_book_unknown_pair(self):
        """Test that an unknown pair raises KeyError."""
        sim = ExchangeSimulator(markets={"BTC_ETH": (1, 0.05)})
        with pytest.raises(KeyError):
            sim.order_book("BTC_NOPE")

    def test_listing_event_lists_a_candidate(self):
        """Test that a listing event on a one-market exchange lists a new candidate pair."""
        sim = ExchangeSimulator(markets={"BTC_ETH": (1, 0.05)}, event_probability=0.0, listing_probability=1.0)
        sim.step()
        assert len(sim.pairs) == 2
        new_pair = sim.pairs[1]
        assert new_pair in LISTING_CANDIDATES
        assert sim.market_id(new_pair) == 2

    def test_listing_event_can_delist(self):
        """Test that a delisting removes the market and leaves it out of the changed pairs."""
        sim = ExchangeSimulator(
            markets={"USDT_BTC": (1, 9000.0), "USDT_ETH": (2, 300.0)},
            event_probability=0.0,
            listing_probability=1.0,
        )
        with patch("tickermirror.market.simulator.random.random", return_value=0.0):
            changed = sim.step()
        assert len(sim.pairs) == 1
        assert set(changed) <= set(sim.pairs)

    def test_no_listing_events_by_default(self):
        """Test that markets are only listed or delisted on request by default."""
        sim = ExchangeSimulator(markets={"BTC_ETH": (1, 0.05), "BTC_LTC": (2, 0.007)})
        for _ in range(1000):
            sim.step()
        assert sim.pairs == ["BTC_ETH", "BTC_LTC"]

    def test_format_price(self):
        assert format_price(0.00000024) == "0.00000024"
        assert format_price(9650) == "9650.00000000"


@pytest.mark.asyncio
class TestExchangeApp:
    """The simulated exchange served over HTTP and WebSocket."""

    async def test_return_ticker(self):
        """Test the returnTicker command over HTTP."""
        sim = ExchangeSimulator(markets={"BTC_ETH": (1, 0.05)})
        async with TestServer(create_exchange_app(sim, tick_interval=60)) as server:
            async with aiohttp.ClientSession() as session:
                async with session.get(server.make_url("/public"), params={"command": "returnTicker"}) as resp:
                    body = await resp.json()
        assert body["BTC_ETH"]["last"] == "0.05000000"

    async def test_return_order_book(self):
        """Test the returnOrderBook command over HTTP."""
        sim = ExchangeSimulator(markets={"BTC_ETH": (1, 0.05)})
        params = {"command": "returnOrderBook", "currencyPair": "BTC_ETH", "depth": "4"}
        async with TestServer(create_exchange_app(sim, tick_interval=60)) as server:
            async with aiohttp.ClientSession() as session:
                async with session.get(server.make_url("/public"), params=params) as resp:
                    body = await resp.json()
        assert len(body["asks"]) == 4

    @pytest.mark.parametrize(
        "params",
        [
            {"command": "returnOrderBook", "currencyPair": "BTC_NOPE"},
            {"command": "returnOrderBook", "currencyPair": "BTC_ETH", "depth": "many"},
            {"command": "returnEverything"},
        ],
    )
    async def test_errors_come_back_with_ok_status(self, params):
        """Test that exchange errors are JSON bodies with status 200."""
        sim = ExchangeSimulator(markets={"BTC_ETH": (1, 0.05)})
        async with TestServer(create_exchange_app(sim, tick_interval=60)) as server:
            async with aiohttp.ClientSession() as session:
                async with session.get(server.make_url("/public"), params=params) as resp:
                    status = resp.status
                    body = await resp.json()
        assert status == 200
        assert "error" in body

    async def test_push_subscribe_and_updates(self):
        """Test subscribing to the ticker channel and receiving updates."""
        sim = ExchangeSimulator(markets={"USDT_BTC": (1, 9000.0)}, event_probability=0.0)
        app = create_exchange_app(sim, tick_interval=0.02, heartbeat_interval=60)
        async with TestServer(app) as server:
            async with aiohttp.ClientSession() as session:
                async with session.ws_connect(server.make_url("/")) as ws:
                    await ws.send_json({"command": "subscribe", "channel": 1002})
                    ack = await ws.receive_json(timeout=2)
                    update = await ws.receive_json(timeout=2)

                    await ws.send_json({"command": "unsubscribe", "channel": 1002})
                    # Updates already in flight may arrive before the ack
                    for _ in range(50):
                        unsub = await ws.receive_json(timeout=2)
                        if unsub == ["1002", 0]:
                            break

        assert ack == [1002, 1]
        frame = decode_frame(update)
        assert isinstance(frame, TickerUpdate)
        assert frame.records[0].market_id == 1
        assert unsub == ["1002", 0]

    async def test_push_heartbeat_without_subscription(self):
        """Test that an idle socket receives heartbeats."""
        sim = ExchangeSimulator(markets={"BTC_ETH": (1, 0.05)}, event_probability=0.0)
        app = create_exchange_app(sim, tick_interval=0.02, heartbeat_interval=0.02)
        async with TestServer(app) as server:
            async with aiohttp.ClientSession() as session:
                async with session.ws_connect(server.make_url("/")) as ws:
                    frame = await ws.receive_json(timeout=2)
        assert frame == [1010]

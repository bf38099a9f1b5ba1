"""Fixtures for market mirror tests."""

import pytest

from tickermirror.market.interface import MarketObserver
from tickermirror.market.registry import MarketRegistry, create_markets


class RecordingObserver(MarketObserver):
    """Observer that keeps every event it is handed."""

    def __init__(self):
        self.resets = []
        self.diffs = []
        self.books = []

    def on_registry_reset(self, registry):
        self.resets.append(registry.snapshot())

    def on_diff_applied(self, registry, diff):
        self.diffs.append(diff)

    def on_books_received(self, books):
        self.books.append(books)


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def snapshot_a():
    """Single-market ticker snapshot."""
    return {"BTC_ETH": {"id": 1, "last": "0.05", "isFrozen": "0"}}


@pytest.fixture
def snapshot_b():
    """Snapshot A with a price move and a newly listed market."""
    return {
        "BTC_ETH": {"id": 1, "last": "0.06", "isFrozen": "0"},
        "BTC_LTC": {"id": 2, "last": "10", "isFrozen": "0"},
    }


@pytest.fixture
def registry_a(snapshot_a):
    registry = MarketRegistry()
    registry.reset(create_markets(snapshot_a))
    return registry

"""Market registry and the diff engine that feeds it."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterable, Iterator
from typing import Any

from .errors import MalformedMessage
from .frames import TickerRecord
from .models import UNKNOWN_TICKER, Diff, FieldChange, Market, diff_or_none

logger = logging.getLogger(__name__)


class MarketRegistry:
    """In-memory mapping of market id to Market.

    Writers: MarketMirror only, via reset() once and apply_diff() afterwards.
    Readers: the diff functions below and any MarketObserver.

    All mutations are synchronous, so on a single event loop they are atomic
    with respect to other coroutines.
    """

    def __init__(self) -> None:
        self._markets: dict[int, Market] = {}
        self._ready = False
        self._version: int = 0  # Bumped on reset and on every applied diff

    def reset(self, markets: dict[int, Market]) -> None:
        """Replace the whole registry with a freshly built mapping."""
        self._markets = dict(markets)
        self._ready = True
        self._version += 1
        logger.info("Registry reset with %d markets", len(self._markets))

    def apply_diff(self, diff: Diff | None) -> None:
        """Apply a diff. This is the only mutation path after reset().

        Passes run in order: changed fields, additions, removals. Callers must
        check for a None diff first; passing one is a programming error.
        """
        if not diff:
            raise ValueError("apply_diff called with an empty diff")

        for mid, fields in diff.changes.items():
            market = self._markets[mid]
            for key, change in fields.items():
                setattr(market, key, change.new)
                if key == "is_active":
                    if change.new:
                        logger.info("Market activated: %s", market.label)
                    else:
                        logger.info("Market deactivated: %s", market.label)
        for mid, market in diff.additions.items():
            self._markets[mid] = market
            logger.info("Market added: %s", json.dumps(market.to_dict()))
        for mid, market in diff.removals.items():
            self._markets.pop(mid, None)
            logger.info("Market removed: %s", json.dumps(market.to_dict()))
        self._version += 1

    @property
    def ready(self) -> bool:
        """True once the first snapshot has been loaded."""
        return self._ready

    @property
    def version(self) -> int:
        return self._version

    def get(self, market_id: int) -> Market | None:
        return self._markets.get(market_id)

    def values(self) -> list[Market]:
        return list(self._markets.values())

    def snapshot(self) -> dict[int, Market]:
        """Shallow copy of the id -> Market mapping."""
        return dict(self._markets)

    def sorted_by_label(self) -> list[Market]:
        return sorted(self._markets.values(), key=lambda m: m.label)

    def __len__(self) -> int:
        return len(self._markets)

    def __contains__(self, market_id: object) -> bool:
        return market_id in self._markets

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._markets))


# --- Snapshot parsing ---


def split_pair(name: str) -> tuple[str, str]:
    """Split a remote pair name into (base, quote): 'BTC_ETH' -> ('ETH', 'BTC')."""
    quote, sep, base = name.partition("_")
    if not sep or not quote or not base:
        raise MalformedMessage(f"bad pair name: {name!r}", name)
    return base, quote


def tracked_from_ticker(item: Any) -> tuple[int, dict[str, Any]]:
    """Extract (market id, tracked fields) from one returnTicker entry."""
    try:
        market_id = int(item["id"])
        last = item["last"]
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedMessage(f"bad ticker entry: {e}", item) from e
    if not isinstance(last, str):
        last = str(last)
    return market_id, {"last": last, "is_active": str(item.get("isFrozen", "0")) != "1"}


def market_from_ticker(name: str, item: Any) -> Market:
    market_id, tracked = tracked_from_ticker(item)
    base, quote = split_pair(name)
    return Market(id=market_id, base=base, quote=quote, **tracked)


def create_markets(snapshot: dict[str, Any]) -> dict[int, Market]:
    """Build the initial id -> Market mapping from a ticker snapshot."""
    start = time.perf_counter()
    markets: dict[int, Market] = {}
    for name, item in snapshot.items():
        market = market_from_ticker(name, item)
        markets[market.id] = market
        if not market.is_active:
            logger.info("Detected deactivated market: %s", market.label)
    logger.debug("Markets built in %.1f ms", (time.perf_counter() - start) * 1000)
    return markets


# --- Diff engine ---


def market_changes(market: Market, update: dict[str, Any]) -> dict[str, FieldChange] | None:
    """Field-level changes of the tracked fields, or None if all match.

    Prices compare as text: '0.050' and '0.05' are different values here.
    """
    change: dict[str, FieldChange] | None = None
    for key, new in update.items():
        old = getattr(market, key)
        if new != old:
            if change is None:
                change = {}
            change[key] = FieldChange(old, new)
    return change


def compute_http_diff(registry: MarketRegistry, snapshot: dict[str, Any]) -> Diff | None:
    """Diff the registry against a full ticker snapshot keyed by pair name."""
    start = time.perf_counter()
    changes: dict[int, dict[str, FieldChange]] = {}
    additions: dict[int, Market] = {}
    removals: dict[int, Market] = {}
    old_ids = set(registry)

    # Compute the keyset difference along the way
    for name, item in snapshot.items():
        market_id, tracked = tracked_from_ticker(item)
        market = registry.get(market_id)
        if market is not None:
            change = market_changes(market, tracked)
            if change:
                changes[market_id] = change
            old_ids.discard(market_id)
        else:
            additions[market_id] = market_from_ticker(name, item)

    for market_id in old_ids:
        removals[market_id] = registry.get(market_id)

    logger.debug("Markets diff computed in %.1f ms", (time.perf_counter() - start) * 1000)
    return diff_or_none(changes, additions, removals)


def compute_ws_diff(registry: MarketRegistry, records: Iterable[TickerRecord]) -> Diff | None:
    """Diff the registry against the partial records of one ticker push frame.

    A record for an unseen market yields a placeholder Market labelled
    UNKNOWN/UNKNOWN instead of an error.
    """
    changes: dict[int, dict[str, FieldChange]] = {}
    additions: dict[int, Market] = {}

    for record in records:
        market = registry.get(record.market_id)
        if market is None:
            additions[record.market_id] = Market(
                id=record.market_id,
                base=UNKNOWN_TICKER,
                quote=UNKNOWN_TICKER,
                last=record.last,
                is_active=record.is_active,
            )
            continue
        change = market_changes(market, record.tracked())
        if change:
            changes[record.market_id] = change

    return diff_or_none(changes, additions, {})

"""Data models for the market mirror."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, NamedTuple

from .errors import MalformedMessage

UNKNOWN_TICKER = "UNKNOWN"

# Market attributes that participate in change detection
TRACKED_FIELDS: tuple[str, ...] = ("last", "is_active")


def make_label(base: str, quote: str) -> str:
    """Display label for a pair, e.g. 'ETH/BTC'."""
    return f"{base}/{quote}"


@dataclass(slots=True)
class Market:
    """Locally mirrored state of one trading pair.

    ``last`` keeps the exact text the exchange sent so change detection never
    sees float round-trip noise.
    """

    id: int
    base: str
    quote: str
    last: str
    is_active: bool = True

    @property
    def label(self) -> str:
        return make_label(self.base, self.quote)

    @property
    def pair(self) -> str:
        """Remote pair name, quote first: 'BTC_ETH' for ETH/BTC."""
        return f"{self.quote}_{self.base}"

    def tracked(self) -> dict[str, Any]:
        return {"last": self.last, "is_active": self.is_active}

    def to_dict(self) -> dict:
        """Serialize for JSON / SSE transmission."""
        return {
            "id": self.id,
            "base": self.base,
            "quote": self.quote,
            "label": self.label,
            "last": self.last,
            "is_active": self.is_active,
        }


@dataclass(frozen=True, slots=True)
class FieldChange:
    """Old and new value of one tracked field."""

    old: Any
    new: Any

    @property
    def direction(self) -> str:
        """'up', 'down', or 'flat'. Parses prices only for this comparison."""
        try:
            old, new = Decimal(str(self.old)), Decimal(str(self.new))
        except InvalidOperation:
            return "flat"
        if new > old:
            return "up"
        elif new < old:
            return "down"
        return "flat"

    def to_list(self) -> list:
        return [self.old, self.new]


@dataclass(slots=True)
class Diff:
    """Minimal change-set between two registry states.

    The three mappings are disjoint: an id is changed, added, or removed, never
    more than one of those at once.
    """

    changes: dict[int, dict[str, FieldChange]] = field(default_factory=dict)
    additions: dict[int, Market] = field(default_factory=dict)
    removals: dict[int, Market] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.changes or self.additions or self.removals)

    @property
    def touched(self) -> set[int]:
        """Every market id mentioned by this diff."""
        return set(self.changes) | set(self.additions) | set(self.removals)

    def to_dict(self) -> dict:
        return {
            "changes": {
                mid: {key: change.to_list() for key, change in fields.items()}
                for mid, fields in self.changes.items()
            },
            "additions": {mid: market.to_dict() for mid, market in self.additions.items()},
            "removals": {mid: market.to_dict() for mid, market in self.removals.items()},
        }


def diff_or_none(
    changes: dict[int, dict[str, FieldChange]],
    additions: dict[int, Market],
    removals: dict[int, Market],
) -> Diff | None:
    """Wrap the mappings in a Diff, or return None when nothing changed."""
    if not changes and not additions and not removals:
        return None
    return Diff(changes=changes, additions=additions, removals=removals)


class BookLevel(NamedTuple):
    """One price level of an order book."""

    price: str
    size: float


@dataclass(frozen=True, slots=True)
class OrderBook:
    """Order book snapshot for a single market."""

    market_id: int
    pair: str
    asks: list[BookLevel]
    bids: list[BookLevel]
    is_frozen: bool = False

    @classmethod
    def from_response(cls, market: Market, payload: Any) -> OrderBook:
        """Build from a returnOrderBook body: {asks: [[price, size], ...], bids: [...]}."""
        if not isinstance(payload, dict):
            raise MalformedMessage("order book response is not an object", payload)
        try:
            asks = [BookLevel(str(price), float(size)) for price, size in payload["asks"]]
            bids = [BookLevel(str(price), float(size)) for price, size in payload["bids"]]
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedMessage(f"bad order book for {market.pair}: {e}", payload) from e
        return cls(
            market_id=market.id,
            pair=market.pair,
            asks=asks,
            bids=bids,
            is_frozen=str(payload.get("isFrozen", "0")) == "1",
        )

    @property
    def best_ask(self) -> BookLevel | None:
        return self.asks[0] if self.asks else None

    @property
    def best_bid(self) -> BookLevel | None:
        return self.bids[0] if self.bids else None

    def to_dict(self) -> dict:
        return {
            "market_id": self.market_id,
            "pair": self.pair,
            "asks": [list(level) for level in self.asks],
            "bids": [list(level) for level in self.bids],
            "is_frozen": self.is_frozen,
        }

"""Abstract interface for consumers of mirror events."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Diff, OrderBook
    from .registry import MarketRegistry


class MarketObserver(ABC):
    """Contract for whatever renders the mirrored markets.

    Observers are registered on a MarketMirror and only ever read what they are
    handed. They must not mutate the registry; every write goes through
    MarketRegistry.apply_diff() inside the mirror.

    Event order:
        on_registry_reset(registry)        # once, after the first snapshot
        on_diff_applied(registry, diff)    # after every non-empty diff, HTTP or push
        on_books_received(books)           # after each order book fetch
    """

    @abstractmethod
    def on_registry_reset(self, registry: MarketRegistry) -> None:
        """The registry was (re)built from a full snapshot."""

    @abstractmethod
    def on_diff_applied(self, registry: MarketRegistry, diff: Diff) -> None:
        """``diff`` has just been applied to ``registry``.

        ``diff.changes`` holds old and new values, so a renderer can tell
        whether a price moved up or down without keeping its own copy.
        """

    @abstractmethod
    def on_books_received(self, books: OrderBook) -> None:
        """A fresh order book for the selected market arrived."""

"""Factory for creating the market mirror."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .config import POLONIEX_TICKER_URL, MirrorSettings
from .interface import MarketObserver
from .mirror import MarketMirror

logger = logging.getLogger(__name__)


def create_market_mirror(
    observers: Iterable[MarketObserver] = (),
    settings: MirrorSettings | None = None,
) -> MarketMirror:
    """Create a MarketMirror configured from MIRROR_* environment variables.

    - MIRROR_EXCHANGE_URL set and non-empty → every endpoint on that host
      (typically the simulator from tickermirror.market.simulator)
    - Otherwise → live Poloniex endpoints

    Returns an idle mirror. Caller starts it with set_autoupdate(True) and/or
    await mirror.connect(), and must await mirror.aclose() on shutdown.
    """
    if settings is None:
        settings = MirrorSettings.from_env()

    if settings.ticker_url == POLONIEX_TICKER_URL:
        logger.info("Market source: Poloniex (live data)")
    else:
        logger.info("Market source: %s", settings.ticker_url)
    return MarketMirror(settings=settings, observers=observers)

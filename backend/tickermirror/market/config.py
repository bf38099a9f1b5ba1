"""Environment-driven settings for the market mirror."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from urllib.parse import urlsplit, urlunsplit

from .push import QueuePolicy

# https://docs.poloniex.com/
POLONIEX_TICKER_URL = "https://poloniex.com/public?command=returnTicker"
POLONIEX_ORDER_BOOK_URL = (
    "https://poloniex.com/public?command=returnOrderBook&currencyPair={pair}&depth={depth}"
)
POLONIEX_PUSH_URL = "wss://api2.poloniex.com"

TICKER_PATH = "/public?command=returnTicker"
ORDER_BOOK_PATH = "/public?command=returnOrderBook&currencyPair={pair}&depth={depth}"


@dataclass(frozen=True, slots=True)
class MirrorSettings:
    """Where to fetch from and how often."""

    ticker_url: str = POLONIEX_TICKER_URL
    order_book_url: str = POLONIEX_ORDER_BOOK_URL
    push_url: str = POLONIEX_PUSH_URL
    markets_interval: float = 3.0
    books_interval: float = 3.0
    book_depth: int = 100
    request_timeout: float = 10.0
    push_idle_timeout: float = 0.0  # 0 keeps the push connection open until closed
    push_queue_policy: QueuePolicy = QueuePolicy.RETAIN

    @classmethod
    def for_exchange(cls, base_url: str, **overrides) -> MirrorSettings:
        """Settings pointing every endpoint at one exchange host, e.g. the simulator."""
        base = base_url.rstrip("/")
        parts = urlsplit(base)
        ws_scheme = "wss" if parts.scheme == "https" else "ws"
        push_url = urlunsplit((ws_scheme, parts.netloc, parts.path + "/", "", ""))
        return cls(
            ticker_url=base + TICKER_PATH,
            order_book_url=base + ORDER_BOOK_PATH,
            push_url=push_url,
            **overrides,
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> MirrorSettings:
        """Build settings from MIRROR_* environment variables.

        - MIRROR_EXCHANGE_URL set -> every endpoint derived from that base URL
        - MIRROR_TICKER_URL / MIRROR_ORDER_BOOK_URL / MIRROR_PUSH_URL override
          individual endpoints
        - Unset or blank variables keep the defaults (live Poloniex)
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str:
            return env.get(name, "").strip()

        overrides: dict = {}
        for name, key, convert in (
            ("MIRROR_MARKETS_INTERVAL", "markets_interval", float),
            ("MIRROR_BOOKS_INTERVAL", "books_interval", float),
            ("MIRROR_BOOK_DEPTH", "book_depth", int),
            ("MIRROR_REQUEST_TIMEOUT", "request_timeout", float),
            ("MIRROR_PUSH_IDLE_TIMEOUT", "push_idle_timeout", float),
            ("MIRROR_PUSH_QUEUE_POLICY", "push_queue_policy", QueuePolicy),
        ):
            raw = get(name)
            if not raw:
                continue
            try:
                overrides[key] = convert(raw.lower() if convert is QueuePolicy else raw)
            except ValueError as e:
                raise ValueError(f"Invalid value for {name}: {raw!r}") from e

        for key in ("markets_interval", "books_interval", "request_timeout", "push_idle_timeout"):
            if overrides.get(key, 0) < 0:
                raise ValueError(f"{key} must not be negative")

        exchange_url = get("MIRROR_EXCHANGE_URL")
        settings = cls.for_exchange(exchange_url, **overrides) if exchange_url else cls(**overrides)

        urls = {
            "ticker_url": get("MIRROR_TICKER_URL"),
            "order_book_url": get("MIRROR_ORDER_BOOK_URL"),
            "push_url": get("MIRROR_PUSH_URL"),
        }
        urls = {key: value for key, value in urls.items() if value}
        if urls:
            settings = replace(settings, **urls)
        return settings

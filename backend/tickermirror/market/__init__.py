"""Market mirror subsystem for tickermirror.

Public API:
    Market, Diff, OrderBook  - Mirrored state and change-set dataclasses
    MarketRegistry           - id -> Market store, mutated only by apply_diff()
    compute_http_diff        - Diff a registry against a ticker snapshot
    compute_ws_diff          - Diff a registry against ticker push records
    RequestClient, Endpoint  - Single-flight HTTP requests
    PushConnection           - Lazy persistent push connection with queueing
    UpdateLoop               - Repeat-until-disabled scheduler
    MarketMirror             - Coordinator owning all of the above
    MarketObserver           - Abstract interface for renderers
    create_market_mirror     - Factory reading MIRROR_* settings
    create_stream_router     - FastAPI router factory for the SSE endpoint
"""

from .errors import (
    ApiError,
    MalformedMessage,
    MirrorError,
    RequestCancelled,
    RequestIgnored,
    TransportError,
)
from .factory import create_market_mirror
from .interface import MarketObserver
from .mirror import MarketMirror
from .models import Diff, FieldChange, Market, OrderBook
from .push import ConnectionState, PushConnection, QueuePolicy
from .registry import MarketRegistry, compute_http_diff, compute_ws_diff
from .request_client import Endpoint, RequestClient
from .scheduler import UpdateLoop
from .stream import EventHub, create_stream_router

__all__ = [
    "ApiError",
    "MalformedMessage",
    "MirrorError",
    "RequestCancelled",
    "RequestIgnored",
    "TransportError",
    "Market",
    "Diff",
    "FieldChange",
    "OrderBook",
    "MarketRegistry",
    "compute_http_diff",
    "compute_ws_diff",
    "Endpoint",
    "RequestClient",
    "ConnectionState",
    "PushConnection",
    "QueuePolicy",
    "UpdateLoop",
    "MarketMirror",
    "MarketObserver",
    "EventHub",
    "create_market_mirror",
    "create_stream_router",
]

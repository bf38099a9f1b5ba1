"""Error taxonomy for the market mirror."""

from __future__ import annotations

from typing import Any


class MirrorError(Exception):
    """Base class for every failure raised by the mirror core."""


class RequestIgnored(MirrorError):
    """A request was dropped because another one is still in flight on the endpoint."""

    def __init__(self, endpoint: str) -> None:
        super().__init__(f"ignoring {endpoint} request until the pending one finishes")
        self.endpoint = endpoint


class RequestCancelled(MirrorError):
    """The in-flight request was aborted through RequestClient.cancel()."""

    def __init__(self, endpoint: str) -> None:
        super().__init__(f"{endpoint} request cancelled")
        self.endpoint = endpoint


class TransportError(MirrorError):
    """Non-success HTTP status, network failure, or an undecodable body.

    ``status`` is None when no HTTP response was received.
    """

    def __init__(self, url: str, status: int | None = None, reason: str = "") -> None:
        if status is not None:
            message = f"failed to fetch {url}, status {status}"
        else:
            message = f"failed to fetch {url}: {reason or 'network error'}"
        super().__init__(message)
        self.url = url
        self.status = status
        self.reason = reason


class ApiError(MirrorError):
    """The exchange answered 200 OK but embedded an error in the JSON body."""

    def __init__(self, message: str) -> None:
        super().__init__(f"exchange API error: {message}")
        self.message = message


class MalformedMessage(MirrorError):
    """A payload did not have the shape its channel or resource promises."""

    def __init__(self, reason: str, payload: Any = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.payload = payload

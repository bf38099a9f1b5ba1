"""Single-flight HTTP client for the exchange's public JSON resources."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from .errors import ApiError, MirrorError, RequestCancelled, RequestIgnored, TransportError

logger = logging.getLogger(__name__)


@dataclass
class Endpoint:
    """A remote resource addressed by a URL template with named placeholders.

    Created once per resource. ``in_flight`` and ``task`` are owned by
    RequestClient and toggled per request.
    """

    name: str
    url_template: str
    in_flight: bool = False
    task: asyncio.Task | None = field(default=None, repr=False)

    def url(self, **params: Any) -> str:
        try:
            return self.url_template.format(**params)
        except KeyError as e:
            raise ValueError(f"{self.name} URL template needs parameter {e}") from e


class RequestClient:
    """Issues at most one concurrent request per Endpoint.

    A second request on a busy endpoint is dropped with RequestIgnored rather
    than queued. Transport and exchange-level failures are normalized into the
    MirrorError taxonomy; nothing from aiohttp leaks to callers.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def request(self, endpoint: Endpoint, **params: Any) -> Any:
        """Fetch and decode the JSON body of ``endpoint`` with ``params`` substituted."""
        if endpoint.in_flight:
            logger.info("Ignoring %s request until the pending one finishes", endpoint.name)
            raise RequestIgnored(endpoint.name)

        url = endpoint.url(**params)
        endpoint.in_flight = True
        task = asyncio.create_task(self._fetch_json(url), name=f"fetch-{endpoint.name}")
        endpoint.task = task
        logger.debug("HTTP %s fetch initiated: %s", endpoint.name, url)
        try:
            # wait() does not propagate the inner task's cancellation, so a
            # cancel() through the endpoint is told apart from our own caller
            # being cancelled.
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            endpoint.in_flight = False
            endpoint.task = None

        if task.cancelled():
            logger.info("HTTP %s fetch aborted: %s", endpoint.name, url)
            raise RequestCancelled(endpoint.name)
        try:
            return task.result()
        except MirrorError as e:
            logger.error("Error fetching %s: %s", endpoint.name, e)
            raise

    def cancel(self, endpoint: Endpoint) -> None:
        """Abort whatever is in flight on ``endpoint``. No-op when idle."""
        task = endpoint.task
        if task is not None and not task.done():
            task.cancel()

    async def close(self) -> None:
        """Release the HTTP session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        if self._owns_session:
            self._session = None

    # --- Internal ---

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _fetch_json(self, url: str) -> Any:
        session = self._get_session()
        start = time.perf_counter()
        try:
            async with session.get(url, timeout=self._timeout) as resp:
                logger.debug(
                    "HTTP response begins after %.1f ms, status %d",
                    (time.perf_counter() - start) * 1000,
                    resp.status,
                )
                if not 200 <= resp.status < 300:
                    raise TransportError(url, status=resp.status)
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(url, reason=str(e) or type(e).__name__) from e
        except ValueError as e:
            raise TransportError(url, reason=f"invalid JSON body: {e}") from e
        logger.debug("HTTP response finishes after %.1f ms", (time.perf_counter() - start) * 1000)

        # The exchange reports logical failures with a 200 status
        if isinstance(payload, dict) and payload.get("error"):
            raise ApiError(str(payload["error"]))
        return payload

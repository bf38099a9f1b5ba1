"""Repeat-until-disabled update loop."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .errors import MirrorError, RequestCancelled, RequestIgnored

logger = logging.getLogger(__name__)


class UpdateLoop:
    """Runs an async work function over and over until disabled.

    Unlike a fixed-rate timer, the next wait is armed only after the previous
    invocation has settled, so at most one cycle is ever in flight no matter
    how slow the remote side is.

    Lifecycle:
        loop = UpdateLoop("markets", mirror.fetch_markets, 3.0, cancel=...)
        loop.start()    # runs work() right away, then every `interval` after it settles
        loop.stop()     # no further runs are scheduled; cancel() aborts the current one
        await loop.join()

    Failures never stop the loop. Dropped and aborted requests are silent;
    other errors are logged and the next cycle proceeds on schedule.
    """

    def __init__(
        self,
        name: str,
        work: Callable[[], Awaitable[Any]],
        interval: float,
        cancel: Callable[[], None] | None = None,
    ) -> None:
        self.name = name
        self.interval = interval
        self._work = work
        self._cancel = cancel
        self._enabled = False
        self._generation = 0  # Bumped by start() so cycles of an older run never re-arm
        self._wakeup: asyncio.TimerHandle | None = None
        self._cycle: asyncio.Task | None = None
        self.cycles = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start(self) -> None:
        """Enable the loop and invoke the work function immediately."""
        if self._enabled:
            logger.debug("%s updates already running", self.name)
            return
        self._enabled = True
        self._generation += 1
        logger.info("Starting %s updates every %.1fs", self.name, self.interval)
        self._run_cycle(self._generation)

    def stop(self) -> None:
        """Disable the loop, drop the pending wakeup and abort the cycle in flight.

        Safe to call multiple times.
        """
        if self._enabled:
            logger.info("Stopping %s updates", self.name)
        self._enabled = False
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None
        if self._cancel is not None:
            self._cancel()

    async def join(self) -> None:
        """Wait for the cycle currently in flight, if any, to settle."""
        cycle = self._cycle
        if cycle is not None and not cycle.done():
            await asyncio.wait({cycle})

    # --- Internal ---

    def _run_cycle(self, generation: int) -> None:
        self._wakeup = None
        self._cycle = asyncio.get_running_loop().create_task(
            self._cycle_once(generation), name=f"{self.name}-update"
        )

    async def _cycle_once(self, generation: int) -> None:
        # stop() may land between the wakeup firing and this task's first step
        if not self._enabled or generation != self._generation:
            return
        self.cycles += 1
        try:
            await self._work()
        except (RequestIgnored, RequestCancelled) as e:
            logger.debug("%s update skipped: %s", self.name, e)
        except MirrorError as e:
            logger.warning("%s update failed: %s", self.name, e)
        except Exception:
            logger.exception("%s update failed", self.name)

        if self._enabled and generation == self._generation:
            logger.debug("Scheduling %s update in %.1fs", self.name, self.interval)
            self._wakeup = asyncio.get_running_loop().call_later(
                self.interval, self._run_cycle, generation
            )

"""Periodic garbage collection of expired rate limit counters.

Expired entries are already ignored by the limiter, so the sweep only
bounds memory. It runs as a background task on its own interval,
independent of any limiter's window.
"""

import asyncio
import time
from typing import Callable, Optional

from backend.app.core.logging import get_logger
from backend.app.middleware.rate_limit.backends import CounterStore

logger = get_logger(__name__)


class CounterStoreSweeper:
    """Background task that sweeps a counter store.

    Usage:
        sweeper = CounterStoreSweeper(store, interval=300)
        await sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(
        self,
        store: CounterStore,
        interval: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the sweeper.

        Args:
            store: Counter store to sweep
            interval: Seconds between sweeps (default: 5 minutes)
            clock: Time source returning seconds
        """
        self._store = store
        self._interval = interval
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None

    async def sweep_once(self) -> int:
        """Run one sweep and return the number of entries removed."""
        removed = await self._store.sweep(self._clock())
        if removed:
            logger.debug(f"Swept {removed} expired rate limit entries")
        return removed

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._task is not None:
            logger.debug("Rate limit sweeper already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started rate limit sweeper (interval: {self._interval}s)")

    async def stop(self) -> None:
        """Stop the background sweep task."""
        if self._task is None:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Rate limit sweeper did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info("Stopped rate limit sweeper")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            # Wait for the next interval or until stopped
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Error during rate limit sweep: {e}")

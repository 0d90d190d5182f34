"""
Periodic cache sweeping tied to the app's foreground state.

While foregrounded the janitor sweeps every cleanup interval; going to
the background stops the timer and runs one final sweep. Coming back to
the foreground sweeps immediately and restarts the timer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from snapsync.cache.store import CacheStore

logger = logging.getLogger(__name__)


class CacheJanitor:
    """Drives CacheStore.cleanup() from app lifecycle events."""

    __slots__ = ("_cache", "_interval_s", "_task")

    def __init__(self, cache: CacheStore, interval_s: Optional[float] = None) -> None:
        self._cache = cache
        self._interval_s = interval_s if interval_s is not None else cache.config.cleanup_interval_s
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start periodic sweeps. Restarting never leaves two timers."""
        self._cancel()
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="cache-janitor"
        )

    def sweep_now(self) -> int:
        return self._cache.cleanup()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            removed = self._cache.cleanup()
            logger.debug(f"Periodic cache sweep removed {removed} entries")

    def _cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # Lifecycle observer hooks
    def on_foreground(self) -> None:
        self._cache.cleanup()
        self.start()

    def on_background(self) -> None:
        self._cancel()
        removed = self._cache.cleanup()
        logger.debug(f"Final sweep before backgrounding removed {removed} entries")

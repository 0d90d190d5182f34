"""
Polling Fallback: Foreground-Only Interval Refresh

A backstop for missed or degraded realtime delivery. Each poller runs
one task: an initial delay, then refresh / sleep(interval) forever.

- start() always cancels the previous task first, so a poller is never
  double-scheduled
- pause() on background, resume() on foreground
- A failed tick is logged and handed to on_error; the next tick retries
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from snapsync.core import constants as C
from snapsync.core.errors import SyncError, classify_exception
from snapsync.observability.metrics import SyncMetrics, get_metrics

logger = logging.getLogger(__name__)


class PollingFallback:
    """
    Interval-based silent refresh.

    Usage:
        poller = PollingFallback("friends", controller.poll, interval_s=1.0)
        lifecycle.add_observer(poller)
        poller.start()
        ...
        await poller.stop()
    """

    __slots__ = (
        "_name", "_refresh", "_interval_s", "_initial_delay_s", "_on_error",
        "_task", "_paused", "_stopped", "_ticks", "_metrics",
    )

    def __init__(
        self,
        name: str,
        refresh: Callable[[], Awaitable[object]],
        interval_s: float,
        initial_delay_s: float = 0.0,
        on_error: Optional[Callable[[SyncError], None]] = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        if interval_s > C.MAX_POLL_S:
            raise ValueError(f"interval_s cannot exceed {C.MAX_POLL_S}s")
        self._name = name
        self._refresh = refresh
        self._interval_s = interval_s
        self._initial_delay_s = initial_delay_s
        self._on_error = on_error
        self._task: Optional[asyncio.Task[None]] = None
        self._paused = False
        self._stopped = False
        self._ticks = 0
        self._metrics = get_metrics()

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def ticks(self) -> int:
        return self._ticks

    def start(self) -> None:
        if self._stopped:
            return
        self._cancel()
        self._paused = False
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"poll-{self._name}"
        )
        logger.debug(f"Polling {self._name} every {self._interval_s}s")

    def pause(self) -> None:
        if self._stopped:
            return
        self._paused = True
        self._cancel()

    def resume(self) -> None:
        if self._stopped or not self._paused:
            return
        self.start()

    async def stop(self) -> None:
        self._stopped = True
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        if self._initial_delay_s > 0:
            await asyncio.sleep(self._initial_delay_s)
        while True:
            await self._tick()
            await asyncio.sleep(self._interval_s)

    async def _tick(self) -> None:
        self._ticks += 1
        self._metrics.inc(SyncMetrics.POLL_TICKS, poller=self._name)
        try:
            await self._refresh()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_exception(exc, f"poll:{self._name}")
            self._metrics.inc(SyncMetrics.POLL_ERRORS, poller=self._name)
            logger.warning(f"Poll {self._name} failed: {error}")
            if self._on_error is not None:
                try:
                    self._on_error(error)
                except Exception:
                    logger.exception(f"Error handler for poller {self._name} failed")

    # Lifecycle observer hooks
    def on_foreground(self) -> None:
        self.resume()

    def on_background(self) -> None:
        self.pause()

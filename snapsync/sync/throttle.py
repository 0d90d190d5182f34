"""
Reconciliation Throttler: Coalesced Fetch-and-Merge

Realtime notifications arrive as bursts of entity-id hints. Rather than
fetching once per hint, the throttler collects ids in one pending set
and flushes them as a single batched fetch once the stream goes quiet.

Timing:
    - Sliding debounce window: every hint pushes the flush back to
      `now + window`
    - Optional max_wait bounds starvation: the flush never moves past
      `first_hint + max_wait`, however long the burst lasts
    - Hints that arrive while a flush is in flight start a new window;
      flushes of one throttler never overlap and merge in flush order

Failure Semantics:
    A failed fetch is logged and swallowed. Its ids are not retried; the
    next hint or poll covers them. The classified error is handed to
    on_error so an expired session still reaches the session layer.

Teardown:
    close() cancels the timer and any in-flight flush. No merge runs
    after close() returns.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

from snapsync.core.errors import SyncError, classify_exception
from snapsync.core.types import EntityId, Row
from snapsync.observability.metrics import SyncMetrics, get_metrics

logger = logging.getLogger(__name__)

FetchByIds = Callable[[list[EntityId]], Awaitable[list[Row]]]
MergeRows = Callable[[list[Row], list[EntityId]], None]
ErrorHandler = Callable[[SyncError], None]


class ReconciliationThrottler:
    """
    Debounced batch reconciler for one entity stream.

    Usage:
        throttler = ReconciliationThrottler(
            "stories",
            fetch=fetch_stories_by_ids,
            merge=merge_stories,
            window_s=0.5,
            max_wait_s=2.0,
        )
        throttler.hint(story_id)   # from the realtime callback
        ...
        await throttler.close()
    """

    __slots__ = (
        "_name", "_fetch", "_merge", "_window_s", "_max_wait_s", "_on_error",
        "_pending", "_first_hint_at", "_timer", "_inflight", "_flush_lock",
        "_closed", "_flush_count", "_metrics",
    )

    def __init__(
        self,
        name: str,
        fetch: FetchByIds,
        merge: MergeRows,
        window_s: float,
        max_wait_s: Optional[float] = None,
        on_error: Optional[ErrorHandler] = None,
    ) -> None:
        if window_s <= 0:
            raise ValueError("window_s must be positive")
        if max_wait_s is not None and max_wait_s < window_s:
            raise ValueError("max_wait_s cannot be shorter than window_s")
        self._name = name
        self._fetch = fetch
        self._merge = merge
        self._window_s = window_s
        self._max_wait_s = max_wait_s
        self._on_error = on_error
        # dict as an insertion-ordered set
        self._pending: dict[EntityId, None] = {}
        self._first_hint_at: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._inflight: set[asyncio.Task[None]] = set()
        self._flush_lock = asyncio.Lock()
        self._closed = False
        self._flush_count = 0
        self._metrics = get_metrics()

    # =========================================================================
    # Properties
    # =========================================================================
    @property
    def name(self) -> str:
        return self._name

    @property
    def pending(self) -> tuple[EntityId, ...]:
        return tuple(self._pending)

    @property
    def flush_count(self) -> int:
        """Number of batched fetches issued."""
        return self._flush_count

    @property
    def scheduled(self) -> bool:
        return self._timer is not None

    @property
    def closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Hints
    # =========================================================================
    def hint(self, entity_id: Optional[EntityId]) -> None:
        """Record that entity_id changed and (re)arm the flush timer."""
        if self._closed or not entity_id:
            return
        self._pending[entity_id] = None
        self._arm()

    def hint_many(self, entity_ids: Iterable[Optional[EntityId]]) -> None:
        if self._closed:
            return
        added = False
        for entity_id in entity_ids:
            if entity_id:
                self._pending[entity_id] = None
                added = True
        if added:
            self._arm()

    def _arm(self) -> None:
        loop = asyncio.get_running_loop()
        now = loop.time()
        if self._first_hint_at is None:
            self._first_hint_at = now
        deadline = now + self._window_s
        if self._max_wait_s is not None:
            deadline = min(deadline, self._first_hint_at + self._max_wait_s)
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(max(0.0, deadline - now), self._fire)

    def _take_pending(self) -> list[EntityId]:
        ids = list(self._pending)
        self._pending.clear()
        self._first_hint_at = None
        return ids

    def _fire(self) -> None:
        self._timer = None
        if self._closed:
            return
        ids = self._take_pending()
        if not ids:
            return
        task = asyncio.get_running_loop().create_task(
            self._flush(ids), name=f"reconcile-{self._name}"
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    # =========================================================================
    # Flush
    # =========================================================================
    async def flush_now(self) -> None:
        """Flush pending hints immediately instead of waiting for the window."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        ids = self._take_pending()
        if ids:
            await self._flush(ids)

    async def _flush(self, ids: list[EntityId]) -> None:
        async with self._flush_lock:
            if self._closed:
                return
            self._flush_count += 1
            self._metrics.inc(SyncMetrics.RECONCILE_FLUSHES, throttler=self._name)
            logger.debug(f"Reconciling {len(ids)} {self._name} ids")

            histogram = self._metrics.histogram(SyncMetrics.RECONCILE_FLUSH_SECONDS, ("throttler",))
            with histogram.time(throttler=self._name):
                try:
                    rows = await self._fetch(ids)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._handle_fetch_error(exc, ids)
                    return

            if self._closed:
                return
            try:
                self._merge(rows, ids)
            except Exception:
                logger.exception(f"Merge failed for {self._name} batch of {len(ids)}")

    def _handle_fetch_error(self, exc: Exception, ids: list[EntityId]) -> None:
        error = classify_exception(exc, f"reconcile:{self._name}")
        error.context.setdefault("ids", ids)
        self._metrics.inc(SyncMetrics.RECONCILE_FLUSH_ERRORS, throttler=self._name)
        logger.warning(f"Reconcile fetch for {self._name} failed, dropping {len(ids)} ids: {error}")
        if self._on_error is not None:
            try:
                self._on_error(error)
            except Exception:
                logger.exception(f"Error handler for {self._name} throttler failed")

    async def wait_idle(self) -> None:
        """Wait for flushes already started (not for pending hints)."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # =========================================================================
    # Teardown
    # =========================================================================
    async def close(self) -> None:
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending.clear()
        self._first_hint_at = None
        inflight = list(self._inflight)
        for task in inflight:
            task.cancel()
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)
        logger.debug(f"Throttler {self._name} closed")

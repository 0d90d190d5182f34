"""
Sync Controller Base: Cache-Seeded, Realtime-Driven Read Model

Every domain controller follows the same pipeline:

    start()
      1. Seed from CacheStore (READY) or announce NO_CACHE (LOADING)
      2. Register subscriptions with the ChannelMultiplexer
      3. Start the PollingFallback (foreground only)
      4. Fetch once; success and failure both end in READY

    realtime change -> throttler hint -> batched fetch -> _write()
    local write     -> _write() (optionally through the optimistic tracker)

_write() is the only path that changes controller data: it runs the
transformation through CacheStore.update() for the controller's key and
owner, then publishes the result to data listeners.

Teardown:
    close() unsubscribes, closes throttlers, stops the poller and cancels
    every task the controller spawned. No listener is called after
    close() returns.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Coroutine,
    Generic,
    Optional,
    Sequence,
    TypeVar,
)

from snapsync.cache.store import CacheStore
from snapsync.controllers.state_machine import (
    ControllerState,
    ControllerStateEvent,
    ControllerStateMachine,
    Trigger,
)
from snapsync.core.config import SyncConfig
from snapsync.core.errors import (
    AuthExpiredError,
    MutationError,
    SyncError,
    classify_exception,
)
from snapsync.core.types import EntityId, Row, UserId
from snapsync.observability.metrics import SyncMetrics, get_metrics
from snapsync.realtime.models import Change, TableFilter
from snapsync.realtime.multiplexer import ChannelMultiplexer
from snapsync.remote.protocol import RemoteDataService
from snapsync.sync.lifecycle import AppLifecycle
from snapsync.sync.polling import PollingFallback
from snapsync.sync.registry import GlobalEntityRegistry
from snapsync.sync.throttle import FetchByIds, MergeRows, ReconciliationThrottler

logger = logging.getLogger(__name__)

S = TypeVar("S")

DataListener = Callable[[S], None]
ErrorListener = Callable[[SyncError], None]


# =============================================================================
# DEPENDENCIES
# =============================================================================
@dataclass
class SyncContext:
    """
    Per-session dependency bundle injected into every controller.

    on_error receives errors that concern the session as a whole
    (an expired session, most importantly).
    """

    service: RemoteDataService
    cache: CacheStore
    mux: ChannelMultiplexer
    profiles: GlobalEntityRegistry[Row]
    user_id: UserId
    config: SyncConfig = field(default_factory=SyncConfig)
    lifecycle: AppLifecycle = field(default_factory=AppLifecycle)
    on_error: Optional[ErrorListener] = None


@dataclass(frozen=True, slots=True)
class SubscriptionSpec:
    """One multiplexer registration a controller owns."""

    id: str
    filters: Sequence[TableFilter]
    callback: Callable[[Change], None]


# =============================================================================
# BASE CONTROLLER
# =============================================================================
class SyncController(Generic[S]):
    """
    Base class for domain controllers.

    Subclasses define:
        name            controller name (logging, metrics, task names)
        cache_key       logical CacheStore key holding the whole read model
        empty()         data shown when nothing is known
        _fetch()        full authoritative load
        _subscriptions  multiplexer registrations
        _poll_interval  seconds between fallback polls, or None
    """

    name: str = "controller"

    def __init__(self, ctx: SyncContext, cache_key: str) -> None:
        self._ctx = ctx
        self._cache_key = cache_key
        self._fsm = ControllerStateMachine(self.name)
        self._data: S = self.empty()
        self._listeners: list[DataListener[S]] = []
        self._error_listeners: list[ErrorListener] = []
        self._last_error: Optional[SyncError] = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._refresh_task: Optional[asyncio.Task[S]] = None
        self._throttlers: list[ReconciliationThrottler] = []
        self._subscription_ids: list[str] = []
        self._poller: Optional[PollingFallback] = None
        self._started = False
        self._closed = False
        self._metrics = get_metrics()

    # =========================================================================
    # Hooks
    # =========================================================================
    def empty(self) -> S:
        raise NotImplementedError

    async def _fetch(self) -> S:
        raise NotImplementedError

    def _subscriptions(self) -> list[SubscriptionSpec]:
        return []

    def _poll_interval(self) -> Optional[float]:
        return None

    def _reconcile_fetched(self, fetched: S, current: S) -> S:
        """Combine a full fetch with current data. Default: fetch wins."""
        return fetched

    # =========================================================================
    # Properties
    # =========================================================================
    @property
    def data(self) -> S:
        return self._data

    @property
    def state(self) -> ControllerState:
        return self._fsm.state

    @property
    def state_machine(self) -> ControllerStateMachine:
        return self._fsm

    @property
    def user_id(self) -> UserId:
        return self._ctx.user_id

    @property
    def cache_key(self) -> str:
        return self._cache_key

    @property
    def last_error(self) -> Optional[SyncError]:
        return self._last_error

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def poller(self) -> Optional[PollingFallback]:
        return self._poller

    # =========================================================================
    # Listeners
    # =========================================================================
    def add_listener(self, listener: DataListener[S]) -> Callable[[], None]:
        """Register a data listener; returns a callable that removes it."""
        if listener not in self._listeners:
            self._listeners.append(listener)
        return lambda: self.remove_listener(listener)

    def remove_listener(self, listener: DataListener[S]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_error_listener(self, listener: ErrorListener) -> Callable[[], None]:
        if listener not in self._error_listeners:
            self._error_listeners.append(listener)
        return lambda: self.remove_error_listener(listener)

    def remove_error_listener(self, listener: ErrorListener) -> None:
        if listener in self._error_listeners:
            self._error_listeners.remove(listener)

    def add_state_listener(self, listener: Callable[[ControllerStateEvent], None]) -> None:
        self._fsm.add_listener(listener)

    # =========================================================================
    # Lifecycle
    # =========================================================================
    async def start(self) -> S:
        """Seed, attach and run the first load. Idempotent."""
        if self._started or self._closed:
            return self._data
        self._started = True

        cached = self._ctx.cache.get(self._cache_key, owner=self.user_id)
        if cached is not None:
            self._publish(cached)
            self._fsm.transition(Trigger.SEED_FROM_CACHE)
        else:
            self._fsm.transition(Trigger.NO_CACHE)

        self._attach()
        logger.info(f"{self.name} started ({self._fsm.state.name.lower()})")
        return await self.refresh(silent=cached is not None)

    def _attach(self) -> None:
        for spec in self._subscriptions():
            self._ctx.mux.subscribe(spec.id, spec.filters, self._guarded(spec.callback))
            self._subscription_ids.append(spec.id)

        interval = self._poll_interval()
        if interval is None:
            return
        self._poller = PollingFallback(
            self.name,
            self.poll,
            interval_s=interval,
            initial_delay_s=self._ctx.config.polling.initial_delay_s,
            on_error=self._report_error,
        )
        self._ctx.lifecycle.add_observer(self._poller)
        self._poller.start()
        if not self._ctx.lifecycle.is_foreground:
            self._poller.pause()

    def _guarded(self, callback: Callable[[Change], None]) -> Callable[[Change], None]:
        def deliver(change: Change) -> None:
            if not self._closed:
                callback(change)
        return deliver

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._fsm.transition(Trigger.TEARDOWN)

        for sub_id in self._subscription_ids:
            self._ctx.mux.unsubscribe(sub_id)
        self._subscription_ids.clear()

        if self._poller is not None:
            self._ctx.lifecycle.remove_observer(self._poller)
            await self._poller.stop()

        for throttler in self._throttlers:
            await throttler.close()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._listeners.clear()
        self._error_listeners.clear()
        logger.info(f"{self.name} closed")

    # =========================================================================
    # Loading
    # =========================================================================
    async def refresh(self, silent: bool = False) -> S:
        """
        Full fetch. Concurrent callers share one request.

        Never raises for fetch errors: they are recorded on last_error,
        reported to error listeners, and the previous data is kept.
        """
        if self._closed:
            return self._data
        task = self._refresh_task
        if task is None or task.done():
            task = self._spawn(self._do_refresh(silent), f"{self.name}-refresh")
            self._refresh_task = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled() and self._closed:
                return self._data
            raise

    async def poll(self) -> None:
        await self.refresh(silent=True)

    async def _do_refresh(self, silent: bool) -> S:
        if self._fsm.state is ControllerState.UNINITIALIZED:
            self._fsm.transition(Trigger.NO_CACHE)
        elif self._fsm.state is ControllerState.READY:
            self._fsm.transition(Trigger.REFRESH_STARTED)

        try:
            fetched = await self._fetch()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_exception(exc, f"refresh:{self.name}")
            self._load_failed(error, silent)
            return self._data

        if self._closed:
            return self._data
        data = self._write(lambda current: self._reconcile_fetched(fetched, current))
        if self._fsm.state is ControllerState.LOADING:
            self._fsm.transition(Trigger.LOAD_SUCCEEDED)
        elif self._fsm.state is ControllerState.REFRESHING:
            self._fsm.transition(Trigger.REFRESH_SUCCEEDED)
        self._last_error = None
        return data

    def _load_failed(self, error: SyncError, silent: bool) -> None:
        if silent:
            logger.debug(f"Silent refresh of {self.name} failed: {error}")
        else:
            logger.warning(f"Loading {self.name} failed: {error}")

        if self._fsm.state is ControllerState.LOADING:
            self._publish(self._data)
            self._fsm.transition(Trigger.LOAD_FAILED, error=error)
        elif self._fsm.state is ControllerState.REFRESHING:
            self._fsm.transition(Trigger.REFRESH_FAILED, error=error)
        self._report_error(error)

    # =========================================================================
    # Writes
    # =========================================================================
    def _write(self, fn: Callable[[S], S]) -> S:
        """
        Apply fn to the current data through CacheStore.update and publish.

        fn runs under the cache lock; it must be pure and fast. When the
        cache entry has expired, fn sees the controller's in-memory data.
        """
        fallback = self._data

        def apply(current: Optional[S]) -> S:
            return fn(fallback if current is None else current)

        data = self._ctx.cache.update(self._cache_key, apply, owner=self.user_id)
        self._publish(data)
        return data

    def _publish(self, data: S) -> None:
        self._data = data
        if self._closed:
            return
        for listener in list(self._listeners):
            try:
                listener(data)
            except Exception:
                logger.exception(f"{self.name} data listener failed")
                self._metrics.inc(SyncMetrics.LISTENER_ERRORS, source=self.name)

    # =========================================================================
    # Errors
    # =========================================================================
    def _report_error(self, error: SyncError) -> None:
        self._last_error = error
        if not self._closed:
            for listener in list(self._error_listeners):
                try:
                    listener(error)
                except Exception:
                    logger.exception(f"{self.name} error listener failed")
        if isinstance(error, AuthExpiredError) and self._ctx.on_error is not None:
            self._ctx.on_error(error)

    # =========================================================================
    # Helpers
    # =========================================================================
    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _throttler(
        self,
        name: str,
        fetch: FetchByIds,
        merge: MergeRows,
        window_s: float,
    ) -> ReconciliationThrottler:
        throttler = ReconciliationThrottler(
            f"{self.name}.{name}",
            fetch=fetch,
            merge=merge,
            window_s=window_s,
            max_wait_s=self._ctx.config.throttle.max_wait_s,
            on_error=self._report_error,
        )
        self._throttlers.append(throttler)
        return throttler

    def _sub_id(self, suffix: str = "") -> str:
        base = f"{self.name}:{self.user_id}"
        return f"{base}:{suffix}" if suffix else base

    async def _mutation(self, operation: str, call: Awaitable[Optional[Row]]) -> Optional[Row]:
        """Await a direct (non-optimistic) write, surfacing failures to the caller."""
        try:
            return await call
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_exception(exc, operation)
            if isinstance(error, AuthExpiredError):
                self._report_error(error)
                raise error from exc
            raise MutationError.rejected(operation, str(error), cause=exc) from exc

    def __repr__(self) -> str:
        return f"{type(self).__name__}(user={self.user_id!r}, state={self._fsm.state.name})"


def replace_by_id(rows: Sequence[Row], record: Row, prepend: bool = False) -> list[Row]:
    """Replace the row with record's id, or add record when absent."""
    record_id = record.get("id")
    out = list(rows)
    for i, row in enumerate(out):
        if row.get("id") == record_id:
            out[i] = record
            return out
    return [record, *out] if prepend else [*out, record]


def without_ids(rows: Sequence[Row], ids: set[EntityId] | frozenset[EntityId]) -> list[Row]:
    return [r for r in rows if r.get("id") not in ids]

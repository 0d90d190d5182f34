"""
Channel Multiplexer: One Realtime Connection per Session

Fans a single session-wide change feed out to many independent
subscribers (controllers), each registering table filters and a callback.

Architecture:
    - One change stream per referenced table, each drained by its own
      pump task; together they form the session "connection"
    - The connection is created lazily by the first subscribe() and torn
      down when the last subscription goes
    - Dispatch is synchronous over a snapshot of subscriptions: for each
      enabled subscription, the first matching filter causes exactly one
      callback invocation
    - A failing callback is logged and isolated; it never affects other
      subscribers or the connection

Failure Semantics:
    A stream error or end moves the connection to DISCONNECTED and
    notifies state listeners with a ChannelError. Nothing reconnects on
    its own; controllers keep serving cached data and rely on polling.
    Reconnection is either explicit (connect()) or delegated to the
    opt-in ReconnectSupervisor.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional, Sequence

from snapsync.core.config import RealtimeConfig
from snapsync.core.errors import ChannelError
from snapsync.core.types import EventKind, Ok, Err, Result, UserId
from snapsync.observability.metrics import SyncMetrics, get_metrics
from snapsync.realtime.models import (
    ChangeCallback,
    ConnectionState,
    StateListener,
    Subscription,
    TableFilter,
    normalize_filters,
)
from snapsync.remote.protocol import Change, ChangeStream, RemoteDataService

logger = logging.getLogger(__name__)


class ChannelMultiplexer:
    """
    Session-scoped realtime fan-out.

    Usage:
        mux = ChannelMultiplexer(service)
        mux.subscribe(
            "stories-controller",
            [TableFilter.of("stories"), TableFilter.of("story_views", "INSERT")],
            on_change,
        )
        await mux.connect()
        ...
        mux.unsubscribe("stories-controller")
        await mux.close()
    """

    __slots__ = (
        "_service", "_config", "_subscriptions", "_state", "_state_listeners",
        "_pumps", "_streams", "_connect_task", "_generation", "_user_id", "_last_error",
        "_retired", "_metrics",
    )

    def __init__(
        self,
        service: RemoteDataService,
        config: Optional[RealtimeConfig] = None,
    ) -> None:
        self._service = service
        self._config = config or RealtimeConfig()
        self._subscriptions: dict[str, Subscription] = {}
        self._state = ConnectionState.DISCONNECTED
        self._state_listeners: list[StateListener] = []
        self._pumps: dict[str, asyncio.Task[None]] = {}
        self._streams: dict[str, ChangeStream] = {}
        self._connect_task: Optional[asyncio.Task[Result[None, ChannelError]]] = None
        self._generation = 0
        self._user_id: Optional[UserId] = None
        self._last_error: Optional[ChannelError] = None
        # Cancelled tasks not yet awaited; close() reaps them
        self._retired: set[asyncio.Task[object]] = set()
        self._metrics = get_metrics()

    # =========================================================================
    # Properties
    # =========================================================================
    @property
    def name(self) -> str:
        return self._config.channel_name

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def user_id(self) -> Optional[UserId]:
        """User the current connection was opened for."""
        return self._user_id

    @property
    def last_error(self) -> Optional[ChannelError]:
        return self._last_error

    @property
    def subscription_ids(self) -> list[str]:
        return list(self._subscriptions)

    def get_subscription(self, sub_id: str) -> Optional[Subscription]:
        return self._subscriptions.get(sub_id)

    def tables(self) -> frozenset[str]:
        tables: set[str] = set()
        for sub in self._subscriptions.values():
            tables |= sub.tables
        return frozenset(tables)

    # =========================================================================
    # Registration
    # =========================================================================
    def subscribe(
        self,
        sub_id: str,
        filters: Sequence[TableFilter],
        callback: ChangeCallback,
        enabled: bool = True,
    ) -> Subscription:
        """
        Register a subscriber. Idempotent by id: subscribing an existing id
        replaces its filters, callback and enabled flag in place, so the
        latest registration wins.

        Lazily opens the connection when an event loop is running and no
        earlier connection attempt has failed.
        """
        if sub_id in self._subscriptions:
            return self.update_subscription(sub_id, filters, callback, enabled)

        subscription = Subscription(
            id=sub_id,
            filters=normalize_filters(filters),
            callback=callback,
            enabled=enabled,
        )
        self._subscriptions[sub_id] = subscription
        self._metrics.gauge(SyncMetrics.REALTIME_SUBSCRIPTIONS).set(len(self._subscriptions))
        logger.debug(f"Subscription {sub_id} registered on {sorted(subscription.tables)}")
        self._on_tables_changed()
        return subscription

    def update_subscription(
        self,
        sub_id: str,
        filters: Optional[Sequence[TableFilter]] = None,
        callback: Optional[ChangeCallback] = None,
        enabled: Optional[bool] = None,
    ) -> Subscription:
        """Mutate a registration in place, or subscribe when the id is unknown."""
        subscription = self._subscriptions.get(sub_id)
        if subscription is None:
            if filters is None or callback is None:
                raise ValueError(f"Unknown subscription {sub_id!r} needs filters and a callback")
            return self.subscribe(
                sub_id, filters, callback, True if enabled is None else enabled
            )

        if filters is not None:
            subscription.filters = normalize_filters(filters)
        if callback is not None:
            subscription.callback = callback
        if enabled is not None:
            subscription.enabled = enabled
        self._on_tables_changed()
        return subscription

    def unsubscribe(self, sub_id: str) -> bool:
        """Remove a registration; the last removal tears the connection down."""
        removed = self._subscriptions.pop(sub_id, None)
        if removed is None:
            return False
        self._metrics.gauge(SyncMetrics.REALTIME_SUBSCRIPTIONS).set(len(self._subscriptions))
        logger.debug(f"Subscription {sub_id} removed")
        if not self._subscriptions:
            self._teardown_connection(error=None)
            self._last_error = None
        return True

    # =========================================================================
    # State listeners
    # =========================================================================
    def add_state_listener(self, listener: StateListener) -> None:
        if listener not in self._state_listeners:
            self._state_listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        if listener in self._state_listeners:
            self._state_listeners.remove(listener)

    def _set_state(self, state: ConnectionState, error: Optional[ChannelError] = None) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        logger.info(f"Channel {self.name}: {previous.name} -> {state.name}")
        for listener in list(self._state_listeners):
            try:
                listener(state, error)
            except Exception:
                logger.exception("Connection state listener failed")
                self._metrics.inc(SyncMetrics.LISTENER_ERRORS, source="realtime")

    # =========================================================================
    # Connection
    # =========================================================================
    async def connect(self) -> Result[None, ChannelError]:
        """
        Open the connection (or join an attempt already in progress).

        Returns Err with the ChannelError when a stream cannot be opened;
        the multiplexer is then DISCONNECTED.
        """
        if self._state is ConnectionState.CONNECTED:
            return Ok(None)
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.get_running_loop().create_task(
                self._open(), name=f"{self.name}-connect"
            )
        task = self._connect_task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                # Torn down while connecting
                return Err(ChannelError.stream_closed("*"))
            raise

    async def _open(self) -> Result[None, ChannelError]:
        generation = self._generation
        self._set_state(ConnectionState.CONNECTING)
        opened: dict[str, ChangeStream] = {}
        table = ""
        try:
            for table in sorted(self.tables()):
                opened[table] = await self._service.subscribe_changes(table, EventKind.ANY)
        except asyncio.CancelledError:
            await self._close_streams(opened.values())
            raise
        except Exception as exc:
            await self._close_streams(opened.values())
            error = ChannelError.connect_failed(table, cause=exc)
            if generation == self._generation:
                logger.warning(f"Channel {self.name} failed to connect: {error}")
                self._last_error = error
                self._set_state(ConnectionState.DISCONNECTED, error)
            return Err(error)

        if generation != self._generation:
            # Torn down while connecting
            await self._close_streams(opened.values())
            return Err(ChannelError.stream_closed(table or "*"))

        self._user_id = self._service.current_user_id()
        for name, stream in opened.items():
            self._start_pump(name, stream)
        self._last_error = None
        self._set_state(ConnectionState.CONNECTED)

        # Tables added by subscribe() while the streams were opening
        for missing in self.tables() - opened.keys():
            self._spawn_table(missing)
        return Ok(None)

    def _on_tables_changed(self) -> None:
        if not self._subscriptions:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; connect() must be awaited explicitly
            return
        if self._state is ConnectionState.DISCONNECTED:
            pending = self._connect_task is not None and not self._connect_task.done()
            # A pending attempt reads the table set when it runs
            if self._last_error is None and not pending:
                self._connect_task = asyncio.get_running_loop().create_task(
                    self._open(), name=f"{self.name}-connect"
                )
        elif self._state is ConnectionState.CONNECTED:
            for table in self.tables() - self._pumps.keys():
                self._spawn_table(table)

    def _spawn_table(self, table: str) -> None:
        if table in self._pumps:
            return
        generation = self._generation

        async def open_table() -> None:
            try:
                stream = await self._service.subscribe_changes(table, EventKind.ANY)
            except Exception as exc:
                if generation == self._generation:
                    self._drop_connection(ChannelError.connect_failed(table, cause=exc))
                return
            if generation != self._generation or self._pumps.get(table) is not asyncio.current_task():
                await stream.aclose()
                return
            self._start_pump(table, stream)

        # Placeholder so concurrent calls don't open the table twice
        task = asyncio.get_running_loop().create_task(open_table(), name=f"{self.name}-open-{table}")
        self._pumps[table] = task

    def _start_pump(self, table: str, stream: ChangeStream) -> None:
        self._streams[table] = stream
        self._pumps[table] = asyncio.get_running_loop().create_task(
            self._pump(table, stream, self._generation),
            name=f"{self.name}-{table}",
        )

    async def _pump(self, table: str, stream: ChangeStream, generation: int) -> None:
        error: Optional[ChannelError] = None
        try:
            async for change in stream:
                if generation != self._generation:
                    break
                self.dispatch(change)
            else:
                error = ChannelError.stream_closed(table)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = ChannelError.stream_closed(table, cause=exc)
        finally:
            if self._streams.get(table) is stream:
                del self._streams[table]
            await stream.aclose()

        if error is not None and generation == self._generation:
            logger.warning(f"Channel {self.name} lost stream for {table}: {error}")
            self._pumps.pop(table, None)
            self._drop_connection(error)

    def _drop_connection(self, error: ChannelError) -> None:
        self._metrics.inc(SyncMetrics.REALTIME_DISCONNECTS)
        self._last_error = error
        self._teardown_connection(error)

    def _teardown_connection(self, error: Optional[ChannelError]) -> None:
        self._generation += 1
        current = asyncio.current_task() if _loop_running() else None
        for task in self._pumps.values():
            if task is not current:
                task.cancel()
                self._retire(task)
        self._pumps.clear()
        # A pump cancelled before its first step never reaches its finally
        streams = list(self._streams.values())
        self._streams.clear()
        if streams and _loop_running():
            self._retire(asyncio.get_running_loop().create_task(
                self._close_streams(streams), name=f"{self.name}-close-streams"
            ))
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
            self._retire(self._connect_task)
        self._connect_task = None
        self._user_id = None
        self._set_state(ConnectionState.DISCONNECTED, error)

    def _retire(self, task: asyncio.Task[object]) -> None:
        self._retired.add(task)
        task.add_done_callback(self._retired.discard)

    @staticmethod
    async def _close_streams(streams: Iterable[ChangeStream]) -> None:
        for stream in list(streams):
            try:
                await stream.aclose()
            except Exception:
                logger.debug("Ignoring error while closing stream", exc_info=True)

    # =========================================================================
    # Dispatch
    # =========================================================================
    def dispatch(self, change: Change) -> int:
        """
        Deliver one change. Returns the number of callbacks invoked.

        Subscriptions removed by an earlier callback in the same dispatch
        are skipped.
        """
        self._metrics.inc(SyncMetrics.REALTIME_CHANGES, table=change.table)
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if not subscription.enabled:
                continue
            if self._subscriptions.get(subscription.id) is not subscription:
                continue
            if subscription.first_match(change) is None:
                continue
            delivered += 1
            try:
                subscription.callback(change)
            except Exception:
                logger.exception(
                    f"Subscriber {subscription.id} failed handling "
                    f"{change.kind.name} on {change.table}"
                )
                self._metrics.inc(SyncMetrics.REALTIME_CALLBACK_ERRORS, subscription=subscription.id)
        return delivered

    # =========================================================================
    # Teardown
    # =========================================================================
    async def close(self) -> None:
        """Session teardown: drop every subscription and close the connection."""
        self._subscriptions.clear()
        self._metrics.gauge(SyncMetrics.REALTIME_SUBSCRIPTIONS).set(0)
        self._teardown_connection(error=None)
        self._last_error = None
        retired, self._retired = self._retired, set()
        if retired:
            await asyncio.gather(*retired, return_exceptions=True)
        logger.debug(f"Channel {self.name} closed")


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True

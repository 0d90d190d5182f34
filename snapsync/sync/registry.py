"""
Global Entity Registry: One Canonical Value per Entity Id

Lets unrelated consumers (a story header, a friend row, a chat title)
share the latest value of the same entity without wiring them together.

Storage Model:
    values:    entity_id -> canonical value (never implicitly expired)
    listeners: entity_id -> ordered listener list
    inflight:  entity_id -> the single fetch currently resolving it

Guarantees:
    - set() stores the value, then calls every listener registered at
      that moment exactly once, synchronously; a failing listener is
      logged and does not stop the others
    - Removing the last listener keeps the value
    - resolve() issues at most one fetch per id at a time, however many
      callers ask; all of them receive its result
    - clear_all() (session teardown) drops values and forgets in-flight
      fetches; a fetch that completes afterwards is not stored

The registry is constructed per session owner and injected; it is the
only writer of its values.
"""

from __future__ import annotations

import asyncio
import logging
from typing import (
    TYPE_CHECKING,
    Awaitable,
    Callable,
    Generic,
    Optional,
    TypeVar,
)

from snapsync.cache.store import CacheStore
from snapsync.core.types import EntityId
from snapsync.observability.metrics import SyncMetrics, get_metrics

if TYPE_CHECKING:
    from snapsync.session.events import SessionChanged

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], None]
Loader = Callable[[EntityId], Awaitable[Optional[T]]]


class GlobalEntityRegistry(Generic[T]):
    """
    Canonical values with listener fan-out and fetch-once resolution.

    Usage:
        profiles: GlobalEntityRegistry[Row] = GlobalEntityRegistry(
            "profiles", cache=cache, cache_key=CacheKey.profile, cache_owner=uid,
        )
        unsubscribe = profiles.add_listener(uid, on_profile)
        profile = await profiles.resolve(uid, load_profile)
        profiles.set(uid, {**profile, "bio": "new"})   # on_profile called once
        unsubscribe()
    """

    __slots__ = (
        "_name", "_values", "_listeners", "_inflight", "_generation",
        "_cache", "_cache_key", "_cache_owner", "_metrics",
    )

    def __init__(
        self,
        name: str = "registry",
        cache: Optional[CacheStore] = None,
        cache_key: Optional[Callable[[EntityId], str]] = None,
        cache_owner: Optional[str] = None,
    ) -> None:
        self._name = name
        self._values: dict[EntityId, T] = {}
        self._listeners: dict[EntityId, list[Listener[T]]] = {}
        self._inflight: dict[EntityId, asyncio.Task[Optional[T]]] = {}
        self._generation = 0
        self._cache = cache
        self._cache_key = cache_key
        self._cache_owner = cache_owner
        self._metrics = get_metrics()

    # =========================================================================
    # Values
    # =========================================================================
    def get(self, entity_id: EntityId) -> Optional[T]:
        return self._values.get(entity_id)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._values

    def __len__(self) -> int:
        return len(self._values)

    def set(self, entity_id: EntityId, value: T) -> None:
        """Store the canonical value and notify current listeners once each."""
        self._values[entity_id] = value
        if self._cache is not None and self._cache_key is not None:
            self._cache.set(self._cache_key(entity_id), value, self._cache_owner)
        for listener in list(self._listeners.get(entity_id, ())):
            try:
                listener(value)
            except Exception:
                logger.exception(f"{self._name} listener for {entity_id} failed")
                self._metrics.inc(SyncMetrics.LISTENER_ERRORS, source=self._name)

    def clear(self, entity_id: EntityId) -> None:
        self._values.pop(entity_id, None)
        self._inflight.pop(entity_id, None)

    def clear_all(self) -> None:
        self._generation += 1
        self._values.clear()
        self._inflight.clear()
        logger.debug(f"{self._name} registry reset")

    def handle_session_changed(self, event: SessionChanged) -> None:
        self.clear_all()

    # =========================================================================
    # Listeners
    # =========================================================================
    def add_listener(self, entity_id: EntityId, listener: Listener[T]) -> Callable[[], None]:
        """Register listener; returns a callable that removes it."""
        listeners = self._listeners.setdefault(entity_id, [])
        if listener not in listeners:
            listeners.append(listener)
        return lambda: self.remove_listener(entity_id, listener)

    def remove_listener(self, entity_id: EntityId, listener: Listener[T]) -> None:
        listeners = self._listeners.get(entity_id)
        if not listeners or listener not in listeners:
            return
        listeners.remove(listener)
        if not listeners:
            del self._listeners[entity_id]

    def listener_count(self, entity_id: EntityId) -> int:
        return len(self._listeners.get(entity_id, ()))

    # =========================================================================
    # Fetch-once resolution
    # =========================================================================
    async def resolve(
        self,
        entity_id: EntityId,
        loader: Loader[T],
        force: bool = False,
    ) -> Optional[T]:
        """
        Return the canonical value, loading it at most once.

        Order: registry value, fresh cache entry, then one shared fetch.
        force skips the first two but still joins a fetch in flight.
        """
        if not force:
            if entity_id in self._values:
                return self._values[entity_id]
            cached = self._cached(entity_id)
            if cached is not None:
                self._values[entity_id] = cached
                return cached

        task = self._inflight.get(entity_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._load(entity_id, loader, self._generation),
                name=f"{self._name}-resolve-{entity_id}",
            )
            self._inflight[entity_id] = task
        return await asyncio.shield(task)

    def is_resolving(self, entity_id: EntityId) -> bool:
        return entity_id in self._inflight

    def _cached(self, entity_id: EntityId) -> Optional[T]:
        if self._cache is None or self._cache_key is None:
            return None
        return self._cache.get(self._cache_key(entity_id), self._cache_owner)

    async def _load(self, entity_id: EntityId, loader: Loader[T], generation: int) -> Optional[T]:
        self._metrics.inc(SyncMetrics.REGISTRY_FETCHES, registry=self._name)
        try:
            value = await loader(entity_id)
        finally:
            if self._inflight.get(entity_id) is asyncio.current_task():
                del self._inflight[entity_id]
        if value is not None and generation == self._generation:
            self.set(entity_id, value)
        return value

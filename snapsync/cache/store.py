"""
Cache Store: TTL-Bounded, Owner-Namespaced Read Model

Provides the in-memory cache every controller seeds from:
- Composite key (logical key, owner) with at most one entry per key
- Per-class TTLs with lazy eviction on read
- Periodic sweeps driven by the CacheJanitor
- Atomic read-modify-write via update()

Data Model:
    Key: (logical_key, owner)  e.g. ("stories", "user-1")
    Entry:
        - data: Any (controllers treat it as immutable and copy on write)
        - timestamp: monotonic seconds at last set
        - owner: session user id or None for shared entries

Design:
    The store is purely process-lifetime; nothing is persisted.
    All operations take a re-entrant thread lock so update() is
    linearizable per key even when called from worker threads.
    No operation raises for a missing key.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Iterable,
    Optional,
    TypeVar,
)

from snapsync.cache.keys import resolve_ttl
from snapsync.core.config import CacheConfig
from snapsync.core.types import Clock
from snapsync.observability.metrics import SyncMetrics, get_metrics

if TYPE_CHECKING:
    from snapsync.session.events import SessionChanged

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Distinguishes "no entry" from a cached None
_MISSING: Any = object()


# =============================================================================
# CACHE ENTRY
# =============================================================================
@dataclass(slots=True)
class CacheEntry:
    """A cached value and the monotonic time it was written."""

    data: Any
    timestamp: float
    owner: Optional[str] = None

    def age(self, now: float) -> float:
        return now - self.timestamp

    def is_expired(self, now: float, max_age: float) -> bool:
        return self.age(now) > max_age


# =============================================================================
# CACHE STATISTICS
# =============================================================================
@dataclass
class CacheStats:
    """Cache performance statistics."""
    hits: int = 0
    misses: int = 0
    expirations: int = 0
    sweeps: int = 0
    entry_count: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


@dataclass(frozen=True, slots=True)
class WarmEntry:
    """One pre-fetch request for CacheStore.warm()."""

    key: str
    fetch: Callable[[], Awaitable[Any]]
    owner: Optional[str] = None


CompositeKey = tuple[str, Optional[str]]


# =============================================================================
# CACHE STORE
# =============================================================================
class CacheStore:
    """
    TTL cache namespaced by owner.

    Usage:
        cache = CacheStore()
        cache.set(CacheKey.STORIES, stories, owner=user_id)

        stories = cache.get(CacheKey.STORIES, owner=user_id)
        if stories is None:
            ...  # absent or expired

        cache.update(
            CacheKey.STORIES,
            lambda current: [*(current or []), story],
            owner=user_id,
        )
    """

    __slots__ = ("_entries", "_config", "_clock", "_lock", "_stats", "_metrics")

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._entries: dict[CompositeKey, CacheEntry] = {}
        self._config = config or CacheConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._stats = CacheStats()
        self._metrics = get_metrics()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------
    def ttl_for(self, key: str) -> float:
        return resolve_ttl(key, self._config)

    def get(
        self,
        key: str,
        owner: Optional[str] = None,
        max_age: Optional[float] = None,
        default: Any = None,
    ) -> Any:
        """
        Return the cached value, or default when absent or expired.

        An expired entry is deleted as a side effect.
        """
        with self._lock:
            value = self._read((key, owner), max_age)
            if value is _MISSING:
                self._stats.misses += 1
            else:
                self._stats.hits += 1
        if value is _MISSING:
            self._metrics.inc(SyncMetrics.CACHE_MISSES)
            return default
        self._metrics.inc(SyncMetrics.CACHE_HITS)
        return value

    def has(
        self,
        key: str,
        owner: Optional[str] = None,
        max_age: Optional[float] = None,
    ) -> bool:
        with self._lock:
            return self._read((key, owner), max_age) is not _MISSING

    def entry(self, key: str, owner: Optional[str] = None) -> Optional[CacheEntry]:
        """Raw entry without TTL checks (diagnostics)."""
        with self._lock:
            return self._entries.get((key, owner))

    def _read(self, composite: CompositeKey, max_age: Optional[float]) -> Any:
        entry = self._entries.get(composite)
        if entry is None:
            return _MISSING
        limit = self.ttl_for(composite[0]) if max_age is None else max_age
        if entry.is_expired(self._clock(), limit):
            del self._entries[composite]
            self._stats.expirations += 1
            self._metrics.inc(SyncMetrics.CACHE_EXPIRATIONS)
            return _MISSING
        return entry.data

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------
    def set(self, key: str, data: Any, owner: Optional[str] = None) -> None:
        """Upsert and reset the entry's timestamp."""
        with self._lock:
            self._entries[(key, owner)] = CacheEntry(
                data=data,
                timestamp=self._clock(),
                owner=owner,
            )

    def update(
        self,
        key: str,
        fn: Callable[[Any], T],
        owner: Optional[str] = None,
    ) -> T:
        """
        Atomic read-modify-write.

        fn receives the current value (None when absent or expired) and
        runs under the store lock; its result is stored and returned.
        fn must not block or await.
        """
        with self._lock:
            current = self._read((key, owner), None)
            updated = fn(None if current is _MISSING else current)
            self._entries[(key, owner)] = CacheEntry(
                data=updated,
                timestamp=self._clock(),
                owner=owner,
            )
            return updated

    def clear(self, key: str, owner: Optional[str] = None) -> bool:
        """Remove one entry. Returns whether it existed."""
        with self._lock:
            return self._entries.pop((key, owner), None) is not None

    def clear_owner(self, owner: str) -> int:
        """Remove every entry owned by owner; shared entries are kept."""
        with self._lock:
            doomed = [k for k, e in self._entries.items() if e.owner == owner]
            for composite in doomed:
                del self._entries[composite]
        if doomed:
            logger.debug(f"Cleared {len(doomed)} cache entries for owner {owner}")
        return len(doomed)

    def clear_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def invalidate(
        self,
        owner: Optional[str] = None,
        keys: Optional[Iterable[str]] = None,
    ) -> int:
        """
        Targeted invalidation.

        keys given: clear those keys for owner.
        owner only: clear everything the owner has.
        neither: clear the whole store.
        """
        if keys is not None:
            return sum(1 for key in keys if self.clear(key, owner))
        if owner is not None:
            return self.clear_owner(owner)
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------
    def cleanup(self, max_age: Optional[float] = None) -> int:
        """
        Sweep expired entries. Returns count removed.

        With max_age, every entry older than it is removed regardless
        of its class TTL.
        """
        with self._lock:
            now = self._clock()
            expired = [
                composite
                for composite, entry in self._entries.items()
                if entry.is_expired(
                    now,
                    self.ttl_for(composite[0]) if max_age is None else max_age,
                )
            ]
            for composite in expired:
                del self._entries[composite]
            self._stats.expirations += len(expired)
            self._stats.sweeps += 1
        self._metrics.inc(SyncMetrics.CACHE_SWEEPS)
        if expired:
            logger.debug(f"Cache sweep removed {len(expired)} entries")
        return len(expired)

    async def warm(self, entries: Iterable[WarmEntry]) -> int:
        """
        Pre-fetch several keys concurrently.

        A failing fetch is logged and leaves its key untouched; the
        others still land. Returns the number of keys stored.
        """
        batch = list(entries)
        if not batch:
            return 0
        results = await asyncio.gather(
            *(item.fetch() for item in batch),
            return_exceptions=True,
        )
        stored = 0
        for item, result in zip(batch, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.warning(f"Cache warm failed for {item.key} (owner={item.owner}): {result}")
                continue
            self.set(item.key, result, owner=item.owner)
            stored += 1
        return stored

    def handle_session_changed(self, event: SessionChanged) -> None:
        """Drop the departing user's entries on logout or user switch."""
        if event.previous_user_id is not None:
            self.clear_owner(event.previous_user_id)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------
    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def owners(self) -> set[Optional[str]]:
        with self._lock:
            return {e.owner for e in self._entries.values()}

    @property
    def stats(self) -> CacheStats:
        with self._lock:
            self._stats.entry_count = len(self._entries)
        return self._stats

    @property
    def config(self) -> CacheConfig:
        return self._config

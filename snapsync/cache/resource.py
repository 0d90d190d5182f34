"""
Cached fetch helper: one logical key bound to its fetch function.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from snapsync.cache.store import CacheStore
from snapsync.core.errors import AuthExpiredError, classify_exception

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CachedResource(Generic[T]):
    """
    Read-through wrapper around a single cache key.

    Usage:
        snaps = CachedResource(cache, CacheKey.INBOX_SNAPS, fetch_inbox, owner=uid)
        data = snaps.cached()
        if snaps.should_fetch():
            data = await snaps.fetch_and_cache(silent=True)

    Fetch failures are logged and yield None so a consumer keeps whatever
    it already shows. Expired sessions are the exception: AuthExpiredError
    propagates so the session layer can react.
    """

    __slots__ = ("_store", "_key", "_fetch", "_owner", "_max_age", "_enabled")

    def __init__(
        self,
        store: CacheStore,
        key: str,
        fetch: Callable[[], Awaitable[T]],
        owner: Optional[str] = None,
        max_age: Optional[float] = None,
        enabled: bool = True,
    ) -> None:
        self._store = store
        self._key = key
        self._fetch = fetch
        self._owner = owner
        self._max_age = max_age
        self._enabled = enabled

    @property
    def key(self) -> str:
        return self._key

    def cached(self) -> Optional[T]:
        if not self._enabled:
            return None
        return self._store.get(self._key, self._owner, self._max_age)

    def should_fetch(self) -> bool:
        if not self._enabled:
            return False
        return not self._store.has(self._key, self._owner, self._max_age)

    async def fetch_and_cache(self, silent: bool = False) -> Optional[T]:
        if not self._enabled:
            return None
        try:
            data = await self._fetch()
        except Exception as exc:
            error = classify_exception(exc, f"fetch:{self._key}")
            if isinstance(error, AuthExpiredError):
                raise error from exc
            log = logger.debug if silent else logger.warning
            log(f"Error fetching data for key {self._key}: {error}")
            return None
        self._store.set(self._key, data, self._owner)
        return data

    def clear(self) -> None:
        self._store.clear(self._key, self._owner)

    def __repr__(self) -> str:
        return f"CachedResource(key={self._key!r}, owner={self._owner!r})"


"""
Cache module: TTL store, key catalogue, cached-fetch helper and sweeper.
"""

from snapsync.cache.keys import CacheKey, resolve_ttl
from snapsync.cache.store import CacheStore, CacheEntry, CacheStats, WarmEntry
from snapsync.cache.resource import CachedResource
from snapsync.cache.janitor import CacheJanitor

__all__ = [
    "CacheKey",
    "resolve_ttl",
    "CacheStore",
    "CacheEntry",
    "CacheStats",
    "WarmEntry",
    "CachedResource",
    "CacheJanitor",
]

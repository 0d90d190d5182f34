"""
Unit Tests: CacheStore, CachedResource and CacheJanitor

Tests:
    - TTL expiry (class TTLs, explicit max_age, lazy eviction)
    - Owner namespacing and clear_owner
    - Atomic update(), including concurrent writers
    - Sweeps, warm-up and session change handling
"""

import asyncio
import threading

import pytest

from snapsync.cache import CacheJanitor, CacheKey, CachedResource, CacheStore, WarmEntry
from snapsync.core.config import CacheConfig
from snapsync.core.errors import AuthExpiredError
from snapsync.remote.memory import ServiceError
from snapsync.session.events import SessionChanged, SessionChangeReason
from snapsync.sync.lifecycle import AppLifecycle, AppState
from snapsync.tests.helpers import FakeClock


# =============================================================================
# GET / SET / TTL
# =============================================================================
class TestGetSet:
    """Tests for basic reads and writes."""

    def test_set_then_get_within_ttl(self, cache, clock):
        """A value read back before its TTL is returned."""
        cache.set(CacheKey.STORIES, ["s1"], owner="u1")
        clock.advance(CacheConfig().stories_ttl_s - 1)

        assert cache.get(CacheKey.STORIES, owner="u1") == ["s1"]

    def test_get_past_ttl_is_absent(self, cache, clock):
        """An expired entry reads as absent and is deleted."""
        cache.set(CacheKey.STORIES, ["s1"], owner="u1")
        clock.advance(CacheConfig().stories_ttl_s + 1)

        assert cache.get(CacheKey.STORIES, owner="u1") is None
        assert cache.entry(CacheKey.STORIES, owner="u1") is None
        assert cache.stats.expirations == 1

    def test_class_ttls_differ(self, cache, clock):
        """Friends outlive conversation messages."""
        cache.set(CacheKey.FRIENDS, [], owner="u1")
        cache.set(CacheKey.messages("c1"), [], owner="u1")
        clock.advance(60)

        assert cache.has(CacheKey.FRIENDS, owner="u1")
        assert not cache.has(CacheKey.messages("c1"), owner="u1")

    def test_explicit_max_age(self, cache, clock):
        """max_age overrides the class TTL for one read."""
        cache.set(CacheKey.FRIENDS, ["f"], owner="u1")
        clock.advance(10)

        assert cache.get(CacheKey.FRIENDS, owner="u1", max_age=5) is None

    def test_missing_key_never_raises(self, cache):
        """Reads and clears of unknown keys are quiet."""
        assert cache.get("nope") is None
        assert cache.get("nope", default=[]) == []
        assert not cache.has("nope")
        assert cache.clear("nope") is False
        assert cache.clear_owner("nobody") == 0

    def test_cached_none_is_a_hit(self, cache):
        """None is a legitimate cached value."""
        cache.set(CacheKey.USER_STORY, None, owner="u1")

        assert cache.has(CacheKey.USER_STORY, owner="u1")
        assert cache.get(CacheKey.USER_STORY, owner="u1", default="x") is None

    def test_set_resets_timestamp(self, cache, clock):
        """Re-setting a key restarts its TTL."""
        cache.set(CacheKey.STORIES, [1], owner="u1")
        clock.advance(100)
        cache.set(CacheKey.STORIES, [2], owner="u1")
        clock.advance(100)

        assert cache.get(CacheKey.STORIES, owner="u1") == [2]

    def test_hit_rate(self, cache):
        cache.set("k", 1)
        cache.get("k")
        cache.get("missing")

        assert cache.stats.hits == 1
        assert cache.stats.misses == 1
        assert cache.stats.hit_rate == 0.5

    def test_unknown_key_uses_default_ttl(self, cache, clock):
        cache.set("custom", 1)
        clock.advance(CacheConfig().default_ttl_s - 1)
        assert cache.has("custom")
        clock.advance(2)
        assert not cache.has("custom")


# =============================================================================
# OWNERS
# =============================================================================
class TestOwners:
    """Tests for owner namespacing."""

    def test_same_key_different_owners(self, cache):
        cache.set(CacheKey.FRIENDS, ["a"], owner="u1")
        cache.set(CacheKey.FRIENDS, ["b"], owner="u2")

        assert cache.get(CacheKey.FRIENDS, owner="u1") == ["a"]
        assert cache.get(CacheKey.FRIENDS, owner="u2") == ["b"]
        assert cache.get(CacheKey.FRIENDS) is None

    def test_clear_owner_removes_only_that_owner(self, cache):
        """clear_owner(u) leaves other owners and shared entries alone."""
        cache.set(CacheKey.FRIENDS, ["a"], owner="u1")
        cache.set(CacheKey.STORIES, ["s"], owner="u1")
        cache.set(CacheKey.FRIENDS, ["b"], owner="u2")
        cache.set("shared", 1)

        assert cache.clear_owner("u1") == 2
        assert cache.get(CacheKey.FRIENDS, owner="u2") == ["b"]
        assert cache.get("shared") == 1
        assert cache.owners() == {"u2", None}

    def test_invalidate_keys_for_owner(self, cache):
        cache.set(CacheKey.FRIENDS, 1, owner="u1")
        cache.set(CacheKey.STORIES, 2, owner="u1")

        assert cache.invalidate(owner="u1", keys=[CacheKey.FRIENDS]) == 1
        assert cache.has(CacheKey.STORIES, owner="u1")

    def test_invalidate_everything(self, cache):
        cache.set("a", 1)
        cache.set("b", 2, owner="u1")

        assert cache.invalidate() == 2
        assert len(cache) == 0

    def test_session_changed_drops_departing_user(self, cache):
        cache.set(CacheKey.FRIENDS, 1, owner="u1")
        cache.set(CacheKey.FRIENDS, 2, owner="u2")

        cache.handle_session_changed(
            SessionChanged("u1", "u2", SessionChangeReason.SWITCH_USER)
        )

        assert not cache.has(CacheKey.FRIENDS, owner="u1")
        assert cache.has(CacheKey.FRIENDS, owner="u2")


# =============================================================================
# UPDATE
# =============================================================================
class TestUpdate:
    """Tests for atomic read-modify-write."""

    def test_update_absent_stores_fn_of_none(self, cache):
        """update on an absent key stores and returns fn(absent)."""
        result = cache.update(CacheKey.STORIES, lambda cur: (cur or []) + ["s1"], owner="u1")

        assert result == ["s1"]
        assert cache.get(CacheKey.STORIES, owner="u1") == ["s1"]

    def test_update_expired_sees_none(self, cache, clock):
        cache.set(CacheKey.messages("c1"), ["old"], owner="u1")
        clock.advance(CacheConfig().messages_ttl_s + 1)
        seen = []

        cache.update(CacheKey.messages("c1"), lambda cur: seen.append(cur) or ["new"], owner="u1")

        assert seen == [None]

    def test_concurrent_updates_never_lose_writes(self):
        """Many threads incrementing one key all land."""
        store = CacheStore(clock=FakeClock())
        threads_n, per_thread = 8, 250
        barrier = threading.Barrier(threads_n)

        def worker():
            barrier.wait()
            for _ in range(per_thread):
                store.update("counter", lambda cur: (cur or 0) + 1)

        threads = [threading.Thread(target=worker) for _ in range(threads_n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get("counter") == threads_n * per_thread

    def test_update_fn_error_leaves_entry(self, cache):
        cache.set("k", 1)

        with pytest.raises(ZeroDivisionError):
            cache.update("k", lambda cur: cur / 0)

        assert cache.get("k") == 1


# =============================================================================
# MAINTENANCE
# =============================================================================
class TestMaintenance:
    """Tests for sweeps and warm-up."""

    def test_cleanup_removes_expired_only(self, cache, clock):
        cache.set(CacheKey.messages("c1"), [], owner="u1")
        cache.set(CacheKey.FRIENDS, [], owner="u1")
        clock.advance(60)

        assert cache.cleanup() == 1
        assert cache.has(CacheKey.FRIENDS, owner="u1")
        assert cache.stats.sweeps == 1

    def test_cleanup_with_max_age(self, cache, clock):
        cache.set(CacheKey.FRIENDS, [], owner="u1")
        clock.advance(10)

        assert cache.cleanup(max_age=5) == 1

    @pytest.mark.asyncio
    async def test_warm_stores_successes_and_logs_failures(self, cache):
        async def ok():
            return ["row"]

        async def boom():
            raise ServiceError("down")

        stored = await cache.warm([
            WarmEntry(CacheKey.FRIENDS, ok, owner="u1"),
            WarmEntry(CacheKey.STORIES, boom, owner="u1"),
        ])

        assert stored == 1
        assert cache.get(CacheKey.FRIENDS, owner="u1") == ["row"]
        assert not cache.has(CacheKey.STORIES, owner="u1")


# =============================================================================
# CACHED RESOURCE
# =============================================================================
class TestCachedResource:
    """Tests for the read-through helper."""

    @pytest.mark.asyncio
    async def test_fetch_and_cache(self, cache):
        calls = []

        async def fetch():
            calls.append(1)
            return ["snap"]

        resource = CachedResource(cache, CacheKey.INBOX_SNAPS, fetch, owner="u1")
        assert resource.should_fetch()

        assert await resource.fetch_and_cache() == ["snap"]
        assert resource.cached() == ["snap"]
        assert not resource.should_fetch()
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_failure_returns_none_and_keeps_cache(self, cache):
        cache.set(CacheKey.INBOX_SNAPS, ["old"], owner="u1")

        async def fetch():
            raise ServiceError("boom", status=500)

        resource = CachedResource(cache, CacheKey.INBOX_SNAPS, fetch, owner="u1")

        assert await resource.fetch_and_cache(silent=True) is None
        assert resource.cached() == ["old"]

    @pytest.mark.asyncio
    async def test_auth_failure_propagates(self, cache):
        async def fetch():
            raise ServiceError("JWT expired", status=401)

        resource = CachedResource(cache, CacheKey.INBOX_SNAPS, fetch, owner="u1")

        with pytest.raises(AuthExpiredError):
            await resource.fetch_and_cache()

    def test_disabled_resource(self, cache):
        async def fetch():
            return 1

        resource = CachedResource(cache, "k", fetch, enabled=False)
        cache.set("k", 1)

        assert resource.cached() is None
        assert not resource.should_fetch()


# =============================================================================
# JANITOR
# =============================================================================
class TestJanitor:
    """Tests for lifecycle-driven sweeping."""

    @pytest.mark.asyncio
    async def test_periodic_sweep(self, clock):
        store = CacheStore(clock=clock)
        janitor = CacheJanitor(store, interval_s=0.01)
        store.set(CacheKey.messages("c1"), [], owner="u1")
        clock.advance(60)

        janitor.start()
        await asyncio.sleep(0.05)
        await janitor.stop()

        assert len(store) == 0
        assert not janitor.running

    @pytest.mark.asyncio
    async def test_background_stops_and_sweeps(self, clock):
        store = CacheStore(clock=clock)
        lifecycle = AppLifecycle()
        janitor = CacheJanitor(store, interval_s=60)
        lifecycle.add_observer(janitor)
        janitor.start()
        store.set(CacheKey.messages("c1"), [], owner="u1")
        clock.advance(60)

        lifecycle.set_state(AppState.BACKGROUND)

        assert not janitor.running
        assert len(store) == 0

        lifecycle.set_state(AppState.ACTIVE)
        assert janitor.running
        await janitor.stop()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

"""
Unit Tests: Reconciliation, Optimistic Writes, Entity Registry, Polling

Tests:
    - ReconciliationThrottler debounce, max_wait, batching and teardown
    - OptimisticMutationTracker placeholder lifecycle and echo dedup
    - GlobalEntityRegistry fan-out and fetch-once resolution
    - PollingFallback scheduling and lifecycle pausing
"""

import asyncio

import pytest

from snapsync.cache.keys import CacheKey
from snapsync.core import constants as C
from snapsync.core.errors import AuthExpiredError, MutationError
from snapsync.remote.memory import ServiceError
from snapsync.session.events import SessionChanged, SessionChangeReason
from snapsync.sync import (
    AppLifecycle,
    AppState,
    GlobalEntityRegistry,
    OptimisticMutationTracker,
    PollingFallback,
    ReconciliationThrottler,
)
from snapsync.tests.helpers import settle, wait_until


# =============================================================================
# RECONCILIATION THROTTLER
# =============================================================================
class _Recorder:
    """Fetch/merge pair that records every batch."""

    def __init__(self, fail: bool = False) -> None:
        self.fetched: list[list[str]] = []
        self.merged: list[tuple[list, list]] = []
        self.fail = fail

    async def fetch(self, ids):
        self.fetched.append(list(ids))
        await asyncio.sleep(0)
        if self.fail:
            raise ServiceError("unavailable", status=503)
        return [{"id": i} for i in ids]

    def merge(self, rows, ids):
        self.merged.append((rows, ids))


class TestReconciliationThrottler:
    """Tests for debounced batch reconciliation."""

    @pytest.mark.asyncio
    async def test_burst_coalesces_into_one_fetch(self):
        """Test many hints inside the window produce one batch."""
        rec = _Recorder()
        throttler = ReconciliationThrottler("t", rec.fetch, rec.merge, window_s=0.03)

        for i in ("a", "b", "a", "c"):
            throttler.hint(i)
        await wait_until(lambda: rec.merged)

        assert rec.fetched == [["a", "b", "c"]]
        assert throttler.flush_count == 1
        await throttler.close()

    @pytest.mark.asyncio
    async def test_window_slides(self):
        """Test each hint pushes the flush back."""
        rec = _Recorder()
        throttler = ReconciliationThrottler("t", rec.fetch, rec.merge, window_s=0.05)

        throttler.hint("a")
        await asyncio.sleep(0.03)
        throttler.hint("b")
        await asyncio.sleep(0.03)
        assert rec.fetched == []

        await wait_until(lambda: rec.merged)
        assert rec.fetched == [["a", "b"]]
        await throttler.close()

    @pytest.mark.asyncio
    async def test_max_wait_bounds_starvation(self):
        """Test a continuous burst still flushes by max_wait."""
        rec = _Recorder()
        throttler = ReconciliationThrottler(
            "t", rec.fetch, rec.merge, window_s=0.05, max_wait_s=0.1,
        )
        loop = asyncio.get_running_loop()
        started = loop.time()

        while not rec.fetched and loop.time() - started < 1.0:
            throttler.hint(f"id-{len(throttler.pending)}")
            await asyncio.sleep(0.01)

        assert rec.fetched
        assert loop.time() - started < 0.5
        await throttler.close()

    @pytest.mark.asyncio
    async def test_fetch_failure_is_swallowed_and_reported(self):
        """Test a failed fetch drops its ids and reports the error."""
        rec = _Recorder(fail=True)
        errors = []
        throttler = ReconciliationThrottler(
            "t", rec.fetch, rec.merge, window_s=0.01, on_error=errors.append,
        )

        throttler.hint("a")
        await wait_until(lambda: errors)

        assert rec.merged == []
        assert errors[0].context["ids"] == ["a"]
        assert throttler.pending == ()
        await throttler.close()

    @pytest.mark.asyncio
    async def test_merge_failure_is_logged(self):
        """Test a raising merge does not break later flushes."""
        calls = []

        async def fetch(ids):
            return [{"id": i} for i in ids]

        def merge(rows, ids):
            calls.append(ids)
            if len(calls) == 1:
                raise RuntimeError("merge bug")

        throttler = ReconciliationThrottler("t", fetch, merge, window_s=0.01)
        throttler.hint("a")
        await wait_until(lambda: len(calls) == 1)
        throttler.hint("b")
        await wait_until(lambda: len(calls) == 2)

        assert calls == [["a"], ["b"]]
        await throttler.close()

    @pytest.mark.asyncio
    async def test_close_prevents_merge(self):
        """Test nothing merges after close()."""
        release = asyncio.Event()
        merged = []

        async def slow_fetch(ids):
            await release.wait()
            return [{"id": i} for i in ids]

        throttler = ReconciliationThrottler(
            "t", slow_fetch, lambda rows, ids: merged.append(ids), window_s=0.01,
        )
        throttler.hint("a")
        await wait_until(lambda: throttler.flush_count == 1)

        await throttler.close()
        release.set()
        await settle()

        assert merged == []
        throttler.hint("b")
        assert throttler.pending == ()

    @pytest.mark.asyncio
    async def test_flush_now(self):
        rec = _Recorder()
        throttler = ReconciliationThrottler("t", rec.fetch, rec.merge, window_s=5.0)

        throttler.hint_many(["a", None, "b"])
        await throttler.flush_now()

        assert rec.fetched == [["a", "b"]]
        assert not throttler.scheduled
        await throttler.close()

    def test_invalid_windows(self):
        rec = _Recorder()
        with pytest.raises(ValueError):
            ReconciliationThrottler("t", rec.fetch, rec.merge, window_s=0)
        with pytest.raises(ValueError):
            ReconciliationThrottler("t", rec.fetch, rec.merge, window_s=1.0, max_wait_s=0.5)


# =============================================================================
# OPTIMISTIC MUTATION TRACKER
# =============================================================================
class _Streams:
    """Dict-backed stream storage standing in for the cache."""

    def __init__(self) -> None:
        self.rows: dict[str, list] = {}

    def update(self, stream_id, fn):
        self.rows[stream_id] = fn(self.rows.get(stream_id))
        return self.rows[stream_id]


class TestOptimisticMutationTracker:
    """Tests for placeholder reconciliation."""

    def test_begin_appends_placeholder(self):
        """Test begin() projects a pending row immediately."""
        streams = _Streams()
        tracker = OptimisticMutationTracker(streams.update)

        cid = tracker.begin("m:c1", {"content": "hi"})

        [row] = streams.rows["m:c1"]
        assert row["content"] == "hi"
        assert row[C.CORRELATION_FIELD] == cid
        assert tracker.is_placeholder(row)
        assert tracker.is_outstanding(cid)

    def test_confirm_replaces_in_place(self):
        """Test the authoritative record takes the placeholder's index."""
        streams = _Streams()
        streams.rows["m:c1"] = [{"id": "m0"}]
        tracker = OptimisticMutationTracker(streams.update)
        cid = tracker.begin("m:c1", {"content": "hi"})
        streams.rows["m:c1"].append({"id": "m9"})

        assert tracker.confirm(cid, {"id": "m1", "content": "hi"})

        assert [r["id"] for r in streams.rows["m:c1"]] == ["m0", "m1", "m9"]
        assert not tracker.is_outstanding(cid)
        assert not tracker.confirm(cid, {"id": "m1"})

    def test_fail_removes_placeholder(self):
        streams = _Streams()
        tracker = OptimisticMutationTracker(streams.update)
        cid = tracker.begin("m:c1", {"content": "hi"})

        assert tracker.fail(cid)
        assert streams.rows["m:c1"] == []

    def test_echo_before_confirm_is_not_duplicated(self):
        """Test an echo carrying the token confirms, then confirm() is a no-op."""
        streams = _Streams()
        tracker = OptimisticMutationTracker(streams.update)
        cid = tracker.begin("m:c1", {"content": "hi"})
        record = {"id": "m1", "content": "hi", C.CORRELATION_FIELD: cid}

        assert tracker.merge_incoming("m:c1", record)
        assert not tracker.confirm(cid, record)
        assert [r["id"] for r in streams.rows["m:c1"]] == ["m1"]

    def test_record_already_present_drops_placeholder(self):
        """Test confirm keeps one copy when the record landed another way."""
        streams = _Streams()
        tracker = OptimisticMutationTracker(streams.update)
        cid = tracker.begin("m:c1", {"content": "hi"})
        streams.rows["m:c1"].append({"id": "m1", "content": "hi"})

        tracker.confirm(cid, {"id": "m1", "content": "hi"})

        assert [r["id"] for r in streams.rows["m:c1"]] == ["m1"]

    def test_merge_incoming_dedups_by_id(self):
        """Test foreign rows append once, updates replace when asked."""
        streams = _Streams()
        tracker = OptimisticMutationTracker(streams.update)

        assert tracker.merge_incoming("m:c1", {"id": "m1", "content": "a"})
        assert not tracker.merge_incoming("m:c1", {"id": "m1", "content": "a"})
        assert tracker.merge_incoming("m:c1", {"id": "m1", "content": "b"}, replace_existing=True)

        assert streams.rows["m:c1"] == [{"id": "m1", "content": "b"}]

    def test_content_never_matches(self):
        """Test identical content without the token is a separate row."""
        streams = _Streams()
        tracker = OptimisticMutationTracker(streams.update)
        tracker.begin("m:c1", {"content": "hi"})

        tracker.merge_incoming("m:c1", {"id": "m7", "content": "hi"})

        assert len(streams.rows["m:c1"]) == 2

    @pytest.mark.asyncio
    async def test_run_success(self):
        """Test run() sends the token and confirms."""
        streams = _Streams()
        tracker = OptimisticMutationTracker(streams.update)
        sent = []

        async def mutate(payload):
            sent.append(payload)
            return {"id": "m1", **payload}

        record = await tracker.run("m:c1", {"content": "hi"}, mutate)

        assert C.CORRELATION_FIELD in sent[0]
        assert record["id"] == "m1"
        assert streams.rows["m:c1"][0]["id"] == "m1"
        assert tracker.outstanding() == []

    @pytest.mark.asyncio
    async def test_run_failure_rolls_back(self):
        """Test a failed write removes the placeholder and raises."""
        streams = _Streams()
        tracker = OptimisticMutationTracker(streams.update)

        async def mutate(payload):
            raise ServiceError("rejected", status=400)

        with pytest.raises(MutationError):
            await tracker.run("m:c1", {"content": "hi"}, mutate)

        assert streams.rows["m:c1"] == []

    def test_unknown_correlation(self):
        tracker = OptimisticMutationTracker(_Streams().update)
        with pytest.raises(MutationError):
            tracker.payload_for_write("nope")

    def test_discard_stream(self):
        tracker = OptimisticMutationTracker(_Streams().update)
        tracker.begin("a", {})
        tracker.begin("b", {})

        assert tracker.discard_stream("a") == 1
        assert len(tracker.outstanding()) == 1


# =============================================================================
# GLOBAL ENTITY REGISTRY
# =============================================================================
class TestGlobalEntityRegistry:
    """Tests for canonical entity values."""

    def test_set_notifies_each_listener_once(self):
        """Test fan-out to every listener of the id."""
        registry = GlobalEntityRegistry("profiles")
        a, b, other = [], [], []
        registry.add_listener("u2", a.append)
        registry.add_listener("u2", b.append)
        registry.add_listener("u3", other.append)

        registry.set("u2", {"id": "u2", "bio": "new"})

        assert a == b == [{"id": "u2", "bio": "new"}]
        assert other == []

    def test_failing_listener_is_isolated(self):
        registry = GlobalEntityRegistry("profiles")
        seen = []

        def bad(value):
            raise RuntimeError("listener bug")

        registry.add_listener("u2", bad)
        registry.add_listener("u2", seen.append)
        registry.set("u2", {"id": "u2"})

        assert len(seen) == 1

    def test_removing_last_listener_keeps_value(self):
        registry = GlobalEntityRegistry("profiles")
        remove = registry.add_listener("u2", lambda v: None)
        registry.set("u2", {"id": "u2"})

        remove()

        assert registry.listener_count("u2") == 0
        assert registry.get("u2") == {"id": "u2"}

    @pytest.mark.asyncio
    async def test_concurrent_resolve_fetches_once(self):
        """Test many callers share one fetch."""
        registry = GlobalEntityRegistry("profiles")
        calls = []

        async def loader(entity_id):
            calls.append(entity_id)
            await asyncio.sleep(0.01)
            return {"id": entity_id}

        results = await asyncio.gather(*(registry.resolve("u2", loader) for _ in range(5)))

        assert calls == ["u2"]
        assert all(r == {"id": "u2"} for r in results)
        assert registry.get("u2") == {"id": "u2"}

    @pytest.mark.asyncio
    async def test_resolve_reads_cache(self, cache):
        """Test a fresh cache entry satisfies resolve without a fetch."""
        registry = GlobalEntityRegistry(
            "profiles", cache=cache, cache_key=CacheKey.profile, cache_owner="u1",
        )
        cache.set(CacheKey.profile("u2"), {"id": "u2"}, owner="u1")

        async def loader(entity_id):
            raise AssertionError("should not fetch")

        assert await registry.resolve("u2", loader) == {"id": "u2"}

    @pytest.mark.asyncio
    async def test_set_writes_through_to_cache(self, cache):
        registry = GlobalEntityRegistry(
            "profiles", cache=cache, cache_key=CacheKey.profile, cache_owner="u1",
        )
        registry.set("u2", {"id": "u2"})

        assert cache.get(CacheKey.profile("u2"), owner="u1") == {"id": "u2"}

    @pytest.mark.asyncio
    async def test_resolve_failure_propagates_and_clears_inflight(self):
        registry = GlobalEntityRegistry("profiles")

        async def loader(entity_id):
            raise ServiceError("down")

        with pytest.raises(ServiceError):
            await registry.resolve("u2", loader)
        assert not registry.is_resolving("u2")

    @pytest.mark.asyncio
    async def test_clear_all_discards_late_fetch(self):
        """Test a fetch finishing after a session reset is not stored."""
        registry = GlobalEntityRegistry("profiles")
        release = asyncio.Event()

        async def loader(entity_id):
            await release.wait()
            return {"id": entity_id}

        pending = asyncio.ensure_future(registry.resolve("u2", loader))
        await settle()
        registry.handle_session_changed(
            SessionChanged("u1", None, SessionChangeReason.SIGN_OUT)
        )
        release.set()
        await pending

        assert registry.get("u2") is None
        assert len(registry) == 0


# =============================================================================
# POLLING FALLBACK / LIFECYCLE
# =============================================================================
class TestPollingFallback:
    """Tests for foreground polling."""

    @pytest.mark.asyncio
    async def test_ticks_until_stopped(self):
        ticks = []

        async def refresh():
            ticks.append(1)

        poller = PollingFallback("friends", refresh, interval_s=0.01)
        poller.start()
        await wait_until(lambda: len(ticks) >= 3)
        await poller.stop()

        count = len(ticks)
        await asyncio.sleep(0.03)
        assert len(ticks) == count
        assert not poller.running

    @pytest.mark.asyncio
    async def test_restart_never_doubles(self):
        """Test start() twice keeps a single task."""
        async def refresh():
            pass

        poller = PollingFallback("friends", refresh, interval_s=60, initial_delay_s=60)
        poller.start()
        first = poller._task
        poller.start()

        await settle()
        assert first.cancelled()
        assert poller.running
        await poller.stop()

    @pytest.mark.asyncio
    async def test_failed_tick_reports_and_continues(self):
        """Test a failing refresh is reported and retried next tick."""
        errors = []
        calls = []

        async def refresh():
            calls.append(1)
            if len(calls) == 1:
                raise ServiceError("JWT expired", status=401)

        poller = PollingFallback("friends", refresh, interval_s=0.01, on_error=errors.append)
        poller.start()
        await wait_until(lambda: len(calls) >= 2)
        await poller.stop()

        assert isinstance(errors[0], AuthExpiredError)

    @pytest.mark.asyncio
    async def test_lifecycle_pauses_and_resumes(self):
        """Test background pauses and foreground resumes."""
        async def refresh():
            pass

        lifecycle = AppLifecycle()
        poller = PollingFallback("reels", refresh, interval_s=60)
        lifecycle.add_observer(poller)
        poller.start()

        lifecycle.set_state(AppState.BACKGROUND)
        assert poller.paused
        assert not poller.running

        # Same side of the foreground boundary: no notification
        lifecycle.set_state(AppState.INACTIVE)
        assert poller.paused

        lifecycle.set_state(AppState.ACTIVE)
        assert poller.running
        await poller.stop()

    @pytest.mark.asyncio
    async def test_stopped_poller_ignores_resume(self):
        async def refresh():
            pass

        poller = PollingFallback("reels", refresh, interval_s=60)
        poller.start()
        await poller.stop()

        poller.on_foreground()
        poller.start()
        assert not poller.running

    def test_interval_bounds(self):
        async def refresh():
            pass

        with pytest.raises(ValueError):
            PollingFallback("x", refresh, interval_s=0)
        with pytest.raises(ValueError):
            PollingFallback("x", refresh, interval_s=C.MAX_POLL_S + 1)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

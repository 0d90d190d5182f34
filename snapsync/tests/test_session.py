"""
Integration Tests: SessionManager

Tests:
    - Session start wires every controller for the user
    - User switch tears down before the next session is seeded
    - Sign-out drops the departing user's cache entries
    - An expired session ends exactly once
    - Foreground/background drives pollers and the cache janitor
"""

import asyncio
from dataclasses import replace

import pytest

from snapsync.cache.keys import CacheKey
from snapsync.controllers import ControllerState
from snapsync.core.config import RealtimeConfig
from snapsync.core.errors import AuthExpiredError
from snapsync.remote.memory import ServiceError
from snapsync.session import SessionChangeReason, SessionManager
from snapsync.sync.lifecycle import AppLifecycle, AppState
from snapsync.tests.helpers import FRIEND, ME, STRANGER, wait_until


def _seed(service):
    service.seed("profiles", [
        {"id": ME, "username": "alice"},
        {"id": FRIEND, "username": "bob"},
        {"id": STRANGER, "username": "carol"},
    ])
    service.seed("friendships", [
        {"id": "f1", "user_id": ME, "friend_id": FRIEND, "status": "accepted"},
        {"id": "f1r", "user_id": FRIEND, "friend_id": ME, "status": "accepted"},
        {"id": "p1", "user_id": STRANGER, "friend_id": ME, "status": "pending"},
    ])
    service.seed("stories", [
        {"id": "s1", "user_id": FRIEND, "is_active": True},
    ])
    service.seed("vibe_reels", [
        {"id": "r1", "creator_id": STRANGER},
    ])
    service.seed("conversations", [
        {"id": "c1", "participant1_id": ME, "participant2_id": FRIEND},
    ])


def _manager(service, cache, config):
    manager = SessionManager(service, config, cache=cache)
    events = []
    manager.add_session_listener(events.append)
    return manager, events


# =============================================================================
# START / SWITCH / END
# =============================================================================
class TestSessionLifecycle:
    """Tests for session boundaries."""

    @pytest.mark.asyncio
    async def test_start_wires_controllers(self, service, cache, config):
        """Test start() loads every controller for the signed-in user."""
        _seed(service)
        manager, events = _manager(service, cache, config)

        session = await manager.start()

        assert session.user_id == ME
        assert manager.user_id == ME
        assert all(c.state is ControllerState.READY for c in session.controllers)
        assert session.friends.friend_ids == frozenset({FRIEND})
        assert session.vibe_reels.friend_ids == frozenset({FRIEND})
        assert [s["id"] for s in session.stories.friend_stories] == ["s1"]
        assert [c["id"] for c in session.conversations.data] == ["c1"]
        assert [e.reason for e in events] == [SessionChangeReason.SIGN_IN]
        assert manager.janitor.running
        assert session.supervisor is None

        await manager.close()
        assert not manager.janitor.running

    @pytest.mark.asyncio
    async def test_empty_injected_cache_is_used(self, service, cache, config):
        """Test an empty host cache is kept rather than replaced."""
        _seed(service)
        lifecycle = AppLifecycle()
        assert len(cache) == 0
        manager = SessionManager(service, config, cache=cache, lifecycle=lifecycle)

        await manager.start(ME)

        assert manager.cache is cache
        assert manager.lifecycle is lifecycle
        assert ME in cache.owners()
        assert cache.get(CacheKey.FRIENDS, owner=ME) is not None
        await manager.close()

    @pytest.mark.asyncio
    async def test_start_same_user_returns_session(self, service, cache, config):
        _seed(service)
        manager, events = _manager(service, cache, config)

        first = await manager.start(ME)
        second = await manager.start(ME)

        assert first is second
        assert len(events) == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_start_without_user(self, service, cache, config):
        """Test starting with nobody signed in is an expired session."""
        service.set_current_user(None)
        manager, _ = _manager(service, cache, config)

        with pytest.raises(AuthExpiredError):
            await manager.start()

        assert manager.session is None
        await manager.close()

    @pytest.mark.asyncio
    async def test_switch_user(self, service, cache, config):
        """Test a switch closes the old session and clears its cache first."""
        _seed(service)
        manager, events = _manager(service, cache, config)
        first = await manager.start(ME)

        second = await manager.switch_user(FRIEND)

        assert manager.cache is cache
        assert first.closed
        assert all(c.state is ControllerState.CLOSED for c in first.controllers)
        assert cache.get(CacheKey.FRIENDS, owner=ME) is None
        assert cache.get(CacheKey.FRIENDS, owner=FRIEND) is not None
        assert second.friends.friend_ids == frozenset({ME})
        assert [e.reason for e in events] == [
            SessionChangeReason.SIGN_IN,
            SessionChangeReason.SWITCH_USER,
        ]
        assert events[1].previous_user_id == ME
        assert events[1].user_id == FRIEND
        await manager.close()

    @pytest.mark.asyncio
    async def test_sign_out(self, service, cache, config):
        """Test end() releases the channel and the user's cached data."""
        _seed(service)
        manager, events = _manager(service, cache, config)
        session = await manager.start()
        await wait_until(lambda: session.mux.is_connected)

        await manager.end()

        assert manager.session is None
        assert events[-1].reason is SessionChangeReason.SIGN_OUT
        assert events[-1].is_sign_out
        assert cache.get(CacheKey.FRIENDS, owner=ME) is None
        assert cache.get(CacheKey.profile(FRIEND), owner=ME) is None
        assert len(session.registry) == 0
        await wait_until(lambda: service.open_streams() == 0)
        await manager.close()

    @pytest.mark.asyncio
    async def test_accepting_request_updates_reel_friends(self, service, cache, config):
        """Test the friends controller feeds the reels' friend set."""
        _seed(service)
        manager, _ = _manager(service, cache, config)
        session = await manager.start()

        await session.friends.accept_request("p1")

        assert session.vibe_reels.friend_ids == frozenset({FRIEND, STRANGER})
        assert [r["id"] for r in session.vibe_reels.friend_reels] == ["r1"]
        await manager.close()

    @pytest.mark.asyncio
    async def test_auto_reconnect_builds_supervisor(self, service, cache, config):
        _seed(service)
        config = replace(config, realtime=RealtimeConfig(auto_reconnect=True))
        manager, _ = _manager(service, cache, config)

        session = await manager.start()

        assert session.supervisor is not None
        await manager.close()


# =============================================================================
# EXPIRED SESSION
# =============================================================================
class TestAuthExpiry:
    """Tests for session expiry reported by controllers."""

    @pytest.mark.asyncio
    async def test_expiry_ends_session_once(self, service, cache, config):
        """Test several 401s end the session and notify listeners once."""
        _seed(service)
        manager, events = _manager(service, cache, config)
        expired = []
        manager.add_auth_expired_listener(expired.append)
        session = await manager.start()

        service.fail_next("query", ServiceError("JWT expired", status=401), times=5)
        await asyncio.gather(
            session.friends.refresh(),
            session.stories.refresh(),
            session.conversations.refresh(),
        )
        await manager.expiry_task

        assert len(expired) == 1
        assert isinstance(expired[0], AuthExpiredError)
        assert manager.session is None
        assert session.closed
        assert [e.reason for e in events].count(SessionChangeReason.AUTH_EXPIRED) == 1
        assert cache.get(CacheKey.FRIENDS, owner=ME) is None
        await manager.close()

    @pytest.mark.asyncio
    async def test_non_auth_errors_keep_session(self, service, cache, config):
        _seed(service)
        manager, _ = _manager(service, cache, config)
        session = await manager.start()

        service.fail_next("query", ServiceError("unavailable", status=503))
        await session.stories.refresh()

        assert manager.session is session
        assert manager.expiry_task is None
        await manager.close()


# =============================================================================
# APP LIFECYCLE
# =============================================================================
class TestForegroundBackground:
    """Tests for lifecycle-driven pausing."""

    @pytest.mark.asyncio
    async def test_background_pauses_pollers_and_janitor(self, service, cache, config):
        _seed(service)
        manager, _ = _manager(service, cache, config)
        session = await manager.start()

        manager.lifecycle.set_state(AppState.BACKGROUND)

        assert session.friends.poller.paused
        assert session.conversations.poller.paused
        assert not manager.janitor.running

        manager.lifecycle.set_state(AppState.ACTIVE)

        assert not session.friends.poller.paused
        assert manager.janitor.running
        await manager.close()

    @pytest.mark.asyncio
    async def test_closed_session_detaches_pollers(self, service, cache, config):
        """Test lifecycle changes after sign-out touch no old poller."""
        _seed(service)
        manager, _ = _manager(service, cache, config)
        session = await manager.start()
        poller = session.friends.poller

        await manager.end()
        manager.lifecycle.set_state(AppState.BACKGROUND)
        manager.lifecycle.set_state(AppState.ACTIVE)

        assert not poller.running
        await manager.close()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

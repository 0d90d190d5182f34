"""
Shared fixtures for the snapsync test suite.
"""

from __future__ import annotations

from typing import Optional

import pytest

from snapsync.cache.keys import CacheKey
from snapsync.cache.store import CacheStore
from snapsync.controllers.base import SyncContext
from snapsync.core.config import PollingConfig, SyncConfig, ThrottleConfig
from snapsync.core.errors import SyncError
from snapsync.core.types import Row
from snapsync.observability.metrics import MetricsCollector
from snapsync.realtime.multiplexer import ChannelMultiplexer
from snapsync.remote.memory import InMemoryDataService
from snapsync.sync.lifecycle import AppLifecycle
from snapsync.sync.registry import GlobalEntityRegistry
from snapsync.tests.helpers import ME, FakeClock


# =============================================================================
# FIXTURES
# =============================================================================
@pytest.fixture(autouse=True)
def reset_metrics():
    MetricsCollector.get_instance().reset()
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> CacheStore:
    return CacheStore(clock=clock)


@pytest.fixture
def service() -> InMemoryDataService:
    return InMemoryDataService(current_user=ME)


@pytest.fixture
def config() -> SyncConfig:
    """Short throttle windows; pollers that never tick during a test."""
    return SyncConfig(
        throttle=ThrottleConfig(
            stories_window_s=0.02,
            reels_window_s=0.02,
            friends_window_s=0.02,
            messages_window_s=0.02,
            max_wait_s=0.2,
        ),
        polling=PollingConfig(
            friends_interval_s=60.0,
            vibe_reels_interval_s=60.0,
            conversations_interval_s=60.0,
            initial_delay_s=60.0,
        ),
    )


@pytest.fixture
def make_context(service: InMemoryDataService, cache: CacheStore, config: SyncConfig):
    """Factory for a per-user SyncContext over the shared service and cache."""
    errors: list[SyncError] = []

    def make(
        user_id: str = ME,
        lifecycle: Optional[AppLifecycle] = None,
    ) -> SyncContext:
        registry: GlobalEntityRegistry[Row] = GlobalEntityRegistry(
            "profiles", cache=cache, cache_key=CacheKey.profile, cache_owner=user_id,
        )
        return SyncContext(
            service=service,
            cache=cache,
            mux=ChannelMultiplexer(service, config.realtime),
            profiles=registry,
            user_id=user_id,
            config=config,
            lifecycle=lifecycle if lifecycle is not None else AppLifecycle(),
            on_error=errors.append,
        )

    make.errors = errors
    return make

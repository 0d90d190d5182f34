"""
Sync module: reconciliation, optimistic writes, shared entities and polling.
"""

from snapsync.sync.throttle import ReconciliationThrottler
from snapsync.sync.optimistic import OptimisticMutationTracker, OptimisticRecord
from snapsync.sync.registry import GlobalEntityRegistry
from snapsync.sync.polling import PollingFallback
from snapsync.sync.lifecycle import AppLifecycle, AppState, LifecycleObserver

__all__ = [
    "ReconciliationThrottler",
    "OptimisticMutationTracker",
    "OptimisticRecord",
    "GlobalEntityRegistry",
    "PollingFallback",
    "AppLifecycle",
    "AppState",
    "LifecycleObserver",
]

"""
snapsync: Client-Side State Synchronization Engine

Keeps per-entity read models (friends, stories, vibe reels,
conversations, profiles) consistent with a remote data service:
- TTL cache namespaced by session user
- One multiplexed realtime channel per session
- Debounced, batched reconciliation of change notifications
- Optimistic writes reconciled by correlation token
- Shared canonical entities with listener fan-out
- Foreground-only polling as a backstop for realtime

Everything is in memory and lives for the process.
"""

__version__ = "1.0.0"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from snapsync.core.types import Result, Ok, Err, Row, UserId, EntityId, Timestamp, EventKind
from snapsync.core.errors import (
    SyncError,
    TransientNetworkError,
    AuthExpiredError,
    ChannelError,
    ReconcileConflict,
    MutationError,
    ConfigurationError,
)
from snapsync.core.config import SyncConfig

# Sync primitives
from snapsync.cache import CacheKey, CacheStore, CachedResource, CacheJanitor
from snapsync.realtime import ChannelMultiplexer, ConnectionState, TableFilter
from snapsync.sync import (
    ReconciliationThrottler,
    OptimisticMutationTracker,
    GlobalEntityRegistry,
    PollingFallback,
    AppLifecycle,
    AppState,
)

# Remote service boundary
from snapsync.remote import RemoteDataService, Predicate, Mutation, Change, InMemoryDataService

# Controllers and sessions
from snapsync.controllers import (
    ControllerState,
    SyncContext,
    FriendsController,
    StoriesController,
    VibeReelsController,
    ConversationsController,
    ConversationThread,
    ProfileController,
    ProfileDirectory,
)
from snapsync.session import SessionManager, SessionChanged, SessionChangeReason

__all__ = [
    # Version
    "__version__",
    # Result monad and identity types
    "Result",
    "Ok",
    "Err",
    "Row",
    "UserId",
    "EntityId",
    "Timestamp",
    "EventKind",
    # Errors
    "SyncError",
    "TransientNetworkError",
    "AuthExpiredError",
    "ChannelError",
    "ReconcileConflict",
    "MutationError",
    "ConfigurationError",
    # Config
    "SyncConfig",
    # Sync primitives
    "CacheKey",
    "CacheStore",
    "CachedResource",
    "CacheJanitor",
    "ChannelMultiplexer",
    "ConnectionState",
    "TableFilter",
    "ReconciliationThrottler",
    "OptimisticMutationTracker",
    "GlobalEntityRegistry",
    "PollingFallback",
    "AppLifecycle",
    "AppState",
    # Remote
    "RemoteDataService",
    "Predicate",
    "Mutation",
    "Change",
    "InMemoryDataService",
    # Controllers
    "ControllerState",
    "SyncContext",
    "FriendsController",
    "StoriesController",
    "VibeReelsController",
    "ConversationsController",
    "ConversationThread",
    "ProfileController",
    "ProfileDirectory",
    # Session
    "SessionManager",
    "SessionChanged",
    "SessionChangeReason",
]

"""
Core module: Type definitions, error hierarchy, and configuration.

This module provides the foundational abstractions for the sync engine:
- Result/Either monads for fallible configuration and transitions
- Error taxonomy separating transient, auth, channel and mutation failures
- Configuration management with validation
"""

from snapsync.core.types import (
    Result,
    Ok,
    Err,
    Row,
    UserId,
    EntityId,
    Clock,
    Timestamp,
    EventKind,
    row_id,
)
from snapsync.core.errors import (
    ErrorCode,
    SyncError,
    TransientNetworkError,
    AuthExpiredError,
    ChannelError,
    ReconcileConflict,
    MutationError,
    ConfigurationError,
    classify_exception,
)
from snapsync.core.config import (
    SyncConfig,
    CacheConfig,
    ThrottleConfig,
    PollingConfig,
    RealtimeConfig,
    ObservabilityConfig,
)

__all__ = [
    "Result",
    "Ok",
    "Err",
    "Row",
    "UserId",
    "EntityId",
    "Clock",
    "Timestamp",
    "EventKind",
    "row_id",
    "ErrorCode",
    "SyncError",
    "TransientNetworkError",
    "AuthExpiredError",
    "ChannelError",
    "ReconcileConflict",
    "MutationError",
    "ConfigurationError",
    "classify_exception",
    "SyncConfig",
    "CacheConfig",
    "ThrottleConfig",
    "PollingConfig",
    "RealtimeConfig",
    "ObservabilityConfig",
]

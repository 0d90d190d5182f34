"""
Error Hierarchy for the Sync Engine

There is one family per way the engine reacts to a failure:

    TransientNetworkError  logged; the next flush or poll tick covers it
    ChannelError           the realtime feed dropped; polling keeps data fresh
    MutationError          raised to whoever started the write, after rollback
    AuthExpiredError       always forwarded to the session layer, which ends it

Every instance carries an ErrorCode, an error_id that shows up in log
lines, the wall-clock time it was built and the exception it wraps.

Usage:
    try:
        rows = await service.query("stories", predicate)
    except Exception as exc:
        error = classify_exception(exc)
        if isinstance(error, AuthExpiredError):
            manager.report_error(error)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from snapsync.core.types import Timestamp


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Stable numeric codes, one range per subsystem:

    - 1xxx: Cache errors
    - 2xxx: Realtime channel errors
    - 3xxx: Reconciliation / network errors
    - 4xxx: Mutation errors
    - 5xxx: Auth errors
    - 9xxx: Internal/configuration errors
    """

    CACHE_LOADER_FAILED = 1001

    CHANNEL_CONNECT_FAILED = 2001
    CHANNEL_STREAM_CLOSED = 2002
    CHANNEL_TIMEOUT = 2003

    NETWORK_FETCH_FAILED = 3001
    NETWORK_TIMEOUT = 3002
    RECONCILE_CONFLICT = 3003

    MUTATION_FAILED = 4001
    MUTATION_UNKNOWN_CORRELATION = 4002
    MUTATION_REJECTED = 4003

    AUTH_SESSION_EXPIRED = 5001
    AUTH_NO_SESSION = 5002

    INTERNAL_ERROR = 9001
    INTERNAL_CONFIGURATION_ERROR = 9002


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass
class SyncError(Exception):
    """Root of the engine's errors; callers branch on the subclass or on ``code``."""

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: Timestamp = field(default_factory=Timestamp.now)
    cause: Optional[BaseException] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Log-friendly fields. The cause is left out; pass exc_info for that."""
        return {
            "error_id": self.error_id,
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "timestamp_nanos": self.timestamp.nanos,
            "context": self.context,
        }

    @property
    def is_transient(self) -> bool:
        return False

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )

    # Dataclass eq would make instances unhashable; errors compare by identity
    __hash__ = Exception.__hash__


# =============================================================================
# TRANSIENT NETWORK ERRORS
# =============================================================================
@dataclass(eq=False)
class TransientNetworkError(SyncError):
    """
    Recoverable failure talking to the remote data service.

    Swallowed by reconciliation and polling; the next scheduled
    attempt retries. Never surfaced as a blocking error.
    """

    @property
    def is_transient(self) -> bool:
        return True

    @classmethod
    def fetch_failed(
        cls,
        operation: str,
        cause: Optional[BaseException] = None,
    ) -> TransientNetworkError:
        """Remote fetch failed."""
        return cls(
            code=ErrorCode.NETWORK_FETCH_FAILED,
            message=f"Fetch '{operation}' failed: {cause}" if cause else f"Fetch '{operation}' failed",
            cause=cause,
            context={"operation": operation},
        )

    @classmethod
    def timeout(
        cls,
        operation: str,
        duration_ms: int,
        cause: Optional[BaseException] = None,
    ) -> TransientNetworkError:
        """Remote call timed out."""
        return cls(
            code=ErrorCode.NETWORK_TIMEOUT,
            message=f"Operation '{operation}' timed out after {duration_ms}ms",
            cause=cause,
            context={"operation": operation, "duration_ms": duration_ms},
        )


# =============================================================================
# AUTH ERRORS
# =============================================================================
@dataclass(eq=False)
class AuthExpiredError(SyncError):
    """
    The session's credentials are no longer accepted.

    Triggers cache and registry reset for the affected user and
    must reach the session layer to prompt re-authentication.
    """

    @classmethod
    def session_expired(
        cls,
        user_id: Optional[str],
        cause: Optional[BaseException] = None,
    ) -> AuthExpiredError:
        return cls(
            code=ErrorCode.AUTH_SESSION_EXPIRED,
            message=f"Session expired for user {user_id or '<unknown>'}",
            cause=cause,
            context={"user_id": user_id},
        )

    @classmethod
    def no_session(cls, operation: str) -> AuthExpiredError:
        return cls(
            code=ErrorCode.AUTH_NO_SESSION,
            message=f"No authenticated user for '{operation}'",
            context={"operation": operation},
        )


# =============================================================================
# CHANNEL ERRORS
# =============================================================================
@dataclass(eq=False)
class ChannelError(SyncError):
    """
    Realtime connection failure.

    Degraded, not fatal: controllers keep serving cached data and
    rely on polling until the connection is re-established.
    """

    @property
    def is_transient(self) -> bool:
        return True

    @classmethod
    def connect_failed(
        cls,
        table: str,
        cause: Optional[BaseException] = None,
    ) -> ChannelError:
        return cls(
            code=ErrorCode.CHANNEL_CONNECT_FAILED,
            message=f"Failed to open change stream for '{table}'",
            cause=cause,
            context={"table": table},
        )

    @classmethod
    def stream_closed(
        cls,
        table: str,
        cause: Optional[BaseException] = None,
    ) -> ChannelError:
        return cls(
            code=ErrorCode.CHANNEL_STREAM_CLOSED,
            message=f"Change stream for '{table}' closed",
            cause=cause,
            context={"table": table},
        )


# =============================================================================
# RECONCILIATION ERRORS
# =============================================================================
@dataclass(eq=False)
class ReconcileConflict(SyncError):
    """
    An authoritative record disagrees with an outstanding placeholder.

    The authoritative record always wins; this error is only logged.
    """

    @classmethod
    def placeholder_superseded(
        cls,
        stream_id: str,
        correlation_id: str,
        record_id: Optional[str],
    ) -> ReconcileConflict:
        return cls(
            code=ErrorCode.RECONCILE_CONFLICT,
            message=(
                f"Placeholder {correlation_id} on stream '{stream_id}' "
                f"superseded by record {record_id}"
            ),
            context={
                "stream_id": stream_id,
                "correlation_id": correlation_id,
                "record_id": record_id,
            },
        )


# =============================================================================
# MUTATION ERRORS
# =============================================================================
@dataclass(eq=False)
class MutationError(SyncError):
    """
    A locally-initiated write failed.

    Surfaced to the initiating caller only, never broadcast.
    """

    @classmethod
    def failed(
        cls,
        stream_id: str,
        correlation_id: str,
        cause: Optional[BaseException] = None,
    ) -> MutationError:
        return cls(
            code=ErrorCode.MUTATION_FAILED,
            message=f"Mutation {correlation_id} on stream '{stream_id}' failed: {cause}",
            cause=cause,
            context={"stream_id": stream_id, "correlation_id": correlation_id},
        )

    @classmethod
    def unknown_correlation(cls, correlation_id: str) -> MutationError:
        return cls(
            code=ErrorCode.MUTATION_UNKNOWN_CORRELATION,
            message=f"No outstanding mutation with correlation {correlation_id}",
            context={"correlation_id": correlation_id},
        )

    @classmethod
    def rejected(
        cls,
        operation: str,
        reason: str,
        cause: Optional[BaseException] = None,
    ) -> MutationError:
        return cls(
            code=ErrorCode.MUTATION_REJECTED,
            message=f"{operation} rejected: {reason}",
            cause=cause,
            context={"operation": operation},
        )


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================
@dataclass(eq=False)
class ConfigurationError(SyncError):
    """Invalid engine configuration."""

    @classmethod
    def invalid(cls, field_name: str, reason: str) -> ConfigurationError:
        return cls(
            code=ErrorCode.INTERNAL_CONFIGURATION_ERROR,
            message=f"Invalid configuration for '{field_name}': {reason}",
            context={"field": field_name, "reason": reason},
        )


# =============================================================================
# CLASSIFICATION
# =============================================================================
_AUTH_MARKERS = ("unauthorized", "jwt expired", "invalid jwt", "401")


def classify_exception(exc: BaseException, operation: str = "remote") -> SyncError:
    """
    Map an arbitrary exception raised by a collaborator onto the taxonomy.

    SyncError instances pass through unchanged. Anything carrying an
    HTTP 401 status or an auth marker in its message becomes
    AuthExpiredError; everything else is treated as transient.
    """
    if isinstance(exc, SyncError):
        return exc

    status = getattr(exc, "status", None) or getattr(exc, "status_code", None)
    text = str(exc).lower()
    if status == 401 or any(marker in text for marker in _AUTH_MARKERS):
        return AuthExpiredError.session_expired(user_id=None, cause=exc)

    if isinstance(exc, TimeoutError):
        return TransientNetworkError.timeout(operation, duration_ms=0, cause=exc)

    return TransientNetworkError.fetch_failed(operation, cause=exc)

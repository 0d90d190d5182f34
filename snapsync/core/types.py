"""
Shared Types for the Sync Engine

- Ok / Err: outcome of fallible setup steps (config validation, state
  transitions, connects) that callers are expected to branch on
- Row: rows from the remote data service stay plain dicts end to end
- Timestamp: wall-clock instants for record metadata. TTL arithmetic
  never uses it; caches take an injected monotonic Clock instead
- EventKind: the change kinds carried by the realtime feed
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Generic, Literal, Mapping, Optional, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")
U = TypeVar("U")

UserId = str
EntityId = str
Row = dict[str, Any]

# Monotonic seconds; tests substitute a FakeClock
Clock = Callable[[], float]


# =============================================================================
# RESULT
# =============================================================================
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        return Ok(fn(self.value))

    def flat_map(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        return fn(self.value)


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """
    A failed outcome. ``map`` and ``flat_map`` pass it through untouched,
    so a chain of steps stops at the first failure.
    """

    error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> Any:
        raise RuntimeError(f"unwrap() on a failed result: {self.error!r}")

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, fn: Callable[[Any], U]) -> Err[E]:
        return self

    def flat_map(self, fn: Callable[[Any], Result[U, E]]) -> Err[E]:
        return self


Result = Union[Ok[T], Err[E]]


# =============================================================================
# TIME
# =============================================================================
@dataclass(frozen=True, slots=True, order=True)
class Timestamp:
    """Nanoseconds since the Unix epoch."""

    nanos: int

    @classmethod
    def now(cls) -> Timestamp:
        return cls(time.time_ns())

    @classmethod
    def from_seconds(cls, seconds: float) -> Timestamp:
        return cls(round(seconds * 1e9))

    @property
    def seconds(self) -> float:
        return self.nanos / 1e9

    def isoformat(self) -> str:
        """UTC ISO-8601, the format the data service uses for ``created_at``."""
        return datetime.fromtimestamp(self.seconds, tz=timezone.utc).isoformat()

    def __sub__(self, other: Timestamp) -> int:
        return self.nanos - other.nanos


# =============================================================================
# CHANGE KINDS
# =============================================================================
class EventKind(Enum):
    """INSERT, UPDATE or DELETE on the wire; ANY only appears in filters."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ANY = "*"

    def matches(self, other: EventKind) -> bool:
        return self is EventKind.ANY or self is other

    @classmethod
    def parse(cls, value: Union[str, EventKind]) -> EventKind:
        if isinstance(value, EventKind):
            return value
        text = value.strip().upper()
        return cls.ANY if text in ("*", "ANY") else cls(text)


def row_id(row: Optional[Mapping[str, Any]], field: str = "id") -> Optional[EntityId]:
    """``str(row[field])``, or None when the row or the field is missing."""
    if not row:
        return None
    value = row.get(field)
    return None if value is None else str(value)

"""
Remote Data Service Protocol: the engine's only external surface

Defines the narrow interface every controller talks to:
- query(table, predicate) -> rows
- mutate(table, mutation) -> row
- subscribe_changes(table, kind) -> async stream of Change
- current_user_id() -> user id or None
- resolve_blob_url(path) -> url

Design:
    Protocol classes for structural subtyping; any client exposing these
    methods plugs in. Unlike the engine's configuration paths, remote
    calls raise on failure: callers classify the exception with
    classify_exception() and decide whether it is transient, an expired
    session, or a failure to surface.

Rows are plain dicts. Predicates are a deliberately small filter model
(equality, membership, OR-groups, ordering, limit); the service's own
query language is not modelled.
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Collection,
    Mapping,
    Optional,
    Protocol,
    runtime_checkable,
)

from snapsync.core.types import EventKind, Row, UserId, row_id


# =============================================================================
# PREDICATE
# =============================================================================
@dataclass(frozen=True)
class Predicate:
    """
    Row filter with ordering and limit.

    A row matches when every `equals` pair matches, every `any_of` field
    is one of its values, and (if `either` is non-empty) at least one of
    the `either` groups matches completely.

    Example:
        Predicate.where(is_active=True).in_("id", ids).order("created_at", descending=True)
    """

    equals: Mapping[str, Any] = field(default_factory=dict)
    any_of: Mapping[str, Collection[Any]] = field(default_factory=dict)
    either: tuple[Mapping[str, Any], ...] = ()
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = None

    @classmethod
    def where(cls, **equals: Any) -> Predicate:
        return cls(equals=dict(equals))

    @classmethod
    def everything(cls) -> Predicate:
        return cls()

    def and_(self, **equals: Any) -> Predicate:
        return replace(self, equals={**self.equals, **equals})

    def in_(self, column: str, values: Collection[Any]) -> Predicate:
        return replace(self, any_of={**self.any_of, column: tuple(values)})

    def or_(self, *groups: Mapping[str, Any]) -> Predicate:
        return replace(self, either=self.either + tuple(dict(g) for g in groups))

    def order(self, column: str, descending: bool = False) -> Predicate:
        return replace(self, order_by=column, descending=descending)

    def take(self, limit: int) -> Predicate:
        return replace(self, limit=limit)

    def matches(self, row: Mapping[str, Any]) -> bool:
        for column, expected in self.equals.items():
            if row.get(column) != expected:
                return False
        for column, allowed in self.any_of.items():
            if row.get(column) not in allowed:
                return False
        if self.either and not any(
            all(row.get(c) == v for c, v in group.items()) for group in self.either
        ):
            return False
        return True


# =============================================================================
# MUTATION
# =============================================================================
class MutationOp(Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def event_kind(self) -> EventKind:
        return EventKind[self.name]


@dataclass(frozen=True)
class Mutation:
    """A single-table write."""

    op: MutationOp
    values: Mapping[str, Any] = field(default_factory=dict)
    predicate: Predicate = field(default_factory=Predicate)

    @classmethod
    def insert(cls, **values: Any) -> Mutation:
        return cls(op=MutationOp.INSERT, values=dict(values))

    @classmethod
    def update(cls, predicate: Predicate, **values: Any) -> Mutation:
        return cls(op=MutationOp.UPDATE, values=dict(values), predicate=predicate)

    @classmethod
    def delete(cls, predicate: Predicate) -> Mutation:
        return cls(op=MutationOp.DELETE, predicate=predicate)


# =============================================================================
# CHANGE NOTIFICATIONS
# =============================================================================
@dataclass(frozen=True, slots=True)
class Change:
    """
    One row-level change on a table.

    INSERT carries `new`, DELETE carries `old`, UPDATE carries both
    (`old` may hold only the primary key, depending on the service).
    """

    table: str
    kind: EventKind
    new: Optional[Row] = None
    old: Optional[Row] = None

    @property
    def record(self) -> Row:
        """The most informative row available."""
        return self.new or self.old or {}

    @property
    def entity_id(self) -> Optional[str]:
        return row_id(self.new) or row_id(self.old)


@runtime_checkable
class ChangeStream(Protocol):
    """Async iterator of Change that can be closed early."""

    def __aiter__(self) -> AsyncIterator[Change]:
        ...

    async def __anext__(self) -> Change:
        ...

    async def aclose(self) -> None:
        ...


# =============================================================================
# REMOTE DATA SERVICE
# =============================================================================
@runtime_checkable
class RemoteDataService(Protocol):
    """
    Abstract remote data service.

    Implementations raise on failure; an exception carrying a 401 status
    or an auth marker is classified as an expired session.
    """

    @abstractmethod
    async def query(self, table: str, predicate: Optional[Predicate] = None) -> list[Row]:
        """Return rows of table matching predicate, ordered and limited by it."""
        ...

    @abstractmethod
    async def mutate(self, table: str, mutation: Mutation) -> Optional[Row]:
        """
        Apply a write.

        Returns:
            The inserted row, the first updated row, the first deleted
            row, or None when nothing matched.
        """
        ...

    @abstractmethod
    async def subscribe_changes(
        self,
        table: str,
        kind: EventKind = EventKind.ANY,
    ) -> ChangeStream:
        """Open a change stream for table; raises if it cannot be opened."""
        ...

    @abstractmethod
    def current_user_id(self) -> Optional[UserId]:
        ...

    @abstractmethod
    def resolve_blob_url(self, path: str) -> str:
        ...

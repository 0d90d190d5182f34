"""
Realtime data model: filters, subscriptions and connection state.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional, Sequence, Union

from snapsync.core.errors import ChannelError
from snapsync.core.types import EventKind
from snapsync.remote.protocol import Change, Predicate

ChangeCallback = Callable[[Change], None]


class ConnectionState(Enum):
    """
    Session connection lifecycle.

    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED -> DISCONNECTED on stream error, stream end or teardown
    CONNECTING -> DISCONNECTED when a stream cannot be opened
    """

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()


StateListener = Callable[[ConnectionState, Optional[ChannelError]], None]


@dataclass(frozen=True, slots=True)
class TableFilter:
    """
    Match rule for one table.

    predicate, when given, is evaluated against the change's most
    informative row.
    """

    table: str
    kind: EventKind = EventKind.ANY
    predicate: Optional[Predicate] = None

    @classmethod
    def of(
        cls,
        table: str,
        kind: Union[str, EventKind] = EventKind.ANY,
        predicate: Optional[Predicate] = None,
    ) -> TableFilter:
        return cls(table=table, kind=EventKind.parse(kind), predicate=predicate)

    def matches(self, change: Change) -> bool:
        if change.table != self.table or not self.kind.matches(change.kind):
            return False
        return self.predicate is None or self.predicate.matches(change.record)


@dataclass(slots=True)
class Subscription:
    """A registered consumer of the session's change feed."""

    id: str
    filters: tuple[TableFilter, ...]
    callback: ChangeCallback
    enabled: bool = True

    @property
    def tables(self) -> frozenset[str]:
        return frozenset(f.table for f in self.filters)

    def first_match(self, change: Change) -> Optional[TableFilter]:
        for table_filter in self.filters:
            if table_filter.matches(change):
                return table_filter
        return None


def normalize_filters(filters: Sequence[TableFilter]) -> tuple[TableFilter, ...]:
    if not filters:
        raise ValueError("A subscription needs at least one table filter")
    return tuple(filters)

"""
In-Memory Remote Data Service

A complete RemoteDataService held in process memory. Backs the test
suite and local development:
- Tables of dict rows with generated ids and created_at stamps
- Predicate evaluation with ordering and limit
- Change fan-out to every open stream on the mutated table
- Failure injection (next N calls to an operation raise) and call logs

Rows handed out are copies; callers never alias service state.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterable, Optional
from uuid import uuid4

from snapsync.core.types import EventKind, Row, Timestamp, UserId
from snapsync.remote.protocol import Change, Mutation, MutationOp, Predicate

logger = logging.getLogger(__name__)

_CLOSED: Any = object()


class ServiceError(Exception):
    """Failure raised by the in-memory service; carries an HTTP-like status."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass
class _Failure:
    operation: str
    error: BaseException
    table: Optional[str]
    remaining: int


@dataclass(frozen=True, slots=True)
class QueryCall:
    table: str
    predicate: Predicate


class MemoryChangeStream:
    """Queue-backed change stream for one table subscription."""

    __slots__ = ("_service", "table", "kind", "_queue", "_closed")

    def __init__(self, service: InMemoryDataService, table: str, kind: EventKind) -> None:
        self._service = service
        self.table = table
        self.kind = kind
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, item: Any) -> None:
        if not self._closed:
            self._queue.put_nowait(item)

    def __aiter__(self) -> MemoryChangeStream:
        return self

    async def __anext__(self) -> Change:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._closed = True
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self._closed = True
            self._service._detach(self)
            raise item
        return item

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._service._detach(self)
        self._queue.put_nowait(_CLOSED)


class InMemoryDataService:
    """
    RemoteDataService over in-process tables.

    Usage:
        service = InMemoryDataService(current_user="u1")
        service.seed("stories", [{"id": "s1", "user_id": "u2", "is_active": True}])

        stream = await service.subscribe_changes("stories")
        await service.mutate("stories", Mutation.insert(user_id="u1", is_active=True))
        change = await stream.__anext__()
    """

    def __init__(
        self,
        current_user: Optional[UserId] = None,
        blob_base_url: str = "memory://blobs",
        latency_s: float = 0.0,
    ) -> None:
        self._tables: dict[str, list[Row]] = defaultdict(list)
        self._streams: dict[str, list[MemoryChangeStream]] = defaultdict(list)
        self._current_user = current_user
        self._blob_base_url = blob_base_url.rstrip("/")
        self._latency_s = latency_s
        self._failures: list[_Failure] = []
        self.query_log: list[QueryCall] = []
        self.mutation_log: list[tuple[str, Mutation]] = []

    # -------------------------------------------------------------------------
    # Test/dev helpers
    # -------------------------------------------------------------------------
    def seed(self, table: str, rows: Iterable[Row]) -> None:
        """Insert rows without emitting changes."""
        for row in rows:
            self._tables[table].append(self._with_defaults(dict(row)))

    def rows(self, table: str) -> list[Row]:
        return copy.deepcopy(self._tables.get(table, []))

    def set_current_user(self, user_id: Optional[UserId]) -> None:
        self._current_user = user_id

    def fail_next(
        self,
        operation: str,
        error: BaseException,
        table: Optional[str] = None,
        times: int = 1,
    ) -> None:
        """Make the next `times` calls of operation (query/mutate/subscribe) raise."""
        self._failures.append(_Failure(operation, error, table, times))

    def break_streams(self, table: str, error: Optional[BaseException] = None) -> None:
        """Terminate every open stream on table, with an error or a clean end."""
        for stream in list(self._streams.get(table, [])):
            stream._push(error if error is not None else _CLOSED)
        self._streams.pop(table, None)

    def emit(self, change: Change) -> None:
        """Deliver a change to subscribers without touching table state."""
        for stream in list(self._streams.get(change.table, [])):
            if stream.kind.matches(change.kind):
                stream._push(change)

    def open_streams(self, table: Optional[str] = None) -> int:
        if table is not None:
            return len(self._streams.get(table, []))
        return sum(len(s) for s in self._streams.values())

    def queries_for(self, table: str) -> list[QueryCall]:
        return [call for call in self.query_log if call.table == table]

    # -------------------------------------------------------------------------
    # RemoteDataService
    # -------------------------------------------------------------------------
    async def query(self, table: str, predicate: Optional[Predicate] = None) -> list[Row]:
        predicate = predicate or Predicate()
        self.query_log.append(QueryCall(table, predicate))
        await self._simulate("query", table)

        rows = [r for r in self._tables.get(table, []) if predicate.matches(r)]
        if predicate.order_by is not None:
            column = predicate.order_by
            rows.sort(
                key=lambda r: (r.get(column) is None, r.get(column)),
                reverse=predicate.descending,
            )
        if predicate.limit is not None:
            rows = rows[: predicate.limit]
        return copy.deepcopy(rows)

    async def mutate(self, table: str, mutation: Mutation) -> Optional[Row]:
        self.mutation_log.append((table, mutation))
        await self._simulate("mutate", table)

        if mutation.op is MutationOp.INSERT:
            row = self._with_defaults(dict(mutation.values))
            self._tables[table].append(row)
            self.emit(Change(table, EventKind.INSERT, new=copy.deepcopy(row)))
            return copy.deepcopy(row)

        matched = [r for r in self._tables.get(table, []) if mutation.predicate.matches(r)]
        if not matched:
            return None

        if mutation.op is MutationOp.UPDATE:
            for row in matched:
                old = copy.deepcopy(row)
                row.update(copy.deepcopy(dict(mutation.values)))
                self.emit(Change(table, EventKind.UPDATE, new=copy.deepcopy(row), old=old))
            return copy.deepcopy(matched[0])

        remaining = [r for r in self._tables[table] if not mutation.predicate.matches(r)]
        self._tables[table] = remaining
        for row in matched:
            self.emit(Change(table, EventKind.DELETE, old=copy.deepcopy(row)))
        return copy.deepcopy(matched[0])

    async def subscribe_changes(
        self,
        table: str,
        kind: EventKind = EventKind.ANY,
    ) -> MemoryChangeStream:
        await self._simulate("subscribe", table)
        stream = MemoryChangeStream(self, table, kind)
        self._streams[table].append(stream)
        return stream

    def current_user_id(self) -> Optional[UserId]:
        return self._current_user

    def resolve_blob_url(self, path: str) -> str:
        return f"{self._blob_base_url}/{path.lstrip('/')}"

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------
    def _detach(self, stream: MemoryChangeStream) -> None:
        streams = self._streams.get(stream.table)
        if streams and stream in streams:
            streams.remove(stream)

    async def _simulate(self, operation: str, table: str) -> None:
        if self._latency_s > 0:
            await asyncio.sleep(self._latency_s)
        else:
            # Remote calls always suspend
            await asyncio.sleep(0)
        for failure in self._failures:
            if failure.operation != operation or failure.remaining <= 0:
                continue
            if failure.table is not None and failure.table != table:
                continue
            failure.remaining -= 1
            self._failures = [f for f in self._failures if f.remaining > 0]
            logger.debug(f"Injected {operation} failure on {table}: {failure.error}")
            raise failure.error

    @staticmethod
    def _with_defaults(row: Row) -> Row:
        row.setdefault("id", str(uuid4()))
        row.setdefault("created_at", Timestamp.now().isoformat())
        return row

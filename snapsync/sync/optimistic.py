"""
Optimistic Mutation Tracker: Placeholders Reconciled by Correlation

A locally-initiated write is projected into the stream immediately as a
placeholder row, then reconciled against the authoritative record:

    begin(stream, payload)       placeholder appended, record outstanding
    confirm(cid, record)         placeholder replaced in place (same index)
    fail(cid)                    placeholder removed
    merge_incoming(stream, row)  server echo; confirms when it carries an
                                 outstanding correlation token

Matching is by correlation token, never by content. The token travels
with the write (CORRELATION_FIELD on the payload) so the echo delivered
by the realtime feed or a poll carries it back.

Dedup:
    An authoritative record whose id is already present in the stream is
    a no-op merge. If the echo lands before the mutation call returns,
    the later confirm finds the record already in place and just drops
    the placeholder.

Streams are opaque ids; the tracker reads and writes them only through
the update_stream callable supplied by the owning controller (typically
CacheStore.update plus a push into the controller's state).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from snapsync.core import constants as C
from snapsync.core.errors import MutationError, ReconcileConflict
from snapsync.core.types import Row, Timestamp, row_id
from snapsync.observability.metrics import SyncMetrics, get_metrics

logger = logging.getLogger(__name__)

StreamUpdater = Callable[[str, Callable[[Optional[list[Row]]], list[Row]]], list[Row]]


@dataclass(slots=True)
class OptimisticRecord:
    """One in-flight local mutation."""

    correlation_id: str
    stream_id: str
    payload: Row
    inserted_at: Timestamp = field(default_factory=Timestamp.now)

    @property
    def placeholder_id(self) -> str:
        return f"{C.PLACEHOLDER_ID_PREFIX}{self.correlation_id}"


class OptimisticMutationTracker:
    """
    Tracks outstanding optimistic writes across streams.

    Usage:
        tracker = OptimisticMutationTracker(update_stream)
        record = await tracker.run(
            "messages:c1",
            {"content": "hi", "sender_id": uid},
            lambda payload: service.mutate("messages", Mutation.insert(**payload)),
        )
    """

    __slots__ = ("_update_stream", "_id_field", "_outstanding", "_metrics")

    def __init__(self, update_stream: StreamUpdater, id_field: str = "id") -> None:
        self._update_stream = update_stream
        self._id_field = id_field
        self._outstanding: dict[str, OptimisticRecord] = {}
        self._metrics = get_metrics()

    # =========================================================================
    # Introspection
    # =========================================================================
    def outstanding(self, stream_id: Optional[str] = None) -> list[OptimisticRecord]:
        return [
            r for r in self._outstanding.values()
            if stream_id is None or r.stream_id == stream_id
        ]

    def is_outstanding(self, correlation_id: str) -> bool:
        return correlation_id in self._outstanding

    @staticmethod
    def is_placeholder(row: Row) -> bool:
        return bool(row.get(C.PENDING_FLAG_FIELD))

    # =========================================================================
    # Lifecycle of one mutation
    # =========================================================================
    def begin(self, stream_id: str, payload: Row) -> str:
        """Append a placeholder for payload and return its correlation id."""
        correlation_id = uuid4().hex
        record = OptimisticRecord(
            correlation_id=correlation_id,
            stream_id=stream_id,
            payload=dict(payload),
        )
        self._outstanding[correlation_id] = record

        placeholder = {
            **payload,
            self._id_field: record.placeholder_id,
            C.CORRELATION_FIELD: correlation_id,
            C.PENDING_FLAG_FIELD: True,
        }
        placeholder.setdefault("created_at", record.inserted_at.isoformat())
        self._update_stream(stream_id, lambda rows: [*(rows or []), placeholder])
        self._metrics.inc(SyncMetrics.MUTATIONS_STARTED)
        logger.debug(f"Optimistic insert {correlation_id} on {stream_id}")
        return correlation_id

    def payload_for_write(self, correlation_id: str) -> Row:
        """Payload to send to the service, carrying the correlation token."""
        record = self._outstanding.get(correlation_id)
        if record is None:
            raise MutationError.unknown_correlation(correlation_id)
        return {**record.payload, C.CORRELATION_FIELD: correlation_id}

    def confirm(self, correlation_id: str, record: Row) -> bool:
        """
        Replace the placeholder with the authoritative record.

        Returns False when the correlation is not outstanding (already
        confirmed by an echo, or failed).
        """
        optimistic = self._outstanding.pop(correlation_id, None)
        if optimistic is None:
            return False

        authoritative = dict(record)
        authoritative.pop(C.PENDING_FLAG_FIELD, None)
        record_id = row_id(authoritative, self._id_field)

        def replace(rows: Optional[list[Row]]) -> list[Row]:
            current = list(rows or [])
            index = self._index_of_correlation(current, correlation_id)
            existing = self._index_of_id(current, record_id)
            if existing is not None and existing != index:
                # Record already landed through another path; keep one copy
                if index is not None:
                    logger.debug(
                        ReconcileConflict.placeholder_superseded(
                            optimistic.stream_id, correlation_id, record_id
                        ).message
                    )
                    del current[index]
                return current
            if index is None:
                current.append(authoritative)
            else:
                current[index] = authoritative
            return current

        self._update_stream(optimistic.stream_id, replace)
        self._metrics.inc(SyncMetrics.MUTATIONS_CONFIRMED)
        return True

    def fail(self, correlation_id: str) -> bool:
        """Remove the placeholder of a failed mutation."""
        optimistic = self._outstanding.pop(correlation_id, None)
        if optimistic is None:
            return False

        def remove(rows: Optional[list[Row]]) -> list[Row]:
            return [
                r for r in (rows or [])
                if not (self.is_placeholder(r) and r.get(C.CORRELATION_FIELD) == correlation_id)
            ]

        self._update_stream(optimistic.stream_id, remove)
        self._metrics.inc(SyncMetrics.MUTATIONS_FAILED)
        logger.debug(f"Optimistic insert {correlation_id} rolled back")
        return True

    async def run(
        self,
        stream_id: str,
        payload: Row,
        mutate: Callable[[Row], Awaitable[Optional[Row]]],
    ) -> Row:
        """
        begin(), perform the write, then confirm() or fail().

        Raises:
            MutationError: the write failed; the placeholder is gone
        """
        correlation_id = self.begin(stream_id, payload)
        try:
            record = await mutate(self.payload_for_write(correlation_id))
        except BaseException as exc:
            self.fail(correlation_id)
            if isinstance(exc, Exception):
                raise MutationError.failed(stream_id, correlation_id, cause=exc) from exc
            raise
        if record is None:
            self.fail(correlation_id)
            raise MutationError.failed(stream_id, correlation_id)
        self.confirm(correlation_id, record)
        return record

    # =========================================================================
    # Incoming authoritative rows
    # =========================================================================
    def merge_incoming(self, stream_id: str, record: Row, replace_existing: bool = False) -> bool:
        """
        Merge a row delivered by realtime or a fetch.

        Returns True if the stream changed.
        """
        correlation_id = record.get(C.CORRELATION_FIELD)
        if correlation_id and correlation_id in self._outstanding:
            if self._outstanding[correlation_id].stream_id == stream_id:
                return self.confirm(correlation_id, record)

        record_id = row_id(record, self._id_field)
        changed = False

        def merge(rows: Optional[list[Row]]) -> list[Row]:
            nonlocal changed
            current = list(rows or [])
            index = self._index_of_id(current, record_id)
            if index is None:
                current.append(dict(record))
                changed = True
            elif replace_existing:
                current[index] = dict(record)
                changed = True
            return current

        self._update_stream(stream_id, merge)
        return changed

    def discard_stream(self, stream_id: str) -> int:
        """Forget outstanding records for a stream (its owner closed)."""
        doomed = [cid for cid, r in self._outstanding.items() if r.stream_id == stream_id]
        for cid in doomed:
            del self._outstanding[cid]
        return len(doomed)

    def clear(self) -> None:
        self._outstanding.clear()

    # =========================================================================
    # Helpers
    # =========================================================================
    @staticmethod
    def _index_of_correlation(rows: list[Row], correlation_id: str) -> Optional[int]:
        for i, row in enumerate(rows):
            if row.get(C.PENDING_FLAG_FIELD) and row.get(C.CORRELATION_FIELD) == correlation_id:
                return i
        return None

    def _index_of_id(self, rows: list[Row], record_id: Any) -> Optional[int]:
        if record_id is None:
            return None
        for i, row in enumerate(rows):
            if row_id(row, self._id_field) == record_id:
                return i
        return None

"""
Conversations: the inbox list and per-conversation message threads.

ConversationsController
    Conversations the user takes part in, newest activity first, each
    annotated with its last message and unread count. Message traffic
    hints the owning conversation; the throttler recomputes just those
    summaries. Polled every conversations_interval_s as a backstop.

ConversationThread
    The message stream of one conversation. send_message() goes through
    the OptimisticMutationTracker: a placeholder is shown immediately
    and replaced in place by the stored message, whether that arrives as
    the write's return value or as the realtime echo.
"""

from __future__ import annotations

import logging

from snapsync.cache.keys import CacheKey
from snapsync.controllers.base import (
    SubscriptionSpec,
    SyncContext,
    SyncController,
    replace_by_id,
    without_ids,
)
from snapsync.core import constants as C
from snapsync.core.errors import AuthExpiredError, MutationError, classify_exception
from snapsync.core.types import EntityId, EventKind, Row, Timestamp, UserId
from snapsync.realtime.models import Change, TableFilter
from snapsync.remote.protocol import Mutation, Predicate
from snapsync.sync.optimistic import OptimisticMutationTracker

logger = logging.getLogger(__name__)

Conversations = tuple[Row, ...]


def by_activity(conversations: list[Row]) -> Conversations:
    """Newest activity first; conversations without messages last."""
    return tuple(
        sorted(conversations, key=lambda c: c.get("last_message_at") or "", reverse=True)
    )


# =============================================================================
# CONVERSATION LIST
# =============================================================================
class ConversationsController(SyncController[Conversations]):
    """
    Usage:
        inbox = ConversationsController(ctx)
        await inbox.start()
        thread = await inbox.open_thread(inbox.data[0]["id"])
        await thread.send_message("hi")
    """

    name = "conversations"

    def __init__(self, ctx: SyncContext) -> None:
        super().__init__(ctx, CacheKey.CONVERSATIONS)
        self._threads: dict[EntityId, ConversationThread] = {}
        self._throttle = self._throttler(
            "activity",
            fetch=self._fetch_by_ids,
            merge=self._merge_batch,
            window_s=ctx.config.throttle.messages_window_s,
        )

    def empty(self) -> Conversations:
        return ()

    def _poll_interval(self) -> float:
        return self._ctx.config.polling.conversations_interval_s

    @property
    def unread_total(self) -> int:
        return sum(c.get("unread_count", 0) for c in self._data)

    def _participating(self) -> Predicate:
        return Predicate().or_(
            {"participant1_id": self.user_id},
            {"participant2_id": self.user_id},
        )

    # =========================================================================
    # Loading
    # =========================================================================
    async def _fetch(self) -> Conversations:
        conversations = await self._ctx.service.query(
            C.TABLE_CONVERSATIONS,
            self._participating().order("last_message_at", descending=True),
        )
        return by_activity(await self._summarize(conversations))

    async def _summarize(self, conversations: list[Row]) -> list[Row]:
        if not conversations:
            return []
        ids = [c["id"] for c in conversations]
        messages = await self._ctx.service.query(
            C.TABLE_MESSAGES,
            Predicate().in_("conversation_id", ids).order("created_at"),
        )
        last: dict[EntityId, Row] = {}
        unread: dict[EntityId, int] = {}
        for message in messages:
            conversation_id = message.get("conversation_id")
            last[conversation_id] = message
            if message.get("sender_id") != self.user_id and not message.get("read_at"):
                unread[conversation_id] = unread.get(conversation_id, 0) + 1

        summaries = []
        for conversation in conversations:
            cid = conversation["id"]
            other = conversation.get("participant1_id")
            if other == self.user_id:
                other = conversation.get("participant2_id")
            summaries.append({
                **conversation,
                "other_user_id": other,
                "last_message": last.get(cid),
                "unread_count": unread.get(cid, 0),
            })
        return summaries

    # =========================================================================
    # Realtime
    # =========================================================================
    def _subscriptions(self) -> list[SubscriptionSpec]:
        return [
            SubscriptionSpec(
                id=self._sub_id(),
                filters=[
                    TableFilter.of(
                        C.TABLE_CONVERSATIONS,
                        predicate=Predicate.where(participant1_id=self.user_id),
                    ),
                    TableFilter.of(
                        C.TABLE_CONVERSATIONS,
                        predicate=Predicate.where(participant2_id=self.user_id),
                    ),
                    TableFilter.of(C.TABLE_MESSAGES),
                ],
                callback=self._on_change,
            )
        ]

    def _on_change(self, change: Change) -> None:
        if change.table == C.TABLE_MESSAGES:
            self._throttle.hint(change.record.get("conversation_id"))
            return
        conversation_id = change.entity_id
        if conversation_id is None:
            return
        if change.kind is EventKind.DELETE:
            self._write(lambda conversations: tuple(without_ids(conversations, {conversation_id})))
        else:
            self._throttle.hint(conversation_id)

    async def _fetch_by_ids(self, ids: list[EntityId]) -> list[Row]:
        conversations = await self._ctx.service.query(
            C.TABLE_CONVERSATIONS,
            self._participating().in_("id", ids),
        )
        return await self._summarize(conversations)

    def _merge_batch(self, rows: list[Row], ids: list[EntityId]) -> None:
        returned = {r["id"] for r in rows}
        gone = {i for i in ids if i not in returned}

        def merge(conversations: Conversations) -> Conversations:
            current = without_ids(conversations, gone)
            for row in rows:
                current = replace_by_id(current, row)
            return by_activity(current)

        self._write(merge)

    # =========================================================================
    # Threads
    # =========================================================================
    def thread(self, conversation_id: EntityId) -> ConversationThread:
        thread = self._threads.get(conversation_id)
        if thread is None or thread.closed:
            thread = ConversationThread(self._ctx, conversation_id)
            self._threads[conversation_id] = thread
        return thread

    async def open_thread(self, conversation_id: EntityId) -> ConversationThread:
        thread = self.thread(conversation_id)
        await thread.start()
        return thread

    async def close_thread(self, conversation_id: EntityId) -> None:
        thread = self._threads.pop(conversation_id, None)
        if thread is not None:
            await thread.close()

    async def get_or_create(self, recipient_id: UserId) -> Row:
        """The conversation with recipient_id, created on first contact."""
        if recipient_id == self.user_id:
            raise MutationError.rejected("create_conversation", "cannot message yourself")
        first, second = sorted((self.user_id, recipient_id))
        service = self._ctx.service
        existing = await service.query(
            C.TABLE_CONVERSATIONS,
            Predicate().or_(
                {"participant1_id": first, "participant2_id": second},
                {"participant1_id": second, "participant2_id": first},
            ).take(1),
        )
        if existing:
            return existing[0]
        row = await self._mutation(
            "create_conversation",
            service.mutate(
                C.TABLE_CONVERSATIONS,
                Mutation.insert(participant1_id=first, participant2_id=second),
            ),
        )
        if row is None:
            raise MutationError.rejected("create_conversation", "no row returned")
        return row

    async def close(self) -> None:
        for conversation_id in list(self._threads):
            await self.close_thread(conversation_id)
        await super().close()


# =============================================================================
# MESSAGE THREAD
# =============================================================================
class ConversationThread(SyncController[list[Row]]):
    name = "conversation_thread"

    def __init__(self, ctx: SyncContext, conversation_id: EntityId) -> None:
        self.name = f"thread:{conversation_id}"
        self._conversation_id = conversation_id
        super().__init__(ctx, CacheKey.messages(conversation_id))
        self._tracker = OptimisticMutationTracker(lambda _stream, fn: self._write(fn))

    def empty(self) -> list[Row]:
        return []

    @property
    def conversation_id(self) -> EntityId:
        return self._conversation_id

    @property
    def messages(self) -> list[Row]:
        return list(self._data)

    @property
    def tracker(self) -> OptimisticMutationTracker:
        return self._tracker

    # =========================================================================
    # Loading
    # =========================================================================
    async def _fetch(self) -> list[Row]:
        return await self._ctx.service.query(
            C.TABLE_MESSAGES,
            Predicate.where(conversation_id=self._conversation_id).order("created_at"),
        )

    def _reconcile_fetched(self, fetched: list[Row], current: list[Row]) -> list[Row]:
        # Keep placeholders whose write has not landed in the fetched rows
        landed = {r.get(C.CORRELATION_FIELD) for r in fetched if r.get(C.CORRELATION_FIELD)}
        pending = [
            r for r in current
            if self._tracker.is_placeholder(r)
            and self._tracker.is_outstanding(r.get(C.CORRELATION_FIELD))
            and r.get(C.CORRELATION_FIELD) not in landed
        ]
        return [*fetched, *pending]

    # =========================================================================
    # Realtime
    # =========================================================================
    def _subscriptions(self) -> list[SubscriptionSpec]:
        return [
            SubscriptionSpec(
                id=self._sub_id(self._conversation_id),
                filters=[
                    TableFilter.of(
                        C.TABLE_MESSAGES,
                        predicate=Predicate.where(conversation_id=self._conversation_id),
                    )
                ],
                callback=self._on_change,
            )
        ]

    def _on_change(self, change: Change) -> None:
        if change.kind is EventKind.DELETE:
            message_id = change.entity_id
            if message_id is not None:
                self._write(lambda rows: without_ids(rows, {message_id}))
        elif change.new is not None:
            self._tracker.merge_incoming(
                self._cache_key,
                change.new,
                replace_existing=change.kind is EventKind.UPDATE,
            )

    # =========================================================================
    # Writes
    # =========================================================================
    async def send_message(self, content: str) -> Row:
        """
        Send a message optimistically.

        Raises:
            MutationError: the write failed; the placeholder was removed
        """
        text = content.strip()
        if not text:
            raise MutationError.rejected("send_message", "message is empty")

        service = self._ctx.service
        payload = {
            "conversation_id": self._conversation_id,
            "sender_id": self.user_id,
            "content": text,
        }
        message = await self._tracker.run(
            self._cache_key,
            payload,
            lambda values: service.mutate(C.TABLE_MESSAGES, Mutation.insert(**values)),
        )

        try:
            await service.mutate(
                C.TABLE_CONVERSATIONS,
                Mutation.update(
                    Predicate.where(id=self._conversation_id),
                    last_message_at=message.get("created_at") or Timestamp.now().isoformat(),
                ),
            )
        except Exception as exc:
            # The message itself is stored; only list ordering lags until the next poll
            error = classify_exception(exc, "bump_conversation")
            logger.warning(f"Bumping {self._conversation_id} activity failed: {error}")
            if isinstance(error, AuthExpiredError):
                self._report_error(error)
        return message

    async def mark_read(self) -> int:
        """Mark every unread message from the other participant as read."""
        unread = [
            m["id"] for m in self._data
            if m.get("sender_id") != self.user_id
            and not m.get("read_at")
            and not self._tracker.is_placeholder(m)
        ]
        if not unread:
            return 0
        read_at = Timestamp.now().isoformat()
        await self._mutation(
            "mark_read",
            self._ctx.service.mutate(
                C.TABLE_MESSAGES,
                Mutation.update(Predicate().in_("id", unread), read_at=read_at),
            ),
        )
        ids = set(unread)
        if not self._closed:
            self._write(
                lambda rows: [{**r, "read_at": read_at} if r.get("id") in ids else r for r in rows]
            )
        return len(unread)

    async def close(self) -> None:
        await super().close()
        self._tracker.discard_stream(self._cache_key)

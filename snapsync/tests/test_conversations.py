"""
Integration Tests: ConversationsController and ConversationThread

Tests:
    - Inbox summaries (other participant, last message, unread count)
    - Activity ordering after new messages
    - Optimistic send: placeholder, confirm, echo without duplicates
    - Rollback of failed sends
    - mark_read and get_or_create
"""

import asyncio

import pytest

from snapsync.cache.keys import CacheKey
from snapsync.controllers import ConversationsController
from snapsync.controllers.conversations import by_activity
from snapsync.core import constants as C
from snapsync.core.errors import MutationError
from snapsync.remote.memory import ServiceError
from snapsync.remote.protocol import Mutation, Predicate
from snapsync.tests.helpers import FRIEND, ME, STRANGER, wait_until


def _seed(service):
    service.seed("conversations", [
        {"id": "c1", "participant1_id": ME, "participant2_id": FRIEND,
         "last_message_at": "2026-01-02T00:01:00"},
        {"id": "c2", "participant1_id": STRANGER, "participant2_id": ME,
         "last_message_at": "2026-01-03T00:00:00"},
        {"id": "c3", "participant1_id": FRIEND, "participant2_id": STRANGER,
         "last_message_at": "2026-01-04T00:00:00"},
    ])
    service.seed("messages", [
        {"id": "m1", "conversation_id": "c1", "sender_id": FRIEND, "content": "hey",
         "created_at": "2026-01-02T00:00:00"},
        {"id": "m2", "conversation_id": "c1", "sender_id": ME, "content": "hi",
         "created_at": "2026-01-02T00:01:00"},
        {"id": "m3", "conversation_id": "c2", "sender_id": STRANGER, "content": "yo",
         "created_at": "2026-01-03T00:00:00", "read_at": "2026-01-03T01:00:00"},
    ])


async def _started(service, make_context):
    _seed(service)
    ctx = make_context()
    inbox = ConversationsController(ctx)
    await inbox.start()
    await wait_until(lambda: ctx.mux.is_connected)
    return ctx, inbox


async def _shutdown(ctx, inbox):
    await inbox.close()
    await ctx.mux.close()


def _ids(rows):
    return [r["id"] for r in rows]


# =============================================================================
# INBOX
# =============================================================================
class TestInbox:
    """Tests for the conversation list."""

    def test_by_activity(self):
        """Test conversations without activity sort last."""
        rows = [{"id": "a"}, {"id": "b", "last_message_at": "2"}, {"id": "c", "last_message_at": "3"}]

        assert _ids(by_activity(rows)) == ["c", "b", "a"]

    @pytest.mark.asyncio
    async def test_summaries(self, service, make_context):
        """Test only my conversations, newest first, with summaries."""
        ctx, inbox = await _started(service, make_context)

        assert _ids(inbox.data) == ["c2", "c1"]
        c2, c1 = inbox.data
        assert c1["other_user_id"] == FRIEND
        assert c2["other_user_id"] == STRANGER
        assert c1["last_message"]["id"] == "m2"
        assert c1["unread_count"] == 1
        assert c2["unread_count"] == 0
        assert inbox.unread_total == 1
        await _shutdown(ctx, inbox)

    @pytest.mark.asyncio
    async def test_incoming_message_updates_unread(self, service, make_context):
        ctx, inbox = await _started(service, make_context)

        await service.mutate(
            "messages",
            Mutation.insert(conversation_id="c1", sender_id=FRIEND, content="again"),
        )
        await wait_until(lambda: inbox.unread_total == 2)

        assert inbox.data[1]["last_message"]["content"] == "again"
        await _shutdown(ctx, inbox)

    @pytest.mark.asyncio
    async def test_new_conversation_appears(self, service, make_context):
        """Test a conversation created by someone else is listed."""
        ctx, inbox = await _started(service, make_context)

        await service.mutate(
            "conversations",
            Mutation.insert(id="c9", participant1_id="u7", participant2_id=ME,
                            last_message_at="2026-02-01T00:00:00"),
        )
        await wait_until(lambda: len(inbox.data) == 3)

        assert inbox.data[0]["id"] == "c9"
        await _shutdown(ctx, inbox)

    @pytest.mark.asyncio
    async def test_get_or_create(self, service, make_context):
        """Test an existing pair is reused and a new pair is created once."""
        ctx, inbox = await _started(service, make_context)

        existing = await inbox.get_or_create(FRIEND)
        created = await inbox.get_or_create("u9")
        again = await inbox.get_or_create("u9")

        assert existing["id"] == "c1"
        assert created["id"] == again["id"]
        assert (created["participant1_id"], created["participant2_id"]) == (ME, "u9")
        with pytest.raises(MutationError):
            await inbox.get_or_create(ME)
        await _shutdown(ctx, inbox)


# =============================================================================
# THREADS
# =============================================================================
class TestThread:
    """Tests for a single conversation's messages."""

    @pytest.mark.asyncio
    async def test_open_thread_loads_messages(self, service, cache, make_context):
        ctx, inbox = await _started(service, make_context)

        thread = await inbox.open_thread("c1")

        assert _ids(thread.messages) == ["m1", "m2"]
        assert inbox.thread("c1") is thread
        assert cache.get(CacheKey.messages("c1"), owner=ME) == thread.data
        await _shutdown(ctx, inbox)

    @pytest.mark.asyncio
    async def test_send_shows_placeholder_then_stored_row(self, service, make_context):
        """Test the optimistic row is replaced in place and never duplicated."""
        ctx, inbox = await _started(service, make_context)
        thread = await inbox.open_thread("c1")
        snapshots = []
        thread.add_listener(lambda rows: snapshots.append(list(rows)))

        message = await thread.send_message("  see you  ")
        await asyncio.sleep(0.1)

        assert any(r.get(C.PENDING_FLAG_FIELD) for snap in snapshots for r in snap)
        assert _ids(thread.messages) == ["m1", "m2", message["id"]]
        assert thread.messages[-1]["content"] == "see you"
        assert not thread.tracker.is_placeholder(thread.messages[-1])
        assert thread.tracker.outstanding() == []
        await _shutdown(ctx, inbox)

    @pytest.mark.asyncio
    async def test_send_bumps_conversation(self, service, make_context):
        ctx, inbox = await _started(service, make_context)
        thread = await inbox.open_thread("c1")

        await thread.send_message("bump")
        await wait_until(lambda: inbox.data[0]["id"] == "c1")

        assert inbox.data[0]["last_message"]["content"] == "bump"
        await _shutdown(ctx, inbox)

    @pytest.mark.asyncio
    async def test_failed_send_rolls_back(self, service, make_context):
        """Test a failed write removes the placeholder and raises."""
        ctx, inbox = await _started(service, make_context)
        thread = await inbox.open_thread("c1")
        service.fail_next("mutate", ServiceError("rejected", status=500), table="messages")

        with pytest.raises(MutationError):
            await thread.send_message("lost")

        assert _ids(thread.messages) == ["m1", "m2"]
        assert thread.tracker.outstanding() == []
        await _shutdown(ctx, inbox)

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, service, make_context):
        ctx, inbox = await _started(service, make_context)
        thread = await inbox.open_thread("c1")

        with pytest.raises(MutationError):
            await thread.send_message("   ")

        assert service.mutation_log == []
        await _shutdown(ctx, inbox)

    @pytest.mark.asyncio
    async def test_refresh_keeps_outstanding_placeholder(self, service, make_context):
        """Test a full reload does not drop a write still in flight."""
        ctx, inbox = await _started(service, make_context)
        thread = await inbox.open_thread("c1")
        correlation_id = thread.tracker.begin(
            thread.cache_key, {"conversation_id": "c1", "sender_id": ME, "content": "draft"}
        )

        await thread.refresh()

        assert len(thread.messages) == 3
        assert thread.tracker.is_placeholder(thread.messages[-1])
        thread.tracker.fail(correlation_id)
        assert len(thread.messages) == 2
        await _shutdown(ctx, inbox)

    @pytest.mark.asyncio
    async def test_mark_read(self, service, make_context):
        """Test incoming unread messages are marked once."""
        ctx, inbox = await _started(service, make_context)
        thread = await inbox.open_thread("c1")

        assert await thread.mark_read() == 1
        assert await thread.mark_read() == 0

        [m1] = [m for m in service.rows("messages") if m["id"] == "m1"]
        assert m1["read_at"]
        await wait_until(lambda: inbox.unread_total == 0)
        await _shutdown(ctx, inbox)

    @pytest.mark.asyncio
    async def test_remote_delete(self, service, make_context):
        ctx, inbox = await _started(service, make_context)
        thread = await inbox.open_thread("c1")

        await service.mutate("messages", Mutation.delete(Predicate.where(id="m1")))
        await wait_until(lambda: _ids(thread.messages) == ["m2"])
        await _shutdown(ctx, inbox)

    @pytest.mark.asyncio
    async def test_other_conversations_ignored(self, service, make_context):
        """Test a thread only receives its own conversation's messages."""
        ctx, inbox = await _started(service, make_context)
        thread = await inbox.open_thread("c1")

        await service.mutate(
            "messages", Mutation.insert(conversation_id="c2", sender_id=STRANGER, content="x")
        )
        await asyncio.sleep(0.05)

        assert _ids(thread.messages) == ["m1", "m2"]
        await _shutdown(ctx, inbox)

    @pytest.mark.asyncio
    async def test_closing_inbox_closes_threads(self, service, make_context):
        ctx, inbox = await _started(service, make_context)
        thread = await inbox.open_thread("c1")

        await inbox.close()

        assert thread.closed
        assert ctx.mux.subscription_ids == []
        await ctx.mux.close()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

"""
Stories controller.

Read model: the session user's active story plus the active stories of
friends, each flagged with whether the user has viewed it.

Realtime handling:
    stories INSERT/UPDATE    -> throttled batch fetch of the changed ids
    stories DELETE           -> applied immediately, no fetch
    story_views INSERT (me)  -> story flagged as viewed, no fetch

A batch fetch only returns active stories; ids that come back missing
were deactivated and are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Optional

from snapsync.cache.keys import CacheKey
from snapsync.controllers.base import (
    SubscriptionSpec,
    SyncContext,
    SyncController,
    replace_by_id,
    without_ids,
)
from snapsync.core import constants as C
from snapsync.core.types import EntityId, EventKind, Row
from snapsync.realtime.models import Change, TableFilter
from snapsync.remote.protocol import Mutation, Predicate

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StoriesState:
    my_story: Optional[Row] = None
    friend_stories: tuple[Row, ...] = ()

    def find(self, story_id: EntityId) -> Optional[Row]:
        if self.my_story is not None and self.my_story.get("id") == story_id:
            return self.my_story
        for story in self.friend_stories:
            if story.get("id") == story_id:
                return story
        return None


class StoriesController(SyncController[StoriesState]):
    """
    Usage:
        stories = StoriesController(ctx)
        stories.add_listener(render)
        await stories.start()
        await stories.mark_viewed(story_id)
    """

    name = "stories"

    def __init__(self, ctx: SyncContext) -> None:
        super().__init__(ctx, CacheKey.STORIES)
        self._throttle = self._throttler(
            "changes",
            fetch=self._fetch_by_ids,
            merge=self._merge_batch,
            window_s=ctx.config.throttle.stories_window_s,
        )

    def empty(self) -> StoriesState:
        return StoriesState()

    @property
    def my_story(self) -> Optional[Row]:
        return self._data.my_story

    @property
    def friend_stories(self) -> tuple[Row, ...]:
        return self._data.friend_stories

    # =========================================================================
    # Loading
    # =========================================================================
    async def _fetch(self) -> StoriesState:
        service = self._ctx.service
        friendships = await service.query(
            C.TABLE_FRIENDSHIPS,
            Predicate.where(user_id=self.user_id, status="accepted"),
        )
        authors = [self.user_id, *(f["friend_id"] for f in friendships)]
        stories, views = await asyncio.gather(
            service.query(
                C.TABLE_STORIES,
                Predicate.where(is_active=True)
                .in_("user_id", authors)
                .order("created_at", descending=True),
            ),
            service.query(C.TABLE_STORY_VIEWS, Predicate.where(viewer_id=self.user_id)),
        )
        viewed = {v.get("story_id") for v in views}

        my_story: Optional[Row] = None
        friend_stories: list[Row] = []
        for story in stories:
            story = {**story, "is_viewed": story.get("id") in viewed}
            if story.get("user_id") == self.user_id:
                # newest first; keep the latest
                if my_story is None:
                    my_story = story
            else:
                friend_stories.append(story)
        return StoriesState(my_story=my_story, friend_stories=tuple(friend_stories))

    # =========================================================================
    # Realtime
    # =========================================================================
    def _subscriptions(self) -> list[SubscriptionSpec]:
        return [
            SubscriptionSpec(
                id=self._sub_id(),
                filters=[
                    TableFilter.of(C.TABLE_STORIES),
                    TableFilter.of(
                        C.TABLE_STORY_VIEWS,
                        EventKind.INSERT,
                        Predicate.where(viewer_id=self.user_id),
                    ),
                ],
                callback=self._on_change,
            )
        ]

    def _on_change(self, change: Change) -> None:
        if change.table == C.TABLE_STORY_VIEWS:
            story_id = change.record.get("story_id")
            if story_id:
                self._write(lambda state: _flag_viewed(state, story_id))
            return

        story_id = change.entity_id
        if story_id is None:
            return
        if change.kind is EventKind.DELETE:
            self._write(lambda state: _drop(state, {story_id}))
        else:
            self._throttle.hint(story_id)

    async def _fetch_by_ids(self, ids: list[EntityId]) -> list[Row]:
        return await self._ctx.service.query(
            C.TABLE_STORIES,
            Predicate.where(is_active=True).in_("id", ids),
        )

    def _merge_batch(self, rows: list[Row], ids: list[EntityId]) -> None:
        returned = {r.get("id") for r in rows}
        gone = {i for i in ids if i not in returned}

        def merge(state: StoriesState) -> StoriesState:
            state = _drop(state, gone)
            for row in rows:
                previous = state.find(row.get("id"))
                story = {**row, "is_viewed": bool(previous and previous.get("is_viewed"))}
                if story.get("user_id") == self.user_id:
                    state = replace(state, my_story=story)
                else:
                    merged = replace_by_id(state.friend_stories, story, prepend=True)
                    state = replace(
                        state,
                        friend_stories=tuple(s for s in merged if s.get("is_active", True)),
                    )
            return state

        self._write(merge)

    # =========================================================================
    # Writes
    # =========================================================================
    async def mark_viewed(self, story_id: EntityId) -> None:
        """Record a view (once) and flag the story locally."""
        service = self._ctx.service
        existing = await service.query(
            C.TABLE_STORY_VIEWS,
            Predicate.where(story_id=story_id, viewer_id=self.user_id).take(1),
        )
        if not existing:
            await self._mutation(
                "mark_story_viewed",
                service.mutate(
                    C.TABLE_STORY_VIEWS,
                    Mutation.insert(story_id=story_id, viewer_id=self.user_id),
                ),
            )
        if not self._closed:
            self._write(lambda state: _flag_viewed(state, story_id))

    async def deactivate(self, story_id: EntityId) -> None:
        """Hide one of the user's own stories."""
        await self._mutation(
            "deactivate_story",
            self._ctx.service.mutate(
                C.TABLE_STORIES,
                Mutation.update(
                    Predicate.where(id=story_id, user_id=self.user_id),
                    is_active=False,
                ),
            ),
        )
        if not self._closed:
            self._write(lambda state: _drop(state, {story_id}))


def _flag_viewed(state: StoriesState, story_id: EntityId) -> StoriesState:
    return replace(
        state,
        friend_stories=tuple(
            {**s, "is_viewed": True} if s.get("id") == story_id else s
            for s in state.friend_stories
        ),
    )


def _drop(state: StoriesState, ids: set[EntityId]) -> StoriesState:
    if not ids:
        return state
    my_story = state.my_story
    if my_story is not None and my_story.get("id") in ids:
        my_story = None
    return StoriesState(
        my_story=my_story,
        friend_stories=tuple(without_ids(state.friend_stories, ids)),
    )

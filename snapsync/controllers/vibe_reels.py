"""
Vibe reels controller.

All posted reels are cached as one list. Consumers see three partitions
computed from the current friend-id set:

    friend     creator is a friend
    mine       creator is the session user
    community  everyone else

The friend-id set comes from the full load and from the friends
controller (update_friend_ids); a changed set re-publishes the data so
partitions are recomputed without a fetch.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable

from snapsync.cache.keys import CacheKey
from snapsync.controllers.base import (
    SubscriptionSpec,
    SyncContext,
    SyncController,
    replace_by_id,
    without_ids,
)
from snapsync.core import constants as C
from snapsync.core.types import EntityId, EventKind, Row, UserId
from snapsync.realtime.models import Change, TableFilter
from snapsync.remote.protocol import Mutation, Predicate

logger = logging.getLogger(__name__)

Reels = tuple[Row, ...]


@dataclass(frozen=True, slots=True)
class ReelPartition:
    friend: Reels
    mine: Reels
    community: Reels


def partition_reels(reels: Iterable[Row], user_id: UserId, friend_ids: frozenset[UserId]) -> ReelPartition:
    friend: list[Row] = []
    mine: list[Row] = []
    community: list[Row] = []
    for reel in reels:
        creator = reel.get("creator_id")
        if creator == user_id:
            mine.append(reel)
        elif creator in friend_ids:
            friend.append(reel)
        else:
            community.append(reel)
    return ReelPartition(tuple(friend), tuple(mine), tuple(community))


class VibeReelsController(SyncController[Reels]):
    name = "vibe_reels"

    def __init__(self, ctx: SyncContext) -> None:
        super().__init__(ctx, CacheKey.VIBE_REELS)
        self._friend_ids: frozenset[UserId] = frozenset()
        self._throttle = self._throttler(
            "changes",
            fetch=self._fetch_by_ids,
            merge=self._merge_batch,
            window_s=ctx.config.throttle.reels_window_s,
        )

    def empty(self) -> Reels:
        return ()

    def _poll_interval(self) -> float:
        return self._ctx.config.polling.vibe_reels_interval_s

    # =========================================================================
    # Partitions
    # =========================================================================
    @property
    def friend_ids(self) -> frozenset[UserId]:
        return self._friend_ids

    @property
    def partition(self) -> ReelPartition:
        return partition_reels(self._data, self.user_id, self._friend_ids)

    @property
    def friend_reels(self) -> Reels:
        return self.partition.friend

    @property
    def my_reels(self) -> Reels:
        return self.partition.mine

    @property
    def community_reels(self) -> Reels:
        return self.partition.community

    def update_friend_ids(self, friend_ids: Iterable[UserId]) -> bool:
        """Replace the friend set; returns whether it changed."""
        updated = frozenset(friend_ids)
        if updated == self._friend_ids:
            return False
        self._friend_ids = updated
        logger.debug(f"vibe_reels friend set now {len(updated)} ids")
        self._publish(self._data)
        return True

    # =========================================================================
    # Loading
    # =========================================================================
    async def _fetch(self) -> Reels:
        service = self._ctx.service
        reels, friendships, views = await asyncio.gather(
            service.query(C.TABLE_VIBE_REELS, Predicate().order("created_at", descending=True)),
            service.query(
                C.TABLE_FRIENDSHIPS,
                Predicate.where(user_id=self.user_id, status="accepted"),
            ),
            service.query(C.TABLE_VIBE_REEL_VIEWS, Predicate.where(viewer_id=self.user_id)),
        )
        self._friend_ids = frozenset(f["friend_id"] for f in friendships)
        viewed = {v.get("vibe_reel_id") for v in views}
        return tuple({**r, "is_viewed": r.get("id") in viewed} for r in reels)

    # =========================================================================
    # Realtime
    # =========================================================================
    def _subscriptions(self) -> list[SubscriptionSpec]:
        return [
            SubscriptionSpec(
                id=self._sub_id(),
                filters=[
                    TableFilter.of(C.TABLE_VIBE_REELS),
                    TableFilter.of(
                        C.TABLE_VIBE_REEL_VIEWS,
                        EventKind.INSERT,
                        Predicate.where(viewer_id=self.user_id),
                    ),
                ],
                callback=self._on_change,
            )
        ]

    def _on_change(self, change: Change) -> None:
        if change.table == C.TABLE_VIBE_REEL_VIEWS:
            reel_id = change.record.get("vibe_reel_id")
            if reel_id:
                self._write(lambda reels: _flag_viewed(reels, reel_id))
            return

        reel_id = change.entity_id
        if reel_id is None:
            return
        if change.kind is EventKind.DELETE:
            self._write(lambda reels: tuple(without_ids(reels, {reel_id})))
        else:
            self._throttle.hint(reel_id)

    async def _fetch_by_ids(self, ids: list[EntityId]) -> list[Row]:
        return await self._ctx.service.query(C.TABLE_VIBE_REELS, Predicate().in_("id", ids))

    def _merge_batch(self, rows: list[Row], ids: list[EntityId]) -> None:
        returned = {r.get("id") for r in rows}
        gone = {i for i in ids if i not in returned}

        def merge(reels: Reels) -> Reels:
            current = without_ids(reels, gone)
            viewed = {r.get("id") for r in current if r.get("is_viewed")}
            for row in rows:
                current = replace_by_id(
                    current, {**row, "is_viewed": row.get("id") in viewed}, prepend=True
                )
            return tuple(current)

        self._write(merge)

    # =========================================================================
    # Writes
    # =========================================================================
    async def mark_viewed(self, reel_id: EntityId) -> None:
        service = self._ctx.service
        existing = await service.query(
            C.TABLE_VIBE_REEL_VIEWS,
            Predicate.where(vibe_reel_id=reel_id, viewer_id=self.user_id).take(1),
        )
        if not existing:
            await self._mutation(
                "mark_vibe_reel_viewed",
                service.mutate(
                    C.TABLE_VIBE_REEL_VIEWS,
                    Mutation.insert(vibe_reel_id=reel_id, viewer_id=self.user_id),
                ),
            )
        if not self._closed:
            self._write(lambda reels: _flag_viewed(reels, reel_id))


def _flag_viewed(reels: Reels, reel_id: EntityId) -> Reels:
    return tuple({**r, "is_viewed": True} if r.get("id") == reel_id else r for r in reels)

"""
Friends controller.

Read model: accepted friends, requests received and requests sent, each
row carrying the counterpart's profile resolved through the shared
profile registry.

Friendship rows are routed by (status, direction):

    accepted, user_id == me    -> friends
    pending,  friend_id == me  -> received
    pending,  user_id == me    -> sent

Accepting a request writes the reciprocal accepted row so both users
list each other.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from snapsync.cache.keys import CacheKey
from snapsync.controllers.base import (
    SubscriptionSpec,
    SyncContext,
    SyncController,
    replace_by_id,
    without_ids,
)
from snapsync.controllers.profiles import load_profile
from snapsync.core import constants as C
from snapsync.core.errors import MutationError
from snapsync.core.types import EntityId, EventKind, Row, UserId
from snapsync.realtime.models import Change, TableFilter
from snapsync.remote.protocol import Mutation, Predicate

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_ACCEPTED = "accepted"


@dataclass(frozen=True, slots=True)
class FriendsState:
    friends: tuple[Row, ...] = ()
    received: tuple[Row, ...] = ()
    sent: tuple[Row, ...] = ()

    @property
    def friend_ids(self) -> frozenset[UserId]:
        return frozenset(f["friend_id"] for f in self.friends)

    def find(self, friendship_id: EntityId) -> Optional[Row]:
        for rows in (self.friends, self.received, self.sent):
            for row in rows:
                if row.get("id") == friendship_id:
                    return row
        return None

    def without(self, ids: set[EntityId]) -> FriendsState:
        if not ids:
            return self
        return FriendsState(
            friends=tuple(without_ids(self.friends, ids)),
            received=tuple(without_ids(self.received, ids)),
            sent=tuple(without_ids(self.sent, ids)),
        )


class FriendsController(SyncController[FriendsState]):
    """
    Usage:
        friends = FriendsController(ctx)
        friends.add_listener(lambda s: reels.update_friend_ids(s.friend_ids))
        await friends.start()
        await friends.accept_request(request_id)
    """

    name = "friends"

    def __init__(self, ctx: SyncContext) -> None:
        super().__init__(ctx, CacheKey.FRIENDS)
        self._throttle = self._throttler(
            "changes",
            fetch=self._fetch_by_ids,
            merge=self._merge_batch,
            window_s=ctx.config.throttle.friends_window_s,
        )

    def empty(self) -> FriendsState:
        return FriendsState()

    def _poll_interval(self) -> float:
        return self._ctx.config.polling.friends_interval_s

    @property
    def friends(self) -> tuple[Row, ...]:
        return self._data.friends

    @property
    def received(self) -> tuple[Row, ...]:
        return self._data.received

    @property
    def sent(self) -> tuple[Row, ...]:
        return self._data.sent

    @property
    def friend_ids(self) -> frozenset[UserId]:
        return self._data.friend_ids

    # =========================================================================
    # Routing
    # =========================================================================
    def _bucket(self, row: Row) -> Optional[str]:
        status = row.get("status")
        if status == STATUS_ACCEPTED and row.get("user_id") == self.user_id:
            return "friends"
        if status == STATUS_PENDING and row.get("friend_id") == self.user_id:
            return "received"
        if status == STATUS_PENDING and row.get("user_id") == self.user_id:
            return "sent"
        return None

    def _counterpart(self, row: Row) -> Optional[UserId]:
        if row.get("user_id") == self.user_id:
            return row.get("friend_id")
        return row.get("user_id")

    def _route(self, state: FriendsState, row: Row) -> FriendsState:
        bucket = self._bucket(row)
        if bucket is None:
            return state
        return replace(state, **{bucket: tuple(replace_by_id(getattr(state, bucket), row))})

    async def _with_profiles(self, rows: Iterable[Row]) -> list[Row]:
        rows = list(rows)
        service = self._ctx.service
        user_ids = sorted({uid for uid in map(self._counterpart, rows) if uid})
        resolved = await asyncio.gather(
            *(self._ctx.profiles.resolve(uid, lambda u: load_profile(service, u)) for uid in user_ids),
            return_exceptions=True,
        )
        profiles: dict[UserId, Row] = {}
        for uid, result in zip(user_ids, resolved):
            if isinstance(result, BaseException):
                logger.debug(f"Profile for {uid} unavailable: {result}")
            elif result is not None:
                profiles[uid] = result
        return [{**row, "profile": profiles.get(self._counterpart(row))} for row in rows]

    # =========================================================================
    # Loading
    # =========================================================================
    async def _fetch(self) -> FriendsState:
        service = self._ctx.service
        friends, received, sent = await asyncio.gather(
            service.query(
                C.TABLE_FRIENDSHIPS,
                Predicate.where(user_id=self.user_id, status=STATUS_ACCEPTED),
            ),
            service.query(
                C.TABLE_FRIENDSHIPS,
                Predicate.where(friend_id=self.user_id, status=STATUS_PENDING),
            ),
            service.query(
                C.TABLE_FRIENDSHIPS,
                Predicate.where(user_id=self.user_id, status=STATUS_PENDING),
            ),
        )
        rows = await self._with_profiles([*friends, *received, *sent])
        n_friends, n_received = len(friends), len(received)
        return FriendsState(
            friends=tuple(rows[:n_friends]),
            received=tuple(rows[n_friends:n_friends + n_received]),
            sent=tuple(rows[n_friends + n_received:]),
        )

    # =========================================================================
    # Realtime
    # =========================================================================
    def _subscriptions(self) -> list[SubscriptionSpec]:
        return [
            SubscriptionSpec(
                id=self._sub_id(),
                filters=[
                    TableFilter.of(C.TABLE_FRIENDSHIPS, predicate=Predicate.where(user_id=self.user_id)),
                    TableFilter.of(C.TABLE_FRIENDSHIPS, predicate=Predicate.where(friend_id=self.user_id)),
                ],
                callback=self._on_change,
            )
        ]

    def _on_change(self, change: Change) -> None:
        friendship_id = change.entity_id
        if friendship_id is None:
            return
        if change.kind is EventKind.DELETE:
            self._write(lambda state: state.without({friendship_id}))
        else:
            self._throttle.hint(friendship_id)

    async def _fetch_by_ids(self, ids: list[EntityId]) -> list[Row]:
        rows = await self._ctx.service.query(C.TABLE_FRIENDSHIPS, Predicate().in_("id", ids))
        return await self._with_profiles(rows)

    def _merge_batch(self, rows: list[Row], ids: list[EntityId]) -> None:
        def merge(state: FriendsState) -> FriendsState:
            state = state.without(set(ids))
            for row in rows:
                state = self._route(state, row)
            return state

        self._write(merge)

    # =========================================================================
    # Writes
    # =========================================================================
    async def send_request(self, friend_id: UserId) -> Row:
        if friend_id == self.user_id:
            raise MutationError.rejected("send_friend_request", "cannot befriend yourself")
        service = self._ctx.service
        existing = await service.query(
            C.TABLE_FRIENDSHIPS,
            Predicate().or_(
                {"user_id": self.user_id, "friend_id": friend_id},
                {"user_id": friend_id, "friend_id": self.user_id},
            ).take(1),
        )
        if existing:
            raise MutationError.rejected(
                "send_friend_request", "request already exists or already friends"
            )
        row = await self._mutation(
            "send_friend_request",
            service.mutate(
                C.TABLE_FRIENDSHIPS,
                Mutation.insert(
                    user_id=self.user_id,
                    friend_id=friend_id,
                    status=STATUS_PENDING,
                    requested_by=self.user_id,
                ),
            ),
        )
        if row is None:
            raise MutationError.rejected("send_friend_request", "no row returned")
        await self._apply_rows([row])
        return row

    async def accept_request(self, request_id: EntityId) -> None:
        service = self._ctx.service
        request = await self._mutation(
            "accept_friend_request",
            service.mutate(
                C.TABLE_FRIENDSHIPS,
                Mutation.update(
                    Predicate.where(id=request_id, friend_id=self.user_id),
                    status=STATUS_ACCEPTED,
                ),
            ),
        )
        if request is None:
            raise MutationError.rejected("accept_friend_request", f"no request {request_id}")

        requester = request["user_id"]
        reciprocal = await service.query(
            C.TABLE_FRIENDSHIPS,
            Predicate.where(user_id=self.user_id, friend_id=requester).take(1),
        )
        if reciprocal:
            mine = await self._mutation(
                "accept_friend_request",
                service.mutate(
                    C.TABLE_FRIENDSHIPS,
                    Mutation.update(Predicate.where(id=reciprocal[0]["id"]), status=STATUS_ACCEPTED),
                ),
            )
        else:
            mine = await self._mutation(
                "accept_friend_request",
                service.mutate(
                    C.TABLE_FRIENDSHIPS,
                    Mutation.insert(
                        user_id=self.user_id,
                        friend_id=requester,
                        status=STATUS_ACCEPTED,
                        requested_by=requester,
                    ),
                ),
            )
        await self._apply_rows([request, *([mine] if mine else [])])

    async def decline_request(self, request_id: EntityId) -> None:
        await self._mutation(
            "decline_friend_request",
            self._ctx.service.mutate(
                C.TABLE_FRIENDSHIPS,
                Mutation.delete(Predicate.where(id=request_id)),
            ),
        )
        if not self._closed:
            self._write(lambda state: state.without({request_id}))

    async def remove_friend(self, friendship_id: EntityId) -> None:
        """Remove both directions of a friendship."""
        service = self._ctx.service
        friendship = self._data.find(friendship_id)
        if friendship is None:
            rows = await service.query(
                C.TABLE_FRIENDSHIPS, Predicate.where(id=friendship_id).take(1)
            )
            if not rows:
                raise MutationError.rejected("remove_friend", f"friendship {friendship_id} not found")
            friendship = rows[0]

        other = self._counterpart(friendship)
        doomed = await service.query(
            C.TABLE_FRIENDSHIPS,
            Predicate().or_(
                {"user_id": self.user_id, "friend_id": other},
                {"user_id": other, "friend_id": self.user_id},
            ),
        )
        await self._mutation(
            "remove_friend",
            service.mutate(
                C.TABLE_FRIENDSHIPS,
                Mutation.delete(
                    Predicate().or_(
                        {"user_id": self.user_id, "friend_id": other},
                        {"user_id": other, "friend_id": self.user_id},
                    )
                ),
            ),
        )
        gone = {r["id"] for r in doomed} | {friendship_id}
        if not self._closed:
            self._write(lambda state: state.without(gone))

    async def _apply_rows(self, rows: list[Row]) -> None:
        enriched = await self._with_profiles(rows)
        if self._closed:
            return

        def apply(state: FriendsState) -> FriendsState:
            state = state.without({r["id"] for r in enriched})
            for row in enriched:
                state = self._route(state, row)
            return state

        self._write(apply)

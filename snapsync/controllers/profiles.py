"""
Profiles: registry-backed, shared by every consumer of a user id.

Unlike list controllers, a profile has no read model of its own. The
session's GlobalEntityRegistry holds the canonical row per user id;
ProfileController instances for the same id are views over it, so an
update written through one (update_bio) reaches all of them, along with
any other registry listener (friend rows, chat titles).

ProfileDirectory owns the single realtime registration for the
profiles table and hands out controllers.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from snapsync.controllers.base import SyncContext
from snapsync.core import constants as C
from snapsync.core.errors import AuthExpiredError, MutationError, SyncError, classify_exception
from snapsync.core.types import EventKind, Row, UserId
from snapsync.realtime.models import Change, TableFilter
from snapsync.remote.protocol import Mutation, Predicate, RemoteDataService

logger = logging.getLogger(__name__)

ProfileListener = Callable[[Row], None]


async def load_profile(service: RemoteDataService, user_id: UserId) -> Optional[Row]:
    rows = await service.query(C.TABLE_PROFILES, Predicate.where(id=user_id).take(1))
    return rows[0] if rows else None


class ProfileController:
    """
    One consumer's view of a user profile.

    Usage:
        controller = directory.controller(uid)
        controller.add_listener(render)
        await controller.start()
        await controller.update_bio("hello")
    """

    __slots__ = (
        "_ctx", "_user_id", "_profile", "_listeners", "_unregister",
        "_last_error", "_closed", "_on_close",
    )

    def __init__(
        self,
        ctx: SyncContext,
        user_id: UserId,
        on_close: Optional[Callable[[ProfileController], None]] = None,
    ) -> None:
        self._ctx = ctx
        self._user_id = user_id
        self._on_close = on_close
        self._profile: Optional[Row] = ctx.profiles.get(user_id)
        self._listeners: list[ProfileListener] = []
        self._unregister: Optional[Callable[[], None]] = None
        self._last_error: Optional[SyncError] = None
        self._closed = False

    @property
    def user_id(self) -> UserId:
        return self._user_id

    @property
    def profile(self) -> Optional[Row]:
        return self._profile

    @property
    def username(self) -> str:
        return (self._profile or {}).get("username") or ""

    @property
    def last_error(self) -> Optional[SyncError]:
        return self._last_error

    def add_listener(self, listener: ProfileListener) -> Callable[[], None]:
        if listener not in self._listeners:
            self._listeners.append(listener)
        return lambda: self.remove_listener(listener)

    def remove_listener(self, listener: ProfileListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def start(self) -> Optional[Row]:
        if self._closed:
            return self._profile
        if self._unregister is None:
            self._unregister = self._ctx.profiles.add_listener(self._user_id, self._on_profile)
        return await self._resolve(force=False)

    async def refresh(self) -> Optional[Row]:
        return await self._resolve(force=True)

    async def _resolve(self, force: bool) -> Optional[Row]:
        service = self._ctx.service
        try:
            profile = await self._ctx.profiles.resolve(
                self._user_id, lambda uid: load_profile(service, uid), force=force
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_exception(exc, f"profile:{self._user_id}")
            self._last_error = error
            logger.warning(f"Loading profile {self._user_id} failed: {error}")
            if isinstance(error, AuthExpiredError) and self._ctx.on_error is not None:
                self._ctx.on_error(error)
            return self._profile

        self._last_error = None
        if profile is not None and profile is not self._profile:
            self._on_profile(profile)
        return self._profile

    async def update_bio(self, bio: str) -> Row:
        """Persist a new bio and propagate it to every consumer of this profile."""
        try:
            row = await self._ctx.service.mutate(
                C.TABLE_PROFILES,
                Mutation.update(Predicate.where(id=self._user_id), bio=bio),
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_exception(exc, "update_bio")
            if isinstance(error, AuthExpiredError):
                if self._ctx.on_error is not None:
                    self._ctx.on_error(error)
                raise error from exc
            raise MutationError.rejected("update_bio", str(error), cause=exc) from exc
        if row is None:
            raise MutationError.rejected("update_bio", f"profile {self._user_id} not found")
        self._ctx.profiles.set(self._user_id, row)
        return row

    def _on_profile(self, profile: Row) -> None:
        self._profile = profile
        if self._closed:
            return
        for listener in list(self._listeners):
            try:
                listener(profile)
            except Exception:
                logger.exception(f"Profile listener for {self._user_id} failed")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._unregister is not None:
            self._unregister()
            self._unregister = None
        self._listeners.clear()
        if self._on_close is not None:
            self._on_close(self)
            self._on_close = None


class ProfileDirectory:
    """Session-wide entry point for profiles."""

    def __init__(self, ctx: SyncContext) -> None:
        self._ctx = ctx
        self._controllers: list[ProfileController] = []
        self._sub_id = f"profiles:{ctx.user_id}"
        self._attached = False

    def attach(self) -> None:
        """Apply remote profile updates to the registry."""
        if self._attached:
            return
        self._ctx.mux.subscribe(
            self._sub_id,
            [TableFilter.of(C.TABLE_PROFILES, EventKind.UPDATE)],
            self._on_change,
        )
        self._attached = True

    def _on_change(self, change: Change) -> None:
        user_id = change.entity_id
        # Only profiles someone has asked for are tracked
        if user_id is not None and change.new is not None and user_id in self._ctx.profiles:
            self._ctx.profiles.set(user_id, change.new)

    def get(self, user_id: UserId) -> Optional[Row]:
        return self._ctx.profiles.get(user_id)

    async def resolve(self, user_id: UserId) -> Optional[Row]:
        service = self._ctx.service
        return await self._ctx.profiles.resolve(user_id, lambda uid: load_profile(service, uid))

    async def username(self, user_id: UserId) -> str:
        """Display name lookup; empty string when unknown or on failure."""
        if not user_id or not user_id.strip():
            return ""
        try:
            profile = await self.resolve(user_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(f"Username lookup for {user_id} failed: {classify_exception(exc)}")
            return ""
        return (profile or {}).get("username") or ""

    def controller(self, user_id: UserId) -> ProfileController:
        controller = ProfileController(self._ctx, user_id, on_close=self._forget)
        self._controllers.append(controller)
        return controller

    def _forget(self, controller: ProfileController) -> None:
        if controller in self._controllers:
            self._controllers.remove(controller)

    @property
    def open_controllers(self) -> int:
        return len(self._controllers)

    def close(self) -> None:
        if self._attached:
            self._ctx.mux.unsubscribe(self._sub_id)
            self._attached = False
        for controller in list(self._controllers):
            controller.close()
        self._controllers.clear()

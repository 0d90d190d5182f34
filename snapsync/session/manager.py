"""
Session Manager: Per-User Wiring and the Cancellation Boundary

A session is everything that belongs to one signed-in user: the
realtime channel, the profile registry and the domain controllers. The
CacheStore, app lifecycle and cache janitor outlive sessions.

Start:
    1. Build multiplexer, registry and SyncContext for the user
    2. Wire controllers (friends feed the reels' friend set)
    3. Start every controller concurrently under a log context that
       stamps user_id / session_id on every record

Teardown (sign out, user switch, expired auth):
    1. Close controllers: subscriptions detach, pollers and throttlers stop
    2. Close the reconnect supervisor and the multiplexer
    3. Publish SessionChanged: CacheStore drops the departing user's
       entries, the registry resets
    4. Only then is a next session seeded

An AuthExpiredError reported by any controller ends the session once
and notifies auth-expired listeners so the host can prompt sign-in.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional
from uuid import uuid4

from snapsync.cache.janitor import CacheJanitor
from snapsync.cache.keys import CacheKey
from snapsync.cache.store import CacheStore
from snapsync.controllers.base import SyncContext
from snapsync.controllers.conversations import ConversationsController
from snapsync.controllers.friends import FriendsController, FriendsState
from snapsync.controllers.profiles import ProfileDirectory
from snapsync.controllers.stories import StoriesController
from snapsync.controllers.vibe_reels import VibeReelsController
from snapsync.core.config import SyncConfig
from snapsync.core.errors import AuthExpiredError, SyncError
from snapsync.core.types import Row, UserId
from snapsync.observability.logging import log_context
from snapsync.realtime.multiplexer import ChannelMultiplexer
from snapsync.realtime.reconnect import ReconnectSupervisor
from snapsync.remote.protocol import RemoteDataService
from snapsync.session.events import SessionChanged, SessionChangeReason
from snapsync.sync.lifecycle import AppLifecycle
from snapsync.sync.registry import GlobalEntityRegistry

logger = logging.getLogger(__name__)

SessionListener = Callable[[SessionChanged], None]
AuthExpiredListener = Callable[[AuthExpiredError], None]


@dataclass
class Session:
    """Handles for one signed-in user."""

    user_id: UserId
    session_id: str
    context: SyncContext
    mux: ChannelMultiplexer
    registry: GlobalEntityRegistry[Row]
    friends: FriendsController
    stories: StoriesController
    vibe_reels: VibeReelsController
    conversations: ConversationsController
    profiles: ProfileDirectory
    supervisor: Optional[ReconnectSupervisor] = None
    closed: bool = False
    _unwire: list[Callable[[], None]] = field(default_factory=list)

    @property
    def controllers(self) -> tuple:
        return (self.friends, self.stories, self.vibe_reels, self.conversations)


class SessionManager:
    """
    Owns the active session and its teardown.

    Usage:
        manager = SessionManager(service, config)
        manager.add_auth_expired_listener(show_login)
        session = await manager.start("u1")
        session.stories.add_listener(render)
        ...
        await manager.switch_user("u2")
        await manager.close()
    """

    def __init__(
        self,
        service: RemoteDataService,
        config: Optional[SyncConfig] = None,
        cache: Optional[CacheStore] = None,
        lifecycle: Optional[AppLifecycle] = None,
    ) -> None:
        self._service = service
        self._config = config or SyncConfig()
        self._cache = cache if cache is not None else CacheStore(self._config.cache)
        self._lifecycle = lifecycle if lifecycle is not None else AppLifecycle()
        self._janitor = CacheJanitor(self._cache)
        self._lifecycle.add_observer(self._janitor)
        self._session: Optional[Session] = None
        self._lock = asyncio.Lock()
        self._session_listeners: list[SessionListener] = []
        self._auth_listeners: list[AuthExpiredListener] = []
        self._expiry_task: Optional[asyncio.Task[None]] = None

    # =========================================================================
    # Properties
    # =========================================================================
    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def user_id(self) -> Optional[UserId]:
        return self._session.user_id if self._session else None

    @property
    def cache(self) -> CacheStore:
        return self._cache

    @property
    def lifecycle(self) -> AppLifecycle:
        return self._lifecycle

    @property
    def janitor(self) -> CacheJanitor:
        return self._janitor

    @property
    def expiry_task(self) -> Optional[asyncio.Task[None]]:
        """Teardown scheduled by an expired session, if any."""
        return self._expiry_task

    # =========================================================================
    # Listeners
    # =========================================================================
    def add_session_listener(self, listener: SessionListener) -> None:
        if listener not in self._session_listeners:
            self._session_listeners.append(listener)

    def add_auth_expired_listener(self, listener: AuthExpiredListener) -> None:
        if listener not in self._auth_listeners:
            self._auth_listeners.append(listener)

    def _publish(self, event: SessionChanged) -> None:
        for listener in list(self._session_listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Session listener failed")

    # =========================================================================
    # Session lifecycle
    # =========================================================================
    async def start(self, user_id: Optional[UserId] = None) -> Session:
        """
        Start a session for user_id (default: the service's current user).

        Starting for the user already signed in returns the active
        session; a different user replaces it.

        Raises:
            AuthExpiredError: no user id given and none signed in
        """
        user_id = user_id or self._service.current_user_id()
        if not user_id:
            raise AuthExpiredError.no_session("start_session")

        async with self._lock:
            current = self._session
            if current is not None and current.user_id == user_id:
                return current

            reason = SessionChangeReason.SIGN_IN
            if current is not None:
                reason = SessionChangeReason.SWITCH_USER
                await self._teardown(current, reason, next_user_id=user_id)

            session = self._build(user_id)
            self._session = session
            self._publish(SessionChanged(
                previous_user_id=current.user_id if current else None,
                user_id=user_id,
                reason=reason,
            ))

            if self._lifecycle.is_foreground and not self._janitor.running:
                self._janitor.start()

            with log_context(user_id=user_id, session_id=session.session_id):
                logger.info(f"Session {session.session_id} started for {user_id}")
                session.profiles.attach()
                await asyncio.gather(*(c.start() for c in session.controllers))
            return session

    async def switch_user(self, user_id: UserId) -> Session:
        return await self.start(user_id)

    async def end(self, reason: SessionChangeReason = SessionChangeReason.SIGN_OUT) -> None:
        async with self._lock:
            session = self._session
            if session is None:
                return
            await self._teardown(session, reason, next_user_id=None)

    async def close(self) -> None:
        """End the session and stop the cache janitor."""
        await self.end()
        task = self._expiry_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)
        self._lifecycle.remove_observer(self._janitor)
        await self._janitor.stop()

    def _build(self, user_id: UserId) -> Session:
        mux = ChannelMultiplexer(self._service, self._config.realtime)
        registry: GlobalEntityRegistry[Row] = GlobalEntityRegistry(
            "profiles", cache=self._cache, cache_key=CacheKey.profile, cache_owner=user_id,
        )
        context = SyncContext(
            service=self._service,
            cache=self._cache,
            mux=mux,
            profiles=registry,
            user_id=user_id,
            config=self._config,
            lifecycle=self._lifecycle,
            on_error=self.report_error,
        )
        friends = FriendsController(context)
        vibe_reels = VibeReelsController(context)
        session = Session(
            user_id=user_id,
            session_id=uuid4().hex[:12],
            context=context,
            mux=mux,
            registry=registry,
            friends=friends,
            stories=StoriesController(context),
            vibe_reels=vibe_reels,
            conversations=ConversationsController(context),
            profiles=ProfileDirectory(context),
        )

        def feed_friend_ids(state: FriendsState) -> None:
            vibe_reels.update_friend_ids(state.friend_ids)

        session._unwire.append(friends.add_listener(feed_friend_ids))
        if self._config.realtime.auto_reconnect:
            session.supervisor = ReconnectSupervisor(mux, self._config.realtime)
        return session

    async def _teardown(
        self,
        session: Session,
        reason: SessionChangeReason,
        next_user_id: Optional[UserId],
    ) -> None:
        if session.closed:
            return
        session.closed = True
        if self._session is session:
            self._session = None

        with log_context(user_id=session.user_id, session_id=session.session_id):
            for unwire in session._unwire:
                unwire()
            await asyncio.gather(*(c.close() for c in session.controllers))
            session.profiles.close()
            if session.supervisor is not None:
                await session.supervisor.close()
            await session.mux.close()

            event = SessionChanged(
                previous_user_id=session.user_id,
                user_id=next_user_id,
                reason=reason,
            )
            self._cache.handle_session_changed(event)
            session.registry.handle_session_changed(event)
            logger.info(f"Session {session.session_id} ended ({reason.value})")

        # A user switch is announced once, by start()
        if next_user_id is None:
            self._publish(event)

    # =========================================================================
    # Errors
    # =========================================================================
    def report_error(self, error: SyncError) -> None:
        """
        Session-level error sink handed to controllers.

        An expired session ends the active session (once) and notifies
        auth-expired listeners; other errors are only logged.
        """
        if not isinstance(error, AuthExpiredError):
            logger.debug(f"Session error reported: {error}")
            return
        session = self._session
        if session is None or session.closed:
            return
        if self._expiry_task is not None and not self._expiry_task.done():
            return
        logger.warning(f"Session for {session.user_id} expired: {error}")
        self._expiry_task = asyncio.get_running_loop().create_task(
            self._expire(session, error), name="session-expired"
        )

    async def _expire(self, session: Session, error: AuthExpiredError) -> None:
        async with self._lock:
            if self._session is session:
                await self._teardown(session, SessionChangeReason.AUTH_EXPIRED, next_user_id=None)
        for listener in list(self._auth_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("Auth-expired listener failed")

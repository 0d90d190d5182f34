"""
Controller State Machine: Load Lifecycle FSM with Guard Conditions

States:
    UNINITIALIZED → Constructed, nothing shown yet
    LOADING       → First fetch in progress, no usable cache
    READY         → Data available (possibly stale)
    REFRESHING    → Silent fetch in progress while serving READY data
    CLOSED        → Torn down; final

Transitions:
    UNINITIALIZED → READY      : SEED_FROM_CACHE (valid cache entry)
    UNINITIALIZED → LOADING    : NO_CACHE
    LOADING       → READY      : LOAD_SUCCEEDED
    LOADING       → READY      : LOAD_FAILED (empty data, error out-of-band)
    READY         → REFRESHING : REFRESH_STARTED
    REFRESHING    → READY      : REFRESH_SUCCEEDED
    REFRESHING    → READY      : REFRESH_FAILED (previous data retained)
    *             → CLOSED     : TEARDOWN (from any non-final state)

Design:
    - A controller is never stuck in LOADING: both outcomes of the first
      load lead to READY
    - Guard conditions validate transition preconditions
    - Listeners receive an immutable event per transition
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional

from snapsync.core.errors import SyncError
from snapsync.core.types import Result, Ok, Err, Timestamp

logger = logging.getLogger(__name__)


# =============================================================================
# CONTROLLER STATE ENUMERATION
# =============================================================================
class ControllerState(Enum):
    """Controller load lifecycle states."""
    UNINITIALIZED = auto()
    LOADING = auto()
    READY = auto()
    REFRESHING = auto()
    CLOSED = auto()

    @property
    def is_terminal(self) -> bool:
        return self is ControllerState.CLOSED

    @property
    def has_data(self) -> bool:
        """Whether consumers may render the controller's data."""
        return self in (ControllerState.READY, ControllerState.REFRESHING)


class Trigger:
    SEED_FROM_CACHE = "SEED_FROM_CACHE"
    NO_CACHE = "NO_CACHE"
    LOAD_SUCCEEDED = "LOAD_SUCCEEDED"
    LOAD_FAILED = "LOAD_FAILED"
    REFRESH_STARTED = "REFRESH_STARTED"
    REFRESH_SUCCEEDED = "REFRESH_SUCCEEDED"
    REFRESH_FAILED = "REFRESH_FAILED"
    TEARDOWN = "TEARDOWN"


# =============================================================================
# TRANSITION DEFINITIONS
# =============================================================================
@dataclass(frozen=True, slots=True)
class ControllerTransition:
    from_state: ControllerState
    to_state: ControllerState
    trigger: str


_S = ControllerState

VALID_TRANSITIONS: frozenset[ControllerTransition] = frozenset({
    ControllerTransition(_S.UNINITIALIZED, _S.READY, Trigger.SEED_FROM_CACHE),
    ControllerTransition(_S.UNINITIALIZED, _S.LOADING, Trigger.NO_CACHE),
    ControllerTransition(_S.LOADING, _S.READY, Trigger.LOAD_SUCCEEDED),
    ControllerTransition(_S.LOADING, _S.READY, Trigger.LOAD_FAILED),
    ControllerTransition(_S.READY, _S.REFRESHING, Trigger.REFRESH_STARTED),
    ControllerTransition(_S.REFRESHING, _S.READY, Trigger.REFRESH_SUCCEEDED),
    ControllerTransition(_S.REFRESHING, _S.READY, Trigger.REFRESH_FAILED),
    *(
        ControllerTransition(state, _S.CLOSED, Trigger.TEARDOWN)
        for state in ControllerState
        if not state.is_terminal
    ),
})


# =============================================================================
# SNAPSHOT / EVENTS
# =============================================================================
@dataclass(frozen=True, slots=True)
class ControllerSnapshot:
    """Immutable capture used for guard evaluation."""
    controller: str
    state: ControllerState
    version: int
    last_error: Optional[SyncError]


@dataclass(frozen=True, slots=True)
class ControllerStateEvent:
    """Event emitted on state transition."""
    controller: str
    from_state: ControllerState
    to_state: ControllerState
    trigger: str
    version: int
    timestamp: Timestamp
    error: Optional[SyncError] = None


# =============================================================================
# GUARD CONDITIONS
# =============================================================================
class TransitionGuard:
    """
    Guard condition for state transitions.

    All guards registered on a transition must pass for it to proceed.
    """

    __slots__ = ("_name", "_predicate", "_error_message")

    def __init__(
        self,
        name: str,
        predicate: Callable[[ControllerSnapshot], bool],
        error_message: str,
    ) -> None:
        self._name = name
        self._predicate = predicate
        self._error_message = error_message

    def evaluate(self, snapshot: ControllerSnapshot) -> Result[None, str]:
        if self._predicate(snapshot):
            return Ok(None)
        return Err(f"Guard '{self._name}' failed: {self._error_message}")

    @property
    def name(self) -> str:
        return self._name


# =============================================================================
# STATE MACHINE
# =============================================================================
class ControllerStateMachine:
    """
    FSM for one controller's load lifecycle.

    Usage:
        fsm = ControllerStateMachine("stories")
        fsm.transition(Trigger.NO_CACHE)
        ...
        result = fsm.transition(Trigger.LOAD_SUCCEEDED)
        if result.is_ok():
            render()

    Thread Safety:
        Event-loop confined; not for use from worker threads.
    """

    __slots__ = ("_name", "_state", "_version", "_last_error", "_guards", "_listeners")

    def __init__(self, name: str) -> None:
        self._name = name
        self._state = ControllerState.UNINITIALIZED
        self._version = 0
        self._last_error: Optional[SyncError] = None
        self._guards: dict[ControllerTransition, list[TransitionGuard]] = {}
        self._listeners: list[Callable[[ControllerStateEvent], None]] = []

    def add_guard(self, trigger: str, guard: TransitionGuard) -> None:
        """Attach guard to every transition fired by trigger."""
        for t in VALID_TRANSITIONS:
            if t.trigger == trigger:
                self._guards.setdefault(t, []).append(guard)

    def add_listener(self, listener: Callable[[ControllerStateEvent], None]) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[ControllerStateEvent], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def transition(
        self,
        trigger: str,
        error: Optional[SyncError] = None,
    ) -> Result[ControllerStateEvent, str]:
        """
        Attempt a state transition.

        Returns:
            Ok(event) on success
            Err(message) on guard failure or invalid transition
        """
        current = self._state
        valid: Optional[ControllerTransition] = None
        for t in VALID_TRANSITIONS:
            if t.from_state is current and t.trigger == trigger:
                valid = t
                break

        if valid is None:
            return Err(f"No valid transition from {current.name} with trigger '{trigger}'")

        snapshot = self.snapshot
        for guard in self._guards.get(valid, []):
            result = guard.evaluate(snapshot)
            if result.is_err():
                return result

        self._state = valid.to_state
        self._version += 1
        if error is not None:
            self._last_error = error
        elif trigger in (Trigger.LOAD_SUCCEEDED, Trigger.REFRESH_SUCCEEDED, Trigger.SEED_FROM_CACHE):
            self._last_error = None

        event = ControllerStateEvent(
            controller=self._name,
            from_state=current,
            to_state=valid.to_state,
            trigger=trigger,
            version=self._version,
            timestamp=Timestamp.now(),
            error=error,
        )
        logger.debug(f"{self._name}: {current.name} -> {valid.to_state.name} ({trigger})")

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"State listener for {self._name} failed")

        return Ok(event)

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def version(self) -> int:
        return self._version

    @property
    def last_error(self) -> Optional[SyncError]:
        return self._last_error

    @property
    def snapshot(self) -> ControllerSnapshot:
        return ControllerSnapshot(
            controller=self._name,
            state=self._state,
            version=self._version,
            last_error=self._last_error,
        )

    def can_transition(self, trigger: str) -> bool:
        return any(
            t.from_state is self._state and t.trigger == trigger
            for t in VALID_TRANSITIONS
        )

    def available_triggers(self) -> list[str]:
        return sorted(t.trigger for t in VALID_TRANSITIONS if t.from_state is self._state)

"""
Unit Tests: Controller State Machine

Tests:
    - Valid and invalid transitions
    - Both load outcomes reach READY
    - Guards and listeners
"""

import pytest

from snapsync.controllers.state_machine import (
    ControllerState,
    ControllerStateMachine,
    TransitionGuard,
    Trigger,
    VALID_TRANSITIONS,
)
from snapsync.core.errors import TransientNetworkError


class TestTransitions:
    """Tests for the load lifecycle."""

    def test_cold_start_success(self):
        """Test UNINITIALIZED -> LOADING -> READY."""
        fsm = ControllerStateMachine("stories")

        assert fsm.transition(Trigger.NO_CACHE).is_ok()
        assert fsm.state is ControllerState.LOADING
        assert fsm.transition(Trigger.LOAD_SUCCEEDED).is_ok()
        assert fsm.state is ControllerState.READY
        assert fsm.version == 2

    def test_failed_load_still_reaches_ready(self):
        """Test a failed first load is never stuck in LOADING."""
        fsm = ControllerStateMachine("friends")
        error = TransientNetworkError.fetch_failed("query")

        fsm.transition(Trigger.NO_CACHE)
        event = fsm.transition(Trigger.LOAD_FAILED, error=error).unwrap()

        assert fsm.state is ControllerState.READY
        assert event.error is error
        assert fsm.last_error is error

    def test_refresh_cycle_clears_error(self):
        """Test a successful refresh clears the last error."""
        fsm = ControllerStateMachine("reels")
        fsm.transition(Trigger.SEED_FROM_CACHE)
        fsm.transition(Trigger.REFRESH_STARTED)
        fsm.transition(Trigger.REFRESH_FAILED, error=TransientNetworkError.fetch_failed("q"))
        assert fsm.last_error is not None

        fsm.transition(Trigger.REFRESH_STARTED)
        fsm.transition(Trigger.REFRESH_SUCCEEDED)

        assert fsm.state is ControllerState.READY
        assert fsm.last_error is None

    def test_invalid_transition(self):
        """Test transitions not in the table are rejected."""
        fsm = ControllerStateMachine("stories")
        result = fsm.transition(Trigger.REFRESH_SUCCEEDED)

        assert result.is_err()
        assert fsm.state is ControllerState.UNINITIALIZED
        assert fsm.version == 0

    def test_teardown_from_every_state(self):
        """Test TEARDOWN is valid from every non-final state."""
        for state in ControllerState:
            if state.is_terminal:
                continue
            assert any(
                t.from_state is state and t.trigger == Trigger.TEARDOWN
                for t in VALID_TRANSITIONS
            )

    def test_closed_is_final(self):
        fsm = ControllerStateMachine("x")
        fsm.transition(Trigger.TEARDOWN)

        assert fsm.state is ControllerState.CLOSED
        assert fsm.available_triggers() == []
        assert fsm.transition(Trigger.TEARDOWN).is_err()

    def test_has_data(self):
        assert ControllerState.READY.has_data
        assert ControllerState.REFRESHING.has_data
        assert not ControllerState.LOADING.has_data


class TestGuardsAndListeners:
    """Tests for guards and listeners."""

    def test_guard_blocks_transition(self):
        """Test a failing guard keeps the current state."""
        fsm = ControllerStateMachine("stories")
        fsm.add_guard(
            Trigger.NO_CACHE,
            TransitionGuard("never", lambda snap: False, "blocked"),
        )

        result = fsm.transition(Trigger.NO_CACHE)

        assert result.is_err()
        assert "never" in result.error
        assert fsm.state is ControllerState.UNINITIALIZED

    def test_listener_receives_events(self):
        """Test listeners get one event per transition."""
        fsm = ControllerStateMachine("stories")
        events = []
        fsm.add_listener(events.append)

        fsm.transition(Trigger.NO_CACHE)
        fsm.transition(Trigger.LOAD_SUCCEEDED)

        assert [(e.from_state, e.to_state) for e in events] == [
            (ControllerState.UNINITIALIZED, ControllerState.LOADING),
            (ControllerState.LOADING, ControllerState.READY),
        ]

    def test_failing_listener_is_isolated(self):
        """Test one failing listener does not block the transition."""
        fsm = ControllerStateMachine("stories")
        seen = []

        def bad(event):
            raise RuntimeError("listener bug")

        fsm.add_listener(bad)
        fsm.add_listener(seen.append)

        assert fsm.transition(Trigger.NO_CACHE).is_ok()
        assert len(seen) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

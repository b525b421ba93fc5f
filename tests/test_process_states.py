"""Tests for the dedupe run state machine rules."""

from __future__ import annotations

import pytest

from src.dedupe.duplicates.errors import InvalidProcessTransition
from src.dedupe.duplicates.schemas import ProcessName
from src.dedupe.duplicates.states import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    is_active,
    validate_transition,
)


class TestValidTransitions:
    @pytest.mark.parametrize(
        "from_state,to_state",
        [
            (ProcessName.FETCHING, ProcessName.FILTERING),
            (ProcessName.FETCHING, ProcessName.EXCEED),
            (ProcessName.FETCHING, ProcessName.ERROR),
            (ProcessName.FILTERING, ProcessName.MANUALLY_MERGE),
            (ProcessName.MANUALLY_MERGE, ProcessName.UPDATE_HUBSPOT),
            (ProcessName.UPDATE_HUBSPOT, ProcessName.FINISHED),
            (ProcessName.UPDATE_HUBSPOT, ProcessName.ERROR),
            (ProcessName.EXCEED, ProcessName.FILTERING),
        ],
    )
    def test_allowed(self, from_state, to_state):
        validate_transition(from_state, to_state)

    @pytest.mark.parametrize(
        "from_state,to_state",
        [
            (ProcessName.FETCHING, ProcessName.MANUALLY_MERGE),
            (ProcessName.FILTERING, ProcessName.FETCHING),
            (ProcessName.MANUALLY_MERGE, ProcessName.FINISHED),
            (ProcessName.FINISHED, ProcessName.FETCHING),
            (ProcessName.ERROR, ProcessName.FILTERING),
            (ProcessName.EXCEED, ProcessName.MANUALLY_MERGE),
        ],
    )
    def test_rejected(self, from_state, to_state):
        with pytest.raises(InvalidProcessTransition) as exc_info:
            validate_transition(from_state, to_state)
        assert exc_info.value.from_state == from_state.value
        assert exc_info.value.to_state == to_state.value

    def test_no_state_returns_to_fetching(self):
        for targets in VALID_TRANSITIONS.values():
            assert ProcessName.FETCHING not in targets

    def test_finished_and_error_are_absorbing(self):
        assert VALID_TRANSITIONS[ProcessName.FINISHED] == set()
        assert VALID_TRANSITIONS[ProcessName.ERROR] == set()


class TestActiveStates:
    def test_active_and_terminal_partition_all_states(self):
        assert ACTIVE_STATES | TERMINAL_STATES == set(ProcessName)
        assert not ACTIVE_STATES & TERMINAL_STATES

    def test_is_active(self):
        assert is_active(ProcessName.MANUALLY_MERGE)
        assert not is_active(ProcessName.EXCEED)

"""Process state machine rules for dedupe runs.

Runs progress fetching -> filtering -> manually merge -> update hubspot ->
finished. ``error`` and ``exceed`` are absorbing, except that an explicit
resume may move an ``exceed`` run back to ``filtering`` once the tenant's
quota allows it.
"""

from __future__ import annotations

from src.dedupe.duplicates.errors import InvalidProcessTransition
from src.dedupe.duplicates.schemas import ProcessName

# Maps each state to the set of states it can transition TO.
VALID_TRANSITIONS: dict[ProcessName, set[ProcessName]] = {
    ProcessName.FETCHING: {ProcessName.FILTERING, ProcessName.EXCEED, ProcessName.ERROR},
    ProcessName.FILTERING: {ProcessName.MANUALLY_MERGE, ProcessName.ERROR},
    ProcessName.MANUALLY_MERGE: {ProcessName.UPDATE_HUBSPOT, ProcessName.ERROR},
    ProcessName.UPDATE_HUBSPOT: {ProcessName.FINISHED, ProcessName.ERROR},
    ProcessName.FINISHED: set(),  # Terminal
    ProcessName.ERROR: set(),  # Terminal
    ProcessName.EXCEED: {ProcessName.FILTERING},  # Resume only
}

# A tenant may not start a new run while its latest run is in one of these.
ACTIVE_STATES: frozenset[ProcessName] = frozenset(
    {
        ProcessName.FETCHING,
        ProcessName.FILTERING,
        ProcessName.MANUALLY_MERGE,
        ProcessName.UPDATE_HUBSPOT,
    }
)

TERMINAL_STATES: frozenset[ProcessName] = frozenset(
    {ProcessName.FINISHED, ProcessName.ERROR, ProcessName.EXCEED}
)


def validate_transition(from_state: ProcessName, to_state: ProcessName) -> None:
    """Raise InvalidProcessTransition unless from_state -> to_state is allowed."""
    if to_state not in VALID_TRANSITIONS.get(from_state, set()):
        raise InvalidProcessTransition(from_state.value, to_state.value)


def is_active(state: ProcessName) -> bool:
    return state in ACTIVE_STATES

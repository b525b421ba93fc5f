"""Exception taxonomy for the dedupe workflow.

Every error carries the HTTP status the API layer answers with, so a single
exception handler can map the whole hierarchy. Partial secondary failures
during a merge are NOT exceptions; they are reported in MergeResult.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.dedupe.duplicates.schemas import MergeResult


class DedupeError(Exception):
    """Base class for all dedupe workflow errors."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ── CRM ─────────────────────────────────────────────────────────────────────


class UpstreamUnavailable(DedupeError):
    """Transport failure or timeout talking to the CRM."""

    status_code = 502


class UpstreamRejected(DedupeError):
    """The CRM answered but refused the call (non-retryable 4xx)."""

    status_code = 502

    def __init__(self, message: str, http_status: int | None = None) -> None:
        self.http_status = http_status
        super().__init__(message)


# ── Merge ───────────────────────────────────────────────────────────────────


class InvalidMergeRequest(DedupeError):
    """Precondition violation; nothing was mutated."""

    status_code = 422


class GroupNotFound(DedupeError):
    status_code = 404

    def __init__(self, group_id: int) -> None:
        self.group_id = group_id
        super().__init__(f"Duplicate group not found: {group_id}")


class AlreadyMerged(DedupeError):
    """Group is terminal; the request was rejected without CRM calls."""

    status_code = 409

    def __init__(self, group_id: int) -> None:
        self.group_id = group_id
        super().__init__(f"Duplicate group {group_id} is already merged")


class ConflictingMergeInProgress(DedupeError):
    status_code = 409

    def __init__(self, group_id: int) -> None:
        self.group_id = group_id
        super().__init__(f"Another merge of group {group_id} is in progress")


class UpstreamUpdateFailed(DedupeError):
    """Primary contact update failed; no secondary was detached.

    ``result`` is the failed MergeResult (``success=False``) the API returns
    as the response body.
    """

    status_code = 502

    def __init__(self, message: str, result: MergeResult | None = None) -> None:
        self.result = result
        super().__init__(message)


class RunNotMerging(DedupeError):
    """The run is not (or no longer) the latest run in ``manually merge``."""

    status_code = 409

    def __init__(self, run_id: str, process_name: str) -> None:
        self.run_id = run_id
        self.process_name = process_name
        super().__init__(
            f"Run {run_id} is in '{process_name}'; duplicates can only be "
            "changed during 'manually merge'"
        )


# ── Removal Marks ───────────────────────────────────────────────────────────


class ContactNotFound(DedupeError):
    status_code = 404

    def __init__(self, contact_id: int) -> None:
        self.contact_id = contact_id
        super().__init__(f"Contact not found: {contact_id}")


class ContactAlreadyMarked(DedupeError):
    status_code = 409

    def __init__(self, contact_id: int) -> None:
        self.contact_id = contact_id
        super().__init__(f"Contact {contact_id} is already marked for removal")


class RemovalNotFound(DedupeError):
    status_code = 404

    def __init__(self, removal_id: int) -> None:
        self.removal_id = removal_id
        super().__init__(f"Removal mark not found: {removal_id}")


# ── Runs ────────────────────────────────────────────────────────────────────


class InvalidFilter(DedupeError):
    """A run filter string is not part of the filter grammar."""

    status_code = 422


# ── Quota ───────────────────────────────────────────────────────────────────


class QuotaExceeded(DedupeError):
    status_code = 402


# ── Process State Machine ───────────────────────────────────────────────────


class RunAlreadyActive(DedupeError):
    status_code = 409

    def __init__(self, run_id: str, process_name: str) -> None:
        self.run_id = run_id
        super().__init__(
            f"Run {run_id} is still in '{process_name}'; finish it before starting another"
        )


class NoActiveRun(DedupeError):
    status_code = 409


class InvalidProcessTransition(DedupeError):
    """Raised when a run transition violates the state machine."""

    status_code = 409

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid process transition: {from_state} -> {to_state}")


class StaleProcessState(DedupeError):
    """Another actor updated the run first (optimistic version check lost)."""

    status_code = 409

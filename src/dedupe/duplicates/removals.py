"""Removal marks -- contacts a reviewer wants deleted outright.

While the latest run is in ``manually merge`` a reviewer may mark any live
contact of the run, usually a member of a group that is not a real duplicate
of the others. Marks stay pending and can be withdrawn until the run
finalizes. The ``update hubspot`` sweep then deletes each pending contact
with ``delete_or_merge_contact(id, None)`` and records the outcome on the
mark:

- ``removed``: deleted, or already gone from the CRM
- ``kept``: the contact became the surviving primary of a merge after it
  was marked, so it stays
- ``failed``: the CRM refused or timed out; the reason is kept in ``error``
"""

from __future__ import annotations

import asyncio

import structlog

from src.dedupe.core.monitoring import contact_removals_total
from src.dedupe.duplicates.crm.adapter import CRMAdapter
from src.dedupe.duplicates.errors import (
    ContactNotFound,
    DedupeError,
    GroupNotFound,
    InvalidMergeRequest,
    NoActiveRun,
    RemovalNotFound,
    RunNotMerging,
)
from src.dedupe.duplicates.repository import DedupeRepository
from src.dedupe.duplicates.resolver import TIMEOUT_REASON
from src.dedupe.duplicates.schemas import (
    Contact,
    ProcessName,
    ProcessStatus,
    RemovalMark,
    RemovalStatus,
)

logger = structlog.get_logger(__name__)


class RemovalQueue:
    """Records removal marks and applies them during finalization.

    Args:
        repository: DedupeRepository for runs, contacts and marks.
        call_timeout: Upper bound in seconds for each CRM delete.
    """

    def __init__(self, repository: DedupeRepository, call_timeout: float = 30.0) -> None:
        self._repository = repository
        self._call_timeout = call_timeout

    # ── Reviewer Operations ─────────────────────────────────────────────────

    async def mark(
        self, tenant_id: str, contact_id: int, group_id: int | None = None
    ) -> RemovalMark:
        """Mark a contact of the latest run for deletion.

        Raises:
            RunNotMerging: The latest run is not in ``manually merge``.
            ContactNotFound: The contact is not part of the latest run.
            GroupNotFound: ``group_id`` is not a group of the tenant.
            InvalidMergeRequest: The contact was already removed, or is not
                a member of ``group_id``.
            ContactAlreadyMarked: The contact already has a mark.
        """
        run = await self._require_merging_run(tenant_id)

        contact = await self._repository.get_contact(tenant_id, contact_id)
        if contact is None or contact.run_id != run.id:
            raise ContactNotFound(contact_id)
        if contact.removed:
            raise InvalidMergeRequest(f"Contact {contact_id} was already removed from the CRM")

        if group_id is not None:
            group = await self._repository.get_group(tenant_id, group_id)
            if group is None:
                raise GroupNotFound(group_id)
            if contact_id not in group.member_ids:
                raise InvalidMergeRequest(
                    f"Contact {contact_id} is not a member of group {group_id}"
                )

        mark = await self._repository.add_removal(tenant_id, run.id, contact_id, group_id)
        logger.info(
            "removals.marked",
            tenant_id=tenant_id,
            run_id=run.id,
            contact_id=contact_id,
            group_id=group_id,
        )
        return mark

    async def unmark(self, tenant_id: str, removal_id: int) -> None:
        """Withdraw a pending mark."""
        await self._require_merging_run(tenant_id)
        mark = await self._repository.get_removal(tenant_id, removal_id)
        if mark is None:
            raise RemovalNotFound(removal_id)
        if not await self._repository.delete_removal(tenant_id, removal_id):
            raise InvalidMergeRequest(f"Removal mark {removal_id} is no longer pending")
        logger.info("removals.unmarked", tenant_id=tenant_id, contact_id=mark.contact_id)

    async def list_marks(self, tenant_id: str) -> list[RemovalMark]:
        """Marks of the tenant's latest run, oldest first."""
        run = await self._repository.get_latest_run(tenant_id)
        if run is None:
            return []
        return await self._repository.list_removals(tenant_id, run.id)

    # ── Finalization ────────────────────────────────────────────────────────

    async def apply_pending(
        self, tenant_id: str, run_id: str, crm: CRMAdapter
    ) -> list[RemovalMark]:
        """Delete every pending mark's contact and record each outcome.

        Never raises for CRM failures; they are recorded as ``failed``.
        """
        pending = await self._repository.list_removals(
            tenant_id, run_id, status=RemovalStatus.PENDING
        )
        if not pending:
            return []

        merged = await self._repository.list_merged_groups(tenant_id, run_id)
        survivors = {g.primary_contact_id for g in merged}

        applied: list[RemovalMark] = []
        for mark in pending:
            contact = await self._repository.get_contact(tenant_id, mark.contact_id)
            status, error = await self._remove(tenant_id, contact, survivors, crm)
            await self._repository.update_removal(tenant_id, mark.id, status, error=error)
            contact_removals_total.labels(outcome=status.value).inc()
            applied.append(mark.model_copy(update={"status": status, "error": error}))

        logger.info(
            "removals.applied",
            tenant_id=tenant_id,
            run_id=run_id,
            removed=sum(1 for m in applied if m.status == RemovalStatus.REMOVED),
            failed=sum(1 for m in applied if m.status == RemovalStatus.FAILED),
        )
        return applied

    async def _remove(
        self,
        tenant_id: str,
        contact: Contact | None,
        survivors: set[int | None],
        crm: CRMAdapter,
    ) -> tuple[RemovalStatus, str | None]:
        if contact is None or contact.removed:
            return RemovalStatus.REMOVED, None
        if contact.id in survivors:
            return RemovalStatus.KEPT, None

        try:
            await asyncio.wait_for(
                crm.delete_or_merge_contact(contact.hubspot_id, None),
                timeout=self._call_timeout,
            )
        except TimeoutError:
            return RemovalStatus.FAILED, TIMEOUT_REASON
        except DedupeError as exc:
            return RemovalStatus.FAILED, exc.message
        except Exception as exc:
            logger.error(
                "removals.delete_crashed",
                tenant_id=tenant_id,
                hubspot_id=contact.hubspot_id,
                exc_info=True,
            )
            return RemovalStatus.FAILED, str(exc) or type(exc).__name__

        await self._repository.mark_contact_removed(tenant_id, contact.id)
        return RemovalStatus.REMOVED, None

    async def _require_merging_run(self, tenant_id: str) -> ProcessStatus:
        run = await self._repository.get_latest_run(tenant_id)
        if run is None:
            raise NoActiveRun(f"Tenant {tenant_id} has no dedupe run")
        if run.process_name != ProcessName.MANUALLY_MERGE:
            raise RunNotMerging(run.id, run.process_name.value)
        return run

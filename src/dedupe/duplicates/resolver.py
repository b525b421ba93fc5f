"""Merge resolver -- applies a reviewed duplicate group back to the CRM.

Order of a merge:
1. Load the group. Missing -> GroupNotFound; merged -> AlreadyMerged (no CRM calls).
2. Require the group's run to be the latest run in ``manually merge`` (RunNotMerging).
3. Validate the primary is a member (InvalidMergeRequest).
4. Ask the quota gate (QuotaExceeded).
5. Claim the group with a compare-and-set ownership token and reserve it
   against the plan's merge allowance.
6. Send the field delta in one update call. On failure raise
   UpstreamUpdateFailed carrying a ``success=False`` result; no secondary is
   touched.
7. Detach every secondary into the freshest primary id, recording each
   outcome independently. Failures here do not undo the merge.
8. Mark the group merged.

Any exception between the claim and step 8 releases both the claim and the
reservation, so the group can be merged again.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable

import structlog

from src.dedupe.core.monitoring import merges_total
from src.dedupe.duplicates.conflicts import apply_delta, compute_delta
from src.dedupe.duplicates.crm.adapter import CRMAdapter
from src.dedupe.duplicates.errors import (
    AlreadyMerged,
    ConflictingMergeInProgress,
    DedupeError,
    GroupNotFound,
    InvalidMergeRequest,
    RunNotMerging,
    UpstreamUpdateFailed,
)
from src.dedupe.duplicates.quota import QuotaGate
from src.dedupe.duplicates.repository import DedupeRepository
from src.dedupe.duplicates.schemas import (
    Contact,
    DuplicateGroup,
    FieldSelections,
    MergeDetails,
    MergeResult,
    MergeStatus,
    ProcessName,
    SecondaryOutcome,
    UpdateOutcome,
)

logger = structlog.get_logger(__name__)

TIMEOUT_REASON = "timeout"

MergeListener = Callable[[str, str, CRMAdapter], Awaitable[None]]


class MergeResolver:
    """Resolves duplicate groups one at a time.

    Args:
        repository: DedupeRepository for groups, contacts and merge records.
        quota_gate: QuotaGate consulted and charged before each merge.
        call_timeout: Upper bound in seconds for each CRM call.
    """

    def __init__(
        self,
        repository: DedupeRepository,
        quota_gate: QuotaGate,
        call_timeout: float = 30.0,
    ) -> None:
        self._repository = repository
        self._quota = quota_gate
        self._call_timeout = call_timeout
        self._listeners: list[MergeListener] = []

    def subscribe(self, listener: MergeListener) -> None:
        """Register ``listener(tenant_id, run_id, crm)``, awaited after every completed merge."""
        self._listeners.append(listener)

    # ── Public Operations ───────────────────────────────────────────────────

    async def resolve_merge(
        self,
        tenant_id: str,
        group_id: int,
        primary_contact_id: int,
        selections: FieldSelections,
        crm: CRMAdapter,
    ) -> MergeResult:
        """Merge a group, first writing the reviewer's field selections to the primary."""
        return await self._merge(tenant_id, group_id, primary_contact_id, selections, crm)

    async def direct_merge(
        self,
        tenant_id: str,
        group_id: int,
        primary_contact_id: int,
        crm: CRMAdapter,
    ) -> MergeResult:
        """Merge a group keeping the primary's fields as they are."""
        return await self._merge(tenant_id, group_id, primary_contact_id, None, crm)

    async def retry_failed_secondaries(
        self, tenant_id: str, group_id: int, crm: CRMAdapter
    ) -> MergeResult:
        """Re-attempt every failed secondary of a merged group.

        Never changes the group's merged flag or the plan counters. A
        secondary the CRM no longer has counts as success. Allowed while the
        run is in ``manually merge`` or its ``update hubspot`` sweep.
        """
        group = await self._repository.get_group(tenant_id, group_id)
        if group is None:
            raise GroupNotFound(group_id)
        if not group.merged or group.primary_contact_id is None:
            raise InvalidMergeRequest(f"Duplicate group {group_id} has not been merged")
        await self._require_open_run(
            tenant_id, group, (ProcessName.MANUALLY_MERGE, ProcessName.UPDATE_HUBSPOT)
        )

        contacts = {c.id: c for c in group.contacts}
        primary = contacts.get(group.primary_contact_id)
        if primary is None:
            raise InvalidMergeRequest(f"Primary contact of group {group_id} is missing")

        failed = await self._repository.list_merge_records(
            tenant_id, group_id=group_id, merge_status=MergeStatus.FAILED
        )
        primary_external_id = primary.hubspot_id
        outcomes: list[SecondaryOutcome] = []
        for record in failed:
            secondary = contacts.get(record.contact_id)
            if secondary is None:
                continue
            outcome, surviving = await self._detach(
                tenant_id, group, secondary, primary_external_id, crm
            )
            if surviving:
                primary_external_id = surviving
            outcomes.append(outcome)

        await self._adopt_primary_id(tenant_id, primary, primary_external_id)

        still_failing = sum(1 for o in outcomes if not o.success)
        logger.info(
            "resolver.retry_completed",
            tenant_id=tenant_id,
            group_id=group_id,
            retried=len(outcomes),
            still_failing=still_failing,
        )
        return MergeResult(
            success=still_failing == 0,
            message=(
                f"Retried {len(outcomes)} secondary contacts; {still_failing} still failing"
                if outcomes
                else "No failed secondary contacts to retry"
            ),
            group_id=group_id,
            details=MergeDetails(
                delete_results=outcomes,
                primary_external_id=primary_external_id,
                partial_failure=still_failing > 0,
            ),
        )

    # ── Merge Pipeline ──────────────────────────────────────────────────────

    async def _merge(
        self,
        tenant_id: str,
        group_id: int,
        primary_contact_id: int,
        selections: FieldSelections | None,
        crm: CRMAdapter,
    ) -> MergeResult:
        group = await self._repository.get_group(tenant_id, group_id)
        if group is None:
            raise GroupNotFound(group_id)
        if group.merged:
            raise AlreadyMerged(group_id)

        await self._require_open_run(tenant_id, group, (ProcessName.MANUALLY_MERGE,))

        primary = next((c for c in group.contacts if c.id == primary_contact_id), None)
        if primary is None:
            raise InvalidMergeRequest(
                f"Contact {primary_contact_id} is not a member of group {group_id}"
            )
        secondaries = [c for c in group.contacts if c.id != primary.id]

        await self._quota.ensure_merge_allowed(tenant_id)

        token = uuid.uuid4().hex
        if not await self._repository.claim_group(tenant_id, group_id, token):
            current = await self._repository.get_group(tenant_id, group_id)
            if current is not None and current.merged:
                raise AlreadyMerged(group_id)
            raise ConflictingMergeInProgress(group_id)

        log = logger.bind(tenant_id=tenant_id, group_id=group_id, primary_contact_id=primary.id)

        reserved = False
        try:
            reserved = await self._quota.reserve_merge(tenant_id, group_id)

            try:
                update, primary = await self._update_primary(
                    tenant_id, primary, selections, crm
                )
            except (TimeoutError, DedupeError) as exc:
                merges_total.labels(outcome="update_failed").inc()
                reason = TIMEOUT_REASON if isinstance(exc, TimeoutError) else exc.message
                log.warning("resolver.update_failed", error=reason)
                raise self._update_failed(group_id, primary, selections, reason) from exc

            primary_external_id = primary.hubspot_id
            outcomes: list[SecondaryOutcome] = []
            for secondary in secondaries:
                outcome, surviving = await self._detach(
                    tenant_id, group, secondary, primary_external_id, crm
                )
                if surviving:
                    primary_external_id = surviving
                outcomes.append(outcome)

            await self._adopt_primary_id(tenant_id, primary, primary_external_id)

            if not await self._repository.mark_group_merged(
                tenant_id, group_id, token, primary.id
            ):
                log.error("resolver.claim_lost")
                raise ConflictingMergeInProgress(group_id)
        except BaseException:
            log.warning("resolver.merge_abandoned", reserved=reserved)
            await self._abandon(tenant_id, group_id, token, reserved)
            raise

        failures = [o for o in outcomes if not o.success]
        partial = bool(failures)
        merges_total.labels(outcome="partial" if partial else "success").inc()
        log.info(
            "resolver.group_merged",
            secondaries=len(outcomes),
            failed=len(failures),
            update_sent=update.attempted,
        )

        await self._notify(tenant_id, group.run_id, crm)

        if partial:
            message = (
                f"Merged group {group_id}; {len(failures)} of {len(outcomes)} "
                "secondary contacts could not be removed and can be retried"
            )
        else:
            message = f"Merged {len(outcomes)} contacts into {primary_external_id}"

        return MergeResult(
            success=True,
            message=message,
            group_id=group_id,
            details=MergeDetails(
                update=update,
                delete_results=outcomes,
                primary_external_id=primary_external_id,
                partial_failure=partial,
            ),
        )

    async def _update_primary(
        self,
        tenant_id: str,
        primary: Contact,
        selections: FieldSelections | None,
        crm: CRMAdapter,
    ) -> tuple[UpdateOutcome, Contact]:
        """Send the delta (if any) and return the refreshed primary snapshot."""
        if selections is None:
            return UpdateOutcome(attempted=False, success=True), primary

        delta = compute_delta(primary, selections)
        if not delta:
            return UpdateOutcome(attempted=False, success=True), primary

        new_id = await asyncio.wait_for(
            crm.update_contact(primary.hubspot_id, delta),
            timeout=self._call_timeout,
        )
        refreshed = apply_delta(primary, delta, new_id)
        await self._repository.save_contact(tenant_id, refreshed)
        return (
            UpdateOutcome(
                attempted=True,
                success=True,
                properties=delta,
                new_external_id=new_id,
            ),
            refreshed,
        )

    async def _detach(
        self,
        tenant_id: str,
        group: DuplicateGroup,
        secondary: Contact,
        primary_external_id: str,
        crm: CRMAdapter,
    ) -> tuple[SecondaryOutcome, str | None]:
        """Retire one secondary and persist its outcome. Never raises for CRM failures."""
        error: str | None = None
        surviving: str | None = None
        try:
            surviving = await asyncio.wait_for(
                crm.delete_or_merge_contact(secondary.hubspot_id, primary_external_id),
                timeout=self._call_timeout,
            )
        except TimeoutError:
            error = TIMEOUT_REASON
        except DedupeError as exc:
            error = exc.message
        except Exception as exc:
            logger.error(
                "resolver.secondary_crashed",
                tenant_id=tenant_id,
                group_id=group.id,
                hubspot_id=secondary.hubspot_id,
                exc_info=True,
            )
            error = str(exc) or type(exc).__name__

        success = error is None
        await self._repository.save_merge_record(
            tenant_id,
            group_id=group.id,
            run_id=group.run_id,
            contact_id=secondary.id,
            primary_external_id=surviving or primary_external_id,
            secondary_external_id=secondary.hubspot_id,
            merge_status=MergeStatus.COMPLETED if success else MergeStatus.FAILED,
            error=error,
        )
        if success:
            await self._repository.mark_contact_removed(tenant_id, secondary.id)
        else:
            logger.warning(
                "resolver.secondary_failed",
                tenant_id=tenant_id,
                group_id=group.id,
                hubspot_id=secondary.hubspot_id,
                error=error,
            )
        return (
            SecondaryOutcome(
                id=secondary.id,
                hubspot_id=secondary.hubspot_id,
                success=success,
                error=error,
            ),
            surviving,
        )

    async def _require_open_run(
        self,
        tenant_id: str,
        group: DuplicateGroup,
        allowed: tuple[ProcessName, ...],
    ) -> None:
        """Raise RunNotMerging unless the group's run is the latest and in ``allowed``."""
        run = await self._repository.get_latest_run(tenant_id)
        if run is None or run.id != group.run_id:
            raise RunNotMerging(group.run_id, "superseded")
        if run.process_name not in allowed:
            raise RunNotMerging(run.id, run.process_name.value)

    def _update_failed(
        self,
        group_id: int,
        primary: Contact,
        selections: FieldSelections | None,
        reason: str,
    ) -> UpstreamUpdateFailed:
        if reason == TIMEOUT_REASON:
            message = f"Updating primary contact {primary.hubspot_id} timed out"
        else:
            message = f"Updating primary contact {primary.hubspot_id} failed: {reason}"
        result = MergeResult(
            success=False,
            message=message,
            group_id=group_id,
            details=MergeDetails(
                update=UpdateOutcome(
                    attempted=True,
                    success=False,
                    properties=compute_delta(primary, selections) if selections else {},
                    error=reason,
                ),
                primary_external_id=primary.hubspot_id,
            ),
        )
        return UpstreamUpdateFailed(message, result=result)

    async def _abandon(
        self, tenant_id: str, group_id: int, token: str, reserved: bool
    ) -> None:
        """Undo the claim and plan reservation of a merge that did not complete."""
        if reserved:
            await self._quota.release_merge(tenant_id, group_id)
        await self._repository.release_group(tenant_id, group_id, token)

    async def _adopt_primary_id(
        self, tenant_id: str, primary: Contact, primary_external_id: str
    ) -> None:
        if primary_external_id != primary.hubspot_id:
            await self._repository.save_contact(
                tenant_id, primary.model_copy(update={"hubspot_id": primary_external_id})
            )

    async def _notify(self, tenant_id: str, run_id: str, crm: CRMAdapter) -> None:
        for listener in self._listeners:
            try:
                await listener(tenant_id, run_id, crm)
            except Exception:
                # The merge is already committed; listeners can't undo it
                logger.error(
                    "resolver.listener_failed",
                    tenant_id=tenant_id,
                    run_id=run_id,
                    exc_info=True,
                )

"""Process runner -- drives a tenant's dedupe run through the state machine.

    fetching -> filtering -> manually merge -> update hubspot -> finished
        |                        (error from any active state)
        +-> exceed (quota) --resume--> filtering

Each run executes as an asyncio background task. Every write to the run row
is a compare-and-set on its version, so a stale actor stops instead of
overwriting a newer state. Fetch failures and timeouts end the run in
``error`` keeping the partial count; quota refusal ends it in ``exceed``.

``update hubspot`` is a finalization barrier: failed secondaries are
re-attempted, contacts marked for removal are deleted, the surviving
contacts are exported to CSV and the run finishes with the export link
attached.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine, Sequence
from typing import Any

import structlog

from src.dedupe.core.monitoring import background_runs, process_transitions_total
from src.dedupe.duplicates.crm.adapter import CRMAdapter
from src.dedupe.duplicates.detection import DuplicateDetector, parse_filters, requested_properties
from src.dedupe.duplicates.errors import (
    DedupeError,
    InvalidProcessTransition,
    NoActiveRun,
    QuotaExceeded,
    StaleProcessState,
)
from src.dedupe.duplicates.exports import ContactExporter
from src.dedupe.duplicates.quota import QuotaGate
from src.dedupe.duplicates.removals import RemovalQueue
from src.dedupe.duplicates.repository import DedupeRepository
from src.dedupe.duplicates.resolver import MergeResolver
from src.dedupe.duplicates.schemas import (
    MergeStatus,
    ProcessName,
    ProcessStatus,
    RemovalStatus,
)
from src.dedupe.duplicates.states import validate_transition

logger = structlog.get_logger(__name__)

DEFAULT_FILTERS: tuple[str, ...] = ("same_email",)


class ProcessRunner:
    """Owns every ProcessStatus transition.

    Args:
        repository: DedupeRepository for runs, contacts and groups.
        quota_gate: QuotaGate consulted after fetching and on resume.
        resolver: MergeResolver used by the finalization sweep.
        exporter: ContactExporter producing the run's export link.
        removals: RemovalQueue whose pending marks the finalization sweep applies.
        default_filters: Filters used when a run is started without any.
        call_timeout: Upper bound in seconds for each fetch call.
    """

    def __init__(
        self,
        repository: DedupeRepository,
        quota_gate: QuotaGate,
        resolver: MergeResolver,
        exporter: ContactExporter,
        removals: RemovalQueue,
        default_filters: Sequence[str] = DEFAULT_FILTERS,
        call_timeout: float = 30.0,
    ) -> None:
        self._repository = repository
        self._quota = quota_gate
        self._resolver = resolver
        self._exporter = exporter
        self._removals = removals
        self._default_filters = list(default_filters)
        self._call_timeout = call_timeout
        self._tasks: set[asyncio.Task] = set()

    # ── Public Operations ───────────────────────────────────────────────────

    async def start_run(
        self,
        tenant_id: str,
        name: str,
        filters: Sequence[str] | None,
        crm: CRMAdapter,
    ) -> ProcessStatus:
        """Start a fresh run in ``fetching`` and fetch in the background.

        Raises:
            InvalidFilter: A filter string is malformed.
            RunAlreadyActive: The tenant's latest run is still active.
        """
        run_filters = list(filters) if filters else list(self._default_filters)
        parse_filters(run_filters)

        run = await self._repository.supersede_latest_run(tenant_id, name, run_filters)
        process_transitions_total.labels(to_state=ProcessName.FETCHING.value).inc()
        logger.info(
            "runner.run_started",
            tenant_id=tenant_id,
            run_id=run.id,
            filters=run_filters,
        )
        self._spawn(self._run_from_fetching(run, crm), name=f"dedupe_fetch_{run.id}")
        return run

    async def get_latest_status(self, tenant_id: str) -> ProcessStatus | None:
        """Poll target: the tenant's single latest run, or None."""
        return await self._repository.get_latest_run(tenant_id)

    async def list_runs(self, tenant_id: str, limit: int = 50) -> list[ProcessStatus]:
        return await self._repository.list_runs(tenant_id, limit=limit)

    async def finish_process(self, tenant_id: str, crm: CRMAdapter) -> ProcessStatus:
        """Leave ``manually merge`` and run the finalization sweep in the background."""
        run = await self._require_latest(tenant_id)
        run = await self._transition(run, ProcessName.UPDATE_HUBSPOT, status="Finalizing")
        self._spawn(self._finalize(run, crm), name=f"dedupe_finalize_{run.id}")
        return run

    async def resume_run(self, tenant_id: str, crm: CRMAdapter) -> ProcessStatus:
        """Continue an ``exceed`` run from filtering once the quota allows it.

        Raises:
            NoActiveRun: The tenant has never run.
            InvalidProcessTransition: The latest run is not in ``exceed``.
            QuotaExceeded: The plan still doesn't cover the run.
        """
        run = await self._require_latest(tenant_id)
        validate_transition(run.process_name, ProcessName.FILTERING)

        decision = await self._quota.check(tenant_id, run.count)
        if not decision.allowed:
            raise QuotaExceeded(decision.reason)

        run = await self._transition(run, ProcessName.FILTERING, status="")
        self._spawn(self._run_from_filtering(run, crm), name=f"dedupe_resume_{run.id}")
        return run

    async def on_group_merged(self, tenant_id: str, run_id: str, crm: CRMAdapter) -> None:
        """Advance to ``update hubspot`` once the run has no unmerged group left."""
        run = await self._repository.get_latest_run(tenant_id)
        if run is None or run.id != run_id or run.process_name != ProcessName.MANUALLY_MERGE:
            return
        if await self._repository.count_unmerged_groups(tenant_id, run_id) > 0:
            return
        try:
            run = await self._transition(
                run, ProcessName.UPDATE_HUBSPOT, status="All groups merged; finalizing"
            )
        except StaleProcessState:
            # A concurrent finish or merge already advanced the run
            return
        self._spawn(self._finalize(run, crm), name=f"dedupe_finalize_{run.id}")

    async def wait_idle(self) -> None:
        """Wait until every background task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel background tasks (application shutdown)."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Background Stages ───────────────────────────────────────────────────

    async def _run_from_fetching(self, run: ProcessStatus, crm: CRMAdapter) -> None:
        log = logger.bind(tenant_id=run.tenant_id, run_id=run.id)
        properties = requested_properties(run.filters)
        cursor: str | None = None
        count = run.count
        try:
            while True:
                page = await asyncio.wait_for(
                    crm.fetch_contacts(cursor, properties),
                    timeout=self._call_timeout,
                )
                count += await self._repository.add_contacts(
                    run.tenant_id, run.id, page.contacts
                )
                run = await self._save(run, count=count, status=f"Fetched {count} contacts")
                cursor = page.next_cursor
                if not cursor:
                    break

            decision = await self._quota.check(run.tenant_id, count)
            if not decision.allowed:
                await self._transition(run, ProcessName.EXCEED, status=decision.reason)
                log.info("runner.quota_exceeded", count=count, reason=decision.reason)
                return

            run = await self._transition(run, ProcessName.FILTERING, status="")
        except StaleProcessState:
            log.warning("runner.superseded", stage="fetching")
            return
        except TimeoutError:
            await self._fail(run, f"Fetching contacts timed out after {count} contacts")
            return
        except DedupeError as exc:
            await self._fail(run, f"Fetching contacts failed: {exc.message}")
            return
        except Exception as exc:
            log.error("runner.fetch_crashed", exc_info=True)
            await self._fail(run, f"Fetching contacts failed: {exc}")
            return

        log.info("runner.fetch_completed", count=count)
        await self._run_from_filtering(run, crm)

    async def _run_from_filtering(self, run: ProcessStatus, crm: CRMAdapter) -> None:
        log = logger.bind(tenant_id=run.tenant_id, run_id=run.id)
        try:
            contacts = await self._repository.list_contacts(run.tenant_id, run.id)
            detector = DuplicateDetector.from_filters(run.filters or self._default_filters)
            member_lists = detector.find_groups(contacts)
            groups = await self._repository.create_groups(run.tenant_id, run.id, member_lists)
            run = await self._transition(
                run,
                ProcessName.MANUALLY_MERGE,
                status=f"Found {len(groups)} duplicate groups",
            )
        except StaleProcessState:
            log.warning("runner.superseded", stage="filtering")
            return
        except Exception as exc:
            log.error("runner.filter_failed", exc_info=True)
            await self._fail(run, f"Duplicate detection failed: {exc}")
            return

        if not groups:
            # Nothing to review; go straight to finalization
            try:
                run = await self._transition(
                    run, ProcessName.UPDATE_HUBSPOT, status="No duplicates found; finalizing"
                )
            except StaleProcessState:
                return
            await self._finalize(run, crm)

    async def _finalize(self, run: ProcessStatus, crm: CRMAdapter) -> None:
        log = logger.bind(tenant_id=run.tenant_id, run_id=run.id)
        try:
            failed = await self._repository.list_merge_records(
                run.tenant_id, run_id=run.id, merge_status=MergeStatus.FAILED
            )
            still_failing = 0
            for group_id in sorted({record.group_id for record in failed}):
                result = await self._resolver.retry_failed_secondaries(
                    run.tenant_id, group_id, crm
                )
                still_failing += sum(1 for o in result.details.delete_results if not o.success)

            marks = await self._removals.apply_pending(run.tenant_id, run.id, crm)
            removed = sum(1 for m in marks if m.status == RemovalStatus.REMOVED)
            unremoved = sum(1 for m in marks if m.status == RemovalStatus.FAILED)

            merged_groups = await self._repository.list_merged_groups(run.tenant_id, run.id)
            contacts = await self._repository.list_contacts(
                run.tenant_id, run.id, include_removed=False
            )
            link = await asyncio.to_thread(self._exporter.write, run.tenant_id, run.id, contacts)

            status = f"Merged {len(merged_groups)} groups; exported {len(contacts)} contacts"
            if still_failing:
                status += f"; {still_failing} secondary contacts could not be removed"
            if removed:
                status += f"; removed {removed} marked contacts"
            if unremoved:
                status += f"; {unremoved} marked contacts could not be removed"
            await self._transition(run, ProcessName.FINISHED, status=status, export_link=link)
        except StaleProcessState:
            log.warning("runner.superseded", stage="update hubspot")
            return
        except Exception as exc:
            log.error("runner.finalize_failed", exc_info=True)
            await self._fail(run, f"Finalization failed: {exc}")
            return

        log.info(
            "runner.run_finished",
            still_failing=still_failing,
            marked_removed=removed,
            marked_failed=unremoved,
        )

    # ── State Writes ────────────────────────────────────────────────────────

    async def _require_latest(self, tenant_id: str) -> ProcessStatus:
        run = await self._repository.get_latest_run(tenant_id)
        if run is None:
            raise NoActiveRun(f"Tenant {tenant_id} has no dedupe run")
        return run

    async def _transition(
        self, run: ProcessStatus, to_state: ProcessName, **changes: Any
    ) -> ProcessStatus:
        """Validate and compare-and-set a state change."""
        validate_transition(run.process_name, to_state)
        updated = await self._repository.update_run(
            run.tenant_id, run.id, run.version, process_name=to_state, **changes
        )
        if updated is None:
            raise StaleProcessState(
                f"Run {run.id} changed concurrently; {run.process_name.value} -> "
                f"{to_state.value} dropped"
            )
        process_transitions_total.labels(to_state=to_state.value).inc()
        logger.info(
            "runner.transition",
            tenant_id=run.tenant_id,
            run_id=run.id,
            from_state=run.process_name.value,
            to_state=to_state.value,
        )
        return updated

    async def _save(self, run: ProcessStatus, **changes: Any) -> ProcessStatus:
        """Compare-and-set progress fields without changing state."""
        updated = await self._repository.update_run(
            run.tenant_id, run.id, run.version, **changes
        )
        if updated is None:
            raise StaleProcessState(f"Run {run.id} changed concurrently")
        return updated

    async def _fail(self, run: ProcessStatus, message: str) -> None:
        try:
            await self._transition(run, ProcessName.ERROR, status=message)
        except (StaleProcessState, InvalidProcessTransition):
            logger.warning(
                "runner.fail_dropped",
                tenant_id=run.tenant_id,
                run_id=run.id,
                message=message,
            )
            return
        logger.warning("runner.run_failed", tenant_id=run.tenant_id, run_id=run.id, message=message)

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        background_runs.inc()
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        background_runs.dec()

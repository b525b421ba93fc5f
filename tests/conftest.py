"""Shared test doubles and fixtures for the dedupe workflow.

Provides:
- InMemoryDedupeRepository: DedupeRepository without a database
- FakeCRMAdapter: scripted CRMAdapter that records every call
- Wired service fixtures (quota gate, resolver, removals, runner, exporter)
- seed_groups: puts a tenant's run straight into ``manually merge``
"""

from __future__ import annotations

import asyncio
import itertools
import math
import uuid
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

import pytest
import pytest_asyncio

from src.dedupe.duplicates.crm.adapter import CRMAdapter
from src.dedupe.duplicates.errors import ContactAlreadyMarked, RunAlreadyActive
from src.dedupe.duplicates.exports import ContactExporter
from src.dedupe.duplicates.provisioning import RepositoryPlanProvisioner
from src.dedupe.duplicates.quota import QuotaGate
from src.dedupe.duplicates.removals import RemovalQueue
from src.dedupe.duplicates.resolver import MergeResolver
from src.dedupe.duplicates.runner import ProcessRunner
from src.dedupe.duplicates.schemas import (
    Contact,
    ContactPage,
    DuplicateGroup,
    FetchedContact,
    GroupPage,
    MergeRecord,
    MergeStatus,
    MergeUsage,
    Plan,
    ProcessName,
    ProcessStatus,
    RemovalMark,
    RemovalStatus,
)
from src.dedupe.duplicates.states import ACTIVE_STATES

TENANT_ID = "tenant-alpha"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── In-Memory Repository ─────────────────────────────────────────────────────


class InMemoryDedupeRepository:
    """In-memory DedupeRepository for testing without database."""

    def __init__(self) -> None:
        self.runs: dict[str, ProcessStatus] = {}
        self.contacts: dict[int, Contact] = {}
        self.groups: dict[int, DuplicateGroup] = {}
        self.merge_records: dict[tuple[str, int, int], MergeRecord] = {}
        self.plans: dict[str, Plan] = {}
        self.merge_usage: set[tuple[str, int]] = set()
        self.removals: dict[int, RemovalMark] = {}
        self._contact_ids = itertools.count(1)
        self._group_ids = itertools.count(1)
        self._record_ids = itertools.count(1)
        self._removal_ids = itertools.count(1)

    # Process runs

    def _latest(self, tenant_id: str) -> ProcessStatus | None:
        for run in self.runs.values():
            if run.tenant_id == tenant_id and run.is_latest:
                return run
        return None

    async def supersede_latest_run(
        self, tenant_id: str, name: str, filters: Sequence[str]
    ) -> ProcessStatus:
        previous = self._latest(tenant_id)
        if previous is not None:
            if previous.process_name in ACTIVE_STATES:
                raise RunAlreadyActive(previous.id, previous.process_name.value)
            self.runs[previous.id] = previous.model_copy(
                update={"is_latest": False, "version": previous.version + 1}
            )
            self._purge(tenant_id, previous.id)

        now = _now()
        run = ProcessStatus(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            name=name,
            process_name=ProcessName.FETCHING,
            filters=list(filters),
            created_at=now,
            updated_at=now,
        )
        self.runs[run.id] = run
        return run

    def _purge(self, tenant_id: str, run_id: str) -> None:
        for rid, mark in list(self.removals.items()):
            if mark.tenant_id == tenant_id and mark.run_id == run_id:
                del self.removals[rid]
        for key, record in list(self.merge_records.items()):
            if record.tenant_id == tenant_id and record.run_id == run_id:
                del self.merge_records[key]
        for gid, group in list(self.groups.items()):
            if group.tenant_id == tenant_id and group.run_id == run_id:
                del self.groups[gid]
        for cid, contact in list(self.contacts.items()):
            if contact.tenant_id == tenant_id and contact.run_id == run_id:
                del self.contacts[cid]

    async def get_latest_run(self, tenant_id: str) -> ProcessStatus | None:
        return self._latest(tenant_id)

    async def get_run(self, tenant_id: str, run_id: str) -> ProcessStatus | None:
        run = self.runs.get(run_id)
        return run if run is not None and run.tenant_id == tenant_id else None

    async def list_runs(self, tenant_id: str, limit: int = 50) -> list[ProcessStatus]:
        runs = [r for r in self.runs.values() if r.tenant_id == tenant_id]
        return list(reversed(runs))[:limit]

    async def update_run(
        self, tenant_id: str, run_id: str, expected_version: int, **changes: Any
    ) -> ProcessStatus | None:
        run = self.runs.get(run_id)
        if run is None or run.tenant_id != tenant_id or run.version != expected_version:
            return None
        updated = run.model_copy(
            update={**changes, "version": run.version + 1, "updated_at": _now()}
        )
        self.runs[run_id] = updated
        return updated

    # Contacts

    async def add_contacts(
        self, tenant_id: str, run_id: str, contacts: Sequence[FetchedContact]
    ) -> int:
        for fetched in contacts:
            contact = Contact(
                **fetched.model_dump(),
                id=next(self._contact_ids),
                tenant_id=tenant_id,
                run_id=run_id,
            )
            self.contacts[contact.id] = contact
        return len(contacts)

    async def list_contacts(
        self, tenant_id: str, run_id: str, include_removed: bool = True
    ) -> list[Contact]:
        return sorted(
            (
                c
                for c in self.contacts.values()
                if c.tenant_id == tenant_id
                and c.run_id == run_id
                and (include_removed or not c.removed)
            ),
            key=lambda c: c.id,
        )

    async def save_contact(self, tenant_id: str, contact: Contact) -> Contact:
        current = self.contacts.get(contact.id)
        if current is not None and current.tenant_id == tenant_id:
            self.contacts[contact.id] = contact
        return contact

    async def get_contact(self, tenant_id: str, contact_id: int) -> Contact | None:
        contact = self.contacts.get(contact_id)
        return contact if contact is not None and contact.tenant_id == tenant_id else None

    async def mark_contact_removed(self, tenant_id: str, contact_id: int) -> None:
        contact = self.contacts.get(contact_id)
        if contact is not None and contact.tenant_id == tenant_id:
            self.contacts[contact_id] = contact.model_copy(update={"removed": True})

    # Duplicate groups

    def _with_contacts(self, group: DuplicateGroup) -> DuplicateGroup:
        members = [self.contacts[m] for m in group.member_ids if m in self.contacts]
        return group.model_copy(update={"contacts": members})

    def _tenant_group(self, tenant_id: str, group_id: int) -> DuplicateGroup | None:
        group = self.groups.get(group_id)
        return group if group is not None and group.tenant_id == tenant_id else None

    async def create_groups(
        self, tenant_id: str, run_id: str, member_lists: Sequence[Sequence[int]]
    ) -> list[DuplicateGroup]:
        created = []
        for members in member_lists:
            group = DuplicateGroup(
                id=next(self._group_ids),
                tenant_id=tenant_id,
                run_id=run_id,
                member_ids=list(members),
                created_at=_now(),
            )
            self.groups[group.id] = group
            created.append(self._with_contacts(group))
        return created

    async def list_groups(
        self,
        tenant_id: str,
        run_id: str,
        page: int,
        page_size: int,
        include_merged: bool = True,
    ) -> GroupPage:
        matching = sorted(
            (
                g
                for g in self.groups.values()
                if g.tenant_id == tenant_id
                and g.run_id == run_id
                and (include_merged or not g.merged)
            ),
            key=lambda g: g.id,
        )
        start = (page - 1) * page_size
        return GroupPage(
            groups=[self._with_contacts(g) for g in matching[start : start + page_size]],
            total=len(matching),
            page=page,
            page_size=page_size,
            total_pages=math.ceil(len(matching) / page_size),
        )

    async def get_group(self, tenant_id: str, group_id: int) -> DuplicateGroup | None:
        group = self._tenant_group(tenant_id, group_id)
        return self._with_contacts(group) if group is not None else None

    async def list_merged_groups(self, tenant_id: str, run_id: str) -> list[DuplicateGroup]:
        return [
            self._with_contacts(g)
            for g in sorted(self.groups.values(), key=lambda g: g.id)
            if g.tenant_id == tenant_id and g.run_id == run_id and g.merged
        ]

    async def count_unmerged_groups(self, tenant_id: str, run_id: str) -> int:
        return sum(
            1
            for g in self.groups.values()
            if g.tenant_id == tenant_id and g.run_id == run_id and not g.merged
        )

    async def claim_group(self, tenant_id: str, group_id: int, token: str) -> bool:
        group = self._tenant_group(tenant_id, group_id)
        if group is None or group.merged or group.merge_token is not None:
            return False
        self.groups[group_id] = group.model_copy(update={"merge_token": token})
        return True

    async def release_group(self, tenant_id: str, group_id: int, token: str) -> None:
        group = self._tenant_group(tenant_id, group_id)
        if group is not None and group.merge_token == token and not group.merged:
            self.groups[group_id] = group.model_copy(update={"merge_token": None})

    async def mark_group_merged(
        self, tenant_id: str, group_id: int, token: str, primary_contact_id: int
    ) -> bool:
        group = self._tenant_group(tenant_id, group_id)
        if group is None or group.merge_token != token or group.merged:
            return False
        self.groups[group_id] = group.model_copy(
            update={
                "merged": True,
                "merged_at": _now(),
                "primary_contact_id": primary_contact_id,
            }
        )
        return True

    # Merge records

    async def save_merge_record(
        self,
        tenant_id: str,
        group_id: int,
        run_id: str,
        contact_id: int,
        primary_external_id: str,
        secondary_external_id: str,
        merge_status: MergeStatus,
        error: str | None = None,
    ) -> MergeRecord:
        key = (tenant_id, group_id, contact_id)
        existing = self.merge_records.get(key)
        record = MergeRecord(
            id=existing.id if existing is not None else next(self._record_ids),
            tenant_id=tenant_id,
            group_id=group_id,
            run_id=run_id,
            contact_id=contact_id,
            primary_external_id=primary_external_id,
            secondary_external_id=secondary_external_id,
            merge_status=merge_status,
            error=error,
            merged_at=_now() if merge_status == MergeStatus.COMPLETED else None,
        )
        self.merge_records[key] = record
        return record

    async def list_merge_records(
        self,
        tenant_id: str,
        *,
        group_id: int | None = None,
        run_id: str | None = None,
        merge_status: MergeStatus | None = None,
    ) -> list[MergeRecord]:
        return sorted(
            (
                r
                for r in self.merge_records.values()
                if r.tenant_id == tenant_id
                and (group_id is None or r.group_id == group_id)
                and (run_id is None or r.run_id == run_id)
                and (merge_status is None or r.merge_status == merge_status)
            ),
            key=lambda r: r.id,
        )

    # Removal marks

    async def add_removal(
        self,
        tenant_id: str,
        run_id: str,
        contact_id: int,
        group_id: int | None = None,
    ) -> RemovalMark:
        for mark in self.removals.values():
            if (mark.tenant_id, mark.run_id, mark.contact_id) == (tenant_id, run_id, contact_id):
                raise ContactAlreadyMarked(contact_id)
        mark = RemovalMark(
            id=next(self._removal_ids),
            tenant_id=tenant_id,
            run_id=run_id,
            contact_id=contact_id,
            group_id=group_id,
            created_at=_now(),
        )
        self.removals[mark.id] = mark
        return mark

    async def get_removal(self, tenant_id: str, removal_id: int) -> RemovalMark | None:
        mark = self.removals.get(removal_id)
        return mark if mark is not None and mark.tenant_id == tenant_id else None

    async def list_removals(
        self,
        tenant_id: str,
        run_id: str,
        status: RemovalStatus | None = None,
    ) -> list[RemovalMark]:
        return sorted(
            (
                m
                for m in self.removals.values()
                if m.tenant_id == tenant_id
                and m.run_id == run_id
                and (status is None or m.status == status)
            ),
            key=lambda m: m.id,
        )

    async def delete_removal(self, tenant_id: str, removal_id: int) -> bool:
        mark = await self.get_removal(tenant_id, removal_id)
        if mark is None or mark.status != RemovalStatus.PENDING:
            return False
        del self.removals[removal_id]
        return True

    async def update_removal(
        self,
        tenant_id: str,
        removal_id: int,
        status: RemovalStatus,
        error: str | None = None,
    ) -> None:
        mark = await self.get_removal(tenant_id, removal_id)
        if mark is not None:
            self.removals[removal_id] = mark.model_copy(
                update={
                    "status": status,
                    "error": error,
                    "removed_at": _now() if status == RemovalStatus.REMOVED else None,
                }
            )

    # Plans

    async def get_plan(self, tenant_id: str) -> Plan | None:
        return self.plans.get(tenant_id)

    async def create_plan(self, tenant_id: str, plan: Plan) -> Plan:
        if tenant_id in self.plans:
            return self.plans[tenant_id]
        self.plans[tenant_id] = plan.model_copy(update={"tenant_id": tenant_id})
        return self.plans[tenant_id]

    async def update_plan(self, tenant_id: str, **fields: Any) -> Plan | None:
        plan = self.plans.get(tenant_id)
        if plan is None:
            return None
        self.plans[tenant_id] = plan.model_copy(update=fields)
        return self.plans[tenant_id]

    async def reserve_merge_usage(
        self, tenant_id: str, group_id: int, limit: int | None = None
    ) -> MergeUsage:
        key = (tenant_id, group_id)
        if key in self.merge_usage:
            return MergeUsage.ALREADY_COUNTED
        plan = self.plans.get(tenant_id)
        if plan is None:
            if limit is not None:
                return MergeUsage.LIMIT_REACHED
            self.merge_usage.add(key)
            return MergeUsage.COUNTED
        if limit is not None and plan.merge_groups_used >= limit:
            return MergeUsage.LIMIT_REACHED
        self.merge_usage.add(key)
        self.plans[tenant_id] = plan.model_copy(
            update={"merge_groups_used": plan.merge_groups_used + 1}
        )
        return MergeUsage.COUNTED

    async def release_merge_usage(self, tenant_id: str, group_id: int) -> bool:
        key = (tenant_id, group_id)
        if key not in self.merge_usage:
            return False
        self.merge_usage.discard(key)
        plan = self.plans.get(tenant_id)
        if plan is not None and plan.merge_groups_used > 0:
            self.plans[tenant_id] = plan.model_copy(
                update={"merge_groups_used": plan.merge_groups_used - 1}
            )
        return True


# ── Fake CRM ─────────────────────────────────────────────────────────────────


class FakeCRMAdapter(CRMAdapter):
    """Scripted CRM. Pages are served in order; failures are keyed by external id."""

    def __init__(self, pages: list[list[FetchedContact]] | None = None) -> None:
        self.pages = pages if pages is not None else [[]]
        self.calls: list[tuple[Any, ...]] = []
        self.fetch_error: Exception | None = None
        self.fetch_error_at_page = 0
        self.fetch_delay = 0.0
        self.update_error: Exception | None = None
        self.update_delay = 0.0
        self.update_new_id: str | None = None
        self.delete_errors: dict[str, Exception] = {}
        self.delete_delays: dict[str, float] = {}
        self.merge_survivor: str | None = None

    @property
    def update_calls(self) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == "update"]

    @property
    def delete_calls(self) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == "delete"]

    @property
    def mutating_calls(self) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] != "fetch"]

    async def fetch_contacts(
        self, cursor: str | None, properties: Sequence[str] = ()
    ) -> ContactPage:
        self.calls.append(("fetch", cursor, tuple(properties)))
        index = int(cursor) if cursor else 0
        if self.fetch_error is not None and index >= self.fetch_error_at_page:
            raise self.fetch_error
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        return ContactPage(contacts=self.pages[index], next_cursor=next_cursor)

    async def update_contact(self, external_id: str, properties: dict[str, str]) -> str | None:
        self.calls.append(("update", external_id, dict(properties)))
        if self.update_delay:
            await asyncio.sleep(self.update_delay)
        if self.update_error is not None:
            raise self.update_error
        return self.update_new_id

    async def delete_or_merge_contact(
        self, external_id: str, into_external_id: str | None = None
    ) -> str | None:
        self.calls.append(("delete", external_id, into_external_id))
        delay = self.delete_delays.get(external_id)
        if delay:
            await asyncio.sleep(delay)
        error = self.delete_errors.get(external_id)
        if error is not None:
            raise error
        return self.merge_survivor


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def repo() -> InMemoryDedupeRepository:
    return InMemoryDedupeRepository()


@pytest.fixture
def crm() -> FakeCRMAdapter:
    return FakeCRMAdapter()


@pytest.fixture
def make_crm():
    """Factory for extra scripted CRMs: ``make_crm(pages)``."""
    return FakeCRMAdapter


@pytest.fixture
def provisioner(repo) -> RepositoryPlanProvisioner:
    return RepositoryPlanProvisioner(repo)


@pytest.fixture
def quota_gate(repo, provisioner) -> QuotaGate:
    return QuotaGate(repo, provisioner, free_contact_limit=500_000, free_merge_group_limit=20)


@pytest.fixture
def resolver(repo, quota_gate) -> MergeResolver:
    return MergeResolver(repo, quota_gate, call_timeout=0.2)


@pytest.fixture
def exporter(tmp_path) -> ContactExporter:
    return ContactExporter(tmp_path / "exports")


@pytest.fixture
def removals(repo) -> RemovalQueue:
    return RemovalQueue(repo, call_timeout=0.2)


@pytest_asyncio.fixture
async def runner(repo, quota_gate, resolver, exporter, removals):
    process_runner = ProcessRunner(
        repo,
        quota_gate,
        resolver,
        exporter,
        removals,
        default_filters=["same_email"],
        call_timeout=0.2,
    )
    resolver.subscribe(process_runner.on_group_merged)
    yield process_runner
    await process_runner.shutdown()


@pytest.fixture
def seed_groups(repo):
    """Create a latest run in ``manually merge`` holding the given groups.

    Usage:
        run, groups = await seed_groups([[a, b], [c, d]])

    where each member is a FetchedContact.
    """

    async def _seed(
        member_lists: list[list[FetchedContact]],
        tenant_id: str = TENANT_ID,
        process_name: ProcessName = ProcessName.MANUALLY_MERGE,
    ) -> tuple[ProcessStatus, list[DuplicateGroup]]:
        run = await repo.supersede_latest_run(tenant_id, "seeded run", ["same_email"])
        id_lists = []
        for members in member_lists:
            before = set(repo.contacts)
            await repo.add_contacts(tenant_id, run.id, members)
            id_lists.append(sorted(set(repo.contacts) - before))
        groups = await repo.create_groups(tenant_id, run.id, id_lists)
        count = sum(len(m) for m in member_lists)
        run = await repo.update_run(
            tenant_id, run.id, run.version, process_name=process_name, count=count
        )
        return run, groups

    return _seed

"""Dedupe repository -- async persistence for runs, contacts, groups, merge records,
removal marks and plans.

Provides DedupeRepository with the session_factory callable pattern. Handles
serialization between Pydantic schemas and SQLAlchemy models.

All methods take tenant_id as first argument for tenant-scoped queries.
Every concurrency guard is a single conditional statement:
- run writes compare-and-set on ``version``
- group claims compare-and-set on ``merged``/``merge_token``
- merge_groups_used is a conditional in-database increment guarded by a ledger row
"""

from __future__ import annotations

import math
import uuid
from collections.abc import AsyncGenerator, Callable, Sequence
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.dedupe.duplicates.errors import ContactAlreadyMarked, RunAlreadyActive
from src.dedupe.duplicates.models import (
    ContactModel,
    ContactRemovalModel,
    DuplicateGroupModel,
    MergeRecordModel,
    PlanMergeUsageModel,
    PlanModel,
    ProcessRunModel,
)
from src.dedupe.duplicates.schemas import (
    BillingType,
    Contact,
    DuplicateGroup,
    FetchedContact,
    GroupPage,
    MergeRecord,
    MergeStatus,
    MergeUsage,
    Plan,
    PlanType,
    ProcessName,
    ProcessStatus,
    RemovalMark,
    RemovalStatus,
)
from src.dedupe.duplicates.states import ACTIVE_STATES

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_status(model: ProcessRunModel) -> ProcessStatus:
    """Convert ProcessRunModel to ProcessStatus schema."""
    return ProcessStatus(
        id=str(model.id),
        tenant_id=model.tenant_id,
        name=model.name,
        process_name=ProcessName(model.process_name),
        status=model.status or "",
        count=model.count or 0,
        export_link=model.export_link,
        filters=list(model.filters or []),
        is_latest=model.is_latest,
        version=model.version,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_contact(model: ContactModel) -> Contact:
    """Convert ContactModel to Contact schema."""
    return Contact(
        id=model.id,
        tenant_id=model.tenant_id,
        run_id=str(model.run_id),
        hubspot_id=model.hubspot_id,
        email=model.email,
        additional_emails=list(model.additional_emails or []),
        first_name=model.first_name,
        last_name=model.last_name,
        phone=model.phone,
        company=model.company,
        create_date=model.create_date,
        last_modified_date=model.last_modified_date,
        other_properties=dict(model.other_properties or {}),
        removed=model.removed,
    )


def _model_to_group(
    model: DuplicateGroupModel, contacts_by_id: dict[int, Contact]
) -> DuplicateGroup:
    """Convert DuplicateGroupModel to DuplicateGroup, embedding members in member order."""
    member_ids = [int(m) for m in (model.member_ids or [])]
    return DuplicateGroup(
        id=model.id,
        tenant_id=model.tenant_id,
        run_id=str(model.run_id),
        member_ids=member_ids,
        contacts=[contacts_by_id[m] for m in member_ids if m in contacts_by_id],
        merged=model.merged,
        merged_at=model.merged_at,
        merge_token=model.merge_token,
        primary_contact_id=model.primary_contact_id,
        created_at=model.created_at,
    )


def _model_to_merge_record(model: MergeRecordModel) -> MergeRecord:
    return MergeRecord(
        id=model.id,
        tenant_id=model.tenant_id,
        group_id=model.group_id,
        run_id=str(model.run_id),
        contact_id=model.contact_id,
        primary_external_id=model.primary_external_id,
        secondary_external_id=model.secondary_external_id,
        merge_status=MergeStatus(model.merge_status),
        error=model.error,
        merged_at=model.merged_at,
    )


def _model_to_removal(model: ContactRemovalModel) -> RemovalMark:
    return RemovalMark(
        id=model.id,
        tenant_id=model.tenant_id,
        run_id=str(model.run_id),
        contact_id=model.contact_id,
        group_id=model.group_id,
        status=RemovalStatus(model.status),
        error=model.error,
        created_at=model.created_at,
        removed_at=model.removed_at,
    )


def _model_to_plan(model: PlanModel) -> Plan:
    """Convert PlanModel to Plan schema."""
    return Plan(
        tenant_id=model.tenant_id,
        plan_type=PlanType(model.plan_type),
        contact_count=model.contact_count or 0,
        contact_limit=model.contact_limit,
        merge_groups_used=model.merge_groups_used or 0,
        payment_status=model.payment_status,
        billing_type=BillingType(model.billing_type) if model.billing_type else None,
        activation_date=model.activation_date,
        billing_end_date=model.billing_end_date,
    )


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


# ── Repository ──────────────────────────────────────────────────────────────


class DedupeRepository:
    """Async persistence for every dedupe workflow entity.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Process Runs ────────────────────────────────────────────────────────

    async def supersede_latest_run(
        self, tenant_id: str, name: str, filters: Sequence[str]
    ) -> ProcessStatus:
        """Insert a new latest run in ``fetching``, retiring the previous one.

        The previous latest row is locked, demoted to history and its
        contacts, groups and merge records are purged, all in the same
        transaction as the insert.

        Raises:
            RunAlreadyActive: The previous latest run is still active, or a
                concurrent start won the partial unique index.
        """
        async for session in self._session_factory():
            stmt = (
                select(ProcessRunModel)
                .where(
                    ProcessRunModel.tenant_id == tenant_id,
                    ProcessRunModel.is_latest.is_(True),
                )
                .with_for_update()
            )
            result = await session.execute(stmt)
            previous = result.scalar_one_or_none()

            if previous is not None:
                if ProcessName(previous.process_name) in ACTIVE_STATES:
                    raise RunAlreadyActive(str(previous.id), previous.process_name)
                previous.is_latest = False
                previous.version = previous.version + 1
                await session.flush()
                await self._purge_run_data(session, tenant_id, previous.id)

            model = ProcessRunModel(
                tenant_id=tenant_id,
                name=name,
                process_name=ProcessName.FETCHING.value,
                status="",
                count=0,
                filters=list(filters),
                is_latest=True,
                version=1,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise RunAlreadyActive("concurrent", ProcessName.FETCHING.value) from exc
            await session.refresh(model)

            logger.info(
                "repository.run_created",
                tenant_id=tenant_id,
                run_id=str(model.id),
                superseded=str(previous.id) if previous is not None else None,
            )
            return _model_to_status(model)

    async def _purge_run_data(
        self, session: AsyncSession, tenant_id: str, run_id: uuid.UUID
    ) -> None:
        for model_cls in (
            ContactRemovalModel,
            MergeRecordModel,
            DuplicateGroupModel,
            ContactModel,
        ):
            await session.execute(
                delete(model_cls).where(
                    model_cls.tenant_id == tenant_id,
                    model_cls.run_id == run_id,
                )
            )

    async def get_latest_run(self, tenant_id: str) -> ProcessStatus | None:
        """Get the tenant's single latest run, or None if it never ran."""
        async for session in self._session_factory():
            stmt = select(ProcessRunModel).where(
                ProcessRunModel.tenant_id == tenant_id,
                ProcessRunModel.is_latest.is_(True),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_status(model) if model is not None else None

    async def get_run(self, tenant_id: str, run_id: str) -> ProcessStatus | None:
        async for session in self._session_factory():
            stmt = select(ProcessRunModel).where(
                ProcessRunModel.tenant_id == tenant_id,
                ProcessRunModel.id == uuid.UUID(run_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_status(model) if model is not None else None

    async def list_runs(self, tenant_id: str, limit: int = 50) -> list[ProcessStatus]:
        """List the tenant's runs, newest first."""
        async for session in self._session_factory():
            stmt = (
                select(ProcessRunModel)
                .where(ProcessRunModel.tenant_id == tenant_id)
                .order_by(ProcessRunModel.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_status(m) for m in result.scalars().all()]

    async def update_run(
        self,
        tenant_id: str,
        run_id: str,
        expected_version: int,
        **changes: Any,
    ) -> ProcessStatus | None:
        """Compare-and-set update of a run row.

        Applies ``changes`` only if the row is still at ``expected_version``
        and bumps the version.

        Returns:
            The updated ProcessStatus, or None if another writer got there first.
        """
        values = {key: _enum_value(value) for key, value in changes.items()}
        values["version"] = ProcessRunModel.version + 1
        values["updated_at"] = datetime.now(timezone.utc)

        async for session in self._session_factory():
            stmt = (
                update(ProcessRunModel)
                .where(
                    ProcessRunModel.tenant_id == tenant_id,
                    ProcessRunModel.id == uuid.UUID(run_id),
                    ProcessRunModel.version == expected_version,
                )
                .values(**values)
                .returning(ProcessRunModel)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                await session.rollback()
                return None
            status = _model_to_status(model)
            await session.commit()
            return status

    # ── Contacts ────────────────────────────────────────────────────────────

    async def add_contacts(
        self, tenant_id: str, run_id: str, contacts: Sequence[FetchedContact]
    ) -> int:
        """Persist one fetched page of contacts for a run. Returns rows written."""
        if not contacts:
            return 0
        async for session in self._session_factory():
            session.add_all(
                [
                    ContactModel(
                        tenant_id=tenant_id,
                        run_id=uuid.UUID(run_id),
                        hubspot_id=c.hubspot_id,
                        email=c.email,
                        additional_emails=list(c.additional_emails),
                        first_name=c.first_name,
                        last_name=c.last_name,
                        phone=c.phone,
                        company=c.company,
                        create_date=c.create_date,
                        last_modified_date=c.last_modified_date,
                        other_properties=dict(c.other_properties),
                    )
                    for c in contacts
                ]
            )
            await session.commit()
            return len(contacts)

    async def list_contacts(
        self, tenant_id: str, run_id: str, include_removed: bool = True
    ) -> list[Contact]:
        """List a run's contact snapshots ordered by internal id."""
        async for session in self._session_factory():
            stmt = select(ContactModel).where(
                ContactModel.tenant_id == tenant_id,
                ContactModel.run_id == uuid.UUID(run_id),
            )
            if not include_removed:
                stmt = stmt.where(ContactModel.removed.is_(False))
            stmt = stmt.order_by(ContactModel.id.asc())
            result = await session.execute(stmt)
            return [_model_to_contact(m) for m in result.scalars().all()]

    async def save_contact(self, tenant_id: str, contact: Contact) -> Contact:
        """Overwrite a contact snapshot after a successful merge update."""
        async for session in self._session_factory():
            stmt = (
                update(ContactModel)
                .where(
                    ContactModel.tenant_id == tenant_id,
                    ContactModel.id == contact.id,
                )
                .values(
                    hubspot_id=contact.hubspot_id,
                    email=contact.email,
                    additional_emails=list(contact.additional_emails),
                    first_name=contact.first_name,
                    last_name=contact.last_name,
                    phone=contact.phone,
                    company=contact.company,
                    last_modified_date=contact.last_modified_date,
                    other_properties=dict(contact.other_properties),
                    removed=contact.removed,
                )
            )
            await session.execute(stmt)
            await session.commit()
            return contact

    async def get_contact(self, tenant_id: str, contact_id: int) -> Contact | None:
        async for session in self._session_factory():
            contacts = await self._contacts_by_id(session, tenant_id, {contact_id})
            return contacts.get(contact_id)

    async def mark_contact_removed(self, tenant_id: str, contact_id: int) -> None:
        """Flag a secondary that no longer exists in the CRM."""
        async for session in self._session_factory():
            await session.execute(
                update(ContactModel)
                .where(
                    ContactModel.tenant_id == tenant_id,
                    ContactModel.id == contact_id,
                )
                .values(removed=True)
            )
            await session.commit()

    async def _contacts_by_id(
        self, session: AsyncSession, tenant_id: str, ids: set[int]
    ) -> dict[int, Contact]:
        if not ids:
            return {}
        stmt = select(ContactModel).where(
            ContactModel.tenant_id == tenant_id,
            ContactModel.id.in_(ids),
        )
        result = await session.execute(stmt)
        return {m.id: _model_to_contact(m) for m in result.scalars().all()}

    # ── Duplicate Groups ────────────────────────────────────────────────────

    async def create_groups(
        self, tenant_id: str, run_id: str, member_lists: Sequence[Sequence[int]]
    ) -> list[DuplicateGroup]:
        """Persist groups in the given order so ids ascend in creation order."""
        if not member_lists:
            return []
        async for session in self._session_factory():
            models = []
            for members in member_lists:
                model = DuplicateGroupModel(
                    tenant_id=tenant_id,
                    run_id=uuid.UUID(run_id),
                    member_ids=list(members),
                )
                session.add(model)
                # Flush per row keeps id order equal to insertion order
                await session.flush()
                models.append(model)
            await session.commit()

            all_ids = {m for members in member_lists for m in members}
            contacts = await self._contacts_by_id(session, tenant_id, all_ids)
            return [_model_to_group(m, contacts) for m in models]

    async def list_groups(
        self,
        tenant_id: str,
        run_id: str,
        page: int,
        page_size: int,
        include_merged: bool = True,
    ) -> GroupPage:
        """Return one page of a run's groups ordered by id ascending."""
        async for session in self._session_factory():
            conditions = [
                DuplicateGroupModel.tenant_id == tenant_id,
                DuplicateGroupModel.run_id == uuid.UUID(run_id),
            ]
            if not include_merged:
                conditions.append(DuplicateGroupModel.merged.is_(False))

            total_result = await session.execute(
                select(func.count()).select_from(DuplicateGroupModel).where(*conditions)
            )
            total = int(total_result.scalar_one())

            stmt = (
                select(DuplicateGroupModel)
                .where(*conditions)
                .order_by(DuplicateGroupModel.id.asc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            result = await session.execute(stmt)
            models = list(result.scalars().all())

            member_ids = {int(m) for model in models for m in (model.member_ids or [])}
            contacts = await self._contacts_by_id(session, tenant_id, member_ids)

            return GroupPage(
                groups=[_model_to_group(m, contacts) for m in models],
                total=total,
                page=page,
                page_size=page_size,
                total_pages=math.ceil(total / page_size) if page_size else 0,
            )

    async def get_group(self, tenant_id: str, group_id: int) -> DuplicateGroup | None:
        async for session in self._session_factory():
            stmt = select(DuplicateGroupModel).where(
                DuplicateGroupModel.tenant_id == tenant_id,
                DuplicateGroupModel.id == group_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            contacts = await self._contacts_by_id(
                session, tenant_id, {int(m) for m in (model.member_ids or [])}
            )
            return _model_to_group(model, contacts)

    async def list_merged_groups(self, tenant_id: str, run_id: str) -> list[DuplicateGroup]:
        """All merged groups of a run, used by the finalization sweep."""
        async for session in self._session_factory():
            stmt = (
                select(DuplicateGroupModel)
                .where(
                    DuplicateGroupModel.tenant_id == tenant_id,
                    DuplicateGroupModel.run_id == uuid.UUID(run_id),
                    DuplicateGroupModel.merged.is_(True),
                )
                .order_by(DuplicateGroupModel.id.asc())
            )
            result = await session.execute(stmt)
            models = list(result.scalars().all())
            member_ids = {int(m) for model in models for m in (model.member_ids or [])}
            contacts = await self._contacts_by_id(session, tenant_id, member_ids)
            return [_model_to_group(m, contacts) for m in models]

    async def count_unmerged_groups(self, tenant_id: str, run_id: str) -> int:
        async for session in self._session_factory():
            stmt = (
                select(func.count())
                .select_from(DuplicateGroupModel)
                .where(
                    DuplicateGroupModel.tenant_id == tenant_id,
                    DuplicateGroupModel.run_id == uuid.UUID(run_id),
                    DuplicateGroupModel.merged.is_(False),
                )
            )
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def claim_group(self, tenant_id: str, group_id: int, token: str) -> bool:
        """Take ownership of an unmerged, unclaimed group. Returns False if lost."""
        async for session in self._session_factory():
            stmt = (
                update(DuplicateGroupModel)
                .where(
                    DuplicateGroupModel.tenant_id == tenant_id,
                    DuplicateGroupModel.id == group_id,
                    DuplicateGroupModel.merged.is_(False),
                    DuplicateGroupModel.merge_token.is_(None),
                )
                .values(merge_token=token)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def release_group(self, tenant_id: str, group_id: int, token: str) -> None:
        """Give up ownership without merging (the owner token must match)."""
        async for session in self._session_factory():
            await session.execute(
                update(DuplicateGroupModel)
                .where(
                    DuplicateGroupModel.tenant_id == tenant_id,
                    DuplicateGroupModel.id == group_id,
                    DuplicateGroupModel.merge_token == token,
                    DuplicateGroupModel.merged.is_(False),
                )
                .values(merge_token=None)
            )
            await session.commit()

    async def mark_group_merged(
        self, tenant_id: str, group_id: int, token: str, primary_contact_id: int
    ) -> bool:
        """Flip the group to terminal ``merged``. Returns False if the token is stale."""
        async for session in self._session_factory():
            stmt = (
                update(DuplicateGroupModel)
                .where(
                    DuplicateGroupModel.tenant_id == tenant_id,
                    DuplicateGroupModel.id == group_id,
                    DuplicateGroupModel.merge_token == token,
                    DuplicateGroupModel.merged.is_(False),
                )
                .values(
                    merged=True,
                    merged_at=datetime.now(timezone.utc),
                    primary_contact_id=primary_contact_id,
                )
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    # ── Merge Records ───────────────────────────────────────────────────────

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
        """Insert or overwrite the outcome for one (group, secondary) pair."""
        async for session in self._session_factory():
            stmt = select(MergeRecordModel).where(
                MergeRecordModel.tenant_id == tenant_id,
                MergeRecordModel.group_id == group_id,
                MergeRecordModel.contact_id == contact_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                model = MergeRecordModel(
                    tenant_id=tenant_id,
                    group_id=group_id,
                    run_id=uuid.UUID(run_id),
                    contact_id=contact_id,
                )
                session.add(model)

            model.primary_external_id = primary_external_id
            model.secondary_external_id = secondary_external_id
            model.merge_status = merge_status.value
            model.error = error
            model.merged_at = (
                datetime.now(timezone.utc) if merge_status == MergeStatus.COMPLETED else None
            )
            await session.commit()
            await session.refresh(model)
            return _model_to_merge_record(model)

    async def list_merge_records(
        self,
        tenant_id: str,
        *,
        group_id: int | None = None,
        run_id: str | None = None,
        merge_status: MergeStatus | None = None,
    ) -> list[MergeRecord]:
        async for session in self._session_factory():
            stmt = select(MergeRecordModel).where(MergeRecordModel.tenant_id == tenant_id)
            if group_id is not None:
                stmt = stmt.where(MergeRecordModel.group_id == group_id)
            if run_id is not None:
                stmt = stmt.where(MergeRecordModel.run_id == uuid.UUID(run_id))
            if merge_status is not None:
                stmt = stmt.where(MergeRecordModel.merge_status == merge_status.value)
            stmt = stmt.order_by(MergeRecordModel.id.asc())
            result = await session.execute(stmt)
            return [_model_to_merge_record(m) for m in result.scalars().all()]

    # ── Removal Marks ───────────────────────────────────────────────────────

    async def add_removal(
        self,
        tenant_id: str,
        run_id: str,
        contact_id: int,
        group_id: int | None = None,
    ) -> RemovalMark:
        """Mark a contact of a run for deletion.

        Raises:
            ContactAlreadyMarked: The contact already has a mark in this run.
        """
        async for session in self._session_factory():
            model = ContactRemovalModel(
                tenant_id=tenant_id,
                run_id=uuid.UUID(run_id),
                contact_id=contact_id,
                group_id=group_id,
                status=RemovalStatus.PENDING.value,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ContactAlreadyMarked(contact_id) from exc
            await session.refresh(model)
            return _model_to_removal(model)

    async def get_removal(self, tenant_id: str, removal_id: int) -> RemovalMark | None:
        async for session in self._session_factory():
            stmt = select(ContactRemovalModel).where(
                ContactRemovalModel.tenant_id == tenant_id,
                ContactRemovalModel.id == removal_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_removal(model) if model is not None else None

    async def list_removals(
        self,
        tenant_id: str,
        run_id: str,
        status: RemovalStatus | None = None,
    ) -> list[RemovalMark]:
        """A run's removal marks in the order they were made."""
        async for session in self._session_factory():
            stmt = select(ContactRemovalModel).where(
                ContactRemovalModel.tenant_id == tenant_id,
                ContactRemovalModel.run_id == uuid.UUID(run_id),
            )
            if status is not None:
                stmt = stmt.where(ContactRemovalModel.status == status.value)
            stmt = stmt.order_by(ContactRemovalModel.id.asc())
            result = await session.execute(stmt)
            return [_model_to_removal(m) for m in result.scalars().all()]

    async def delete_removal(self, tenant_id: str, removal_id: int) -> bool:
        """Drop a still-pending mark. Returns False if none matched."""
        async for session in self._session_factory():
            result = await session.execute(
                delete(ContactRemovalModel).where(
                    ContactRemovalModel.tenant_id == tenant_id,
                    ContactRemovalModel.id == removal_id,
                    ContactRemovalModel.status == RemovalStatus.PENDING.value,
                )
            )
            await session.commit()
            return result.rowcount == 1

    async def update_removal(
        self,
        tenant_id: str,
        removal_id: int,
        status: RemovalStatus,
        error: str | None = None,
    ) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(ContactRemovalModel)
                .where(
                    ContactRemovalModel.tenant_id == tenant_id,
                    ContactRemovalModel.id == removal_id,
                )
                .values(
                    status=status.value,
                    error=error,
                    removed_at=(
                        datetime.now(timezone.utc)
                        if status == RemovalStatus.REMOVED
                        else None
                    ),
                )
            )
            await session.commit()

    # ── Plans ───────────────────────────────────────────────────────────────

    async def get_plan(self, tenant_id: str) -> Plan | None:
        async for session in self._session_factory():
            stmt = select(PlanModel).where(PlanModel.tenant_id == tenant_id)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_plan(model) if model is not None else None

    async def create_plan(self, tenant_id: str, plan: Plan) -> Plan:
        """Insert the tenant's plan. A concurrent insert wins; its row is returned."""
        async for session in self._session_factory():
            model = PlanModel(
                tenant_id=tenant_id,
                plan_type=plan.plan_type.value,
                contact_count=plan.contact_count,
                contact_limit=plan.contact_limit,
                merge_groups_used=plan.merge_groups_used,
                payment_status=plan.payment_status,
                billing_type=plan.billing_type.value if plan.billing_type else None,
                activation_date=plan.activation_date or datetime.now(timezone.utc),
                billing_end_date=plan.billing_end_date,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("repository.plan_exists", tenant_id=tenant_id)
                existing = await self.get_plan(tenant_id)
                if existing is None:
                    raise
                return existing
            await session.refresh(model)
            return _model_to_plan(model)

    async def update_plan(self, tenant_id: str, **fields: Any) -> Plan | None:
        """Set plan columns. Returns None if the tenant has no plan."""
        values = {key: _enum_value(value) for key, value in fields.items()}
        async for session in self._session_factory():
            stmt = (
                update(PlanModel)
                .where(PlanModel.tenant_id == tenant_id)
                .values(**values)
                .returning(PlanModel)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                await session.rollback()
                return None
            plan = _model_to_plan(model)
            await session.commit()
            return plan

    async def reserve_merge_usage(
        self, tenant_id: str, group_id: int, limit: int | None = None
    ) -> MergeUsage:
        """Count a group against merge_groups_used exactly once.

        With ``limit`` the increment only applies while the counter is below
        it; the ledger row and the increment commit together or not at all.
        """
        async for session in self._session_factory():
            session.add(PlanMergeUsageModel(tenant_id=tenant_id, group_id=group_id))
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                return MergeUsage.ALREADY_COUNTED

            stmt = update(PlanModel).where(PlanModel.tenant_id == tenant_id)
            if limit is not None:
                stmt = stmt.where(PlanModel.merge_groups_used < limit)
            result = await session.execute(
                stmt.values(merge_groups_used=PlanModel.merge_groups_used + 1)
            )
            if limit is not None and result.rowcount == 0:
                await session.rollback()
                return MergeUsage.LIMIT_REACHED
            await session.commit()
            return MergeUsage.COUNTED

    async def release_merge_usage(self, tenant_id: str, group_id: int) -> bool:
        """Undo a reservation for a merge that did not complete."""
        async for session in self._session_factory():
            result = await session.execute(
                delete(PlanMergeUsageModel).where(
                    PlanMergeUsageModel.tenant_id == tenant_id,
                    PlanMergeUsageModel.group_id == group_id,
                )
            )
            if result.rowcount == 0:
                await session.rollback()
                return False
            await session.execute(
                update(PlanModel)
                .where(
                    PlanModel.tenant_id == tenant_id,
                    PlanModel.merge_groups_used > 0,
                )
                .values(merge_groups_used=PlanModel.merge_groups_used - 1)
            )
            await session.commit()
            return True

"""Dedupe persistence models -- tenant-scoped tables for runs, contacts, groups and plans.

Seven SQLAlchemy models on DedupeBase:
- ProcessRunModel: One row per dedupe run (the polled ProcessStatus)
- ContactModel: Contact snapshots fetched for a run
- DuplicateGroupModel: Groups of suspected duplicates produced by filtering
- MergeRecordModel: Per-secondary outcome of a group merge
- ContactRemovalModel: Contacts marked for deletion when the run finalizes
- PlanModel: Per-tenant usage plan and counters
- PlanMergeUsageModel: Idempotency ledger for merge_groups_used

Tenancy is a tenant_id column on every table. Referential integrity between
runs, contacts and groups is application-level (repository), consistent with
the purge-on-supersede lifecycle of a run's data.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.dedupe.core.database import DedupeBase


class ProcessRunModel(DedupeBase):
    """A tenant's dedupe run and its state machine position.

    Exactly one row per tenant has is_latest = true, enforced by a partial
    unique index. ``version`` is bumped on every write and used for
    compare-and-set updates.
    """

    __tablename__ = "process_runs"
    __table_args__ = (
        Index(
            "uq_process_runs_latest_per_tenant",
            "tenant_id",
            unique=True,
            postgresql_where=text("is_latest"),
        ),
        Index("ix_process_runs_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    process_name: Mapped[str] = mapped_column(
        String(30), default="fetching", server_default=text("'fetching'")
    )
    status: Mapped[str] = mapped_column(Text, default="", server_default=text("''"))
    count: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    export_link: Mapped[str | None] = mapped_column(String(500), nullable=True)
    filters: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    is_latest: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true")
    )
    version: Mapped[int] = mapped_column(Integer, default=1, server_default=text("1"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ContactModel(DedupeBase):
    """Contact snapshot fetched from the CRM during a run.

    Standard fields are columns; every other CRM property lives in
    other_properties. ``removed`` marks secondaries detached by a merge.
    """

    __tablename__ = "contacts"
    __table_args__ = (
        Index("ix_contacts_tenant_run", "tenant_id", "run_id"),
        Index("ix_contacts_tenant_hubspot", "tenant_id", "hubspot_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    run_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    hubspot_id: Mapped[str] = mapped_column(String(64), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    additional_emails: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    first_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(100), nullable=True)
    company: Mapped[str | None] = mapped_column(String(300), nullable=True)
    create_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_modified_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    other_properties: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    removed: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )


class DuplicateGroupModel(DedupeBase):
    """Suspected duplicates produced by filtering.

    ``id`` is ascending in creation order and is the pagination key.
    ``merge_token`` is the ownership token of an in-flight merge.
    """

    __tablename__ = "duplicate_groups"
    __table_args__ = (
        Index("ix_duplicate_groups_tenant_run", "tenant_id", "run_id", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    run_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    member_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    merged: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    merged_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    merge_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    primary_contact_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class MergeRecordModel(DedupeBase):
    """Outcome of detaching one secondary contact into a group's primary."""

    __tablename__ = "merge_records"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "group_id",
            "contact_id",
            name="uq_merge_record_group_contact",
        ),
        Index("ix_merge_records_tenant_run_status", "tenant_id", "run_id", "merge_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    group_id: Mapped[int] = mapped_column(Integer, nullable=False)
    run_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    contact_id: Mapped[int] = mapped_column(Integer, nullable=False)
    primary_external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    secondary_external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    merge_status: Mapped[str] = mapped_column(String(20), nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    merged_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class ContactRemovalModel(DedupeBase):
    """A contact marked for deletion from the CRM by the finalization sweep."""

    __tablename__ = "contact_removals"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "run_id",
            "contact_id",
            name="uq_contact_removal_run_contact",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    run_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    contact_id: Mapped[int] = mapped_column(Integer, nullable=False)
    group_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default=text("'pending'")
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    removed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class PlanModel(DedupeBase):
    """Usage plan of a tenant. One row per tenant."""

    __tablename__ = "plans"
    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_plan_tenant"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    plan_type: Mapped[str] = mapped_column(
        String(20), default="free", server_default=text("'free'")
    )
    contact_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    contact_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    merge_groups_used: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    payment_status: Mapped[str] = mapped_column(
        String(30), default="active", server_default=text("'active'")
    )
    billing_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    activation_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    billing_end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class PlanMergeUsageModel(DedupeBase):
    """One row per merged group counted against merge_groups_used."""

    __tablename__ = "plan_merge_usage"
    __table_args__ = (
        UniqueConstraint("tenant_id", "group_id", name="uq_plan_merge_usage_group"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    group_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

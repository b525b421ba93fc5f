"""Add dedupe workflow tables for runs, contacts, groups, merge records and plans.

Revision ID: 001_dedupe_tables
Revises:
Create Date: 2026-10-18

Creates six tables:
- process_runs: One row per dedupe run; partial unique index keeps a single
  latest run per tenant
- contacts: Contact snapshots fetched for a run
- duplicate_groups: Suspected duplicates, id ascending in creation order
- merge_records: Per-secondary merge outcome (completed / failed)
- plans: Per-tenant plan and usage counters
- plan_merge_usage: Ledger making merge_groups_used idempotent per group

No foreign key constraints (application-level referential integrity via
repository; a superseded run's rows are purged together).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_dedupe_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def upgrade() -> None:
    # ── process_runs table ──────────────────────────────────────────────

    op.create_table(
        "process_runs",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column(
            "process_name",
            sa.String(30),
            server_default=sa.text("'fetching'"),
            nullable=False,
        ),
        sa.Column("status", sa.Text(), server_default=sa.text("''"), nullable=False),
        sa.Column("count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("export_link", sa.String(500), nullable=True),
        sa.Column(
            "filters",
            sa.JSON(),
            server_default=sa.text("'[]'::json"),
            nullable=False,
        ),
        sa.Column("is_latest", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.execute(
        "CREATE UNIQUE INDEX uq_process_runs_latest_per_tenant "
        "ON process_runs(tenant_id) WHERE is_latest"
    )
    op.execute(
        "CREATE INDEX ix_process_runs_tenant_created "
        "ON process_runs(tenant_id, created_at)"
    )

    # ── contacts table ──────────────────────────────────────────────────

    op.create_table(
        "contacts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("run_id", UUID(as_uuid=True), nullable=False),
        sa.Column("hubspot_id", sa.String(64), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column(
            "additional_emails",
            sa.JSON(),
            server_default=sa.text("'[]'::json"),
            nullable=False,
        ),
        sa.Column("first_name", sa.String(200), nullable=True),
        sa.Column("last_name", sa.String(200), nullable=True),
        sa.Column("phone", sa.String(100), nullable=True),
        sa.Column("company", sa.String(300), nullable=True),
        sa.Column("create_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_modified_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "other_properties",
            sa.JSON(),
            server_default=sa.text("'{}'::json"),
            nullable=False,
        ),
        sa.Column("removed", sa.Boolean(), server_default=sa.text("false"), nullable=False),
    )
    op.execute("CREATE INDEX ix_contacts_tenant_run ON contacts(tenant_id, run_id)")
    op.execute("CREATE INDEX ix_contacts_tenant_hubspot ON contacts(tenant_id, hubspot_id)")

    # ── duplicate_groups table ──────────────────────────────────────────

    op.create_table(
        "duplicate_groups",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("run_id", UUID(as_uuid=True), nullable=False),
        sa.Column("member_ids", sa.JSON(), nullable=False),
        sa.Column("merged", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("merged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("merge_token", sa.String(64), nullable=True),
        sa.Column("primary_contact_id", sa.Integer(), nullable=True),
        _created_at(),
    )
    op.execute(
        "CREATE INDEX ix_duplicate_groups_tenant_run "
        "ON duplicate_groups(tenant_id, run_id, id)"
    )

    # ── merge_records table ─────────────────────────────────────────────

    op.create_table(
        "merge_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column("run_id", UUID(as_uuid=True), nullable=False),
        sa.Column("contact_id", sa.Integer(), nullable=False),
        sa.Column("primary_external_id", sa.String(64), nullable=False),
        sa.Column("secondary_external_id", sa.String(64), nullable=False),
        sa.Column("merge_status", sa.String(20), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("merged_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint(
            "tenant_id",
            "group_id",
            "contact_id",
            name="uq_merge_record_group_contact",
        ),
    )
    op.execute(
        "CREATE INDEX ix_merge_records_tenant_run_status "
        "ON merge_records(tenant_id, run_id, merge_status)"
    )

    # ── plans table ─────────────────────────────────────────────────────

    op.create_table(
        "plans",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("plan_type", sa.String(20), server_default=sa.text("'free'"), nullable=False),
        sa.Column("contact_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("contact_limit", sa.Integer(), nullable=True),
        sa.Column(
            "merge_groups_used",
            sa.Integer(),
            server_default=sa.text("0"),
            nullable=False,
        ),
        sa.Column(
            "payment_status",
            sa.String(30),
            server_default=sa.text("'active'"),
            nullable=False,
        ),
        sa.Column("billing_type", sa.String(20), nullable=True),
        sa.Column("activation_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_end_date", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", name="uq_plan_tenant"),
    )

    # ── plan_merge_usage table ──────────────────────────────────────────

    op.create_table(
        "plan_merge_usage",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("group_id", sa.Integer(), nullable=False),
        _created_at(),
        sa.UniqueConstraint("tenant_id", "group_id", name="uq_plan_merge_usage_group"),
    )


def downgrade() -> None:
    # Drop tables in reverse order (indexes go with their tables)
    op.drop_table("plan_merge_usage")
    op.drop_table("plans")
    op.drop_table("merge_records")
    op.drop_table("duplicate_groups")
    op.drop_table("contacts")
    op.drop_table("process_runs")

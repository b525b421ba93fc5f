"""Pydantic schemas for the contact dedupe workflow.

Defines all structured types that cross module boundaries:
- Enums: ProcessName, PlanType, BillingType, MergeStatus, RemovalStatus,
  QuotaOutcome, MergeUsage
- CRM payloads: FetchedContact, ContactPage
- Persisted snapshots: Contact, DuplicateGroup, GroupPage, ProcessStatus, Plan,
  MergeRecord, RemovalMark
- Merge inputs/outputs: FieldSelections, FieldOptions, UpdateOutcome,
  SecondaryOutcome, MergeDetails, MergeResult
- Quota: QuotaDecision
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

# ── Enums ───────────────────────────────────────────────────────────────────


class ProcessName(str, Enum):
    """State machine label of a dedupe run."""

    FETCHING = "fetching"
    FILTERING = "filtering"
    MANUALLY_MERGE = "manually merge"
    UPDATE_HUBSPOT = "update hubspot"
    FINISHED = "finished"
    ERROR = "error"
    EXCEED = "exceed"


class PlanType(str, Enum):
    FREE = "free"
    PAID = "paid"


class BillingType(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class MergeStatus(str, Enum):
    """Outcome of detaching one secondary contact into its primary."""

    COMPLETED = "completed"
    FAILED = "failed"


class RemovalStatus(str, Enum):
    """Lifecycle of a contact marked for deletion from the CRM."""

    PENDING = "pending"
    REMOVED = "removed"
    FAILED = "failed"
    KEPT = "kept"


class QuotaOutcome(str, Enum):
    ALLOW = "allow"
    EXCEED = "exceed"


class MergeUsage(str, Enum):
    """Result of reserving one merged group against a plan's allowance."""

    COUNTED = "counted"
    ALREADY_COUNTED = "already_counted"
    LIMIT_REACHED = "limit_reached"


ACTIVE_PAYMENT_STATUS = "active"


# ── CRM Payloads ────────────────────────────────────────────────────────────


class FetchedContact(BaseModel):
    """Contact as returned by the CRM, before it is persisted for a run."""

    hubspot_id: str
    email: str | None = None
    additional_emails: list[str] = Field(default_factory=list)
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    company: str | None = None
    create_date: datetime | None = None
    last_modified_date: datetime | None = None
    other_properties: dict[str, str] = Field(default_factory=dict)


class ContactPage(BaseModel):
    """One page of a cursor-paginated contact fetch."""

    contacts: list[FetchedContact] = Field(default_factory=list)
    next_cursor: str | None = None


# ── Persisted Snapshots ─────────────────────────────────────────────────────


class Contact(FetchedContact):
    """Contact snapshot stored for a run, keyed by an internal surrogate id."""

    id: int
    tenant_id: str
    run_id: str
    removed: bool = False


class DuplicateGroup(BaseModel):
    """Two or more contacts believed to be the same person.

    ``contacts`` holds the member snapshots in member order. Once
    ``merged`` is true the group is terminal.
    """

    id: int
    tenant_id: str
    run_id: str
    member_ids: list[int]
    contacts: list[Contact] = Field(default_factory=list)
    merged: bool = False
    merged_at: datetime | None = None
    merge_token: str | None = None
    primary_contact_id: int | None = None
    created_at: datetime | None = None


class GroupPage(BaseModel):
    """Page of duplicate groups ordered by group id ascending."""

    groups: list[DuplicateGroup] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 10
    total_pages: int = 0


class ProcessStatus(BaseModel):
    """Persisted state of one dedupe run."""

    id: str
    tenant_id: str
    name: str
    process_name: ProcessName
    status: str = ""
    count: int = 0
    export_link: str | None = None
    filters: list[str] = Field(default_factory=list)
    is_latest: bool = True
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Plan(BaseModel):
    """Per-tenant usage plan."""

    tenant_id: str
    plan_type: PlanType = PlanType.FREE
    contact_count: int = 0
    contact_limit: int | None = None
    merge_groups_used: int = 0
    payment_status: str = ACTIVE_PAYMENT_STATUS
    billing_type: BillingType | None = None
    activation_date: datetime | None = None
    billing_end_date: datetime | None = None


class MergeRecord(BaseModel):
    """Persisted outcome of detaching one secondary contact."""

    id: int
    tenant_id: str
    group_id: int
    run_id: str
    contact_id: int
    primary_external_id: str
    secondary_external_id: str
    merge_status: MergeStatus
    error: str | None = None
    merged_at: datetime | None = None


class RemovalMark(BaseModel):
    """A contact the reviewer wants deleted from the CRM when the run finalizes.

    ``KEPT`` means the contact became the surviving primary of a merge after
    it was marked, so it was left in place.
    """

    id: int
    tenant_id: str
    run_id: str
    contact_id: int
    group_id: int | None = None
    status: RemovalStatus = RemovalStatus.PENDING
    error: str | None = None
    created_at: datetime | None = None
    removed_at: datetime | None = None


# ── Merge Inputs / Outputs ──────────────────────────────────────────────────


class FieldSelections(BaseModel):
    """Values the reviewer picked for the surviving contact.

    None means "keep the primary's current value"; an empty string clears
    the field.
    """

    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    company: str | None = None
    other_properties: dict[str, str] = Field(default_factory=dict)


class FieldOptions(BaseModel):
    """Distinct candidate values per field across a group's members."""

    first_name: list[str] = Field(default_factory=list)
    last_name: list[str] = Field(default_factory=list)
    phone: list[str] = Field(default_factory=list)
    company: list[str] = Field(default_factory=list)
    other_properties: dict[str, list[str]] = Field(default_factory=dict)


class UpdateOutcome(BaseModel):
    """Result of the single primary-contact update of a merge."""

    attempted: bool = False
    success: bool = True
    properties: dict[str, str] = Field(default_factory=dict)
    new_external_id: str | None = None
    error: str | None = None


class SecondaryOutcome(BaseModel):
    """Result of detaching one secondary contact into the primary."""

    id: int
    hubspot_id: str
    success: bool
    error: str | None = None


class MergeDetails(BaseModel):
    update: UpdateOutcome = Field(default_factory=UpdateOutcome)
    delete_results: list[SecondaryOutcome] = Field(default_factory=list)
    primary_external_id: str = ""
    partial_failure: bool = False


class MergeResult(BaseModel):
    """Outcome returned to callers of resolve_merge / direct_merge / retry."""

    success: bool
    message: str
    group_id: int
    details: MergeDetails = Field(default_factory=MergeDetails)


# ── Quota ───────────────────────────────────────────────────────────────────


class QuotaDecision(BaseModel):
    outcome: QuotaOutcome
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.outcome == QuotaOutcome.ALLOW

"""REST API endpoints for reviewing and merging duplicate groups.

Groups belong to the tenant's latest run and are listed in ascending id
order; merged groups stay in place with ``merged = true`` so page
boundaries don't shift while a reviewer works through them.

The merge history and removal-mark routes are declared ahead of
``/{group_id}`` so their literal paths win the match.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from src.dedupe.api.deps import get_crm_adapter, get_tenant
from src.dedupe.config import get_settings
from src.dedupe.core.tenant import TenantContext
from src.dedupe.duplicates.conflicts import field_options
from src.dedupe.duplicates.crm import CRMAdapter
from src.dedupe.duplicates.errors import GroupNotFound, NoActiveRun
from src.dedupe.duplicates.schemas import (
    Contact,
    DuplicateGroup,
    FieldOptions,
    FieldSelections,
    MergeRecord,
    MergeResult,
    MergeStatus,
    RemovalMark,
    RemovalStatus,
)

router = APIRouter(prefix="/groups", tags=["groups"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class ContactResponse(BaseModel):
    """Member contact snapshot, datetimes serialized to ISO strings."""

    id: int
    hubspot_id: str
    email: str | None = None
    additional_emails: list[str] = Field(default_factory=list)
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    company: str | None = None
    create_date: str | None = None
    last_modified_date: str | None = None
    other_properties: dict[str, str] = Field(default_factory=dict)
    removed: bool = False


class GroupResponse(BaseModel):
    id: int
    run_id: str
    member_ids: list[int]
    contacts: list[ContactResponse] = Field(default_factory=list)
    merged: bool = False
    merged_at: str | None = None
    primary_contact_id: int | None = None


class GroupPageResponse(BaseModel):
    """One page of duplicate groups."""

    groups: list[GroupResponse] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 10
    total_pages: int = 0


class MergeRecordResponse(BaseModel):
    """Outcome for one secondary contact of a merged group."""

    id: int
    group_id: int
    contact_id: int
    primary_external_id: str
    secondary_external_id: str
    merge_status: MergeStatus
    error: str | None = None
    merged_at: str | None = None


class RemovalMarkResponse(BaseModel):
    id: int
    run_id: str
    contact_id: int
    group_id: int | None = None
    status: RemovalStatus
    error: str | None = None
    created_at: str | None = None
    removed_at: str | None = None


# ── Request Schemas ──────────────────────────────────────────────────────────


class MergeRequest(BaseModel):
    """Request body for a merge with reviewer field selections."""

    primary_contact_id: int
    field_selections: FieldSelections = Field(default_factory=FieldSelections)


class DirectMergeRequest(BaseModel):
    """Request body for a merge that keeps the primary's fields."""

    primary_contact_id: int


class RemovalRequest(BaseModel):
    """Request body marking a contact for deletion at finalization."""

    contact_id: int
    group_id: int | None = None


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_repository(request: Request) -> Any:
    """Retrieve DedupeRepository from app.state, 503 if not available."""
    repo = getattr(request.app.state, "dedupe_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Dedupe repository not initialized",
        )
    return repo


def _get_resolver(request: Request) -> Any:
    """Retrieve MergeResolver from app.state, 503 if not available."""
    resolver = getattr(request.app.state, "merge_resolver", None)
    if resolver is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Merge resolver not initialized",
        )
    return resolver


def _get_removals(request: Request) -> Any:
    """Retrieve RemovalQueue from app.state, 503 if not available."""
    removals = getattr(request.app.state, "removal_queue", None)
    if removals is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Removal queue not initialized",
        )
    return removals


async def _load_group(
request: Request, tenant_id: str, group_id: int) -> DuplicateGroup:
    repo = _get_repository(request)
    group = await repo.get_group(tenant_id, group_id)
    if group is None:
        raise GroupNotFound(group_id)
    return group


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _contact_to_response(c: Contact) -> ContactResponse:
    return ContactResponse(
        id=c.id,
        hubspot_id=c.hubspot_id,
        email=c.email,
        additional_emails=c.additional_emails,
        first_name=c.first_name,
        last_name=c.last_name,
        phone=c.phone,
        company=c.company,
        create_date=c.create_date.isoformat() if c.create_date else None,
        last_modified_date=(
            c.last_modified_date.isoformat() if c.last_modified_date else None
        ),
        other_properties=c.other_properties,
        removed=c.removed,
    )


def _group_to_response(group: DuplicateGroup) -> GroupResponse:
    return GroupResponse(
        id=group.id,
        run_id=group.run_id,
        member_ids=group.member_ids,
        contacts=[_contact_to_response(c) for c in group.contacts],
        merged=group.merged,
        merged_at=group.merged_at.isoformat() if group.merged_at else None,
        primary_contact_id=group.primary_contact_id,
    )


def _record_to_response(r: MergeRecord) -> MergeRecordResponse:
    return MergeRecordResponse(
        id=r.id,
        group_id=r.group_id,
        contact_id=r.contact_id,
        primary_external_id=r.primary_external_id,
        secondary_external_id=r.secondary_external_id,
        merge_status=r.merge_status,
        error=r.error,
        merged_at=r.merged_at.isoformat() if r.merged_at else None,
    )


def _removal_to_response(m: RemovalMark) -> RemovalMarkResponse:
    return RemovalMarkResponse(
        id=m.id,
        run_id=m.run_id,
        contact_id=m.contact_id,
        group_id=m.group_id,
        status=m.status,
        error=m.error,
        created_at=m.created_at.isoformat() if m.created_at else None,
        removed_at=m.removed_at.isoformat() if m.removed_at else None,
    )


# ── Merge History Endpoints ──────────────────────────────────────────────────


@router.get("/history", response_model=list[MergeRecordResponse])
async def merge_history(
    request: Request,
    group_id: int | None = None,
    merge_status: MergeStatus | None = None,
    tenant: TenantContext = Depends(get_tenant),
) -> list[MergeRecordResponse]:
    """Per-secondary merge outcomes of the latest run, oldest first."""
    repo = _get_repository(request)
    run = await repo.get_latest_run(tenant.tenant_id)
    if run is None:
        raise NoActiveRun(f"Tenant {tenant.tenant_id} has no dedupe run")

    records = await repo.list_merge_records(
        tenant.tenant_id, group_id=group_id, run_id=run.id, merge_status=merge_status
    )
    return [_record_to_response(r) for r in records]


# ── Removal Mark Endpoints ───────────────────────────────────────────────────


@router.get("/removals", response_model=list[RemovalMarkResponse])
async def list_removals(
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> list[RemovalMarkResponse]:
    removals = _get_removals(request)
    marks = await removals.list_marks(tenant.tenant_id)
    return [_removal_to_response(m) for m in marks]


@router.post(
    "/removals",
    response_model=RemovalMarkResponse,
    status_code=status.HTTP_201_CREATED,
)
async def mark_for_removal(
    body: RemovalRequest,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> RemovalMarkResponse:
    """Mark a contact to be deleted from the CRM when the run finalizes."""
    removals = _get_removals(request)
    mark = await removals.mark(tenant.tenant_id, body.contact_id, body.group_id)
    return _removal_to_response(mark)


@router.delete("/removals/{removal_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unmark_removal(
    removal_id: int,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> None:
    removals = _get_removals(request)
    await removals.unmark(tenant.tenant_id, removal_id)


# ── Group Endpoints ──────────────────────────────────────────────────────────


@router.get("", response_model=GroupPageResponse)
async def list_groups(
    request: Request,
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    include_merged: bool = True,
    tenant: TenantContext = Depends(get_tenant),
) -> GroupPageResponse:
    """Page through the latest run's duplicate groups (1-based pages)."""
    settings = get_settings()
    size = page_size or settings.DEFAULT_PAGE_SIZE
    if size > settings.MAX_PAGE_SIZE:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"page_size must be at most {settings.MAX_PAGE_SIZE}",
        )

    repo = _get_repository(request)
    run = await repo.get_latest_run(tenant.tenant_id)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No dedupe run found for tenant",
        )

    result = await repo.list_groups(
        tenant.tenant_id, run.id, page, size, include_merged=include_merged
    )
    return GroupPageResponse(
        groups=[_group_to_response(g) for g in result.groups],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
    )


@router.get("/{group_id}", response_model=GroupResponse)
async def get_group(
    group_id: int,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> GroupResponse:
    group = await _load_group(request, tenant.tenant_id, group_id)
    return _group_to_response(group)


@router.get("/{group_id}/field-options", response_model=FieldOptions)
async def get_field_options(
    group_id: int,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> FieldOptions:
    """Distinct candidate values per field for the reviewer to choose from."""
    group = await _load_group(request, tenant.tenant_id, group_id)
    return field_options(group)


# ── Merge Endpoints ──────────────────────────────────────────────────────────


@router.post("/{group_id}/merge", response_model=MergeResult)
async def merge_group(
    group_id: int,
    body: MergeRequest,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
    crm: CRMAdapter = Depends(get_crm_adapter),
) -> MergeResult:
    """Merge a group applying the reviewer's field selections to the primary."""
    resolver = _get_resolver(request)
    return await resolver.resolve_merge(
        tenant.tenant_id, group_id, body.primary_contact_id, body.field_selections, crm
    )


@router.post("/{group_id}/direct-merge", response_model=MergeResult)
async def direct_merge_group(
    group_id: int,
    body: DirectMergeRequest,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
    crm: CRMAdapter = Depends(get_crm_adapter),
) -> MergeResult:
    """Merge a group keeping the primary's current field values."""
    resolver = _get_resolver(request)
    return await resolver.direct_merge(
        tenant.tenant_id, group_id, body.primary_contact_id, crm
    )


@router.post("/{group_id}/retry", response_model=MergeResult)
async def retry_group(
    group_id: int,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
    crm: CRMAdapter = Depends(get_crm_adapter),
) -> MergeResult:
    """Re-attempt the failed secondaries of a merged group."""
    resolver = _get_resolver(request)
    return await resolver.retry_failed_secondaries(tenant.tenant_id, group_id, crm)

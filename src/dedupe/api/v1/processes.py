"""REST API endpoints for dedupe runs and status polling.

Clients start a run, then poll GET /processes/latest (every few seconds)
until it reaches ``manually merge``, review groups, and finally poll again
until the run is ``finished`` and carries an export link.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from src.dedupe.api.deps import get_crm_adapter, get_tenant
from src.dedupe.core.tenant import TenantContext
from src.dedupe.duplicates.crm import CRMAdapter
from src.dedupe.duplicates.schemas import ProcessStatus

router = APIRouter(prefix="/processes", tags=["processes"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class StartProcessRequest(BaseModel):
    """Request body for starting a dedupe run."""

    name: str = Field(min_length=1, max_length=255)
    filters: list[str] | None = None


class ProcessResponse(BaseModel):
    """Poll view of one run; datetimes serialized to ISO strings."""

    id: str
    name: str
    process_name: str
    status: str = ""
    count: int = 0
    export_link: str | None = None
    filters: list[str] = Field(default_factory=list)
    is_latest: bool = True
    created_at: str | None = None
    updated_at: str | None = None


# ── Dependency Injection Helper ──────────────────────────────────────────────


def _get_runner(request: Request) -> Any:
    """Retrieve ProcessRunner from app.state, 503 if not available."""
    runner = getattr(request.app.state, "process_runner", None)
    if runner is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Dedupe process runner not initialized",
        )
    return runner


def _process_to_response(run: ProcessStatus) -> ProcessResponse:
    return ProcessResponse(
        id=run.id,
        name=run.name,
        process_name=run.process_name.value,
        status=run.status,
        count=run.count,
        export_link=run.export_link,
        filters=run.filters,
        is_latest=run.is_latest,
        created_at=run.created_at.isoformat() if run.created_at else None,
        updated_at=run.updated_at.isoformat() if run.updated_at else None,
    )


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("", response_model=ProcessResponse, status_code=202)
async def start_process(
    body: StartProcessRequest,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
    crm: CRMAdapter = Depends(get_crm_adapter),
) -> ProcessResponse:
    """Start a new run; fetching continues in the background."""
    runner = _get_runner(request)
    run = await runner.start_run(tenant.tenant_id, body.name, body.filters, crm)
    return _process_to_response(run)


@router.get("/latest", response_model=ProcessResponse)
async def get_latest_process(
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> ProcessResponse:
    """Poll the tenant's latest run."""
    runner = _get_runner(request)
    run = await runner.get_latest_status(tenant.tenant_id)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No dedupe run found for tenant",
        )
    return _process_to_response(run)


@router.get("", response_model=list[ProcessResponse])
async def list_processes(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    tenant: TenantContext = Depends(get_tenant),
) -> list[ProcessResponse]:
    """Run history, newest first."""
    runner = _get_runner(request)
    runs = await runner.list_runs(tenant.tenant_id, limit=limit)
    return [_process_to_response(r) for r in runs]


@router.post("/latest/finish", response_model=ProcessResponse, status_code=202)
async def finish_process(
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
    crm: CRMAdapter = Depends(get_crm_adapter),
) -> ProcessResponse:
    """Stop reviewing and finalize the run in the background."""
    runner = _get_runner(request)
    run = await runner.finish_process(tenant.tenant_id, crm)
    return _process_to_response(run)


@router.post("/latest/resume", response_model=ProcessResponse, status_code=202)
async def resume_process(
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
    crm: CRMAdapter = Depends(get_crm_adapter),
) -> ProcessResponse:
    """Resume an ``exceed`` run after a plan upgrade."""
    runner = _get_runner(request)
    run = await runner.resume_run(tenant.tenant_id, crm)
    return _process_to_response(run)

"""REST API endpoints for plan quota checks and plan provisioning.

POST /plans is the hook a billing integration calls after payment capture
(which is out of scope here) to upgrade a tenant or report a payment
status change.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from src.dedupe.api.deps import get_tenant
from src.dedupe.core.tenant import TenantContext
from src.dedupe.duplicates.schemas import BillingType, Plan, PlanType, QuotaDecision

router = APIRouter(prefix="/plans", tags=["plans"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class QuotaCheckRequest(BaseModel):
    """Contact count to check; defaults to the latest run's count."""

    contact_count: int | None = Field(default=None, ge=0)


class QuotaCheckResponse(BaseModel):
    allowed: bool
    outcome: str
    reason: str = ""


class ProvisionPlanRequest(BaseModel):
    """Request body for provisioning or changing a tenant's plan."""

    plan_type: PlanType
    billing_type: BillingType | None = None
    contact_limit: int | None = Field(default=None, ge=1)
    payment_status: str | None = None


class PlanResponse(BaseModel):
    tenant_id: str
    plan_type: str
    contact_count: int = 0
    contact_limit: int | None = None
    merge_groups_used: int = 0
    payment_status: str
    billing_type: str | None = None
    activation_date: str | None = None
    billing_end_date: str | None = None


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_quota_gate(request: Request) -> Any:
    """Retrieve QuotaGate from app.state, 503 if not available."""
    gate = getattr(request.app.state, "quota_gate", None)
    if gate is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Quota gate not initialized",
        )
    return gate


def _get_provisioner(request: Request) -> Any:
    """Retrieve PlanProvisioner from app.state, 503 if not available."""
    provisioner = getattr(request.app.state, "plan_provisioner", None)
    if provisioner is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Plan provisioning not initialized",
        )
    return provisioner


def _plan_to_response(plan: Plan) -> PlanResponse:
    return PlanResponse(
        tenant_id=plan.tenant_id,
        plan_type=plan.plan_type.value,
        contact_count=plan.contact_count,
        contact_limit=plan.contact_limit,
        merge_groups_used=plan.merge_groups_used,
        payment_status=plan.payment_status,
        billing_type=plan.billing_type.value if plan.billing_type else None,
        activation_date=plan.activation_date.isoformat() if plan.activation_date else None,
        billing_end_date=(
            plan.billing_end_date.isoformat() if plan.billing_end_date else None
        ),
    )


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/check", response_model=QuotaCheckResponse)
async def check_quota(
    body: QuotaCheckRequest,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> QuotaCheckResponse:
    """Ask the quota gate whether the tenant may proceed."""
    gate = _get_quota_gate(request)
    contact_count = body.contact_count
    if contact_count is None:
        runner = getattr(request.app.state, "process_runner", None)
        run = await runner.get_latest_status(tenant.tenant_id) if runner else None
        contact_count = run.count if run is not None else 0

    decision: QuotaDecision = await gate.check(tenant.tenant_id, contact_count)
    return QuotaCheckResponse(
        allowed=decision.allowed,
        outcome=decision.outcome.value,
        reason=decision.reason,
    )


@router.get("/current", response_model=PlanResponse)
async def get_current_plan(
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> PlanResponse:
    provisioner = _get_provisioner(request)
    plan = await provisioner.get_plan(tenant.tenant_id)
    if plan is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No plan provisioned for tenant",
        )
    return _plan_to_response(plan)


@router.post("", response_model=PlanResponse)
async def provision_plan(
    body: ProvisionPlanRequest,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> PlanResponse:
    """Create the tenant's plan, or change type, limit, billing or payment status."""
    provisioner = _get_provisioner(request)

    plan = await provisioner.get_plan(tenant.tenant_id)
    if plan is None:
        plan = await provisioner.create_plan(
            tenant.tenant_id,
            body.plan_type,
            contact_count=0,
            billing_type=body.billing_type,
            contact_limit=body.contact_limit,
        )
        if body.payment_status is not None and body.payment_status != plan.payment_status:
            plan = await provisioner.update_plan(
                tenant.tenant_id, payment_status=body.payment_status
            )
    else:
        changes: dict[str, Any] = {
            "plan_type": body.plan_type,
            "billing_type": body.billing_type,
            "contact_limit": body.contact_limit if body.plan_type == PlanType.PAID else None,
        }
        if body.payment_status is not None:
            changes["payment_status"] = body.payment_status
        plan = await provisioner.update_plan(tenant.tenant_id, **changes)

    if plan is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No plan provisioned for tenant",
        )
    return _plan_to_response(plan)

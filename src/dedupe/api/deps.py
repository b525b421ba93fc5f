"""FastAPI dependency injection for tenant-scoped resources.

These dependencies are used in endpoint function signatures to inject the
current tenant context and the CRM adapter the request acts through.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.dedupe.config import get_settings
from src.dedupe.core.tenant import TenantContext, get_current_tenant
from src.dedupe.duplicates.crm import CRMAdapter, HubSpotAdapter

CRM_TOKEN_HEADER = "X-CRM-Token"


async def get_tenant() -> TenantContext:
    """Get the current tenant context (set by TenantMiddleware)."""
    return get_current_tenant()


async def get_crm_adapter(request: Request) -> CRMAdapter:
    """Build a HubSpot adapter for the caller's CRM connection.

    The tenant's access token comes from the X-CRM-Token header; the
    configured HUBSPOT_ACCESS_TOKEN is used for single-portal deployments.

    Raises:
        HTTPException(401): If no CRM access token is available.
    """
    settings = get_settings()
    token = request.headers.get(CRM_TOKEN_HEADER) or settings.HUBSPOT_ACCESS_TOKEN
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing CRM credentials. Provide the {CRM_TOKEN_HEADER} header.",
        )
    return HubSpotAdapter(
        access_token=token,
        base_url=settings.HUBSPOT_BASE_URL,
        page_size=settings.HUBSPOT_PAGE_SIZE,
        timeout=settings.CRM_CALL_TIMEOUT_SECONDS,
        max_retries=settings.CRM_MAX_RETRIES,
    )

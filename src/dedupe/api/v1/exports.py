"""Download endpoint for finished runs' CSV exports."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import FileResponse

from src.dedupe.api.deps import get_tenant
from src.dedupe.core.tenant import TenantContext

router = APIRouter(prefix="/exports", tags=["exports"])


def _get_exporter(request: Request) -> Any:
    """Retrieve ContactExporter from app.state, 503 if not available."""
    exporter = getattr(request.app.state, "contact_exporter", None)
    if exporter is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Contact exports not initialized",
        )
    return exporter


@router.get("/{filename}")
async def download_export(
    filename: str,
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> FileResponse:
    """Serve one of the tenant's own export files."""
    exporter = _get_exporter(request)
    path = exporter.resolve(tenant.tenant_id, filename)
    if path is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Export not found",
        )
    return FileResponse(path, media_type="text/csv", filename=filename)

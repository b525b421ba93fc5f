"""Tenant resolution middleware.

Resolves the tenant from the X-Tenant-ID header and sets TenantContext in
contextvars for the request scope. Infrastructure paths skip resolution.
"""

from __future__ import annotations

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.dedupe.core.tenant import TenantContext, reset_tenant_context, set_tenant_context

TENANT_HEADER = "X-Tenant-ID"

SKIP_TENANT_PATHS: tuple[str, ...] = (
    "/health",
    "/metrics",
    "/docs",
    "/redoc",
    "/openapi.json",
)


class TenantMiddleware(BaseHTTPMiddleware):
    """Middleware that resolves the tenant from the X-Tenant-ID header.

    Requests outside SKIP_TENANT_PATHS without the header are rejected with
    400 before reaching a route.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if any(path.startswith(skip) for skip in SKIP_TENANT_PATHS):
            return await call_next(request)

        tenant_id = (request.headers.get(TENANT_HEADER) or "").strip()
        if not tenant_id:
            return JSONResponse(
                status_code=400,
                content={"detail": f"Missing tenant context. Provide the {TENANT_HEADER} header."},
            )

        token = set_tenant_context(TenantContext(tenant_id=tenant_id))
        try:
            return await call_next(request)
        finally:
            reset_tenant_context(token)

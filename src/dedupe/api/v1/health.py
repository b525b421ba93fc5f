"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Readiness
verifies database connectivity and that the dedupe workflow finished wiring
during startup.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.dedupe.config import get_settings
from src.dedupe.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database connectivity and workflow wiring. Returns check results dict."""
    checks: dict = {"database": "ok", "workflow": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    if getattr(request.app.state, "process_runner", None) is None:
        checks["workflow"] = "not_initialized"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 if every check passes, 503 otherwise."""
    checks = await _check_dependencies(request)
    all_healthy = checks["database"] == "ok" and checks["workflow"] == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )

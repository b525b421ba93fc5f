"""Prometheus metrics, Sentry integration and CRM call tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- process_transitions_total, merges_total, background_runs: workflow metrics
- track_crm_call(): Context manager for CRM call metrics
- init_sentry(): Sentry with tenant tags and CRM credentials scrubbed
- get_metrics_response(): Body for the /metrics route
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.dedupe.core.tenant import get_current_tenant

_SECRET_HEADERS = frozenset({"authorization", "x-crm-token"})

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code", "tenant_id"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "tenant_id"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Workflow Metrics ─────────────────────────────────────────────────────────

process_transitions_total = Counter(
    "dedupe_process_transitions_total",
    "Process state machine transitions",
    ["to_state"],
)

merges_total = Counter(
    "dedupe_merges_total",
    "Group merges by outcome",
    ["outcome"],
)

contact_removals_total = Counter(
    "dedupe_contact_removals_total",
    "Marked contacts handled by the finalization sweep",
    ["outcome"],
)

background_runs = Gauge(
    "dedupe_background_runs",
    "Run stages currently executing as background tasks",
)

# ── CRM Metrics ──────────────────────────────────────────────────────────────

crm_calls_total = Counter(
    "dedupe_crm_calls_total",
    "Total CRM API calls",
    ["operation", "status"],
)

crm_call_duration_seconds = Histogram(
    "dedupe_crm_call_duration_seconds",
    "CRM API call duration in seconds",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request count and latency per route template.

    Paths carrying ids (/api/v1/groups/42) are labelled by their template
    (/api/v1/groups/{group_id}) so every group shares one series. The
    /metrics scrape itself is not counted.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or "unmatched"
        # TenantMiddleware runs inside this one; the header is all we have
        tenant_id = request.headers.get("X-Tenant-ID") or "none"

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
            tenant_id=tenant_id,
        ).inc()
        http_request_duration_seconds.labels(
            method=request.method, endpoint=endpoint, tenant_id=tenant_id
        ).observe(elapsed)
        return response


# ── CRM Metrics Helper ──────────────────────────────────────────────────────


@asynccontextmanager
async def track_crm_call(operation: str) -> AsyncGenerator[None, None]:
    """Record duration and success/error count for one CRM call.

    Usage:
        async with track_crm_call("update_contact"):
            response = await client.patch(...)
    """
    start_time = time.perf_counter()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        crm_calls_total.labels(operation=operation, status=status).inc()
        crm_call_duration_seconds.labels(operation=operation).observe(
            time.perf_counter() - start_time
        )


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with tenant-aware event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Tag the tenant and strip CRM credentials from captured requests."""
        headers = (event.get("request") or {}).get("headers")
        if isinstance(headers, dict):
            for name in list(headers):
                if name.lower() in _SECRET_HEADERS:
                    headers[name] = "[redacted]"
        try:
            event.setdefault("tags", {})["tenant_id"] = get_current_tenant().tenant_id
        except RuntimeError:
            pass
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )

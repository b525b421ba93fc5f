"""Structured logging setup and per-request access log.

configure_structlog() installs the processor chain once at startup: JSON
lines in production, coloured console output elsewhere. Any event key that
looks like a CRM credential is masked before rendering.

LoggingMiddleware emits one ``request_completed`` event per request with
method, path, status, duration and tenant, and binds a request id into
structlog's contextvars so workflow logs emitted while handling the request
carry it too. Health checks and metric scrapes log at debug level.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.dedupe.config import Environment, get_settings

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_QUIET_PATHS = ("/health", "/metrics")
_SECRET_KEYS = frozenset({"access_token", "token", "crm_token", "authorization"})


def _mask_secrets(_logger: Any, _method: str, event_dict: dict) -> dict:
    for key in _SECRET_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def configure_structlog() -> None:
    """Configure structlog and the stdlib root logger from settings."""
    settings = get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.ENVIRONMENT == Environment.production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _mask_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class LoggingMiddleware(BaseHTTPMiddleware):
    """Access log with request id propagation."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        path = request.url.path
        fields = {
            "method": request.method,
            "path": path,
            "tenant_id": request.headers.get("X-Tenant-ID"),
            "request_id": request_id,
        }

        structlog.contextvars.bind_contextvars(request_id=request_id)
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "request_error",
                status_code=500,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
                **fields,
            )
            raise
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id

        if response.status_code >= 500:
            log_method = logger.error
        elif response.status_code >= 400:
            log_method = logger.warning
        elif path.startswith(_QUIET_PATHS):
            log_method = logger.debug
        else:
            log_method = logger.info
        log_method(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
            **fields,
        )
        return response

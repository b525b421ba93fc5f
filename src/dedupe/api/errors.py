"""Exception handlers mapping the dedupe error hierarchy to HTTP responses."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.dedupe.duplicates.errors import DedupeError, UpstreamUpdateFailed

logger = structlog.get_logger(__name__)


async def dedupe_error_handler(request: Request, exc: DedupeError) -> JSONResponse:
    """Answer with the error's status code and a ``{detail, error}`` body.

    A failed primary update also carries its MergeResult (``success: false``
    with the update outcome), merged into the same body.
    """
    log_method = logger.error if exc.status_code >= 500 else logger.info
    log_method(
        "api.dedupe_error",
        path=request.url.path,
        error=type(exc).__name__,
        status_code=exc.status_code,
        detail=exc.message,
    )
    content: dict[str, Any] = {}
    if isinstance(exc, UpstreamUpdateFailed) and exc.result is not None:
        content.update(exc.result.model_dump(mode="json"))
    content.update(detail=exc.message, error=type(exc).__name__)
    return JSONResponse(status_code=exc.status_code, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DedupeError, dedupe_error_handler)

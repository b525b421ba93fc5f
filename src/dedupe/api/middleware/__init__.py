"""API middleware package."""

from src.dedupe.api.middleware.logging import LoggingMiddleware
from src.dedupe.api.middleware.tenant import TenantMiddleware

__all__ = ["LoggingMiddleware", "TenantMiddleware"]

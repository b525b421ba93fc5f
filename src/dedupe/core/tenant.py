"""Tenant context propagation via Python contextvars.

The TenantContext is set by TenantMiddleware at the start of each request
and is readable anywhere in the call stack via get_current_tenant(). Logs,
metrics and Sentry events pick the tenant up from here; repositories take
the tenant id explicitly as their first argument.
"""

from __future__ import annotations

import contextvars
from dataclasses import dataclass

# ── Tenant Context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TenantContext:
    """Immutable tenant context for the current request."""

    tenant_id: str


_tenant_context: contextvars.ContextVar[TenantContext] = contextvars.ContextVar("tenant_context")


def get_current_tenant() -> TenantContext:
    """Get the tenant context for the current request.

    Raises RuntimeError if no tenant context has been set (i.e., the call
    is not within a tenant-scoped request).
    """
    try:
        return _tenant_context.get()
    except LookupError:
        raise RuntimeError("No tenant context set -- request is not tenant-scoped")


def set_tenant_context(ctx: TenantContext) -> contextvars.Token[TenantContext]:
    """Set the tenant context for the current request. Returns a token for reset."""
    return _tenant_context.set(ctx)


def reset_tenant_context(token: contextvars.Token[TenantContext]) -> None:
    """Restore the tenant context that was active before set_tenant_context()."""
    _tenant_context.reset(token)

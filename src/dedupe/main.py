"""FastAPI application factory.

Creates the app with tenant middleware, logging middleware, metrics middleware,
CORS, Sentry, lifespan events for database initialization and dedupe workflow
wiring, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.dedupe.api.errors import register_exception_handlers
from src.dedupe.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.dedupe.api.middleware.tenant import TenantMiddleware
from src.dedupe.api.v1 import health
from src.dedupe.api.v1.router import router as v1_router
from src.dedupe.config import get_settings
from src.dedupe.core.database import close_db, get_session, init_db
from src.dedupe.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and the dedupe workflow; tear down on shutdown."""
    import structlog

    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Dedupe Workflow Initialization ───────────────────────────────────
    # Any failure leaves every workflow service as None so the routes
    # answer 503 instead of the app failing to start.

    try:
        from src.dedupe.duplicates.exports import ContactExporter
        from src.dedupe.duplicates.provisioning import RepositoryPlanProvisioner
        from src.dedupe.duplicates.quota import QuotaGate
        from src.dedupe.duplicates.removals import RemovalQueue
        from src.dedupe.duplicates.repository import DedupeRepository
        from src.dedupe.duplicates.resolver import MergeResolver
        from src.dedupe.duplicates.runner import ProcessRunner

        repository = DedupeRepository(session_factory=get_session)
        provisioner = RepositoryPlanProvisioner(repository)
        quota_gate = QuotaGate(
            repository,
            provisioner,
            free_contact_limit=settings.FREE_CONTACT_LIMIT,
            free_merge_group_limit=settings.FREE_MERGE_GROUP_LIMIT,
        )
        resolver = MergeResolver(
            repository,
            quota_gate,
            call_timeout=settings.CRM_CALL_TIMEOUT_SECONDS,
        )
        exporter = ContactExporter(settings.EXPORT_DIR)
        removals = RemovalQueue(repository, call_timeout=settings.CRM_CALL_TIMEOUT_SECONDS)
        runner = ProcessRunner(
            repository,
            quota_gate,
            resolver,
            exporter,
            removals,
            default_filters=settings.DEFAULT_DUPLICATE_FILTERS,
            call_timeout=settings.CRM_CALL_TIMEOUT_SECONDS,
        )
        # Merges auto-advance the run once its last group is merged
        resolver.subscribe(runner.on_group_merged)

        app.state.dedupe_repository = repository
        app.state.plan_provisioner = provisioner
        app.state.quota_gate = quota_gate
        app.state.merge_resolver = resolver
        app.state.contact_exporter = exporter
        app.state.removal_queue = removals
        app.state.process_runner = runner
        log.info(
            "dedupe.workflow_initialized",
            export_dir=str(exporter.export_dir),
            default_filters=settings.DEFAULT_DUPLICATE_FILTERS,
        )
    except Exception:
        log.warning("dedupe.workflow_init_failed", exc_info=True)
        app.state.dedupe_repository = None
        app.state.plan_provisioner = None
        app.state.quota_gate = None
        app.state.merge_resolver = None
        app.state.contact_exporter = None
        app.state.removal_queue = None
        app.state.process_runner = None

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    runner = getattr(app.state, "process_runner", None)
    if runner is not None:
        await runner.shutdown()
        log.info("dedupe.runner_stopped")

    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Contact Dedupe API",
        version="0.1.0",
        description="Multi-tenant CRM contact deduplication and merge workflow",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Tenant middleware (inner -- resolves tenant context from X-Tenant-ID)
    app.add_middleware(TenantMiddleware)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()

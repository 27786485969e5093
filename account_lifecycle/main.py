"""FastAPI application wiring for the account lifecycle service."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .api.admin import router as admin_router
from .api.routes import router as v1_router
from .config import get_settings
from .domain.reconciliation import ReconciliationJob
from .domain.service import AccountLifecycleService
from .jobs.run_lock import build_run_lock
from .jobs.scheduler import ReconciliationScheduler
from .repository import AccountRepository, build_pool

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, services, scheduler) for the app lifecycle.

    The daily schedule belongs to ``account-lifecycle worker``; API processes
    only schedule when ``RECONCILIATION_ENABLED`` is set. Startup fails when a
    Redis run lock is configured but unreachable.
    """
    pool = build_pool(settings)
    pool.open()
    repository = AccountRepository(pool)
    scheduler = ReconciliationScheduler(
        ReconciliationJob(repository, grace_period=settings.grace_period),
        build_run_lock(settings.run_lock_backend, settings.redis_url, settings.run_lock_ttl_seconds),
        run_at=settings.reconciliation_run_at,
    )
    app.state.pool = pool
    app.state.lifecycle_service = AccountLifecycleService(repository)
    app.state.reconciliation_scheduler = scheduler
    if settings.reconciliation_enabled:
        scheduler.start()
    try:
        yield
    finally:
        scheduler.stop()
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)
app.include_router(admin_router)

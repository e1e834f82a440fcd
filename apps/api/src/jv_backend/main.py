"""
JV Overseas API - Main Application Entry Point

This module builds and configures the FastAPI application including:
- Origin admission, request quotas, JSON payload limit and the error envelope
- Database and mail transport initialization
- Background job scheduler (attendance integrity, self-ping)
- API routing, health check and status page
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse
from fastapi.staticfiles import StaticFiles

from jv_backend.api import build_api_router
from jv_backend.core.body_limit import MAX_JSON_BODY_BYTES, BodySizeLimitMiddleware
from jv_backend.core.config import Settings, get_settings
from jv_backend.core.cors import OriginAdmissionMiddleware, OriginPolicy
from jv_backend.core.database import close_db, init_db
from jv_backend.core.email import close_mail_transport, init_mail_transport
from jv_backend.core.errors import ErrorEnvelopeMiddleware, register_error_handlers
from jv_backend.core.observability import setup_logging
from jv_backend.core.rate_limit import FixedWindowStore, QuotaMiddleware
from jv_backend.core.scheduler import (
    clear_registry,
    list_registered_jobs,
    start_scheduler,
    stop_scheduler,
    trigger_job_manually,
)
from jv_backend.core.self_ping import register_self_ping_job
from jv_backend.modules.attendance import register_attendance_jobs, run_boot_finalization

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup: logging, database, mail transport, background jobs.
    Shutdown: scheduler, mail transport, database.
    """
    settings: Settings = app.state.settings
    setup_logging(settings)
    logger.info(f"Starting {settings.company_name} API in {settings.node_env} mode...")

    try:
        await init_db()
        logger.info("[OK] Database connected")
    except Exception as e:
        logger.error(f"[FAIL] Database connection failed: {e}")
        if settings.is_production:
            raise

    if settings.is_production and not (settings.brevo_configured or settings.gmail_configured):
        logger.warning("No SMTP credentials configured. Email delivery is disabled.")

    logger.info("[SYSTEM] Initializing Email Service...")
    if await init_mail_transport():
        logger.info("[OK] Email Service Ready")
    else:
        logger.warning("Email Service Failed to Initialize. Server will continue without email.")

    logger.info("[SYSTEM] Initializing background check for Attendance Integrity...")
    register_attendance_jobs()
    if settings.is_production:
        register_self_ping_job()
    else:
        logger.info("[SELF-PING] Skipped (non-production environment).")

    await start_scheduler()

    boot_task: asyncio.Task | None = None
    if settings.is_development:
        boot_task = asyncio.create_task(run_boot_finalization())

    logger.info(f"Backend Server Running on Port {settings.port}")
    logger.info(f"Health Check: http://localhost:{settings.port}/api/health")

    yield

    logger.info(f"Shutting down {settings.company_name} API...")

    if boot_task is not None and not boot_task.done():
        boot_task.cancel()

    await stop_scheduler()
    clear_registry()
    await close_mail_transport()
    await close_db()
    logger.info("[OK] Cleanup complete")


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Build the application.

    Middleware order, outermost first:
    origin admission -> payload limit -> quotas -> error envelope -> routes

    Args:
        settings: Settings to build from, defaults to the process settings
    """
    settings = settings or get_settings()
    expose_details = settings.is_development

    app = FastAPI(
        title=f"{settings.company_name} API",
        description=f"{settings.company_name} CRM, LMS and student portal backend",
        version=API_VERSION,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.started_at = time.monotonic()
    app.state.quota_store = FixedWindowStore()

    register_error_handlers(app, expose_details)
    app.include_router(build_api_router())

    @app.get("/api/health", tags=["Health"])
    async def health_check() -> dict:
        """Liveness probe. Unauthenticated."""
        return {
            "status": "ok",
            "timestamp": datetime.now(UTC).isoformat(),
            "uptime": time.monotonic() - app.state.started_at,
            "env": settings.node_env,
        }

    @app.get("/", tags=["Root"], response_class=HTMLResponse)
    async def root() -> str:
        return f"<h1>{settings.company_name} API Status: Running</h1>"

    if settings.is_development:
        _add_debug_routes(app)

    uploads_dir = Path(settings.uploads_dir)
    uploads_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=uploads_dir), name="uploads")

    # add_middleware prepends: the last one added runs first
    app.add_middleware(ErrorEnvelopeMiddleware, expose_details=expose_details)
    app.add_middleware(QuotaMiddleware, store=app.state.quota_store)
    app.add_middleware(
        BodySizeLimitMiddleware,
        max_body_size=MAX_JSON_BODY_BYTES,
        expose_details=expose_details,
    )
    app.add_middleware(OriginAdmissionMiddleware, policy=OriginPolicy.from_settings(settings))

    return app


# ============================================
# Background Job Debug Endpoints
# ============================================
# Development only. In production, jobs run on their schedule.


def _add_debug_routes(app: FastAPI) -> None:
    @app.get("/debug/jobs", tags=["Debug"])
    async def list_jobs():
        """List all registered background jobs and their next run time."""
        return {"jobs": list_registered_jobs()}

    @app.post("/debug/jobs/{job_id}/trigger", tags=["Debug"])
    async def trigger_job(job_id: str):
        """
        Run a background job immediately, bypassing its schedule.

        Raises:
            HTTPException 400: If job_id is not registered.
        """
        try:
            return await trigger_job_manually(job_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e


app = create_app()


def run() -> None:
    """Console entry point: serve on 0.0.0.0:PORT."""
    settings = get_settings()
    uvicorn.run(
        "jv_backend.main:app",
        host="0.0.0.0",
        port=settings.port,
        access_log=settings.is_development,
        log_config=None,
    )


if __name__ == "__main__":
    run()

"""CardioRehab API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from src.config import Settings, get_settings
from src.dependencies import get_repositories
from src.rehab.config_loader import get_pipeline_config
from src.rehab.providers import get_provider
from src.rehab.push import PartnerPushClient
from src.rehab.sync.historical_sync import HistoricalSyncJob
from src.rehab.sync.orchestrator import SessionOrchestrator
from src.rehab.sync.workers import (
    SessionWorkers,
    TaskDispatcher,
    WorkerScheduler,
    build_worker_scheduler,
)
from src.routers import credentials, health, sessions
from src.services.database import apply_schema, close_pool, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("cardiorehab")


# ---------- Background workers ----------

def build_scheduler(settings: Settings) -> tuple[WorkerScheduler, TaskDispatcher]:
    """Wire the orchestrator, drivers and historical sync over Postgres."""
    config = get_pipeline_config()
    repos = get_repositories()
    provider = get_provider(settings.telemetry_source)(
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        timeout=settings.telemetry_timeout_seconds,
    )
    push_client = (
        PartnerPushClient(settings.partner_api_base_url, timeout=settings.push_timeout_seconds)
        if settings.partner_api_base_url
        else None
    )
    if push_client is None:
        logger.warning("PARTNER_API_BASE_URL not set, partner pushes disabled")

    orchestrator = SessionOrchestrator(repos, provider, push_client, config=config)
    dispatcher = TaskDispatcher(max_concurrent=settings.max_concurrent_attempts)
    workers = SessionWorkers(repos, orchestrator, dispatcher, config=config)
    historical = HistoricalSyncJob(repos, provider, push_client, config=config)
    return build_worker_scheduler(workers, historical_sync=historical, config=config), dispatcher


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logging.getLogger("cardiorehab").setLevel(settings.log_level.upper())
    logger.info(
        "Starting %s API v%s [%s]",
        settings.app_name,
        settings.app_version,
        settings.environment,
    )
    await init_pool(settings)
    if settings.apply_schema_on_startup:
        await apply_schema()

    scheduler: WorkerScheduler | None = None
    dispatcher: TaskDispatcher | None = None
    app.state.worker_task = None
    if settings.workers_enabled:
        scheduler, dispatcher = build_scheduler(settings)
        app.state.worker_task = asyncio.create_task(scheduler.run(), name="worker-scheduler")

    yield

    if scheduler is not None:
        scheduler.stop()
        await app.state.worker_task
    if dispatcher is not None:
        await dispatcher.drain()
    await close_pool()
    logger.info("%s API shut down", settings.app_name)


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="CardioRehab API",
        description=(
            "Cardiac-rehabilitation session pipeline: heart-rate telemetry "
            "retrieval, gap imputation, clinical scoring and baselines."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Health check (outside v1 prefix — always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    app.include_router(sessions.router, prefix="/api/v1")
    app.include_router(credentials.router, prefix="/api/v1")

    return app


app = create_app()

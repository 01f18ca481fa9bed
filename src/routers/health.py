"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.config import get_settings
from src.services.database import get_pool

router = APIRouter(tags=["system"])
logger = logging.getLogger("cardiorehab.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Reports database connectivity and whether the background workers are
    running in this process.
    """
    settings = get_settings()
    db_ok = False
    try:
        pool = get_pool()
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        db_ok = True
    except Exception as exc:
        logger.warning("Health check DB probe failed: %s", exc)

    worker_task = getattr(request.app.state, "worker_task", None)
    if worker_task is None:
        workers = "disabled"
    elif worker_task.done():
        workers = "stopped"
    else:
        workers = "running"

    return {
        "status": "healthy" if db_ok and workers != "stopped" else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "workers": workers,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

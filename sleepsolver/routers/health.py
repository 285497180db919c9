"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from sleepsolver.dependencies import AppSettings, RecordStore

router = APIRouter(tags=["system"])
logger = logging.getLogger("sleepsolver.health")


@router.get("/health")
async def health_check(settings: AppSettings, store: RecordStore) -> dict:
    """Liveness check. Returns 200 if the API process is up.

    Also performs a lightweight store connectivity check.
    """
    db_ok = False
    try:
        db_ok = await store.ping()
    except Exception as exc:
        logger.warning("Health check store ping failed: %s", exc)

    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

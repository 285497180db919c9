"""SleepSolver API — FastAPI application entry point.

Run locally:
    uvicorn sleepsolver.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sleepsolver.config import Settings, get_settings
from sleepsolver.routers import health, sleep
from sleepsolver.services.postgres import PostgresStore, init_pool, init_schema
from sleepsolver.sleep.adapters import HealthBridgeProvider
from sleepsolver.sleep.config_loader import get_pipeline_config, reload_pipeline_config
from sleepsolver.sleep.store import InMemoryStore, Store
from sleepsolver.sleep.sync.coordinator import SyncCoordinator

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("sleepsolver")


async def build_store(settings: Settings) -> Store:
    """Postgres when a DSN is configured, otherwise an in-memory store."""
    if not settings.database_url:
        logger.warning("DATABASE_URL not set; records are kept in memory only")
        return InMemoryStore()
    pool = await init_pool(settings)
    await init_schema(pool)
    return PostgresStore(pool)


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting SleepSolver API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    if settings.pipeline_config_path:
        config = reload_pipeline_config(Path(settings.pipeline_config_path))
    else:
        config = get_pipeline_config()

    store = await build_store(settings)
    provider = HealthBridgeProvider(
        base_url=settings.health_bridge_url,
        token=settings.health_bridge_token,
        timeout=config.sync.fetch_timeout_seconds,
    )
    app.state.store = store
    app.state.coordinator = SyncCoordinator(provider, store, config)

    if settings.sync_on_startup:
        await app.state.coordinator.sync_on_app_launch()

    yield
    await store.close()
    logger.info("SleepSolver API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="SleepSolver API",
        description=(
            "Sleep-data reconciliation: canonical sleep periods, one session per "
            "night, sleep scores and recovery baselines."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside v1 prefix — always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(sleep.router, prefix=v1_prefix)

    return app


app = create_app()

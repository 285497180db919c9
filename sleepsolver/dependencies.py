"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from sleepsolver.config import Settings, get_settings
from sleepsolver.sleep.store import Store
from sleepsolver.sleep.sync.coordinator import SyncCoordinator


def get_coordinator(request: Request) -> SyncCoordinator:
    """Return the coordinator built by the application lifespan."""
    coordinator: SyncCoordinator | None = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Sync pipeline not initialized")
    return coordinator


def get_store(request: Request) -> Store:
    store: Store | None = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Store not initialized")
    return store


# Annotated shortcuts for route signatures
Coordinator = Annotated[SyncCoordinator, Depends(get_coordinator)]
RecordStore = Annotated[Store, Depends(get_store)]
AppSettings = Annotated[Settings, Depends(get_settings)]

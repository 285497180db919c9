"""Endpoints for triggering syncs and reading resolved sleep sessions."""

from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from sleepsolver.dependencies import Coordinator
from sleepsolver.models.sleep import (
    ActivityRead,
    AvailabilityRead,
    HabitMetricsRead,
    SleepSessionRead,
    SyncRequest,
    SyncRunRead,
    SyncStatusRead,
    SyncStepRead,
    WorkoutRead,
)
from sleepsolver.sleep.config_loader import get_pipeline_config
from sleepsolver.sleep.sync.coordinator import DataAvailability

router = APIRouter(tags=["sleep"])

_MAX_RANGE_DAYS = 366


# ---------- Sync ----------

@router.post("/sync", response_model=SyncRunRead)
async def trigger_sync(coordinator: Coordinator, body: SyncRequest | None = None) -> Any:
    body = body or SyncRequest()
    result = await coordinator.submit(mode=body.mode, priority=body.priority)
    return SyncRunRead(
        run_id=result.run_id,
        accepted=result.accepted,
        mode=result.mode,
        priority=result.priority,
        status=result.status,
        steps=[SyncStepRead(name=s.name, ok=s.ok, error=s.error) for s in result.steps],
        started_at=result.started_at,
        finished_at=result.finished_at,
    )


@router.get("/sync/status", response_model=SyncStatusRead)
async def sync_status(coordinator: Coordinator) -> Any:
    return await coordinator.state()


# ---------- Sessions ----------

@router.get("/sessions", response_model=list[SleepSessionRead])
async def list_sessions(
    coordinator: Coordinator,
    start: date = Query(...),
    end: date = Query(...),
) -> Any:
    if end < start:
        raise HTTPException(status_code=400, detail="end must not precede start")
    if (end - start).days > _MAX_RANGE_DAYS:
        raise HTTPException(status_code=400, detail=f"Range exceeds {_MAX_RANGE_DAYS} days")
    threshold = get_pipeline_config().recovery.status_threshold
    sessions = await coordinator.list_sessions(start, end)
    return [SleepSessionRead.from_session(s, threshold) for s in sessions]


@router.get("/sessions/{day}", response_model=SleepSessionRead)
async def get_session(day: date, coordinator: Coordinator) -> Any:
    session = await coordinator.get_session(day)
    if session is None:
        raise HTTPException(status_code=404, detail="No sleep session for this day")
    return SleepSessionRead.from_session(session, get_pipeline_config().recovery.status_threshold)


@router.get("/sessions/{day}/activity", response_model=ActivityRead)
async def get_activity(day: date, coordinator: Coordinator) -> Any:
    habits, workouts = await coordinator.get_activity(day)
    return ActivityRead(
        day=day,
        habits=HabitMetricsRead.model_validate(habits) if habits else None,
        workouts=[WorkoutRead.model_validate(w) for w in workouts],
    )


@router.get("/availability/{day}", response_model=AvailabilityRead)
async def availability(day: date, coordinator: Coordinator) -> Any:
    state = await coordinator.availability(day)
    return AvailabilityRead(
        day=day,
        availability=state.value,
        is_available=state is DataAvailability.AVAILABLE,
    )

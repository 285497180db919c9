"""Pydantic models for sync requests, sync status and sleep sessions."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import Field

from sleepsolver.models.base import SleepSolverBase
from sleepsolver.sleep.base import INSUFFICIENT_BASELINE_DATA, SleepSession, SyncMode, SyncPriority
from sleepsolver.sleep.recovery import RECOVERY_METRICS, status_for


# ---------- Sync ----------

class SyncRequest(SleepSolverBase):
    mode: SyncMode = SyncMode.INCREMENTAL
    priority: SyncPriority = SyncPriority.USER_INITIATED


class SyncStepRead(SleepSolverBase):
    name: str
    ok: bool
    error: str | None = None


class SyncRunRead(SleepSolverBase):
    run_id: str | None = None
    accepted: bool = True
    mode: SyncMode
    priority: SyncPriority
    status: str
    steps: list[SyncStepRead] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None


class SyncStatusRead(SleepSolverBase):
    is_syncing: bool
    progress: float = Field(ge=0, le=1)
    status: str
    last_sync_at: datetime | None = None
    in_flight: list[str] = Field(default_factory=list)


# ---------- Sessions ----------

class RecoveryMetricRead(SleepSolverBase):
    """One recovery metric; ``z_score`` and ``baseline`` are None when unknown."""

    name: str
    z_score: float | None = None
    baseline: float | None = None
    status: str = "insufficient_data"


class SleepSessionRead(SleepSolverBase):
    ownership_day: date
    start: datetime | None = None
    end: datetime | None = None
    time_in_bed: float = 0
    total_sleep: float = 0
    deep: float = 0
    rem: float = 0
    awake: float = 0
    sleep_score: float = Field(default=0, ge=0, le=100)
    average_heart_rate: float = 0
    average_hrv: float = 0
    average_spo2: float = 0
    average_respiratory_rate: float = 0
    wrist_temperature: float = 0
    is_finalized: bool = False
    recovery: list[RecoveryMetricRead] = Field(default_factory=list)

    @classmethod
    def from_session(cls, session: SleepSession, threshold: float = 1.5) -> SleepSessionRead:
        """Build the response model, masking recovery until the session is finalized."""
        z_scores = session.recovery_statuses()
        recovery = []
        for metric in RECOVERY_METRICS:
            z = z_scores[metric.status_field]
            baseline = getattr(session, metric.baseline_field) if session.is_finalized else None
            recovery.append(
                RecoveryMetricRead(
                    name=metric.name,
                    z_score=None if z == INSUFFICIENT_BASELINE_DATA else z,
                    baseline=None if baseline in (None, INSUFFICIENT_BASELINE_DATA) else baseline,
                    status=status_for(z, metric.higher_is_better, threshold),
                )
            )
        model = cls.model_validate(session)
        model.recovery = recovery
        return model


class AvailabilityRead(SleepSolverBase):
    day: date
    availability: str
    is_available: bool


# ---------- Activity ----------

class HabitMetricsRead(SleepSolverBase):
    day: date
    steps: float = 0
    exercise_minutes: float = 0
    daylight_minutes: float = 0


class WorkoutRead(SleepSolverBase):
    uuid: str
    start: datetime
    workout_type: str
    duration: float
    time_of_day: str = ""
    calories: float = 0
    distance: float = 0
    average_heart_rate: float = 0


class ActivityRead(SleepSolverBase):
    day: date
    habits: HabitMetricsRead | None = None
    workouts: list[WorkoutRead] = Field(default_factory=list)

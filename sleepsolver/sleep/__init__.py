"""SleepSolver sleep-data reconciliation pipeline.

Turns fragmented sleep-stage samples from a sensor-data provider into
canonical sleep periods, one authoritative session per ownership day, and
sleep and recovery scores.

Subpackages:
    adapters/ — Sample providers (HealthKit bridge)
    sync/     — Anchored paginated ingest and the SyncCoordinator

Core modules:
    base             — Records, enums and the SampleProvider ABC
    config_loader    — Load/validate/hot-reload pipeline_config.yaml
    identity         — Stable period identifiers
    store            — Transactional store interface and in-memory store
    grouper          — Sample filtering and gap-based grouping
    merger           — Period upsert, merge and deletion reconciliation
    session_resolver — Ownership day and one-session-per-day resolution
    sleep_score      — Composite 0–100 sleep score
    recovery         — 90-day baselines and recovery z-scores
"""

from sleepsolver.sleep.base import (
    DailyHabitMetrics,
    SampleProvider,
    SleepPeriod,
    SleepSession,
    SleepStage,
    StageSample,
    SyncCursor,
    Workout,
    WristTemperature,
)
from sleepsolver.sleep.config_loader import PipelineConfig, get_pipeline_config

__all__ = [
    "SampleProvider",
    "StageSample",
    "SleepPeriod",
    "SleepSession",
    "SleepStage",
    "SyncCursor",
    "WristTemperature",
    "DailyHabitMetrics",
    "Workout",
    "PipelineConfig",
    "get_pipeline_config",
]

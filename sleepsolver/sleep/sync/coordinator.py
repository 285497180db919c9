"""Sync coordinator: run the whole pipeline end to end.

Steps, in strict order:
    1. Sleep-stage ingest       (AnchoredSyncController + SleepStageHandler)
    2. Wrist temperature ingest (AnchoredSyncController + WristTemperatureHandler)
    3. Session resolution       (SessionResolver)
    4. Finalization             (averages, habit metrics and workouts,
                                 RecoveryBaselineEngine, SleepScoreCalculator)

A failing step is logged and recorded on the run result; the remaining
steps still run on whatever was committed.  Periods are committed before
any score is computed, and scores before a session is marked finalized.

Only one run per mode can be in flight; a duplicate request is dropped.
Runs of different modes queue behind each other.  Background runs are
skipped when the last successful run finished less than
``min_background_resync_seconds`` ago.

Progress, completion and cache-refresh events go to registered listeners::

    coordinator = SyncCoordinator(provider, store, config)
    coordinator.subscribe(lambda event: print(event.kind, event.progress))
    result = await coordinator.request_sync(priority=SyncPriority.USER_INITIATED)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable

from sleepsolver.sleep.base import (
    HEART_RATE,
    HEART_RATE_VARIABILITY,
    INSUFFICIENT_BASELINE_DATA,
    OXYGEN_SATURATION,
    RESPIRATORY_RATE,
    SLEEP_ANALYSIS,
    WRIST_TEMPERATURE,
    DailyHabitMetrics,
    HabitMetrics,
    SampleProvider,
    SleepPeriod,
    SleepSession,
    StageSample,
    SyncCursor,
    SyncMode,
    SyncPriority,
    Workout,
    WristTemperature,
    utc_now,
)
from sleepsolver.sleep.config_loader import PipelineConfig, get_pipeline_config
from sleepsolver.sleep.errors import AuthorizationDenied, NoDataAvailable, ProviderError, ProviderTimeout
from sleepsolver.sleep.recovery import RECOVERY_METRICS, RecoveryBaselineEngine
from sleepsolver.sleep.session_resolver import SessionResolver, day_start_utc
from sleepsolver.sleep.sleep_score import SleepScoreCalculator
from sleepsolver.sleep.store import Store, UnitOfWork
from sleepsolver.sleep.sync.anchored import (
    AnchoredSyncController,
    SleepStageHandler,
    WristTemperatureHandler,
)

logger = logging.getLogger("sleepsolver.sleep.sync.coordinator")

# Cursor-table key under which the last successful run time is kept
COORDINATOR_STREAM = "coordinator"

ONBOARDING_FAILED_STATUS = "Onboarding sync failed. Please try again."

# Session attribute ← provider metric, averaged over the primary period
_AVERAGED_METRICS: dict[str, str] = {
    "average_heart_rate": HEART_RATE,
    "average_hrv": HEART_RATE_VARIABILITY,
    "average_spo2": OXYGEN_SATURATION,
    "average_respiratory_rate": RESPIRATORY_RATE,
}

# Habit metrics and workouts are taken over this span before the ownership day
_ACTIVITY_WINDOW = timedelta(hours=24)


class SyncEventKind(str, Enum):
    PROGRESS = "progress"
    SYNC_COMPLETED = "sync_completed"
    REFRESH_CACHED_VIEWS = "refresh_cached_views"


class DataAvailability(str, Enum):
    UNKNOWN = "unknown"
    AVAILABLE = "available"
    MISSING = "missing"
    SYNCING = "syncing"


@dataclass
class SyncEvent:
    kind: SyncEventKind
    run_id: str
    progress: float
    status: str


Listener = Callable[[SyncEvent], "Awaitable[None] | None"]


@dataclass
class StepResult:
    """Outcome of one pipeline step.

    Attributes:
        name:   Step identifier.
        ok:     False if the step raised.
        error:  Error message when not ok.
        detail: Step-specific report (AnchoredSyncReport, ResolverReport, count).
    """

    name: str
    ok: bool = True
    error: str | None = None
    detail: Any = None


@dataclass
class SyncRunResult:
    """Result of one coordinator run.

    Attributes:
        run_id:      Unique id generated when the run was accepted, else None.
        mode:        Sync mode.
        priority:    Who asked for the run.
        steps:       Per-step results in execution order.
        status:      'success', 'partial', 'error' or 'cancelled'; for a skipped
                     request 'rate_limited' or 'already_running'.
        accepted:    False when the request was skipped without running.
        started_at:  UTC start.
        finished_at: UTC completion.
    """

    run_id: str | None
    mode: SyncMode
    priority: SyncPriority
    steps: list[StepResult] = field(default_factory=list)
    status: str = "success"
    accepted: bool = True
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None

    def step(self, name: str) -> StepResult | None:
        return next((s for s in self.steps if s.name == name), None)


@dataclass
class SyncState:
    """Point-in-time view of the coordinator for status endpoints."""

    is_syncing: bool
    progress: float
    status: str
    last_sync_at: datetime | None
    in_flight: list[str]


class SyncCoordinator:
    """Orchestrate ingest, resolution, scoring and finalization.

    Args:
        provider:   Sample provider.
        store:      Record store.
        config:     Pipeline config (defaults to the global one).
        controller: Anchored sync controller; built from provider/store if omitted.
        resolver:   Session resolver.
        scorer:     Sleep score calculator.
        recovery:   Recovery baseline engine.
        clock:      Returns the current UTC time.
    """

    def __init__(
        self,
        provider: SampleProvider,
        store: Store,
        config: PipelineConfig | None = None,
        controller: AnchoredSyncController | None = None,
        resolver: SessionResolver | None = None,
        scorer: SleepScoreCalculator | None = None,
        recovery: RecoveryBaselineEngine | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._provider = provider
        self._store = store
        self._config = config or get_pipeline_config()
        self._controller = controller or AnchoredSyncController(provider, store, self._config)
        self._sleep_handler = SleepStageHandler(self._config)
        self._temperature_handler = WristTemperatureHandler()
        self._resolver = resolver or SessionResolver(self._config)
        self._scorer = scorer or SleepScoreCalculator(self._config)
        self._recovery = recovery or RecoveryBaselineEngine(self._config)
        self._clock = clock

        self._state_lock = asyncio.Lock()
        self._pipeline_lock = asyncio.Lock()
        self._in_flight: set[str] = set()
        self._availability: dict[date, DataAvailability] = {}
        self._listeners: list[Listener] = []

        self._is_syncing = False
        self._progress = 0.0
        self._status = "Idle"
        self._last_sync_at: datetime | None = None
        self._last_sync_loaded = False

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def status(self) -> str:
        return self._status

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for sync events.  Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def state(self) -> SyncState:
        async with self._state_lock:
            in_flight = sorted(self._in_flight)
        return SyncState(
            is_syncing=self._is_syncing,
            progress=self._progress,
            status=self._status,
            last_sync_at=await self.last_sync_at(),
            in_flight=in_flight,
        )

    async def last_sync_at(self) -> datetime | None:
        """When the last successful run finished (persisted across restarts)."""
        if not self._last_sync_loaded:
            async with self._store.perform() as uow:
                stored = await uow.get(SyncCursor, COORDINATOR_STREAM)
            self._last_sync_at = stored.updated_at if stored else None
            self._last_sync_loaded = True
        return self._last_sync_at

    async def should_perform_sync(self, priority: SyncPriority) -> bool:
        """User-initiated runs always proceed; background runs are rate limited."""
        if priority is SyncPriority.USER_INITIATED:
            return True
        last = await self.last_sync_at()
        if last is None:
            return True
        elapsed = (self._clock() - last).total_seconds()
        return elapsed >= self._config.sync.min_background_resync_seconds

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def request_sync(
        self,
        mode: SyncMode = SyncMode.INCREMENTAL,
        priority: SyncPriority = SyncPriority.BACKGROUND,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncRunResult | None:
        """Run the pipeline unless rate limited or already running.

        Returns:
            The run result, or None if the request was skipped or dropped.
        """
        result = await self.submit(mode, priority, cancel_event)
        return result if result.accepted else None

    async def submit(
        self,
        mode: SyncMode = SyncMode.INCREMENTAL,
        priority: SyncPriority = SyncPriority.BACKGROUND,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncRunResult:
        """Like request_sync, but a skipped request comes back as a result.

        A skipped result has ``accepted`` False, no steps and status
        'rate_limited' or 'already_running'.
        """
        if not await self.should_perform_sync(priority):
            logger.info("Skipping %s sync: last sync was too recent", priority.value)
            return self._skipped(mode, priority, "rate_limited")

        key = mode.value
        async with self._state_lock:
            if key in self._in_flight:
                logger.info("Dropping %s sync request: an equivalent run is in flight", key)
                return self._skipped(mode, priority, "already_running")
            self._in_flight.add(key)

        run_id = f"{key}_sync_{uuid.uuid4().hex[:12]}"
        try:
            async with self._pipeline_lock:
                return await self._run(run_id, mode, priority, cancel_event)
        finally:
            async with self._state_lock:
                self._in_flight.discard(key)

    @staticmethod
    def _skipped(mode: SyncMode, priority: SyncPriority, reason: str) -> SyncRunResult:
        now = utc_now()
        return SyncRunResult(
            run_id=None,
            mode=mode,
            priority=priority,
            status=reason,
            accepted=False,
            started_at=now,
            finished_at=now,
        )

    async def sync_on_app_launch(self) -> SyncRunResult | None:
        return await self.request_sync(SyncMode.INCREMENTAL, SyncPriority.BACKGROUND)

    async def sync_now(self) -> SyncRunResult | None:
        return await self.request_sync(SyncMode.INCREMENTAL, SyncPriority.USER_INITIATED)

    async def onboarding_sync(self) -> SyncRunResult | None:
        return await self.request_sync(SyncMode.ONBOARDING, SyncPriority.USER_INITIATED)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(
        self,
        run_id: str,
        mode: SyncMode,
        priority: SyncPriority,
        cancel_event: asyncio.Event | None,
    ) -> SyncRunResult:
        result = SyncRunResult(run_id=run_id, mode=mode, priority=priority)
        onboarding = mode is SyncMode.ONBOARDING
        logger.info("Starting sync run %s (%s)", run_id, priority.value)

        self._is_syncing = True
        self._progress = 0.0
        try:
            steps: list[tuple[str, float, str, Callable[[], Awaitable[Any]]]] = []
            if onboarding:
                steps.append(
                    ("authorization", 0.05, "Requesting health data access...", self._authorize)
                )
            steps += [
                (
                    "sleep_ingest",
                    0.1,
                    "Fetching sleep data...",
                    lambda: self._controller.run(
                        self._sleep_handler, mode=mode, cancel_event=cancel_event
                    ),
                ),
                (
                    "temperature_ingest",
                    0.4,
                    "Fetching wrist temperature...",
                    lambda: self._controller.run(
                        self._temperature_handler,
                        mode=SyncMode.INCREMENTAL if mode is SyncMode.ONBOARDING else mode,
                        cancel_event=cancel_event,
                    ),
                ),
                ("resolve_sessions", 0.6, "Analyzing sleep...", self._resolve_sessions),
                ("finalize_sessions", 0.8, "Calculating recovery and sleep scores...", self._finalize_sessions),
            ]

            for name, progress, status, operation in steps:
                if cancel_event is not None and cancel_event.is_set():
                    result.status = "cancelled"
                    break
                await self._publish(run_id, progress, status)
                step = await self._run_step(name, operation)
                result.steps.append(step)
                if name == "authorization" and not step.ok:
                    break

            ingest = result.step("sleep_ingest")
            if result.status != "cancelled":
                failed = [s for s in result.steps if not s.ok]
                if not failed:
                    result.status = "success"
                elif len(failed) == len(result.steps):
                    result.status = "error"
                else:
                    result.status = "partial"

            if ingest is not None and ingest.ok:
                await self._record_success()

            if onboarding and (ingest is None or not ingest.ok):
                final_status = ONBOARDING_FAILED_STATUS
            elif result.status == "success":
                final_status = "Sync complete"
            elif result.status == "cancelled":
                final_status = "Sync cancelled"
            else:
                final_status = "Sync finished with errors"
            await self._publish(run_id, 1.0, final_status)
        finally:
            self._is_syncing = False
            result.finished_at = utc_now()
            async with self._state_lock:
                self._availability.clear()

        logger.info(
            "Sync run %s finished: %s (%s)",
            run_id,
            result.status,
            ", ".join(f"{s.name}={'ok' if s.ok else 'failed'}" for s in result.steps),
        )
        await self._emit(SyncEvent(SyncEventKind.SYNC_COMPLETED, run_id, self._progress, self._status))
        await self._emit(
            SyncEvent(SyncEventKind.REFRESH_CACHED_VIEWS, run_id, self._progress, self._status)
        )
        return result

    async def _run_step(
        self, name: str, operation: Callable[[], Awaitable[Any]]
    ) -> StepResult:
        try:
            detail = await operation()
        except asyncio.CancelledError:
            raise
        except ProviderError as exc:
            logger.warning("Sync step %s failed: %s: %s", name, type(exc).__name__, exc)
            return StepResult(name=name, ok=False, error=f"{type(exc).__name__}: {exc}")
        except Exception as exc:
            logger.warning("Sync step %s failed: %s", name, exc, exc_info=True)
            return StepResult(name=name, ok=False, error=f"{type(exc).__name__}: {exc}")
        return StepResult(name=name, detail=detail)

    async def _authorize(self) -> bool:
        granted = await self._with_timeout(
            self._provider.request_authorization([SLEEP_ANALYSIS, WRIST_TEMPERATURE]),
            "authorization",
        )
        if not granted:
            raise AuthorizationDenied("Health data access was not granted")
        return True

    async def _resolve_sessions(self) -> Any:
        async with self._store.perform() as uow:
            report = await self._resolver.resolve(uow)
            await uow.save()
        return report

    async def _finalize_sessions(self) -> int:
        """Finalize every eligible session in day order; returns how many were updated."""
        async with self._store.perform() as uow:
            pending = await uow.fetch(SleepSession, {"is_finalized": False}, order_by="ownership_day")
            stale = await self._stale_recovery_sessions(uow)

        updated = 0
        for session in pending:
            if await self._finalize(session.ownership_day):
                updated += 1
        for day in stale:
            if await self._refresh_recovery(day):
                updated += 1
        return updated

    async def _stale_recovery_sessions(self, uow: UnitOfWork) -> list[date]:
        """Finalized days whose z-score is unknown although the metric was measured."""
        days: set[date] = set()
        for metric in RECOVERY_METRICS:
            rows = await uow.fetch(
                SleepSession,
                {
                    "is_finalized": True,
                    metric.status_field: INSUFFICIENT_BASELINE_DATA,
                    f"{metric.value_field}__gt": 0,
                },
            )
            days.update(s.ownership_day for s in rows)
        return sorted(days)

    async def _finalize(self, day: date) -> bool:
        async with self._store.perform() as uow:
            primary = await self._primary_period(uow, day)

        # Without a major sleep there is no window to average over
        averages = dict.fromkeys(_AVERAGED_METRICS, 0.0)
        if primary is not None:
            try:
                averages = await self._fetch_averages(primary)
            except ProviderError as exc:
                logger.warning("Leaving %s unfinalized: metric fetch failed: %s", day, exc)
                return False
        habits = await self._fetch_habit_metrics(day)
        workouts = await self._fetch_workouts(day)

        # Scores first, then the finalized flag, in separate commits
        async with self._store.perform() as uow:
            session = await uow.get(SleepSession, day)
            if session is None:
                return False
            for attr, value in averages.items():
                setattr(session, attr, value)
            await self._link_wrist_temperatures(uow, session)
            if habits is not None:
                await self._link_habit_metrics(uow, session, habits)
            if workouts:
                await self._link_workouts(uow, session, workouts)
            await self._recovery.apply(uow, session)
            samples: list[StageSample] = []
            if primary is not None:
                samples = await uow.fetch(StageSample, {"period_id": primary.id}, order_by="start")
            self._scorer.apply(session, samples)
            uow.insert(session)
            await uow.save()

        async with self._store.perform() as uow:
            session = await uow.get(SleepSession, day)
            if session is None:
                return False
            session.is_finalized = True
            uow.insert(session)
            await uow.save()
        logger.debug("Finalized session %s (score %.1f)", day, session.sleep_score)
        return True

    async def _refresh_recovery(self, day: date) -> bool:
        """Recompute recovery for a finalized day; True if any z-score changed."""
        async with self._store.perform() as uow:
            session = await uow.get(SleepSession, day)
            if session is None:
                return False
            if await self._recovery.available_history_count(uow, day) < self._config.recovery.min_valid_samples:
                return False
            before = session.recovery_statuses()
            await self._recovery.apply(uow, session)
            if session.recovery_statuses() == before:
                return False
            uow.insert(session)
            await uow.save()
        return True

    async def _primary_period(self, uow: UnitOfWork, day: date) -> SleepPeriod | None:
        rows = await uow.fetch(
            SleepPeriod, {"session_day": day, "is_major_sleep": True}, order_by="-duration", limit=1
        )
        return rows[0] if rows else None

    async def _fetch_averages(self, period: SleepPeriod) -> dict[str, float]:
        averages: dict[str, float] = {}
        for attr, metric in _AVERAGED_METRICS.items():
            try:
                value = await self._with_timeout(
                    self._provider.fetch_average(metric, period.start, period.end), metric
                )
            except NoDataAvailable:
                value = None
            averages[attr] = value if value is not None else 0.0
        return averages

    async def _link_wrist_temperatures(self, uow: UnitOfWork, session: SleepSession) -> None:
        cfg = self._config.sessions
        midnight = day_start_utc(session.ownership_day)
        unresolved = await uow.fetch(
            WristTemperature,
            {
                "is_resolved": False,
                "recorded_at__gte": midnight - timedelta(hours=cfg.temperature_window_before_hours),
                "recorded_at__lt": midnight + timedelta(hours=cfg.temperature_window_after_hours),
            },
        )
        for reading in unresolved:
            reading.is_resolved = True
            reading.session_day = session.ownership_day
            uow.insert(reading)
        linked = await uow.fetch(
            WristTemperature, {"session_day": session.ownership_day}, order_by="recorded_at"
        )
        session.wrist_temperature = linked[0].value if linked else 0.0

    def _activity_window(self, day: date) -> tuple[datetime, datetime]:
        """The 24 hours leading up to ``day``'s midnight (UTC)."""
        end = day_start_utc(day)
        return end - _ACTIVITY_WINDOW, end

    async def _fetch_habit_metrics(self, day: date) -> HabitMetrics | None:
        start, end = self._activity_window(day)
        try:
            return await self._with_timeout(
                self._provider.fetch_habit_metrics(start, end), "habit metrics"
            )
        except NoDataAvailable:
            return None
        except ProviderError as exc:
            logger.warning("Habit metrics for %s not linked: %s", day, exc)
            return None

    async def _fetch_workouts(self, day: date) -> list[Workout]:
        start, end = self._activity_window(day)
        try:
            return await self._with_timeout(self._provider.fetch_workouts(start, end), "workouts")
        except NoDataAvailable:
            return []
        except ProviderError as exc:
            logger.warning("Workouts for %s not linked: %s", day, exc)
            return []

    async def _link_habit_metrics(
        self, uow: UnitOfWork, session: SleepSession, habits: HabitMetrics
    ) -> None:
        day = session.ownership_day
        record = await uow.get(DailyHabitMetrics, day) or DailyHabitMetrics(day=day)
        record.steps = habits.steps
        record.exercise_minutes = habits.exercise_minutes
        record.daylight_minutes = habits.daylight_minutes
        record.session_day = day
        uow.insert(record)

    async def _link_workouts(
        self, uow: UnitOfWork, session: SleepSession, workouts: list[Workout]
    ) -> None:
        """Link new workouts; ones already linked to a session are left alone."""
        for workout in workouts:
            existing = await uow.get(Workout, workout.uuid)
            if existing is not None and existing.session_day is not None:
                continue
            workout.session_day = session.ownership_day
            uow.insert(workout)

    async def _with_timeout(self, awaitable: Awaitable[Any], what: str) -> Any:
        timeout = self._config.sync.fetch_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise ProviderTimeout(f"{what} timed out after {timeout:.0f}s") from None

    async def _record_success(self) -> None:
        finished = self._clock()
        async with self._store.perform() as uow:
            uow.insert(SyncCursor(stream=COORDINATOR_STREAM, token=None, updated_at=finished))
            await uow.save()
        self._last_sync_at = finished
        self._last_sync_loaded = True

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _publish(self, run_id: str, progress: float, status: str) -> None:
        self._progress = max(self._progress, min(1.0, progress))
        self._status = status
        await self._emit(SyncEvent(SyncEventKind.PROGRESS, run_id, self._progress, status))

    async def _emit(self, event: SyncEvent) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                logger.warning("Sync listener failed on %s: %s", event.kind.value, exc)

    # ------------------------------------------------------------------
    # Per-day availability
    # ------------------------------------------------------------------

    async def availability(self, day: date) -> DataAvailability:
        """Whether a session exists for ``day``, cached until the next run."""
        async with self._state_lock:
            cached = self._availability.get(day, DataAvailability.UNKNOWN)
        if cached is DataAvailability.AVAILABLE:
            return cached
        if self._is_syncing:
            return DataAvailability.SYNCING
        if cached is not DataAvailability.UNKNOWN:
            return cached

        async with self._store.perform() as uow:
            session = await uow.get(SleepSession, day)
        state = DataAvailability.AVAILABLE if session else DataAvailability.MISSING
        async with self._state_lock:
            self._availability[day] = state
        return state

    async def is_data_available(self, day: date) -> bool:
        return await self.availability(day) is DataAvailability.AVAILABLE

    async def get_session(self, day: date) -> SleepSession | None:
        async with self._store.perform() as uow:
            session = await uow.get(SleepSession, day)
        async with self._state_lock:
            if not self._is_syncing:
                self._availability[day] = (
                    DataAvailability.AVAILABLE if session else DataAvailability.MISSING
                )
        return session

    async def list_sessions(self, start: date, end: date) -> list[SleepSession]:
        async with self._store.perform() as uow:
            return await uow.fetch(
                SleepSession,
                {"ownership_day__gte": start, "ownership_day__lte": end},
                order_by="ownership_day",
            )

    async def get_activity(self, day: date) -> tuple[DailyHabitMetrics | None, list[Workout]]:
        """Habit metrics and workouts linked to the session owned by ``day``."""
        async with self._store.perform() as uow:
            habits = await uow.fetch(DailyHabitMetrics, {"session_day": day}, limit=1)
            workouts = await uow.fetch(Workout, {"session_day": day}, order_by="start")
        return (habits[0] if habits else None), workouts

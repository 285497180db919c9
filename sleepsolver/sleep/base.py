"""Base classes and canonical records for the SleepSolver sync pipeline.

Every sample provider must subclass SampleProvider and return the canonical
StageSample / WristTemperature records.  These types are the single source of
truth shared by the grouper, merger, session resolver, scorers and stores.

Each persisted record class names its store table (``TABLE``) and primary key
attribute (``KEY``) so the store adapters can stay generic.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum, IntEnum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger("sleepsolver.sleep")

# Sample stream identifiers understood by providers and used as cursor keys
SLEEP_ANALYSIS = "sleep_analysis"
WRIST_TEMPERATURE = "wrist_temperature"

# Physiological metrics averaged over the primary sleep window
HEART_RATE = "heart_rate"
HEART_RATE_VARIABILITY = "heart_rate_variability_sdnn"
OXYGEN_SATURATION = "oxygen_saturation"
RESPIRATORY_RATE = "respiratory_rate"

# Recovery fields that have not been computed hold this value
INSUFFICIENT_BASELINE_DATA = -100.0


class SleepStage(IntEnum):
    """Sleep analysis category values, numbered as the health platform reports them."""

    IN_BED = 0
    ASLEEP_UNSPECIFIED = 1
    AWAKE = 2
    CORE = 3
    DEEP = 4
    REM = 5


class SyncPriority(str, Enum):
    BACKGROUND = "background"
    USER_INITIATED = "user_initiated"


class SyncMode(str, Enum):
    INCREMENTAL = "incremental"
    FULL = "full"
    ONBOARDING = "onboarding"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_zone(name: str | None) -> ZoneInfo:
    """Return the named IANA zone, falling back to UTC for unknown names."""
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone %r, using UTC", name)
        return ZoneInfo("UTC")


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


@dataclass
class StageSample:
    """One sleep-stage interval observed by the provider.

    Attributes:
        uuid:         Provider-assigned identifier, stable across syncs.
        stage:        SleepStage value.
        start:        UTC start of the interval.
        end:          UTC end of the interval.
        source:       Bundle identifier of the app that wrote the sample.
        product_type: Device/product class (e.g. "Watch6,1").
        time_zone:    IANA zone the sample was recorded in, when known.
        period_id:    Owning SleepPeriod id, or None while orphaned.
    """

    TABLE = "stage_samples"
    KEY = "uuid"

    uuid: str
    stage: SleepStage
    start: datetime
    end: datetime
    source: str
    product_type: str = ""
    time_zone: str | None = None
    period_id: str | None = None

    def __post_init__(self) -> None:
        self.stage = SleepStage(self.stage)

    @property
    def duration(self) -> float:
        """Interval length in seconds."""
        return (self.end - self.start).total_seconds()


@dataclass
class SleepPeriod:
    """A contiguous sleep interval built from one source's samples.

    ``is_resolved`` is False whenever the period's boundaries have changed
    since it was last linked to a session; the session resolver picks those
    periods up on its next pass.
    """

    TABLE = "sleep_periods"
    KEY = "id"

    id: str
    start: datetime
    end: datetime
    source: str
    time_zone: str = "UTC"
    is_major_sleep: bool = False
    is_resolved: bool = False
    session_day: date | None = None
    duration: float = 0.0

    def __post_init__(self) -> None:
        if not self.duration:
            self.duration = (self.end - self.start).total_seconds()


@dataclass
class SleepSession:
    """The authoritative record of one ownership day's sleep.

    Durations are seconds.  Physiological averages are 0 when unmeasured;
    recovery z-scores (``*_status``) and baselines hold
    INSUFFICIENT_BASELINE_DATA until computed.  Score and recovery fields
    are only meaningful once ``is_finalized`` is True.
    """

    TABLE = "sleep_sessions"
    KEY = "ownership_day"

    ownership_day: date
    start: datetime | None = None
    end: datetime | None = None

    time_in_bed: float = 0.0
    total_sleep: float = 0.0
    deep: float = 0.0
    rem: float = 0.0
    awake: float = 0.0
    sleep_score: float = 0.0

    average_heart_rate: float = 0.0
    average_hrv: float = 0.0
    average_spo2: float = 0.0
    average_respiratory_rate: float = 0.0
    wrist_temperature: float = 0.0

    hrv_status: float = INSUFFICIENT_BASELINE_DATA
    rhr_status: float = INSUFFICIENT_BASELINE_DATA
    spo2_status: float = INSUFFICIENT_BASELINE_DATA
    respiratory_status: float = INSUFFICIENT_BASELINE_DATA
    temperature_status: float = INSUFFICIENT_BASELINE_DATA

    hrv_baseline: float = INSUFFICIENT_BASELINE_DATA
    rhr_baseline: float = INSUFFICIENT_BASELINE_DATA
    spo2_baseline: float = INSUFFICIENT_BASELINE_DATA
    respiratory_baseline: float = INSUFFICIENT_BASELINE_DATA
    temperature_baseline: float = INSUFFICIENT_BASELINE_DATA

    is_finalized: bool = False

    def update_from_primary_period(
        self, period: SleepPeriod, samples: list[StageSample]
    ) -> None:
        """Recompute bounds and stage durations from the primary period.

        Durations are summed directly from the period's own samples.  With no
        samples every duration is zeroed.
        """
        self.start = period.start
        self.end = period.end
        if not samples:
            self.reset_durations()
            return

        totals = {stage: 0.0 for stage in SleepStage}
        for sample in samples:
            totals[sample.stage] += sample.duration

        self.time_in_bed = period.duration
        self.deep = totals[SleepStage.DEEP]
        self.rem = totals[SleepStage.REM]
        self.awake = totals[SleepStage.AWAKE]
        self.total_sleep = max(0.0, self.time_in_bed - self.awake)

    def reset_durations(self) -> None:
        self.time_in_bed = 0.0
        self.total_sleep = 0.0
        self.deep = 0.0
        self.rem = 0.0
        self.awake = 0.0

    def invalidate_recovery(self) -> None:
        """Drop finalized state so score and recovery are recomputed."""
        self.is_finalized = False
        for name in _RECOVERY_FIELDS:
            setattr(self, name, INSUFFICIENT_BASELINE_DATA)

    def recovery_statuses(self) -> dict[str, float]:
        """Return z-scores keyed by field name, sentinel-masked until finalized."""
        return {
            name: getattr(self, name) if self.is_finalized else INSUFFICIENT_BASELINE_DATA
            for name in _RECOVERY_FIELDS
            if name.endswith("_status")
        }


_RECOVERY_FIELDS = (
    "hrv_status",
    "rhr_status",
    "spo2_status",
    "respiratory_status",
    "temperature_status",
    "hrv_baseline",
    "rhr_baseline",
    "spo2_baseline",
    "respiratory_baseline",
    "temperature_baseline",
)


@dataclass
class WristTemperature:
    """Overnight wrist temperature reading (°C)."""

    TABLE = "wrist_temperatures"
    KEY = "uuid"

    uuid: str
    recorded_at: datetime
    value: float
    is_resolved: bool = False
    session_day: date | None = None


@dataclass
class SyncCursor:
    """Resumable position in one provider stream."""

    TABLE = "sync_cursors"
    KEY = "stream"

    stream: str
    token: str | None = None
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class DailyHabitMetrics:
    """Activity totals for the 24 hours before an ownership day.

    Attributes:
        day:              Ownership day of the session the totals lead into.
        steps:            Step count.
        exercise_minutes: Exercise time in minutes.
        daylight_minutes: Time in daylight in minutes.
        session_day:      Day of the linked session; None until linked.
    """

    TABLE = "daily_habit_metrics"
    KEY = "day"

    day: date
    steps: float = 0.0
    exercise_minutes: float = 0.0
    daylight_minutes: float = 0.0
    session_day: date | None = None


@dataclass
class Workout:
    """A workout recorded in the 24 hours before an ownership day.

    ``duration`` is seconds, ``distance`` metres.  Calories, distance and
    heart rate are 0 when the workout did not record them.
    """

    TABLE = "workouts"
    KEY = "uuid"

    uuid: str
    start: datetime
    workout_type: str
    duration: float
    time_of_day: str = ""
    calories: float = 0.0
    distance: float = 0.0
    average_heart_rate: float = 0.0
    session_day: date | None = None


def time_of_day(moment: datetime, time_zone: str | None = None) -> str:
    """Bucket a local start time into 'Morning', 'Afternoon' or 'Evening'."""
    hour = moment.astimezone(resolve_zone(time_zone)).hour
    if 5 <= hour < 12:
        return "Morning"
    if 12 <= hour < 18:
        return "Afternoon"
    return "Evening"


RECORD_TYPES: tuple[type, ...] = (
    StageSample,
    SleepPeriod,
    SleepSession,
    WristTemperature,
    SyncCursor,
    DailyHabitMetrics,
    Workout,
)


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DateRange:
    """Half-open UTC interval used to bound provider queries."""

    start: datetime
    end: datetime


@dataclass
class ProviderPage:
    """One page of an anchored provider query.

    Attributes:
        added:      New or changed records (StageSample / WristTemperature).
        deleted:    UUIDs of records removed at the source.
        new_cursor: Cursor to resume from, or None if the provider issued none.
    """

    added: list = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    new_cursor: str | None = None


@dataclass
class HabitMetrics:
    """Activity totals over a window, as reported by the provider."""

    steps: float = 0.0
    exercise_minutes: float = 0.0
    daylight_minutes: float = 0.0


class SampleProvider(ABC):
    """Abstract base for every external sensor-data provider.

    Subclasses must set PROVIDER_ID and DISPLAY_NAME and implement the
    abstract methods.  Errors are raised from ``sleepsolver.sleep.errors``;
    an empty result is reported as NoDataAvailable, never as a bare None.
    """

    PROVIDER_ID: str = ""
    DISPLAY_NAME: str = ""

    @abstractmethod
    async def request_authorization(self, sample_types: list[str]) -> bool:
        """Ask the platform for read access to ``sample_types``.

        Returns:
            True when access was granted.
        """

    @abstractmethod
    async def fetch_interval_samples(
        self,
        sample_type: str,
        date_range: DateRange | None = None,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> ProviderPage:
        """Fetch one page of added/deleted records for a stream.

        Args:
            sample_type: SLEEP_ANALYSIS or WRIST_TEMPERATURE.
            date_range:  Optional bound on sample start times.
            cursor:      Opaque token from the previous page; None starts over.
            limit:       Maximum records per page; None for no limit.

        Returns:
            ProviderPage with the records and the cursor to resume from.
        """

    @abstractmethod
    async def fetch_average(
        self, metric: str, start: datetime, end: datetime
    ) -> float | None:
        """Average a physiological metric over a window, None when unmeasured."""

    @abstractmethod
    async def fetch_habit_metrics(self, start: datetime, end: datetime) -> HabitMetrics:
        """Sum steps, exercise time and time in daylight over a window.

        Metrics with no samples in the window are reported as 0.
        """

    @abstractmethod
    async def fetch_workouts(self, start: datetime, end: datetime) -> list[Workout]:
        """Workouts that started inside the window; ``session_day`` is left unset."""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _safe_float(value: object) -> float | None:
        """Safely coerce a value to float, returning None on failure."""
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _parse_iso_datetime(value: str | None) -> datetime | None:
        """Parse an ISO-8601 string to an aware UTC datetime.

        Naive strings are assumed to be UTC.  Returns None if unparseable.
        """
        if not value:
            return None
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            logger.debug("Could not parse datetime: %r", value)
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

"""Shared fixtures, sample builders and a scripted provider for pipeline tests."""

from __future__ import annotations

import asyncio
import dataclasses
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from sleepsolver.sleep.base import (
    DateRange,
    HabitMetrics,
    ProviderPage,
    SampleProvider,
    SleepStage,
    StageSample,
    Workout,
)
from sleepsolver.sleep.config_loader import PipelineConfig, load_pipeline_config
from sleepsolver.sleep.errors import NoDataAvailable
from sleepsolver.sleep.store import InMemoryStore

# Canonical test night: asleep on the evening of the 22nd, owned by the 23rd
TEST_DATE = date(2026, 2, 23)
WATCH_SOURCE = "com.apple.health.8F2C1D4E"
WATCH_PRODUCT = "Watch6,1"
PHONE_SOURCE = "com.example.sleepapp"


def at(hour: int, minute: int = 0, day: date | None = None) -> datetime:
    """UTC datetime on ``day`` (defaults to the evening before TEST_DATE)."""
    day = day or TEST_DATE - timedelta(days=1)
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc) + timedelta(
        hours=hour, minutes=minute
    )


def make_sample(
    uuid: str,
    stage: SleepStage,
    start: datetime,
    minutes: float,
    source: str = WATCH_SOURCE,
    product_type: str = WATCH_PRODUCT,
    time_zone: str | None = "UTC",
) -> StageSample:
    return StageSample(
        uuid=uuid,
        stage=stage,
        start=start,
        end=start + timedelta(minutes=minutes),
        source=source,
        product_type=product_type,
        time_zone=time_zone,
    )


def make_night(
    prefix: str,
    start: datetime,
    plan: list[tuple[SleepStage, float]],
    **kwargs,
) -> list[StageSample]:
    """Back-to-back samples following ``plan`` of (stage, minutes)."""
    samples = []
    cursor = start
    for i, (stage, minutes) in enumerate(plan):
        samples.append(make_sample(f"{prefix}-{i}", stage, cursor, minutes, **kwargs))
        cursor += timedelta(minutes=minutes)
    return samples


# 8 h asleep: 2 h deep, 2 h REM, 4 h core, no awake time
PERFECT_NIGHT_PLAN = [
    (SleepStage.CORE, 60),
    (SleepStage.DEEP, 120),
    (SleepStage.CORE, 180),
    (SleepStage.REM, 120),
]


class FakeProvider(SampleProvider):
    """Scripted provider: returns queued pages per stream and fixed averages."""

    PROVIDER_ID = "fake"
    DISPLAY_NAME = "Fake provider"

    def __init__(
        self,
        pages: dict[str, list[ProviderPage]] | None = None,
        averages: dict[str, float | None] | None = None,
        granted: bool = True,
    ) -> None:
        self.pages = {stream: list(queue) for stream, queue in (pages or {}).items()}
        self.averages = averages or {}
        self.granted = granted
        self.errors: dict[str, Exception] = {}
        self.delay: float = 0.0
        self.calls: list[dict] = []
        self.average_calls: list[tuple[str, datetime, datetime]] = []
        self.habits: HabitMetrics | None = None
        self.workouts: list[Workout] = []
        self.activity_calls: list[tuple[str, datetime, datetime]] = []

    def queue(self, stream: str, *pages: ProviderPage) -> None:
        self.pages.setdefault(stream, []).extend(pages)

    async def request_authorization(self, sample_types: list[str]) -> bool:
        return self.granted

    async def fetch_interval_samples(
        self,
        sample_type: str,
        date_range: DateRange | None = None,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> ProviderPage:
        self.calls.append(
            {"stream": sample_type, "date_range": date_range, "cursor": cursor, "limit": limit}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if sample_type in self.errors:
            raise self.errors[sample_type]
        queue = self.pages.get(sample_type) or []
        if not queue:
            return ProviderPage(new_cursor=cursor)
        return queue.pop(0)

    async def fetch_average(self, metric: str, start: datetime, end: datetime) -> float | None:
        self.average_calls.append((metric, start, end))
        if "averages" in self.errors:
            raise self.errors["averages"]
        return self.averages.get(metric)

    async def fetch_habit_metrics(self, start: datetime, end: datetime) -> HabitMetrics:
        self.activity_calls.append(("habits", start, end))
        if "habits" in self.errors:
            raise self.errors["habits"]
        if self.habits is None:
            raise NoDataAvailable("no habit metrics")
        return self.habits

    async def fetch_workouts(self, start: datetime, end: datetime) -> list[Workout]:
        self.activity_calls.append(("workouts", start, end))
        if "workouts" in self.errors:
            raise self.errors["workouts"]
        return [dataclasses.replace(w) for w in self.workouts]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Load the real pipeline config for tests."""
    return load_pipeline_config()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def mock_httpx_client() -> MagicMock:
    """Mock httpx.AsyncClient for bridge tests."""
    client = MagicMock()
    response = MagicMock()
    response.status_code = 200
    response.raise_for_status = MagicMock()
    response.json = MagicMock(return_value={})
    client.get = AsyncMock(return_value=response)
    client.post = AsyncMock(return_value=response)
    return client

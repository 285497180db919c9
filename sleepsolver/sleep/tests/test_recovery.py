"""Tests for rolling recovery baselines and z-scores."""

from __future__ import annotations

import statistics
from datetime import timedelta

import pytest

from sleepsolver.sleep.base import INSUFFICIENT_BASELINE_DATA, SleepSession
from sleepsolver.sleep.config_loader import PipelineConfig
from sleepsolver.sleep.recovery import (
    MetricBaseline,
    RecoveryBaselineEngine,
    compute_baseline,
    status_for,
    z_score,
)
from sleepsolver.sleep.store import InMemoryStore
from sleepsolver.sleep.tests.conftest import TEST_DATE

SENTINEL = INSUFFICIENT_BASELINE_DATA


@pytest.fixture
def engine(pipeline_config: PipelineConfig) -> RecoveryBaselineEngine:
    return RecoveryBaselineEngine(pipeline_config)


async def seed_history(store: InMemoryStore, hrv_values: list[float], days_back_from: int = 1) -> None:
    """Store one session per value on consecutive days before TEST_DATE."""
    async with store.perform() as uow:
        for offset, value in enumerate(hrv_values, start=days_back_from):
            uow.insert(
                SleepSession(
                    ownership_day=TEST_DATE - timedelta(days=offset),
                    average_hrv=value,
                    average_heart_rate=55.0,
                )
            )
        await uow.save()


class TestComputeBaseline:
    def test_six_values_give_sentinel(self) -> None:
        result = compute_baseline([50, 52, 48, 51, 49, 50])
        assert result.baseline == SENTINEL
        assert result.std_dev == SENTINEL
        assert result.count == 6
        assert not result.available

    def test_seven_values_give_real_baseline(self) -> None:
        values = [50, 52, 48, 51, 49, 50, 53]
        result = compute_baseline(values)
        assert result.available
        assert result.baseline == pytest.approx(statistics.fmean(values))
        assert result.std_dev == pytest.approx(statistics.stdev(values))

    def test_non_positive_values_ignored(self) -> None:
        result = compute_baseline([50, 0, 52, -1, 48, 51, 49, 50, 0])
        assert result.count == 6
        assert not result.available

    def test_none_values_ignored(self) -> None:
        result = compute_baseline([None, 50, 52, 48, 51, 49, 50, 53])
        assert result.count == 7


class TestZScore:
    def test_regular_z_score(self) -> None:
        z, baseline = z_score(60.0, MetricBaseline(baseline=50.0, std_dev=5.0, count=7))
        assert z == pytest.approx(2.0)
        assert baseline == 50.0

    def test_zero_std_dev_gives_zero(self) -> None:
        z, baseline = z_score(70.0, MetricBaseline(baseline=50.0, std_dev=0.0, count=7))
        assert z == 0.0
        assert baseline == 50.0

    def test_unmeasured_current_gives_sentinel(self) -> None:
        assert z_score(0.0, MetricBaseline(50.0, 5.0, 7)) == (SENTINEL, SENTINEL)

    def test_missing_baseline_gives_sentinel(self) -> None:
        assert z_score(60.0, MetricBaseline(count=3)) == (SENTINEL, SENTINEL)


class TestStatusFor:
    def test_sentinel_is_insufficient(self) -> None:
        assert status_for(SENTINEL) == "insufficient_data"

    def test_higher_is_better(self) -> None:
        assert status_for(2.0) == "optimal"
        assert status_for(0.3) == "good"
        assert status_for(-1.5) == "good"
        assert status_for(-1.6) == "attention"

    def test_lower_is_better_flips_sign(self) -> None:
        assert status_for(-2.0, higher_is_better=False) == "optimal"
        assert status_for(2.0, higher_is_better=False) == "attention"


class TestRecoveryBaselineEngine:
    @pytest.mark.asyncio
    async def test_history_excludes_target_day_and_old_sessions(
        self, store: InMemoryStore, engine: RecoveryBaselineEngine
    ) -> None:
        async with store.perform() as uow:
            for offset in (0, 1, 90, 91):
                uow.insert(SleepSession(ownership_day=TEST_DATE - timedelta(days=offset)))
            await uow.save()

        async with store.perform() as uow:
            history = await engine.history(uow, TEST_DATE)
            count = await engine.available_history_count(uow, TEST_DATE)

        assert [s.ownership_day for s in history] == [
            TEST_DATE - timedelta(days=90),
            TEST_DATE - timedelta(days=1),
        ]
        assert count == 2

    @pytest.mark.asyncio
    async def test_apply_with_enough_history(
        self, store: InMemoryStore, engine: RecoveryBaselineEngine
    ) -> None:
        values = [40.0, 45.0, 50.0, 55.0, 60.0, 45.0, 55.0]
        await seed_history(store, values)
        session = SleepSession(ownership_day=TEST_DATE, average_hrv=70.0, average_heart_rate=55.0)

        async with store.perform() as uow:
            await engine.apply(uow, session)

        expected = (70.0 - statistics.fmean(values)) / statistics.stdev(values)
        assert session.hrv_status == pytest.approx(expected)
        assert session.hrv_baseline == pytest.approx(statistics.fmean(values))
        # Constant resting heart rate history: zero spread gives z = 0
        assert session.rhr_status == 0.0
        assert session.rhr_baseline == pytest.approx(55.0)

    @pytest.mark.asyncio
    async def test_metrics_are_independent(
        self, store: InMemoryStore, engine: RecoveryBaselineEngine
    ) -> None:
        await seed_history(store, [50.0] * 7)
        session = SleepSession(ownership_day=TEST_DATE, average_hrv=55.0, wrist_temperature=34.2)

        async with store.perform() as uow:
            baselines = await engine.apply(uow, session)

        assert baselines["hrv"].available
        assert not baselines["wrist_temperature"].available
        assert session.hrv_status == 0.0
        assert session.temperature_status == SENTINEL
        assert session.temperature_baseline == SENTINEL
        # No SpO2 reading tonight
        assert session.spo2_status == SENTINEL

    @pytest.mark.asyncio
    async def test_six_days_of_history_gives_sentinel(
        self, store: InMemoryStore, engine: RecoveryBaselineEngine
    ) -> None:
        await seed_history(store, [50.0, 52.0, 48.0, 51.0, 49.0, 50.0])
        session = SleepSession(ownership_day=TEST_DATE, average_hrv=60.0)

        async with store.perform() as uow:
            await engine.apply(uow, session)

        assert session.hrv_status == SENTINEL
        assert session.hrv_baseline == SENTINEL

    def test_statuses_masked_until_finalized(self, engine: RecoveryBaselineEngine) -> None:
        session = SleepSession(ownership_day=TEST_DATE, hrv_status=2.0)
        assert engine.statuses(session)["hrv"] == "insufficient_data"
        session.is_finalized = True
        assert engine.statuses(session)["hrv"] == "optimal"

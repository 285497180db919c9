"""Tests for period upsert, batch-split merging and deletion reconciliation."""

from __future__ import annotations

from datetime import timedelta

import pytest

from sleepsolver.sleep.base import SleepPeriod, SleepSession, SleepStage, StageSample, WristTemperature
from sleepsolver.sleep.config_loader import PipelineConfig
from sleepsolver.sleep.grouper import PeriodGrouper, PotentialPeriod
from sleepsolver.sleep.identity import stable_period_id
from sleepsolver.sleep.merger import PeriodMerger, can_merge
from sleepsolver.sleep.store import InMemoryStore
from sleepsolver.sleep.tests.conftest import (
    PHONE_SOURCE,
    TEST_DATE,
    WATCH_SOURCE,
    at,
    make_night,
    make_sample,
)


@pytest.fixture
def grouper(pipeline_config: PipelineConfig) -> PeriodGrouper:
    return PeriodGrouper(pipeline_config)


@pytest.fixture
def merger(pipeline_config: PipelineConfig) -> PeriodMerger:
    return PeriodMerger(pipeline_config)


async def ingest(store: InMemoryStore, grouper: PeriodGrouper, merger: PeriodMerger, samples) -> None:
    """Apply one page of samples the way the stage handler does."""
    async with store.perform() as uow:
        for potential in grouper.group(samples):
            await merger.upsert(uow, potential)
        await uow.save()


def block(prefix: str, hour: int, minute: int, minutes: int) -> list[StageSample]:
    return make_night(prefix, at(hour, minute), [(SleepStage.CORE, minutes)])


class TestCanMerge:
    def test_gap_within_threshold(self) -> None:
        a = SleepPeriod(id="a", start=at(22), end=at(23), source=WATCH_SOURCE)
        b = SleepPeriod(id="b", start=at(23, 15), end=at(24), source=WATCH_SOURCE)
        assert can_merge(a, b, 900)
        assert can_merge(b, a, 900)

    def test_gap_beyond_threshold(self) -> None:
        a = SleepPeriod(id="a", start=at(22), end=at(23), source=WATCH_SOURCE)
        b = SleepPeriod(id="b", start=at(23, 16), end=at(24), source=WATCH_SOURCE)
        assert not can_merge(a, b, 900)

    def test_overlap_merges(self) -> None:
        a = SleepPeriod(id="a", start=at(22), end=at(24), source=WATCH_SOURCE)
        b = SleepPeriod(id="b", start=at(23), end=at(25), source=WATCH_SOURCE)
        assert can_merge(a, b, 0)


class TestUpsert:
    @pytest.mark.asyncio
    async def test_creates_period_with_stable_id(
        self, store: InMemoryStore, grouper: PeriodGrouper, merger: PeriodMerger
    ) -> None:
        await ingest(store, grouper, merger, make_night("n", at(22), [(SleepStage.CORE, 60), (SleepStage.DEEP, 60)]))

        periods = store.records(SleepPeriod)
        assert len(periods) == 1
        period = periods[0]
        assert period.id == stable_period_id(WATCH_SOURCE, at(22))
        assert period.start == at(22)
        assert period.end == at(24)
        assert period.duration == 7200
        assert period.is_resolved is False
        assert all(s.period_id == period.id for s in store.records(StageSample))

    @pytest.mark.asyncio
    async def test_reingest_is_idempotent(
        self, store: InMemoryStore, grouper: PeriodGrouper, merger: PeriodMerger
    ) -> None:
        plan = [(SleepStage.CORE, 60), (SleepStage.DEEP, 60), (SleepStage.REM, 60)]
        await ingest(store, grouper, merger, make_night("n", at(22), plan))
        first = store.records(SleepPeriod)
        await ingest(store, grouper, merger, make_night("n", at(22), plan))
        second = store.records(SleepPeriod)

        assert len(second) == 1
        assert (second[0].id, second[0].start, second[0].end) == (first[0].id, first[0].start, first[0].end)
        assert len(store.records(StageSample)) == 3

    @pytest.mark.asyncio
    async def test_distant_blocks_stay_separate(
        self, store: InMemoryStore, grouper: PeriodGrouper, merger: PeriodMerger
    ) -> None:
        await ingest(store, grouper, merger, block("a", 22, 0, 60))
        await ingest(store, grouper, merger, block("b", 23, 30, 60))  # 30 min gap
        assert len(store.records(SleepPeriod)) == 2

    @pytest.mark.asyncio
    async def test_sources_never_merge(self, store: InMemoryStore, merger: PeriodMerger) -> None:
        watch = block("w", 22, 0, 60)
        phone = [make_sample("p", SleepStage.CORE, at(22, 30), 60, source=PHONE_SOURCE)]
        async with store.perform() as uow:
            await merger.upsert(uow, PotentialPeriod(samples=watch))
            await merger.upsert(uow, PotentialPeriod(samples=phone))
            await uow.save()
        assert {p.source for p in store.records(SleepPeriod)} == {WATCH_SOURCE, PHONE_SOURCE}


class TestMergeAcrossBatches:
    @pytest.mark.asyncio
    async def test_adjacent_pages_merge(
        self, store: InMemoryStore, grouper: PeriodGrouper, merger: PeriodMerger
    ) -> None:
        await ingest(store, grouper, merger, block("a", 22, 0, 60))
        await ingest(store, grouper, merger, block("b", 23, 10, 60))

        periods = store.records(SleepPeriod)
        assert len(periods) == 1
        assert periods[0].start == at(22)
        assert periods[0].end == at(24, 10)
        assert periods[0].id == stable_period_id(WATCH_SOURCE, at(22))

    @pytest.mark.asyncio
    async def test_transitive_chain_collapses(
        self, store: InMemoryStore, grouper: PeriodGrouper, merger: PeriodMerger
    ) -> None:
        """A–B 5 min apart, B–C 10 min apart: one period from A.start to C.end."""
        await ingest(store, grouper, merger, block("a", 22, 0, 60))   # 22:00–23:00
        await ingest(store, grouper, merger, block("c", 24, 10, 50))  # 00:10–01:00
        assert len(store.records(SleepPeriod)) == 2
        await ingest(store, grouper, merger, block("b", 23, 5, 55))   # 23:05–00:00

        periods = store.records(SleepPeriod)
        assert len(periods) == 1
        assert periods[0].start == at(22)
        assert periods[0].end == at(25)
        assert {s.period_id for s in store.records(StageSample)} == {periods[0].id}

    @pytest.mark.asyncio
    async def test_earlier_page_arriving_late_survives(
        self, store: InMemoryStore, grouper: PeriodGrouper, merger: PeriodMerger
    ) -> None:
        await ingest(store, grouper, merger, block("late", 23, 10, 60))
        await ingest(store, grouper, merger, block("early", 22, 0, 60))

        periods = store.records(SleepPeriod)
        assert len(periods) == 1
        assert periods[0].id == stable_period_id(WATCH_SOURCE, at(22))
        assert {s.period_id for s in store.records(StageSample)} == {periods[0].id}

    @pytest.mark.asyncio
    async def test_merge_inherits_session_link(
        self, store: InMemoryStore, grouper: PeriodGrouper, merger: PeriodMerger
    ) -> None:
        await ingest(store, grouper, merger, block("a", 22, 0, 60))
        async with store.perform() as uow:
            period = (await uow.fetch(SleepPeriod))[0]
            period.session_day = TEST_DATE
            period.is_resolved = True
            uow.insert(period)
            await uow.save()

        await ingest(store, grouper, merger, block("b", 23, 5, 60))

        period = store.records(SleepPeriod)[0]
        assert period.session_day == TEST_DATE
        assert period.is_resolved is False


class TestDeletions:
    @pytest.mark.asyncio
    async def test_deleting_first_sample_moves_start(
        self, store: InMemoryStore, grouper: PeriodGrouper, merger: PeriodMerger
    ) -> None:
        plan = [(SleepStage.CORE, 60), (SleepStage.DEEP, 60), (SleepStage.REM, 60)]
        await ingest(store, grouper, merger, make_night("n", at(22), plan))

        async with store.perform() as uow:
            removed = await merger.reconcile_deleted_samples(uow, ["n-0", "unknown-uuid"])
            await uow.save()

        assert removed == 1
        periods = store.records(SleepPeriod)
        assert len(periods) == 1
        assert periods[0].start == at(23)
        assert periods[0].id == stable_period_id(WATCH_SOURCE, at(23))
        assert {s.period_id for s in store.records(StageSample)} == {periods[0].id}

    @pytest.mark.asyncio
    async def test_deleting_last_sample_shrinks_end(
        self, store: InMemoryStore, grouper: PeriodGrouper, merger: PeriodMerger
    ) -> None:
        plan = [(SleepStage.CORE, 60), (SleepStage.DEEP, 60)]
        await ingest(store, grouper, merger, make_night("n", at(22), plan))
        async with store.perform() as uow:
            await merger.reconcile_deleted_samples(uow, ["n-1"])
            await uow.save()

        period = store.records(SleepPeriod)[0]
        assert period.end == at(23)
        assert period.duration == 3600
        assert period.is_resolved is False

    @pytest.mark.asyncio
    async def test_deleting_all_samples_removes_period_and_session(
        self, store: InMemoryStore, grouper: PeriodGrouper, merger: PeriodMerger
    ) -> None:
        await ingest(store, grouper, merger, block("a", 22, 0, 60))
        async with store.perform() as uow:
            period = (await uow.fetch(SleepPeriod))[0]
            period.session_day = TEST_DATE
            period.is_resolved = True
            uow.insert(period)
            uow.insert(SleepSession(ownership_day=TEST_DATE, start=period.start, end=period.end))
            uow.insert(
                WristTemperature(
                    uuid="t1", recorded_at=at(3, day=TEST_DATE), value=34.1,
                    is_resolved=True, session_day=TEST_DATE,
                )
            )
            await uow.save()

        async with store.perform() as uow:
            await merger.reconcile_deleted_samples(uow, ["a-0"])
            await uow.save()

        assert store.records(SleepPeriod) == []
        assert store.records(SleepSession) == []
        temperature = store.records(WristTemperature)[0]
        assert temperature.session_day is None
        assert temperature.is_resolved is False

    @pytest.mark.asyncio
    async def test_empty_deletion_list(self, store: InMemoryStore, merger: PeriodMerger) -> None:
        async with store.perform() as uow:
            assert await merger.reconcile_deleted_samples(uow, []) == 0

    @pytest.mark.asyncio
    async def test_unsaved_changes_roll_back(
        self, store: InMemoryStore, grouper: PeriodGrouper, merger: PeriodMerger
    ) -> None:
        await ingest(store, grouper, merger, block("a", 22, 0, 60))
        async with store.perform() as uow:
            await merger.reconcile_deleted_samples(uow, ["a-0"])
        assert len(store.records(SleepPeriod)) == 1
        assert len(store.records(StageSample)) == 1

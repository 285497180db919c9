"""Period merger: persist candidate periods and heal batch-split ones.

Anchored paging can cut one night into several candidate periods when a
page boundary falls mid-sleep.  After every upsert the merger looks for
same-source periods whose gap to the upserted one (after ordering by start)
is at most the merge threshold, overlaps included, and folds them all into
the earliest.  The search repeats against the grown period until nothing
else qualifies, so chains of short gaps collapse into one period.

Merge effects on the surviving (earliest) period:
    - every sample of the merged periods is moved onto it
    - start/end/duration are recomputed from its samples
    - its stable id is recomputed and the record repointed, never duplicated
    - a session link is inherited if it had none
    - it is marked unresolved so the session is re-resolved and re-scored
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Iterable

from sleepsolver.sleep.base import SleepPeriod, SleepSession, StageSample, WristTemperature
from sleepsolver.sleep.config_loader import PipelineConfig, get_pipeline_config
from sleepsolver.sleep.grouper import PotentialPeriod, gap_seconds
from sleepsolver.sleep.identity import stable_period_id
from sleepsolver.sleep.store import UnitOfWork

logger = logging.getLogger("sleepsolver.sleep.merger")


def can_merge(a: SleepPeriod, b: SleepPeriod, threshold_seconds: float) -> bool:
    """True if two periods are close enough (or overlapping) to be one period."""
    earlier, later = sorted((a, b), key=lambda p: p.start)
    return gap_seconds(earlier.end, later.start) <= threshold_seconds


class PeriodMerger:
    """Upsert candidate periods and merge those split across sync batches.

    Every method works inside the caller's unit of work and never saves;
    the caller commits once per page.
    """

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self._threshold = (config or get_pipeline_config()).merging.gap_threshold_seconds

    # ------------------------------------------------------------------
    # Additions
    # ------------------------------------------------------------------

    async def upsert(self, uow: UnitOfWork, potential: PotentialPeriod) -> SleepPeriod:
        """Create or update the period for a candidate group, then merge.

        Args:
            uow:       Open unit of work.
            potential: Grouped samples from PeriodGrouper.

        Returns:
            The surviving period after merge detection.
        """
        period = await uow.get(SleepPeriod, potential.stable_id)
        if period is None:
            period = SleepPeriod(
                id=potential.stable_id,
                start=potential.start,
                end=potential.end,
                source=potential.source,
                time_zone=potential.time_zone,
            )
            logger.debug("Created period %s at %s", period.id[:12], period.start)
        period.time_zone = potential.time_zone
        period.is_major_sleep = False
        period.is_resolved = False
        uow.insert(period)

        uuids = [s.uuid for s in potential.samples]
        stored = await uow.fetch(StageSample, {"uuid__in": uuids})
        moved_from = {
            s.period_id for s in stored if s.period_id and s.period_id != period.id
        }
        for sample in potential.samples:
            sample.period_id = period.id
            uow.insert(sample)

        await self.recompute_bounds(uow, period)
        survivor = await self.merge_adjacent(uow, period)

        for period_id in moved_from:
            if period_id != survivor.id:
                await self.rederive(uow, period_id)
        return survivor

    async def merge_adjacent(self, uow: UnitOfWork, period: SleepPeriod) -> SleepPeriod:
        """Merge every same-source period within the gap threshold of ``period``.

        Repeats until no candidate remains.  Returns the surviving period,
        which is ``period`` itself when nothing merged.
        """
        target = period
        threshold = timedelta(seconds=self._threshold)
        while True:
            candidates = await uow.fetch(
                SleepPeriod,
                {
                    "source": target.source,
                    "id__ne": target.id,
                    "start__lte": target.end + threshold,
                    "end__gte": target.start - threshold,
                },
                order_by="start",
            )
            mergeable = [c for c in candidates if can_merge(target, c, self._threshold)]
            if not mergeable:
                return target
            target = await self._merge(uow, [target, *mergeable])

    async def _merge(self, uow: UnitOfWork, periods: list[SleepPeriod]) -> SleepPeriod:
        ordered = sorted(periods, key=lambda p: (p.start, p.id))
        survivor, others = ordered[0], ordered[1:]
        released_days: set[date] = set()

        for other in others:
            if survivor.session_day is None and other.session_day is not None:
                survivor.session_day = other.session_day
            elif other.session_day is not None and other.session_day != survivor.session_day:
                released_days.add(other.session_day)
            samples = await uow.fetch(StageSample, {"period_id": other.id})
            for sample in samples:
                sample.period_id = survivor.id
                uow.insert(sample)
            uow.delete(other)

        survivor.is_resolved = False
        await self.recompute_bounds(uow, survivor)
        for day in released_days:
            await self.release_session(uow, day)

        logger.info(
            "Merged %d periods into %s (%s → %s)",
            len(periods),
            survivor.id[:12],
            survivor.start,
            survivor.end,
        )
        return survivor

    async def recompute_bounds(self, uow: UnitOfWork, period: SleepPeriod) -> list[StageSample]:
        """Derive start/end/duration and the stable id from the period's samples.

        When the start moves, the period is repointed to its new id and its
        samples follow.  Stages the period and returns its samples by start.
        """
        samples = await uow.fetch(StageSample, {"period_id": period.id}, order_by="start")
        if not samples:
            uow.insert(period)
            return samples

        period.start = samples[0].start
        period.end = max(s.end for s in samples)
        period.duration = (period.end - period.start).total_seconds()

        old_id = period.id
        new_id = stable_period_id(period.source, period.start)
        if new_id == old_id:
            uow.insert(period)
            return samples

        clash = await uow.get(SleepPeriod, new_id)
        period.id = new_id
        for sample in samples:
            sample.period_id = new_id
            uow.insert(sample)
        if clash is not None and period.session_day is None:
            period.session_day = clash.session_day
        uow.rekey(period, old_id)
        logger.debug("Repointed period %s → %s", old_id[:12], new_id[:12])
        if clash is not None:
            # The replaced record's samples now point here too
            return await self.recompute_bounds(uow, period)
        return samples

    # ------------------------------------------------------------------
    # Deletions
    # ------------------------------------------------------------------

    async def reconcile_deleted_samples(self, uow: UnitOfWork, uuids: Iterable[str]) -> int:
        """Remove deleted samples and re-derive the periods that owned them.

        Returns:
            Number of stored samples removed.
        """
        uuids = list(uuids)
        if not uuids:
            return 0
        samples = await uow.fetch(StageSample, {"uuid__in": uuids})
        affected = {s.period_id for s in samples if s.period_id}
        for sample in samples:
            uow.delete(sample)
        for period_id in affected:
            await self.rederive(uow, period_id)
        if samples:
            logger.debug("Removed %d samples from %d periods", len(samples), len(affected))
        return len(samples)

    async def rederive(self, uow: UnitOfWork, period_id: str) -> None:
        """Refresh a period after it lost samples; delete it if it has none left."""
        period = await uow.get(SleepPeriod, period_id)
        if period is None:
            return
        remaining = await uow.fetch(StageSample, {"period_id": period_id}, limit=1)
        if not remaining:
            uow.delete(period)
            logger.debug("Deleted empty period %s", period_id[:12])
            if period.session_day is not None:
                await self.release_session(uow, period.session_day)
            return
        period.is_resolved = False
        await self.recompute_bounds(uow, period)

    async def release_session(self, uow: UnitOfWork, day: date) -> None:
        """Force a session to be re-resolved after it lost a period.

        Its remaining periods are marked unresolved.  A session left with no
        periods is deleted and its wrist temperatures are unlinked.
        """
        remaining = await uow.fetch(SleepPeriod, {"session_day": day})
        if remaining:
            for period in remaining:
                period.is_resolved = False
                uow.insert(period)
            return

        session = await uow.get(SleepSession, day)
        if session is not None:
            uow.delete(session)
            logger.info("Deleted session %s: no periods remain", day)
        for temperature in await uow.fetch(WristTemperature, {"session_day": day}):
            temperature.session_day = None
            temperature.is_resolved = False
            uow.insert(temperature)

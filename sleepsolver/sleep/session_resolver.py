"""Session resolver: file sleep periods under their ownership day.

Each calendar day owns at most one SleepSession.  A period belongs to the day
whose evening-to-evening window (18:00 the previous day to 18:00 the day
itself, in the period's own time zone) contains its start.

Within a day the longest period that qualifies as major sleep (longer than
three hours, with at least one deep or REM sample) becomes the primary
period; the session's stage totals are summed from its samples.  Every
other period of the day is a nap.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone

from sleepsolver.sleep.base import SleepPeriod, SleepSession, SleepStage, StageSample, resolve_zone
from sleepsolver.sleep.config_loader import PipelineConfig, get_pipeline_config
from sleepsolver.sleep.store import UnitOfWork

logger = logging.getLogger("sleepsolver.sleep.session_resolver")

MAJOR_SLEEP_STAGES = [SleepStage.DEEP, SleepStage.REM]


def ownership_day(start: datetime, time_zone: str = "UTC", boundary_hour: int = 18) -> date:
    """Determine which calendar day a sleep period belongs to.

    Sleep starting at or after ``boundary_hour`` local time belongs to the
    next day; anything earlier belongs to the day it started on.

    Args:
        start:         UTC start of the period.
        time_zone:     IANA zone the period was recorded in.
        boundary_hour: Hour (0–23) at which the next day's window opens.

    Returns:
        The ownership day.
    """
    local = start.astimezone(resolve_zone(time_zone))
    if local.hour >= boundary_hour:
        # e.g. fell asleep at 22:00 → next-morning wake date
        return local.date() + timedelta(days=1)
    return local.date()


def day_start_utc(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


@dataclass
class ResolverReport:
    """Summary of one resolver pass."""

    periods_resolved: int = 0
    sessions_created: int = 0
    sessions_updated: list[date] = field(default_factory=list)


class SessionResolver:
    """Link unresolved periods to their day's session.

    Usage::

        resolver = SessionResolver(config)
        async with store.perform() as uow:
            report = await resolver.resolve(uow)
            await uow.save()
    """

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self._config = (config or get_pipeline_config()).sessions

    def ownership_day_for(self, period: SleepPeriod) -> date:
        return ownership_day(
            period.start, period.time_zone, self._config.ownership_day_boundary_hour
        )

    async def qualifies_as_major(self, uow: UnitOfWork, period: SleepPeriod) -> bool:
        """True if the period is long enough and contains deep or REM sleep."""
        if period.duration <= self._config.major_sleep_min_hours * 3600:
            return False
        restorative = await uow.fetch(
            StageSample,
            {"period_id": period.id, "stage__in": MAJOR_SLEEP_STAGES},
            limit=1,
        )
        return bool(restorative)

    async def resolve(self, uow: UnitOfWork) -> ResolverReport:
        """Resolve every unresolved period.

        Periods that moved to a different day leave their old session to be
        re-resolved from whatever remains linked to it.
        """
        report = ResolverReport()
        pending = await uow.fetch(SleepPeriod, {"is_resolved": False}, order_by="start")
        if not pending:
            return report

        by_day: dict[date, list[SleepPeriod]] = {}
        vacated: set[date] = set()
        for period in pending:
            day = self.ownership_day_for(period)
            by_day.setdefault(day, []).append(period)
            if period.session_day is not None and period.session_day != day:
                vacated.add(period.session_day)

        for day in sorted(by_day):
            await self._resolve_day(uow, day, by_day[day], report)
        for day in sorted(vacated - by_day.keys()):
            await self._resolve_day(uow, day, [], report)

        report.periods_resolved = len(pending)
        logger.info(
            "SessionResolver: %d periods → %d days (%d sessions created)",
            len(pending),
            len(by_day),
            report.sessions_created,
        )
        return report

    async def _resolve_day(
        self,
        uow: UnitOfWork,
        day: date,
        unresolved: list[SleepPeriod],
        report: ResolverReport,
    ) -> None:
        session = await uow.get(SleepSession, day)
        unresolved_ids = {p.id for p in unresolved}
        linked = [
            p
            for p in await uow.fetch(SleepPeriod, {"session_day": day})
            if p.id not in unresolved_ids and p.is_resolved
        ]
        candidates = unresolved + linked + await self._orphans(uow, day, unresolved_ids)

        qualifying = [p for p in candidates if await self.qualifies_as_major(uow, p)]
        if not qualifying:
            for period in unresolved:
                period.is_major_sleep = False
                period.is_resolved = True
                period.session_day = session.ownership_day if session else None
                uow.insert(period)
            if session is not None:
                if not linked and not unresolved:
                    uow.delete(session)
                    logger.info("Deleted session %s: no periods remain", day)
                    return
                # The day lost its major sleep; only naps remain
                session.reset_durations()
                session.invalidate_recovery()
                uow.insert(session)
                report.sessions_updated.append(day)
            return

        primary = max(qualifying, key=lambda p: (p.duration, -p.start.timestamp()))
        if session is None:
            session = SleepSession(ownership_day=day)
            report.sessions_created += 1
            logger.debug("Created session for %s", day)

        for period in candidates:
            period.is_major_sleep = period.id == primary.id
            period.is_resolved = True
            period.session_day = day
            uow.insert(period)

        samples = await uow.fetch(StageSample, {"period_id": primary.id}, order_by="start")
        session.update_from_primary_period(primary, samples)
        session.invalidate_recovery()
        uow.insert(session)
        report.sessions_updated.append(day)

    async def _orphans(
        self, uow: UnitOfWork, day: date, exclude: set[str]
    ) -> list[SleepPeriod]:
        """Resolved naps of ``day`` that were filed before the day had a session."""
        window_start = day_start_utc(day) - timedelta(days=2)
        window_end = day_start_utc(day) + timedelta(days=1)
        rows = await uow.fetch(
            SleepPeriod,
            {
                "is_resolved": True,
                "session_day": None,
                "start__gte": window_start,
                "start__lt": window_end,
            },
        )
        return [p for p in rows if p.id not in exclude and self.ownership_day_for(p) == day]

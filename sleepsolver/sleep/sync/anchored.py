"""Anchored (cursor-driven) incremental pulls from the sample provider.

One stream is drained page by page:

    Idle → Fetching → (more data? → Fetching | Done)

Each page is applied and committed in its own unit of work: deletions first,
then additions, then the stream cursor, which is saved even when the page
was empty.  A failure therefore never loses the pages already committed,
and the stored cursor is the checkpoint a later run resumes from.

Paging continues only while the run is a full sync or carries a date
filter, the last page added at least one record, and the provider issued a
new cursor.  Plain cursor-only pulls take a single page.

Usage::

    controller = AnchoredSyncController(provider, store, config)
    report = await controller.run(SleepStageHandler(config), mode=SyncMode.INCREMENTAL)
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta

from sleepsolver.sleep.base import (
    SLEEP_ANALYSIS,
    WRIST_TEMPERATURE,
    DateRange,
    ProviderPage,
    SampleProvider,
    SleepSession,
    StageSample,
    SyncCursor,
    SyncMode,
    WristTemperature,
    utc_now,
)
from sleepsolver.sleep.config_loader import PipelineConfig, get_pipeline_config
from sleepsolver.sleep.errors import NoDataAvailable, ProviderTimeout
from sleepsolver.sleep.grouper import PeriodGrouper
from sleepsolver.sleep.merger import PeriodMerger
from sleepsolver.sleep.store import Store, UnitOfWork

logger = logging.getLogger("sleepsolver.sleep.sync.anchored")


@dataclass
class AnchoredSyncReport:
    """Outcome of draining one stream.

    Attributes:
        stream:    Stream identifier (also the cursor key).
        mode:      Sync mode the run used.
        pages:     Pages fetched and committed.
        added:     Records received as added, across all pages.
        deleted:   Stored records removed because the provider deleted them.
        cancelled: True if the run stopped early on request.
        cursor:    Cursor stored after the last committed page.
    """

    stream: str
    mode: SyncMode
    pages: int = 0
    added: int = 0
    deleted: int = 0
    cancelled: bool = False
    cursor: str | None = None


# ---------------------------------------------------------------------------
# Stream handlers
# ---------------------------------------------------------------------------


class StreamHandler(ABC):
    """Applies one stream's pages to the store."""

    stream: str = ""

    @abstractmethod
    def lookback_days(self, config: PipelineConfig) -> int:
        """Date-filter window for cursor-driven pulls; 0 means no filter."""

    @abstractmethod
    async def apply_deletions(self, uow: UnitOfWork, uuids: list[str]) -> int:
        """Remove deleted records; return how many were stored."""

    @abstractmethod
    async def apply_additions(self, uow: UnitOfWork, records: list) -> None:
        """Insert or update added records."""


class SleepStageHandler(StreamHandler):
    """Sleep-stage samples: grouped into periods and merged across pages."""

    stream = SLEEP_ANALYSIS

    def __init__(
        self,
        config: PipelineConfig | None = None,
        grouper: PeriodGrouper | None = None,
        merger: PeriodMerger | None = None,
    ) -> None:
        config = config or get_pipeline_config()
        self.grouper = grouper or PeriodGrouper(config)
        self.merger = merger or PeriodMerger(config)

    def lookback_days(self, config: PipelineConfig) -> int:
        return config.sync.incremental_lookback_days

    async def apply_deletions(self, uow: UnitOfWork, uuids: list[str]) -> int:
        return await self.merger.reconcile_deleted_samples(uow, uuids)

    async def apply_additions(self, uow: UnitOfWork, records: list) -> None:
        samples = [r for r in records if isinstance(r, StageSample)]
        for potential in self.grouper.group(samples):
            await self.merger.upsert(uow, potential)


class WristTemperatureHandler(StreamHandler):
    """Overnight wrist temperature readings, stored unlinked until finalization."""

    stream = WRIST_TEMPERATURE

    def lookback_days(self, config: PipelineConfig) -> int:
        return config.sync.temperature_lookback_days

    async def apply_deletions(self, uow: UnitOfWork, uuids: list[str]) -> int:
        if not uuids:
            return 0
        stored = await uow.fetch(WristTemperature, {"uuid__in": uuids})
        for temperature in stored:
            uow.delete(temperature)
            if temperature.session_day is None:
                continue
            session = await uow.get(SleepSession, temperature.session_day)
            if session is not None:
                session.wrist_temperature = 0.0
                session.invalidate_recovery()
                uow.insert(session)
        return len(stored)

    async def apply_additions(self, uow: UnitOfWork, records: list) -> None:
        for reading in records:
            if not isinstance(reading, WristTemperature):
                continue
            existing = await uow.get(WristTemperature, reading.uuid)
            if existing is not None:
                existing.recorded_at = reading.recorded_at
                existing.value = reading.value
                uow.insert(existing)
            else:
                uow.insert(reading)


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class AnchoredSyncController:
    """Drain provider streams into the store, one committed page at a time.

    Args:
        provider: Sample provider to pull from.
        store:    Store to write into.
        config:   Pipeline config; paging, lookback and timeout settings
                  come from its ``sync`` section.
    """

    def __init__(
        self,
        provider: SampleProvider,
        store: Store,
        config: PipelineConfig | None = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._config = config or get_pipeline_config()

    async def run(
        self,
        handler: StreamHandler,
        mode: SyncMode = SyncMode.INCREMENTAL,
        date_range: DateRange | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AnchoredSyncReport:
        """Fetch and apply pages until the stream is exhausted.

        Args:
            handler:      Stream to drain.
            mode:         INCREMENTAL resumes from the stored cursor; FULL and
                          ONBOARDING start without one.
            date_range:   Explicit filter on sample start times.  Defaults to
                          the onboarding window for ONBOARDING and to the
                          handler's lookback for INCREMENTAL.
            cancel_event: Checked before each page; when set the run stops
                          after the last committed page.

        Raises:
            ProviderError:      The provider failed (NoDataAvailable excepted).
            PersistenceFailure: A page could not be committed.
        """
        sync_cfg = self._config.sync
        now = utc_now()
        limit: int | None = sync_cfg.page_limit

        if mode is SyncMode.FULL:
            cursor = None
            date_range = None
            limit = None
        elif mode is SyncMode.ONBOARDING:
            cursor = None
            if date_range is None:
                date_range = DateRange(now - timedelta(days=sync_cfg.onboarding_days), now)
        else:
            cursor = await self._load_cursor(handler.stream)
            lookback = handler.lookback_days(self._config)
            if date_range is None and lookback > 0:
                date_range = DateRange(now - timedelta(days=lookback), now)

        keep_paging = mode is SyncMode.FULL or date_range is not None
        report = AnchoredSyncReport(stream=handler.stream, mode=mode, cursor=cursor)

        while True:
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                logger.info("Anchored sync of %s cancelled after %d pages", handler.stream, report.pages)
                break

            page = await self._fetch_page(handler.stream, date_range, cursor, limit)
            await self._commit_page(handler, page, report)

            more = (
                keep_paging
                and len(page.added) > 0
                and page.new_cursor is not None
                and page.new_cursor != cursor
            )
            cursor = page.new_cursor or cursor
            if not more:
                break

        logger.info(
            "Anchored sync of %s (%s): %d pages, %d added, %d deleted",
            handler.stream,
            mode.value,
            report.pages,
            report.added,
            report.deleted,
        )
        return report

    async def _fetch_page(
        self,
        stream: str,
        date_range: DateRange | None,
        cursor: str | None,
        limit: int | None,
    ) -> ProviderPage:
        timeout = self._config.sync.fetch_timeout_seconds
        try:
            return await asyncio.wait_for(
                self._provider.fetch_interval_samples(
                    stream, date_range=date_range, cursor=cursor, limit=limit
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise ProviderTimeout(f"Fetching {stream} timed out after {timeout:.0f}s") from None
        except NoDataAvailable:
            logger.debug("Provider has no %s data for this query", stream)
            return ProviderPage()

    async def _commit_page(
        self, handler: StreamHandler, page: ProviderPage, report: AnchoredSyncReport
    ) -> None:
        async with self._store.perform() as uow:
            report.deleted += await handler.apply_deletions(uow, list(page.deleted))
            await handler.apply_additions(uow, list(page.added))

            stored = await uow.get(SyncCursor, handler.stream)
            token = page.new_cursor or (stored.token if stored else None)
            uow.insert(SyncCursor(stream=handler.stream, token=token, updated_at=utc_now()))
            await uow.save()

        report.pages += 1
        report.added += len(page.added)
        report.cursor = token
        logger.debug(
            "Committed %s page %d: +%d / -%d",
            handler.stream,
            report.pages,
            len(page.added),
            len(page.deleted),
        )

    async def _load_cursor(self, stream: str) -> str | None:
        async with self._store.perform() as uow:
            stored = await uow.get(SyncCursor, stream)
        return stored.token if stored else None

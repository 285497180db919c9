"""Period grouper: turn a flat batch of stage samples into candidate periods.

Only samples written by the health platform from a wearable take part, and
in-bed samples are dropped.  The survivors are sorted by start time and cut
into groups wherever the gap from one sample's end to the next sample's start
exceeds the configured threshold (900 s by default).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sleepsolver.sleep.base import SleepStage, StageSample
from sleepsolver.sleep.config_loader import PipelineConfig, get_pipeline_config
from sleepsolver.sleep.identity import stable_period_id

logger = logging.getLogger("sleepsolver.sleep.grouper")


@dataclass
class PotentialPeriod:
    """A contiguous run of samples that will become (part of) a SleepPeriod.

    Attributes:
        samples:   Member samples, ordered by start.
        time_zone: Zone the first sample was recorded in.
    """

    samples: list[StageSample] = field(default_factory=list)
    time_zone: str = "UTC"

    @property
    def start(self) -> datetime:
        return self.samples[0].start

    @property
    def end(self) -> datetime:
        return max(s.end for s in self.samples)

    @property
    def duration(self) -> float:
        return (self.end - self.start).total_seconds()

    @property
    def source(self) -> str:
        return self.samples[0].source

    @property
    def stable_id(self) -> str:
        return stable_period_id(self.source, self.start)


def gap_seconds(earlier_end: datetime, later_start: datetime) -> float:
    """Seconds from one interval's end to the next one's start (negative on overlap)."""
    return (later_start - earlier_end).total_seconds()


class PeriodGrouper:
    """Filter and group stage samples.

    Usage::

        grouper = PeriodGrouper()
        for potential in grouper.group(page.added):
            ...
    """

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self._config = (config or get_pipeline_config()).grouping

    def accepts(self, sample: StageSample) -> bool:
        """True if the sample came from a recognised wearable and is not in-bed."""
        if sample.stage == SleepStage.IN_BED:
            return False
        source_ok = self._config.accepted_source_prefix in sample.source.lower()
        product_ok = self._config.accepted_product_keyword in (sample.product_type or "").lower()
        return source_ok and product_ok

    def filter(self, samples: list[StageSample]) -> list[StageSample]:
        return [s for s in samples if self.accepts(s)]

    def group(self, samples: list[StageSample]) -> list[PotentialPeriod]:
        """Group accepted samples into candidate periods.

        Args:
            samples: Unordered batch, possibly containing foreign samples.

        Returns:
            Non-empty PotentialPeriods in start order.
        """
        accepted = sorted(self.filter(samples), key=lambda s: (s.start, s.end))
        if len(accepted) < len(samples):
            logger.debug("PeriodGrouper: discarded %d of %d samples", len(samples) - len(accepted), len(samples))

        groups: list[list[StageSample]] = []
        current: list[StageSample] = []
        for sample in accepted:
            if current and gap_seconds(current[-1].end, sample.start) > self._config.gap_threshold_seconds:
                groups.append(current)
                current = []
            current.append(sample)
        if current:
            groups.append(current)

        periods = [
            PotentialPeriod(
                samples=members,
                time_zone=members[0].time_zone or self._config.default_time_zone,
            )
            for members in groups
        ]
        logger.debug("PeriodGrouper: %d samples → %d periods", len(accepted), len(periods))
        return periods

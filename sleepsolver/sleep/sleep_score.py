"""Composite 0–100 sleep score.

Four independently capped components:

    - Duration (0–60): total sleep against the configured sleep need
    - REM      (0–15): REM time against a quarter of the sleep need
    - Deep     (0–15): deep time against a quarter of the sleep need
    - Awake    (0–10): wake-up count and the longest awake stretch

Only the primary period's samples feed the awake component; naps are not
counted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from sleepsolver.sleep.base import SleepSession, SleepStage, StageSample
from sleepsolver.sleep.config_loader import PipelineConfig, ScoringConfig, get_pipeline_config

logger = logging.getLogger("sleepsolver.sleep.sleep_score")

_DURATION_POINTS = 60.0
_REM_POINTS = 15.0
_DEEP_POINTS = 15.0
_AWAKE_POINTS = 10


@dataclass
class SleepScoreBreakdown:
    """Per-component result of one score computation.

    Attributes:
        duration:              Duration component, 0–60.
        rem:                   REM component, 0–15.
        deep:                  Deep component, 0–15.
        awake:                 Awake component, 0–10.
        wake_ups:              Awake runs at least ``wake_up_min_seconds`` long.
        longest_awake_seconds: Length of the longest awake run.
    """

    duration: float
    rem: float
    deep: float
    awake: float
    wake_ups: int = 0
    longest_awake_seconds: float = 0.0

    @property
    def total(self) -> float:
        return min(100.0, self.duration + self.rem + self.deep + self.awake)


def awake_runs(samples: Sequence[StageSample]) -> list[float]:
    """Lengths in seconds of each run of consecutive awake samples.

    A run lasts from its first awake sample's start to the start of the next
    non-awake sample, or to the end of the last sample.
    """
    ordered = sorted(samples, key=lambda s: s.start)
    runs: list[float] = []
    i = 0
    while i < len(ordered):
        if ordered[i].stage != SleepStage.AWAKE:
            i += 1
            continue
        j = i
        while j + 1 < len(ordered) and ordered[j + 1].stage == SleepStage.AWAKE:
            j += 1
        run_end = ordered[j + 1].start if j + 1 < len(ordered) else ordered[j].end
        runs.append((run_end - ordered[i].start).total_seconds())
        i = j + 1
    return runs


def _ratio_points(value: float, target: float, points: float) -> float:
    if target <= 0:
        return 0.0
    return min(1.0, max(0.0, value) / target) * points


def awake_points(wake_ups: int, longest_awake_seconds: float, cfg: ScoringConfig) -> int:
    """Score the awake component from the wake-up count and longest run."""
    if wake_ups <= 2:
        score = _AWAKE_POINTS
    elif wake_ups <= 7:
        score = max(0, _AWAKE_POINTS - 2 * (wake_ups - 2))
    else:
        score = 0
    if longest_awake_seconds > cfg.long_awake_seconds:
        score -= cfg.long_awake_penalty
    return max(0, score)


class SleepScoreCalculator:
    """Compute sleep scores for sessions.

    Usage::

        calc = SleepScoreCalculator(config)
        breakdown = calc.apply(session, primary_samples)
        session.sleep_score   # == breakdown.total
    """

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self._config = (config or get_pipeline_config()).scoring

    def breakdown(
        self, session: SleepSession, samples: Sequence[StageSample]
    ) -> SleepScoreBreakdown:
        """Score a session without modifying it.

        Args:
            session: Session with its stage durations already aggregated.
            samples: The primary period's samples.
        """
        target = self._config.target_seconds
        stage_target = target / 4.0

        runs = awake_runs(samples)
        wake_ups = sum(1 for r in runs if r >= self._config.wake_up_min_seconds)
        longest = max(runs, default=0.0)

        return SleepScoreBreakdown(
            duration=_ratio_points(session.total_sleep, target, _DURATION_POINTS),
            rem=_ratio_points(session.rem, stage_target, _REM_POINTS),
            deep=_ratio_points(session.deep, stage_target, _DEEP_POINTS),
            awake=awake_points(wake_ups, longest, self._config),
            wake_ups=wake_ups,
            longest_awake_seconds=longest,
        )

    def apply(
        self, session: SleepSession, samples: Sequence[StageSample]
    ) -> SleepScoreBreakdown:
        """Score a session and store the total on it."""
        result = self.breakdown(session, samples)
        session.sleep_score = result.total
        logger.debug(
            "Sleep score %s: %.2f (duration=%.1f rem=%.1f deep=%.1f awake=%d, %d wake-ups)",
            session.ownership_day,
            result.total,
            result.duration,
            result.rem,
            result.deep,
            result.awake,
            result.wake_ups,
        )
        return result

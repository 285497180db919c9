"""Recovery baselines: compare tonight's physiology with the user's own history.

For each of five metrics the engine takes the sessions of the preceding
90 days (the target day excluded), keeps the values that were actually
measured (> 0), and, given at least seven of them, computes the sample mean
and the Bessel-corrected standard deviation.  The session's z-score is
``(current − mean) / std``, or 0 when the history has no spread.

Metrics never borrow eligibility from one another: one session can have a
real HRV z-score and an unknown temperature z-score.  Unknown values are
stored as INSUFFICIENT_BASELINE_DATA (−100) for both the z-score and the
baseline; that is a state to render, not a measurement.
"""

from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Sequence

from sleepsolver.sleep.base import INSUFFICIENT_BASELINE_DATA, SleepSession
from sleepsolver.sleep.config_loader import PipelineConfig, get_pipeline_config
from sleepsolver.sleep.store import UnitOfWork

logger = logging.getLogger("sleepsolver.sleep.recovery")


@dataclass(frozen=True)
class RecoveryMetric:
    """Where one metric lives on a SleepSession."""

    name: str
    value_field: str
    status_field: str
    baseline_field: str
    higher_is_better: bool


RECOVERY_METRICS: tuple[RecoveryMetric, ...] = (
    RecoveryMetric("hrv", "average_hrv", "hrv_status", "hrv_baseline", True),
    RecoveryMetric("resting_heart_rate", "average_heart_rate", "rhr_status", "rhr_baseline", False),
    RecoveryMetric("oxygen_saturation", "average_spo2", "spo2_status", "spo2_baseline", True),
    RecoveryMetric(
        "respiratory_rate",
        "average_respiratory_rate",
        "respiratory_status",
        "respiratory_baseline",
        False,
    ),
    RecoveryMetric(
        "wrist_temperature", "wrist_temperature", "temperature_status", "temperature_baseline", False
    ),
)


@dataclass
class MetricBaseline:
    """Rolling baseline of one metric.

    Attributes:
        baseline: Sample mean of valid history, or the sentinel.
        std_dev:  Sample standard deviation, or the sentinel.
        count:    Number of valid historical values found.
    """

    baseline: float = INSUFFICIENT_BASELINE_DATA
    std_dev: float = INSUFFICIENT_BASELINE_DATA
    count: int = 0

    @property
    def available(self) -> bool:
        return self.baseline != INSUFFICIENT_BASELINE_DATA


@dataclass
class RecoveryBaselines:
    """Baselines for all five metrics, keyed by RecoveryMetric.name."""

    metrics: dict[str, MetricBaseline] = field(default_factory=dict)

    def __getitem__(self, name: str) -> MetricBaseline:
        return self.metrics.get(name, MetricBaseline())


def compute_baseline(values: Sequence[float], min_samples: int = 7) -> MetricBaseline:
    """Baseline of the valid (> 0) values, or the sentinel with too few of them."""
    valid = [v for v in values if v is not None and v > 0]
    if len(valid) < min_samples:
        return MetricBaseline(count=len(valid))
    return MetricBaseline(
        baseline=statistics.fmean(valid),
        std_dev=statistics.stdev(valid),
        count=len(valid),
    )


def z_score(current: float, baseline: MetricBaseline) -> tuple[float, float]:
    """Return ``(z, baseline)`` for a measurement, or the sentinel pair.

    Unmeasured current values (<= 0) and unavailable baselines both yield
    ``(INSUFFICIENT_BASELINE_DATA, INSUFFICIENT_BASELINE_DATA)``.
    """
    if current is None or current <= 0 or not baseline.available:
        return INSUFFICIENT_BASELINE_DATA, INSUFFICIENT_BASELINE_DATA
    if baseline.std_dev == 0:
        return 0.0, baseline.baseline
    return (current - baseline.baseline) / baseline.std_dev, baseline.baseline


def status_for(z: float, higher_is_better: bool = True, threshold: float = 1.5) -> str:
    """Interpret a z-score as 'optimal', 'good', 'attention' or 'insufficient_data'."""
    if z == INSUFFICIENT_BASELINE_DATA or z != z:
        return "insufficient_data"
    if not higher_is_better:
        z = -z
    if z > threshold:
        return "optimal"
    if z >= -threshold:
        return "good"
    return "attention"


class RecoveryBaselineEngine:
    """Compute baselines from stored history and write z-scores onto sessions.

    Usage::

        engine = RecoveryBaselineEngine(config)
        async with store.perform() as uow:
            session = await uow.get(SleepSession, day)
            await engine.apply(uow, session)
            uow.insert(session)
            await uow.save()
    """

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self._config = (config or get_pipeline_config()).recovery

    async def history(self, uow: UnitOfWork, day: date) -> list[SleepSession]:
        """Sessions inside the baseline window before ``day`` (exclusive)."""
        return await uow.fetch(
            SleepSession,
            {
                "ownership_day__gte": day - timedelta(days=self._config.baseline_window_days),
                "ownership_day__lt": day,
            },
            order_by="ownership_day",
        )

    async def available_history_count(self, uow: UnitOfWork, day: date) -> int:
        return len(await self.history(uow, day))

    async def compute_baselines(self, uow: UnitOfWork, day: date) -> RecoveryBaselines:
        sessions = await self.history(uow, day)
        return RecoveryBaselines(
            metrics={
                metric.name: compute_baseline(
                    [getattr(s, metric.value_field) for s in sessions],
                    self._config.min_valid_samples,
                )
                for metric in RECOVERY_METRICS
            }
        )

    async def apply(self, uow: UnitOfWork, session: SleepSession) -> RecoveryBaselines:
        """Store each metric's z-score and baseline on ``session``.

        The session is modified in place; the caller stages and saves it.
        """
        baselines = await self.compute_baselines(uow, session.ownership_day)
        for metric in RECOVERY_METRICS:
            z, baseline = z_score(getattr(session, metric.value_field), baselines[metric.name])
            setattr(session, metric.status_field, z)
            setattr(session, metric.baseline_field, baseline)
        logger.debug(
            "Recovery %s: %s",
            session.ownership_day,
            ", ".join(
                f"{m.name}={getattr(session, m.status_field):.2f}" for m in RECOVERY_METRICS
            ),
        )
        return baselines

    def statuses(self, session: SleepSession) -> dict[str, str]:
        """Human-readable status per metric; unknown until the session is finalized."""
        z_scores = session.recovery_statuses()
        return {
            m.name: status_for(z_scores[m.status_field], m.higher_is_better, self._config.status_threshold)
            for m in RECOVERY_METRICS
        }

"""Load, validate, and hot-reload the sleep pipeline configuration.

The config lives in ``pipeline_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_pipeline_config()`` to re-read from
disk after an edit, no restart required.

Usage::

    from sleepsolver.sleep.config_loader import get_pipeline_config

    config = get_pipeline_config()
    config.grouping.gap_threshold_seconds   # 900
    config.scoring.target_seconds           # 28800.0
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("sleepsolver.sleep.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "pipeline_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class GroupingConfig:
    """Sample filtering and gap-based grouping."""

    gap_threshold_seconds: int = 900
    accepted_source_prefix: str = "com.apple.health"
    accepted_product_keyword: str = "watch"
    default_time_zone: str = "UTC"


@dataclass
class MergingConfig:
    """Merging of periods split across sync batches."""

    gap_threshold_seconds: int = 900


@dataclass
class SessionConfig:
    """Ownership-day assignment and major-sleep classification."""

    ownership_day_boundary_hour: int = 18  # sleep starting at/after this hour belongs to the next day
    major_sleep_min_hours: float = 3.0
    temperature_window_before_hours: int = 6
    temperature_window_after_hours: int = 18


@dataclass
class ScoringConfig:
    """Composite sleep score settings."""

    sleep_need_hours: float = 8.0
    wake_up_min_seconds: int = 120
    long_awake_seconds: int = 1200
    long_awake_penalty: int = 5

    @property
    def target_seconds(self) -> float:
        return self.sleep_need_hours * 3600.0


@dataclass
class RecoveryConfig:
    """Rolling personal baseline settings."""

    baseline_window_days: int = 90
    min_valid_samples: int = 7
    status_threshold: float = 1.5


@dataclass
class SyncConfig:
    """Provider paging, timeouts, and coordinator rate limiting."""

    min_background_resync_seconds: int = 300
    page_limit: int = 2000
    incremental_lookback_days: int = 210
    onboarding_days: int = 90
    temperature_lookback_days: int = 180
    fetch_timeout_seconds: float = 30.0


@dataclass
class PipelineConfig:
    """Top-level validated pipeline configuration."""

    version: str = "1.0"
    grouping: GroupingConfig = field(default_factory=GroupingConfig)
    merging: MergingConfig = field(default_factory=MergingConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when pipeline_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Pipeline config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def build_pipeline_config(raw: dict) -> PipelineConfig:
    """Validate a raw config dict and construct a PipelineConfig.

    Missing keys fall back to the dataclass defaults.  Every problem found is
    collected before raising, so one run reports all of them.

    Args:
        raw: Parsed YAML dict.

    Returns:
        Validated PipelineConfig instance.

    Raises:
        ConfigValidationError: If any value has the wrong type or range.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, name: str, default: Any, cast: type) -> Any:
        value = section.get(key, default)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{name}.{key} must be a number, got {value!r}")
            return default
        return cast(value)

    def _section(name: str) -> dict:
        section = raw.get(name, {})
        if not isinstance(section, dict):
            errors.append(f"'{name}' must be a mapping")
            return {}
        return section

    # ── Grouping ──
    g_raw = _section("grouping")
    grouping = GroupingConfig(
        gap_threshold_seconds=_number(g_raw, "gap_threshold_seconds", "grouping", 900, int),
        accepted_source_prefix=str(g_raw.get("accepted_source_prefix", "com.apple.health")),
        accepted_product_keyword=str(g_raw.get("accepted_product_keyword", "watch")),
        default_time_zone=str(g_raw.get("default_time_zone", "UTC")),
    )

    # ── Merging ──
    m_raw = _section("merging")
    merging = MergingConfig(
        gap_threshold_seconds=_number(m_raw, "gap_threshold_seconds", "merging", 900, int),
    )

    # ── Sessions ──
    s_raw = _section("sessions")
    sessions = SessionConfig(
        ownership_day_boundary_hour=_number(
            s_raw, "ownership_day_boundary_hour", "sessions", 18, int
        ),
        major_sleep_min_hours=_number(s_raw, "major_sleep_min_hours", "sessions", 3.0, float),
        temperature_window_before_hours=_number(
            s_raw, "temperature_window_before_hours", "sessions", 6, int
        ),
        temperature_window_after_hours=_number(
            s_raw, "temperature_window_after_hours", "sessions", 18, int
        ),
    )
    if not 0 <= sessions.ownership_day_boundary_hour <= 23:
        errors.append(
            "sessions.ownership_day_boundary_hour must be between 0 and 23, "
            f"got {sessions.ownership_day_boundary_hour}"
        )

    # ── Scoring ──
    sc_raw = _section("scoring")
    scoring = ScoringConfig(
        sleep_need_hours=_number(sc_raw, "sleep_need_hours", "scoring", 8.0, float),
        wake_up_min_seconds=_number(sc_raw, "wake_up_min_seconds", "scoring", 120, int),
        long_awake_seconds=_number(sc_raw, "long_awake_seconds", "scoring", 1200, int),
        long_awake_penalty=_number(sc_raw, "long_awake_penalty", "scoring", 5, int),
    )
    if scoring.sleep_need_hours <= 0:
        errors.append(f"scoring.sleep_need_hours must be > 0, got {scoring.sleep_need_hours}")

    # ── Recovery ──
    r_raw = _section("recovery")
    recovery = RecoveryConfig(
        baseline_window_days=_number(r_raw, "baseline_window_days", "recovery", 90, int),
        min_valid_samples=_number(r_raw, "min_valid_samples", "recovery", 7, int),
        status_threshold=_number(r_raw, "status_threshold", "recovery", 1.5, float),
    )
    if recovery.min_valid_samples < 2:
        # Sample standard deviation needs at least two values
        errors.append(
            f"recovery.min_valid_samples must be >= 2, got {recovery.min_valid_samples}"
        )

    # ── Sync ──
    sy_raw = _section("sync")
    sync = SyncConfig(
        min_background_resync_seconds=_number(
            sy_raw, "min_background_resync_seconds", "sync", 300, int
        ),
        page_limit=_number(sy_raw, "page_limit", "sync", 2000, int),
        incremental_lookback_days=_number(sy_raw, "incremental_lookback_days", "sync", 210, int),
        onboarding_days=_number(sy_raw, "onboarding_days", "sync", 90, int),
        temperature_lookback_days=_number(sy_raw, "temperature_lookback_days", "sync", 180, int),
        fetch_timeout_seconds=_number(sy_raw, "fetch_timeout_seconds", "sync", 30.0, float),
    )
    if sync.fetch_timeout_seconds <= 0:
        errors.append(f"sync.fetch_timeout_seconds must be > 0, got {sync.fetch_timeout_seconds}")

    if errors:
        raise ConfigValidationError(
            f"pipeline_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return PipelineConfig(
        version=str(raw.get("version", "1.0")),
        grouping=grouping,
        merging=merging,
        sessions=sessions,
        scoring=scoring,
        recovery=recovery,
        sync=sync,
    )


def load_pipeline_config(path: Path | None = None) -> PipelineConfig:
    """Load and validate the pipeline config from disk.

    Args:
        path: Override path to YAML. Uses the bundled pipeline_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = build_pipeline_config(raw)
    logger.info("Loaded pipeline config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: PipelineConfig | None = None
_config_lock = threading.Lock()


def get_pipeline_config() -> PipelineConfig:
    """Return the global PipelineConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_pipeline_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_pipeline_config()
    return _config


def reload_pipeline_config(path: Path | None = None) -> PipelineConfig:
    """Reload the pipeline config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_pipeline_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded pipeline config: %s → %s", old_version, new_config.version)
    return new_config

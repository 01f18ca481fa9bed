"""Load, validate, and hot-reload the rehab pipeline configuration.

The config lives in ``pipeline_config.yaml`` alongside this module.  At
startup it is loaded once and cached.  Call ``reload_pipeline_config()`` to
re-read from disk after an operator edit without restarting the workers.

Usage::

    from src.rehab.config_loader import get_pipeline_config

    config = get_pipeline_config()
    delay = config.retry.delay_for(7)            # timedelta(minutes=15)
    threshold = config.retry.threshold_for(3)     # 0.60
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import yaml

logger = logging.getLogger("cardiorehab.rehab.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "pipeline_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class RetryConfig:
    """Attempt schedule and completeness gating.

    Attributes:
        attempt_delays:        attempt number → delay in minutes.
        completeness_tiers:    first attempt of tier → minimum completeness.
        fallback_enabled:      Whether attempt 12 (historical fallback) runs.
        fallback_threshold:    Minimum completeness for the fallback attempt.
        fallback_offset:       Minutes after the bulk-sync boundary.
        attempt_grace_seconds: Attempts due within this window run early.
    """

    attempt_delays: dict[int, int]
    completeness_tiers: dict[int, float]
    fallback_enabled: bool = True
    fallback_threshold: float = 0.40
    fallback_offset: int = 10
    attempt_grace_seconds: int = 60

    @property
    def max_attempts(self) -> int:
        return max(self.attempt_delays)

    @property
    def fallback_attempt(self) -> int:
        return self.max_attempts + 1

    def delay_for(self, attempt: int) -> timedelta | None:
        """Return the delay before an attempt, or None if unscheduled."""
        minutes = self.attempt_delays.get(attempt)
        return None if minutes is None else timedelta(minutes=minutes)

    def threshold_for(self, attempt: int) -> float:
        """Return the completeness an attempt must reach to be accepted.

        Args:
            attempt: 1-based attempt number.

        Returns:
            Fraction between 0.0 and 1.0.
        """
        if attempt >= self.fallback_attempt:
            return self.fallback_threshold
        applicable = [start for start in self.completeness_tiers if start <= attempt]
        if not applicable:
            return self.completeness_tiers[min(self.completeness_tiers)]
        return self.completeness_tiers[max(applicable)]


@dataclass
class FetchConfig:
    """Fetch-window buffering by session age."""

    recent_session_window_minutes: int = 60
    recent_buffer_minutes: int = 3
    old_session_buffer_cycles: list[int] = field(default_factory=lambda: [10, 20, 30])


@dataclass
class CredentialConfig:
    lock_stale_minutes: int = 5
    refresh_buffer_seconds: int = 300


@dataclass
class BulkSyncConfig:
    hours: list[int] = field(default_factory=lambda: [0, 6, 12, 18])
    chunk_hours: int = 6
    default_lookback_hours: int = 6
    skipped_retry_delay_minutes: int = 5


@dataclass
class BaselineConfig:
    milestones: list[int] = field(default_factory=lambda: [1, 3, 7, 14])
    window_size: int = 3
    mad_scale: float = 1.4826


@dataclass
class WeeklyConfig:
    top_n: int = 3
    current_weight: float = 0.6
    previous_weight: float = 0.4


@dataclass
class SessionConfig:
    abandon_after_hours: int = 2
    min_hours_between_sessions: int = 18


@dataclass
class WorkerConfig:
    retry_sweep_seconds: int = 300
    auto_stop_seconds: int = 60
    abandoned_cleanup_seconds: int = 1800
    stale_lock_cleanup_seconds: int = 300


@dataclass
class PipelineConfig:
    """Complete, validated pipeline configuration.

    This is the single in-memory representation of pipeline_config.yaml.
    The orchestrator, workers, lock manager and aggregators read from it.
    """

    version: str
    retry: RetryConfig
    fetch: FetchConfig
    credentials: CredentialConfig
    bulk_sync: BulkSyncConfig
    baseline: BaselineConfig
    weekly: WeeklyConfig
    sessions: SessionConfig
    workers: WorkerConfig
    _raw: dict = field(default_factory=dict, repr=False)


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


def _validate_and_build(raw: dict) -> PipelineConfig:
    """Validate the raw YAML dict and construct a PipelineConfig.

    Args:
        raw: Parsed YAML dict.

    Returns:
        Validated PipelineConfig instance.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []
    version = str(raw.get("version", "1.0"))

    # ── Retry schedule ──
    retry_raw = raw.get("retry") or {}
    delays_raw = retry_raw.get("attempt_delays_minutes") or {}
    if not delays_raw:
        errors.append("'retry.attempt_delays_minutes' is missing or empty")

    attempt_delays: dict[int, int] = {}
    for attempt, minutes in delays_raw.items():
        try:
            a, m = int(attempt), int(minutes)
        except (TypeError, ValueError):
            errors.append(f"retry.attempt_delays_minutes.{attempt} must be an integer")
            continue
        if a < 1 or m < 0:
            errors.append(f"retry.attempt_delays_minutes.{attempt} = {minutes} is out of range")
        attempt_delays[a] = m

    if attempt_delays and sorted(attempt_delays) != list(range(1, len(attempt_delays) + 1)):
        errors.append("retry.attempt_delays_minutes must cover attempts 1..N without gaps")

    tiers_raw = retry_raw.get("completeness_tiers") or {}
    if not tiers_raw:
        errors.append("'retry.completeness_tiers' is missing or empty")
    completeness_tiers: dict[int, float] = {}
    for attempt, threshold in tiers_raw.items():
        try:
            t = float(threshold)
        except (TypeError, ValueError):
            errors.append(f"retry.completeness_tiers.{attempt} must be a number")
            continue
        if not (0.0 <= t <= 1.0):
            errors.append(f"retry.completeness_tiers.{attempt} = {t} is out of range [0.0, 1.0]")
        completeness_tiers[int(attempt)] = t

    fb_raw = retry_raw.get("historical_fallback") or {}
    retry = RetryConfig(
        attempt_delays=attempt_delays,
        completeness_tiers=completeness_tiers,
        fallback_enabled=bool(fb_raw.get("enabled", True)),
        fallback_threshold=float(fb_raw.get("threshold", 0.40)),
        fallback_offset=int(fb_raw.get("offset_minutes", 10)),
        attempt_grace_seconds=int(retry_raw.get("attempt_grace_seconds", 60)),
    )

    # ── Fetch buffers ──
    fetch_raw = raw.get("fetch") or {}
    fetch = FetchConfig(
        recent_session_window_minutes=int(fetch_raw.get("recent_session_window_minutes", 60)),
        recent_buffer_minutes=int(fetch_raw.get("recent_buffer_minutes", 3)),
        old_session_buffer_cycles=[
            int(m) for m in fetch_raw.get("old_session_buffer_cycles_minutes", [10, 20, 30])
        ],
    )
    if not fetch.old_session_buffer_cycles:
        errors.append("fetch.old_session_buffer_cycles_minutes must not be empty")

    cred_raw = raw.get("credentials") or {}
    credentials = CredentialConfig(
        lock_stale_minutes=int(cred_raw.get("lock_stale_minutes", 5)),
        refresh_buffer_seconds=int(cred_raw.get("refresh_buffer_seconds", 300)),
    )

    # ── Bulk sync ──
    bs_raw = raw.get("bulk_sync") or {}
    bulk_sync = BulkSyncConfig(
        hours=sorted(int(h) for h in bs_raw.get("hours", [0, 6, 12, 18])),
        chunk_hours=int(bs_raw.get("chunk_hours", 6)),
        default_lookback_hours=int(bs_raw.get("default_lookback_hours", 6)),
        skipped_retry_delay_minutes=int(bs_raw.get("skipped_retry_delay_minutes", 5)),
    )
    if not bulk_sync.hours or any(not (0 <= h <= 23) for h in bulk_sync.hours):
        errors.append("bulk_sync.hours must be a non-empty list of hours in 0..23")

    # ── Baseline / weekly ──
    bl_raw = raw.get("baseline") or {}
    baseline = BaselineConfig(
        milestones=sorted(int(m) for m in bl_raw.get("milestones", [1, 3, 7, 14])),
        window_size=int(bl_raw.get("window_size", 3)),
        mad_scale=float(bl_raw.get("mad_scale", 1.4826)),
    )

    wk_raw = raw.get("weekly") or {}
    weekly = WeeklyConfig(
        top_n=int(wk_raw.get("top_n", 3)),
        current_weight=float(wk_raw.get("current_weight", 0.6)),
        previous_weight=float(wk_raw.get("previous_weight", 0.4)),
    )
    total_w = weekly.current_weight + weekly.previous_weight
    if not (0.99 <= total_w <= 1.01):
        logger.warning("Weekly blend weights sum to %.3f (expected 1.0)", total_w)

    ss_raw = raw.get("sessions") or {}
    sessions = SessionConfig(
        abandon_after_hours=int(ss_raw.get("abandon_after_hours", 2)),
        min_hours_between_sessions=int(ss_raw.get("min_hours_between_sessions", 18)),
    )

    wr_raw = raw.get("workers") or {}
    workers = WorkerConfig(
        retry_sweep_seconds=int(wr_raw.get("retry_sweep_seconds", 300)),
        auto_stop_seconds=int(wr_raw.get("auto_stop_seconds", 60)),
        abandoned_cleanup_seconds=int(wr_raw.get("abandoned_cleanup_seconds", 1800)),
        stale_lock_cleanup_seconds=int(wr_raw.get("stale_lock_cleanup_seconds", 300)),
    )

    if errors:
        raise ConfigValidationError(
            f"pipeline_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return PipelineConfig(
        version=version,
        retry=retry,
        fetch=fetch,
        credentials=credentials,
        bulk_sync=bulk_sync,
        baseline=baseline,
        weekly=weekly,
        sessions=sessions,
        workers=workers,
        _raw=raw,
    )


def load_pipeline_config(path: Path | None = None) -> PipelineConfig:
    """Load and validate the pipeline config from disk.

    Args:
        path: Override path to YAML. Uses the bundled pipeline_config.yaml by default.

    Returns:
        Validated PipelineConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
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

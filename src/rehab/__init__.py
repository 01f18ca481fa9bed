"""CardioRehab session-completion pipeline.

This package turns wearable heart-rate telemetry for a supervised
cardiac-rehabilitation session into a clinically scored, persisted result,
tolerating telemetry that arrives late or never.

Subpackages:
    providers/ — Telemetry provider adapters (Google Fit)
    sync/      — Retry orchestrator, credential lock, periodic workers, historical sync

Core modules:
    base          — Domain types, error taxonomy and the TelemetryProvider ABC
    zones         — Heart-rate zone bands from age, comorbidities and plan week
    imputation    — Minute-grid gap filling and completeness
    scoring       — Phase scoring and risk level
    baseline      — Robust (median/MAD) baseline thresholds and health status
    resting_hr    — Resting heart rate from non-session readings
    weekly        — Weekly top-N and cumulative scores
    sessions      — Session start / stop / report lifecycle
    config_loader — Load/validate/hot-reload pipeline_config.yaml
"""

from src.rehab.base import (
    HeartRateReading,
    HeartRateSample,
    OAuthTokens,
    RehabError,
    RetryAttempt,
    Session,
    SessionStatus,
    TelemetryProvider,
    ZoneBands,
)
from src.rehab.config_loader import PipelineConfig, get_pipeline_config

__all__ = [
    "TelemetryProvider",
    "HeartRateSample",
    "HeartRateReading",
    "OAuthTokens",
    "RehabError",
    "RetryAttempt",
    "Session",
    "SessionStatus",
    "ZoneBands",
    "PipelineConfig",
    "get_pipeline_config",
]

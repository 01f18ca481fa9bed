"""Retry schedule arithmetic for session processing.

Attempt delays (from pipeline_config.yaml):
    1:     immediate
    2–6:   every 5 minutes
    7:     15 minutes
    8:     30 minutes
    9:     1 hour
    10:    3 hours
    11:    6 hours
    12:    historical fallback, 10 minutes after the next bulk-sync boundary

Every function here is pure: callers pass ``now`` explicitly so the whole
schedule can be exercised deterministically in tests.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta

from src.rehab.base import RetryAttempt
from src.rehab.config_loader import BulkSyncConfig, RetryConfig, get_pipeline_config


def _retry_config(config: RetryConfig | None) -> RetryConfig:
    return config or get_pipeline_config().retry


def attempt_delay(attempt: int, config: RetryConfig | None = None) -> timedelta | None:
    """Delay before ``attempt`` measured from when it is scheduled."""
    return _retry_config(config).delay_for(attempt)


def completeness_threshold(attempt: int, config: RetryConfig | None = None) -> float:
    """Minimum completeness required to accept data on ``attempt``."""
    return _retry_config(config).threshold_for(attempt)


def is_fallback_attempt(attempt: int, config: RetryConfig | None = None) -> bool:
    return attempt == _retry_config(config).fallback_attempt


def build_retry_schedule(
    reference: datetime, config: RetryConfig | None = None
) -> list[RetryAttempt]:
    """Create the initial schedule of pending attempts.

    ``scheduled_for`` accumulates each delay from ``reference``, so it is the
    earliest time the attempt can run if every earlier attempt falls short.

    Args:
        reference: Time processing starts.
        config:    Retry settings (defaults to the loaded pipeline config).

    Returns:
        One pending RetryAttempt per configured attempt.
    """
    cfg = _retry_config(config)
    schedule: list[RetryAttempt] = []
    at = reference
    for attempt in range(1, cfg.max_attempts + 1):
        at = at + cfg.delay_for(attempt)
        schedule.append(RetryAttempt(attempt=attempt, scheduled_for=at))
    return schedule


def record_attempt(
    schedule: list[RetryAttempt],
    attempt: int,
    result: str,
    executed_at: datetime,
    data_points: int | None = None,
    error_message: str | None = None,
    status: str = "completed",
) -> list[RetryAttempt]:
    """Return a copy of ``schedule`` with one attempt marked executed.

    Only the entry matching ``attempt`` changes; an attempt missing from the
    schedule (the fallback on a legacy row) is appended.
    """
    updated: list[RetryAttempt] = []
    found = False
    for item in schedule:
        if item.attempt == attempt:
            found = True
            item = replace(
                item,
                status=status,
                executed_at=executed_at,
                result=result,
                data_points=data_points,
                error_message=error_message,
            )
        updated.append(item)

    if not found:
        updated.append(
            RetryAttempt(
                attempt=attempt,
                scheduled_for=executed_at,
                status=status,
                executed_at=executed_at,
                result=result,
                data_points=data_points,
                error_message=error_message,
            )
        )
    return updated


def next_pending_attempt(schedule: list[RetryAttempt]) -> RetryAttempt | None:
    return next((item for item in schedule if item.is_pending), None)


def next_bulk_sync_time(now: datetime, config: BulkSyncConfig | None = None) -> datetime:
    """Next bulk-sync boundary strictly after ``now`` (00/06/12/18 by default)."""
    hours = (config or get_pipeline_config().bulk_sync).hours
    day = now.replace(minute=0, second=0, microsecond=0)
    for hour in hours:
        candidate = day.replace(hour=hour)
        if candidate > now:
            return candidate
    return day.replace(hour=hours[0]) + timedelta(days=1)


def fallback_attempt_time(
    now: datetime,
    retry: RetryConfig | None = None,
    bulk_sync: BulkSyncConfig | None = None,
) -> datetime:
    """When the historical-fallback attempt should run."""
    offset = timedelta(minutes=_retry_config(retry).fallback_offset)
    return next_bulk_sync_time(now, bulk_sync) + offset


def should_attempt_now(
    next_attempt_at: datetime | None, now: datetime, config: RetryConfig | None = None
) -> bool:
    """True when the attempt is due, allowing a small early grace window."""
    if next_attempt_at is None:
        return True
    grace = timedelta(seconds=_retry_config(config).attempt_grace_seconds)
    return now >= next_attempt_at - grace

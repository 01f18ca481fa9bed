"""Pydantic models for rehab sessions: requests, session reads, status polling."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import AwareDatetime, Field

from src.models.base import RehabBase
from src.rehab.base import HealthStatus, SessionStatus, SessionType


# ---------- Requests ----------

class SessionStartRequest(RehabBase):
    patient_id: str = Field(min_length=1, max_length=100)
    week_number: int = Field(ge=1, le=52)


class SessionReportRequest(RehabBase):
    """A session that already happened, reported after the fact."""

    patient_id: str = Field(min_length=1, max_length=100)
    week_number: int = Field(ge=1, le=52)
    start_time: AwareDatetime
    end_time: AwareDatetime


# ---------- Reads ----------

class ZoneBandsRead(RehabBase):
    max_permissible_hr: int
    target_hr: int
    warmup_min: int
    warmup_max: int
    exercise_min: int
    exercise_max: int
    cooldown_min: int
    cooldown_max: int
    session_duration: int


class RetryAttemptRead(RehabBase):
    attempt: int
    scheduled_for: datetime
    status: str
    executed_at: datetime | None = None
    result: str | None = None
    data_points: int | None = None
    error_message: str | None = None


class SessionRead(RehabBase):
    session_id: int
    patient_id: str
    week_number: int
    attempt_number: int = Field(description="Session number within the week")
    session_type: SessionType
    session_date: date
    start_time: datetime
    end_time: datetime
    planned_duration: int
    actual_duration: int | None = None
    status: SessionStatus
    processing_starts_at: datetime | None = None
    zones: ZoneBandsRead


class SessionStatusRead(RehabBase):
    """Polling view of a session.

    ``next_attempt_at`` is populated while the session is processing or
    waiting on a historical sync.
    """

    session_id: int
    patient_id: str
    week_number: int
    session_number: int
    status: SessionStatus
    message: str
    attempt_count: int
    next_attempt_at: datetime | None = None
    failure_reason: str | None = None
    zones: ZoneBandsRead
    retry_schedule: list[RetryAttemptRead] = Field(default_factory=list)
    session_score: int | None = None
    cumulative_score: float | None = None
    risk_level: str | None = None
    session_risk_level: str | None = None
    vital_score: float | None = None
    vital_risk_level: str | None = None
    baseline_score: float | None = None
    health_status: HealthStatus | None = None
    data_completeness: float | None = None
    max_hr: int | None = None
    min_hr: int | None = None
    avg_hr: int | None = None
    session_duration: int | None = None

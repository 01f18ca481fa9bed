"""Base classes and canonical domain models for the cardiac rehab pipeline.

Every telemetry provider must subclass TelemetryProvider and return
HeartRateSample lists.  The dataclasses below are the single source of truth
shared by the orchestrator, the scoring engines, the repositories and the
API layer.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round half away from zero (``round()`` uses banker's rounding).

    Args:
        value:   Number to round.
        ndigits: Decimal places to keep.

    Returns:
        Rounded value as float (use ``int()`` when ndigits is 0).
    """
    quantum = Decimal(1).scaleb(-ndigits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class RehabError(Exception):
    """Base class for pipeline errors."""


class CredentialError(RehabError):
    """The patient's telemetry credential cannot be used.  Terminal."""


class CredentialNotFoundError(CredentialError):
    """No credential record exists for the patient."""


class CredentialInvalidError(CredentialError):
    """The credential was previously marked invalid."""


class RefreshTokenExpiredError(CredentialError):
    """The provider rejected the refresh token (invalid_grant / invalid_token)."""


class TelemetryError(RehabError):
    """A telemetry fetch failed for a transient or unknown reason."""


class TelemetryUnauthorizedError(TelemetryError):
    """The provider rejected the access token (HTTP 401)."""


class TelemetryRateLimitedError(TelemetryError):
    """The provider throttled the request (HTTP 429)."""


class SessionNotFoundError(RehabError):
    """No session exists with the requested id."""


class PatientNotFoundError(RehabError):
    """No patient exists with the requested id."""


class SessionConflictError(RehabError):
    """The requested lifecycle transition conflicts with current state."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SessionStatus(str, Enum):
    active = "active"
    in_progress = "in_progress"
    processing = "processing"
    pending_sync = "pending_sync"
    completed = "completed"
    data_unavailable = "data_unavailable"
    failed = "failed"
    abandoned = "abandoned"


TERMINAL_STATUSES = frozenset(
    {
        SessionStatus.completed,
        SessionStatus.data_unavailable,
        SessionStatus.failed,
        SessionStatus.abandoned,
    }
)


class SessionType(str, Enum):
    start_stop = "start_stop"  # plan-driven start/stop
    complete = "complete"      # externally reported after the fact


class ReadingProvenance(str, Enum):
    primary = "primary"
    imputed = "imputed"


class HealthStatus(str, Enum):
    at_risk = "at_risk"
    declining = "declining"
    consistent = "consistent"
    improving = "improving"
    strong_improvement = "strong_improvement"


class AttemptResult(str, Enum):
    success = "success"
    no_data = "no_data"
    insufficient_data = "insufficient_data"
    error = "error"
    token_expired = "token_expired"


# ---------------------------------------------------------------------------
# OAuth tokens / telemetry samples
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """OAuth token pair returned after a refresh.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    UTC datetime when the access_token expires.
        token_type:    Token type, typically "Bearer".
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"


@dataclass(frozen=True)
class HeartRateSample:
    """One timestamped bpm value as returned by a provider."""

    timestamp: datetime
    value: float


# ---------------------------------------------------------------------------
# Domain entities
# ---------------------------------------------------------------------------


@dataclass
class Patient:
    """The slice of patient clinical data the pipeline needs.

    Attributes:
        patient_id:    External patient identifier.
        age:           Age in years (drives max permissible HR).
        beta_blockers: On beta-blocker medication.
        low_ef:        Low ejection fraction diagnosis.
        regime_weeks:  Length of the rehab programme in weeks.
    """

    patient_id: str
    age: int
    beta_blockers: bool = False
    low_ef: bool = False
    regime_weeks: int = 12


@dataclass
class PatientVitals:
    """Latest recorded clinical vitals for a patient.

    Any field may be missing; missing measurements add no risk points.
    ``blood_glucose`` keeps the clinic's free-text form, e.g. "110 F"
    (fasting), "150 PP" (post-prandial) or "130" (random).
    """

    patient_id: str
    systolic: int | None = None
    diastolic: int | None = None
    blood_glucose: str | None = None
    spo2: int | None = None
    temperature: float | None = None
    height_cm: float | None = None
    weight_kg: float | None = None
    cardiac_condition: str | None = None


@dataclass(frozen=True)
class ZoneBands:
    """Personalised heart-rate bands for one programme week.

    Attributes:
        max_permissible_hr: 220 − age.
        target_hr:          Target exercise heart rate.
        warmup_min:         Lower warmup bound.
        warmup_max:         Upper warmup bound.
        exercise_min:       Lower exercise bound.
        exercise_max:       Upper exercise bound.
        cooldown_min:       Lower cooldown bound.
        cooldown_max:       Upper cooldown bound.
        session_duration:   Planned session length in minutes.
    """

    max_permissible_hr: int
    target_hr: int
    warmup_min: int
    warmup_max: int
    exercise_min: int
    exercise_max: int
    cooldown_min: int
    cooldown_max: int
    session_duration: int

    def to_json(self) -> dict:
        return {
            "max_permissible_hr": self.max_permissible_hr,
            "target_hr": self.target_hr,
            "warmup_min": self.warmup_min,
            "warmup_max": self.warmup_max,
            "exercise_min": self.exercise_min,
            "exercise_max": self.exercise_max,
            "cooldown_min": self.cooldown_min,
            "cooldown_max": self.cooldown_max,
            "session_duration": self.session_duration,
        }

    @classmethod
    def from_json(cls, data: dict) -> "ZoneBands":
        return cls(**{k: int(data[k]) for k in cls.__dataclass_fields__})


@dataclass
class RetryAttempt:
    """One entry of a session's retry schedule.

    Attributes:
        attempt:       1-based attempt number (12 = historical fallback).
        scheduled_for: When the attempt is planned to run.
        status:        'pending', 'completed' or 'failed'.
        executed_at:   When the attempt actually ran.
        result:        AttemptResult value once executed.
        data_points:   Real readings found in the window.
        error_message: Captured error text, if any.
    """

    attempt: int
    scheduled_for: datetime
    status: str = "pending"
    executed_at: datetime | None = None
    result: str | None = None
    data_points: int | None = None
    error_message: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    def to_json(self) -> dict:
        return {
            "attempt": self.attempt,
            "scheduled_for": self.scheduled_for.isoformat(),
            "status": self.status,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "result": self.result,
            "data_points": self.data_points,
            "error_message": self.error_message,
        }

    @classmethod
    def from_json(cls, data: dict) -> "RetryAttempt":
        executed = data.get("executed_at")
        return cls(
            attempt=int(data["attempt"]),
            scheduled_for=datetime.fromisoformat(data["scheduled_for"]),
            status=data.get("status", "pending"),
            executed_at=datetime.fromisoformat(executed) if executed else None,
            result=data.get("result"),
            data_points=data.get("data_points"),
            error_message=data.get("error_message"),
        )


@dataclass
class Session:
    """One attempted or completed exercise bout.

    Status transitions are owned by SessionService (creation, stop), the
    SessionOrchestrator (processing) and the periodic workers (auto-stop,
    abandonment).  Sessions are never deleted.
    """

    patient_id: str
    week_number: int
    attempt_number: int
    session_type: SessionType
    session_date: date
    start_time: datetime
    end_time: datetime
    planned_duration: int
    zones: ZoneBands
    status: SessionStatus = SessionStatus.active
    session_id: int | None = None
    actual_duration: int | None = None

    # Retry state machine
    attempt_count: int = 0
    retry_schedule: list[RetryAttempt] = field(default_factory=list)
    next_attempt_at: datetime | None = None
    last_attempt_at: datetime | None = None
    processing_starts_at: datetime | None = None

    # Results
    warmup_score: int | None = None
    exercise_score: int | None = None
    cooldown_score: int | None = None
    session_score: int | None = None
    session_risk_level: str | None = None
    risk_level: str | None = None
    vital_score: float | None = None
    vital_risk_level: str | None = None
    max_hr: int | None = None
    min_hr: int | None = None
    avg_hr: int | None = None
    data_completeness: float | None = None
    baseline_score: float | None = None
    health_status: HealthStatus | None = None
    is_counted_in_weekly: bool = False
    failure_reason: str | None = None

    # Downstream push outcome
    pushed_to_partner: bool = False
    pushed_at: datetime | None = None
    push_status: str | None = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def effective_duration(self) -> int:
        """Minutes actually exercised, falling back to the plan."""
        return self.actual_duration or self.planned_duration


@dataclass
class HeartRateReading:
    """A stored per-minute heart-rate reading.

    Unique on (patient_id, recorded_at); inserts ignore duplicates.
    """

    patient_id: str
    recorded_at: datetime
    heart_rate: int
    provenance: ReadingProvenance = ReadingProvenance.primary
    source: str = "session_fetch"
    session_id: int | None = None


@dataclass
class CredentialRecord:
    """External telemetry credential with its embedded single-writer lock.

    The lock fields (in_use, locked_by, locked_at, last_used_at) are written
    only by CredentialLockManager.
    """

    patient_id: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    status: str = "valid"
    invalidated_at: datetime | None = None
    invalidation_reason: str | None = None
    in_use: bool = False
    locked_by: str | None = None
    locked_at: datetime | None = None
    last_used_at: datetime | None = None

    @property
    def is_valid(self) -> bool:
        return self.status == "valid"


@dataclass
class BaselineThreshold:
    """Immutable robust-baseline snapshot taken at a milestone session count."""

    patient_id: str
    calculated_at_session: int
    baseline_score: float
    standard_deviation: float
    threshold_minus_2sd: float
    threshold_minus_1sd: float
    threshold_plus_1sd: float
    threshold_plus_2sd: float
    resting_heart_rate: float | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class WeeklyScore:
    """Aggregated score for one (patient, week)."""

    patient_id: str
    week_number: int
    weekly_score: float
    cumulative_score: float
    updated_at: datetime = field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Abstract telemetry provider
# ---------------------------------------------------------------------------


class TelemetryProvider(ABC):
    """Abstract base class for heart-rate telemetry sources.

    Subclasses must implement:
        - fetch_heart_rate()
        - refresh_token()
    """

    SOURCE_ID: str = ""

    @abstractmethod
    async def fetch_heart_rate(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[HeartRateSample]:
        """Return per-minute heart-rate samples between start and end.

        Raises:
            TelemetryUnauthorizedError: The access token was rejected.
            TelemetryRateLimitedError:  The provider throttled the call.
            TelemetryError:             Any other failure.
        """

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        """Exchange a refresh token for a new access token.

        Raises:
            RefreshTokenExpiredError: The refresh token is expired or revoked.
            TelemetryError:           The token endpoint failed otherwise.
        """

    @staticmethod
    def _safe_int(value: Any) -> int | None:
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _safe_float(value: Any) -> float | None:
        try:
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None

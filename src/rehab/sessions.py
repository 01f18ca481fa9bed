"""Session lifecycle: start, stop, after-the-fact reports and status.

Starting a session snapshots the patient's zone bands for the plan week, so
later scoring never depends on clinical data changing underneath it.  Once
a session stops (explicitly, by auto-stop, or as a completed report) it
waits in ``in_progress`` until the retry sweep begins processing it.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from src.rehab.base import (
    HealthStatus,
    Patient,
    PatientNotFoundError,
    RetryAttempt,
    Session,
    SessionConflictError,
    SessionNotFoundError,
    SessionStatus,
    SessionType,
    ZoneBands,
    round_half_up,
    utc_now,
)
from src.rehab.config_loader import PipelineConfig, get_pipeline_config
from src.rehab.repositories import Repositories
from src.rehab.zones import calculate_zones

logger = logging.getLogger("cardiorehab.rehab.sessions")

_STATUS_MESSAGES: dict[SessionStatus, str] = {
    SessionStatus.active: "Session in progress",
    SessionStatus.in_progress: "Session ended. Processing heart rate data...",
    SessionStatus.processing: "Still processing heart rate data...",
    SessionStatus.pending_sync: "Waiting for the next historical sync...",
    SessionStatus.completed: "Session completed successfully",
}


@dataclass
class SessionStatusView:
    """Everything a client needs to poll a session.

    ``next_attempt_at`` is set while processing so clients need not guess
    when to poll again.  Scores are populated once completed.
    """

    session_id: int
    patient_id: str
    week_number: int
    session_number: int
    status: SessionStatus
    message: str
    attempt_count: int
    next_attempt_at: datetime | None
    failure_reason: str | None
    zones: ZoneBands
    retry_schedule: list[RetryAttempt] = field(default_factory=list)
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


def _elapsed_minutes(start: datetime, end: datetime) -> int:
    return max(1, int(round_half_up((end - start).total_seconds() / 60)))


class SessionService:
    """Create and transition sessions on behalf of the API."""

    def __init__(
        self,
        repos: Repositories,
        config: PipelineConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repos = repos
        self._config = config or get_pipeline_config()
        self._clock = clock

    async def _patient(self, patient_id: str, week_number: int) -> Patient:
        patient = await self._repos.patients.get(patient_id)
        if patient is None:
            raise PatientNotFoundError(f"Patient {patient_id} not found")
        if week_number < 1 or week_number > patient.regime_weeks:
            raise ValueError(
                f"Invalid week number. Patient is on {patient.regime_weeks}-week regime."
            )
        return patient

    async def start_session(self, patient_id: str, week_number: int) -> Session:
        """Start a plan-driven session now.

        Args:
            patient_id:  Patient starting the session.
            week_number: Plan week (1..regime_weeks).

        Returns:
            The created session, status ``active``.

        Raises:
            PatientNotFoundError: Unknown patient.
            ValueError:           Week outside the patient's regime.
            SessionConflictError: A session is already active, or the
                                  minimum gap since the last one has not passed.
        """
        patient = await self._patient(patient_id, week_number)
        now = self._clock()

        if await self._repos.sessions.find_active(patient_id) is not None:
            raise SessionConflictError("Patient already has an active session")

        gap = timedelta(hours=self._config.sessions.min_hours_between_sessions)
        last = await self._repos.sessions.latest_for_patient(patient_id)
        if last is not None and now - last.created_at < gap:
            remaining = (last.created_at + gap - now).total_seconds() / 3600
            raise SessionConflictError(
                f"Please wait {math.ceil(remaining)} more hours before starting next session"
            )

        zones = calculate_zones(patient.age, patient.beta_blockers, patient.low_ef, week_number)
        attempt_number = await self._repos.sessions.count_in_week(patient_id, week_number) + 1
        end_time = now + timedelta(minutes=zones.session_duration)

        session = await self._repos.sessions.create(
            Session(
                patient_id=patient_id,
                week_number=week_number,
                attempt_number=attempt_number,
                session_type=SessionType.start_stop,
                session_date=now.date(),
                start_time=now,
                end_time=end_time,
                planned_duration=zones.session_duration,
                zones=zones,
                status=SessionStatus.active,
                processing_starts_at=end_time,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "Session %s started: patient %s week %d #%d, planned %d min",
            session.session_id, patient_id, week_number, attempt_number, zones.session_duration,
        )
        return session

    async def stop_session(self, session_id: int) -> Session:
        """Stop an active session; processing begins on the next sweep."""
        session = await self._repos.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        if session.status != SessionStatus.active:
            raise SessionConflictError("Session already ended or not started")

        now = self._clock()
        session.actual_duration = _elapsed_minutes(session.start_time, now)
        session.end_time = now
        session.status = SessionStatus.in_progress
        session.processing_starts_at = now
        session.updated_at = now
        await self._repos.sessions.save(session)

        logger.info(
            "Session %s stopped after %d min", session_id, session.actual_duration
        )
        return session

    async def report_completed_session(
        self, patient_id: str, week_number: int, start: datetime, end: datetime
    ) -> Session:
        """Record a session that already happened and queue it for processing.

        Raises:
            PatientNotFoundError: Unknown patient.
            ValueError:           Bad week, a naive timestamp, or an empty or
                                  future time window.
        """
        if start.tzinfo is None or end.tzinfo is None:
            raise ValueError("Session start and end must include a UTC offset")
        patient = await self._patient(patient_id, week_number)
        now = self._clock()
        if end <= start:
            raise ValueError("Session end must be after its start")
        if end > now:
            raise ValueError("Session end cannot be in the future")

        zones = calculate_zones(patient.age, patient.beta_blockers, patient.low_ef, week_number)
        attempt_number = await self._repos.sessions.count_in_week(patient_id, week_number) + 1

        session = await self._repos.sessions.create(
            Session(
                patient_id=patient_id,
                week_number=week_number,
                attempt_number=attempt_number,
                session_type=SessionType.complete,
                session_date=start.date(),
                start_time=start,
                end_time=end,
                planned_duration=zones.session_duration,
                zones=zones,
                status=SessionStatus.in_progress,
                actual_duration=_elapsed_minutes(start, end),
                processing_starts_at=now,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "Session %s reported: patient %s week %d, %s → %s",
            session.session_id, patient_id, week_number, start.isoformat(), end.isoformat(),
        )
        return session

    async def get_status(self, session_id: int) -> SessionStatusView:
        session = await self._repos.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")

        cumulative: float | None = None
        if session.status == SessionStatus.completed:
            weekly = await self._repos.weekly_scores.get(session.patient_id, session.week_number)
            cumulative = weekly.cumulative_score if weekly else None

        message = _STATUS_MESSAGES.get(session.status) or (
            session.failure_reason or "Session processing failed"
        )
        waiting = session.status in (SessionStatus.processing, SessionStatus.pending_sync)
        return SessionStatusView(
            session_id=session.session_id,
            patient_id=session.patient_id,
            week_number=session.week_number,
            session_number=session.attempt_number,
            status=session.status,
            message=message,
            attempt_count=session.attempt_count,
            next_attempt_at=session.next_attempt_at if waiting else None,
            failure_reason=session.failure_reason,
            zones=session.zones,
            retry_schedule=list(session.retry_schedule),
            session_score=session.session_score,
            cumulative_score=cumulative,
            risk_level=session.risk_level or session.session_risk_level,
            session_risk_level=session.session_risk_level,
            vital_score=session.vital_score,
            vital_risk_level=session.vital_risk_level,
            baseline_score=session.baseline_score,
            health_status=session.health_status,
            data_completeness=session.data_completeness,
            max_hr=session.max_hr,
            min_hr=session.min_hr,
            avg_hr=session.avg_hr,
            session_duration=session.effective_duration,
        )

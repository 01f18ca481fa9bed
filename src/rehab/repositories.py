"""Repository interfaces for every persisted entity.

All coordination between workers goes through these read-modify-write
operations on persisted rows; nothing is shared in process memory.  The
Postgres implementations live in ``src.services.repositories``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from src.rehab.base import (
    BaselineThreshold,
    CredentialRecord,
    HeartRateReading,
    Patient,
    PatientVitals,
    Session,
    SessionStatus,
    WeeklyScore,
)


class PatientRepository(ABC):
    @abstractmethod
    async def get(self, patient_id: str) -> Patient | None: ...


class PatientVitalsRepository(ABC):
    @abstractmethod
    async def latest(self, patient_id: str) -> PatientVitals | None:
        """The most recently recorded vitals, if any."""


class SessionRepository(ABC):
    """Sessions and the queries the periodic workers scan with."""

    @abstractmethod
    async def get(self, session_id: int) -> Session | None: ...

    @abstractmethod
    async def create(self, session: Session) -> Session:
        """Insert a new session and return it with ``session_id`` assigned."""

    @abstractmethod
    async def save(self, session: Session) -> None:
        """Persist every mutable field of an existing session."""

    @abstractmethod
    async def find_active(self, patient_id: str) -> Session | None: ...

    @abstractmethod
    async def latest_for_patient(self, patient_id: str) -> Session | None: ...

    @abstractmethod
    async def count_in_week(self, patient_id: str, week_number: int) -> int: ...

    @abstractmethod
    async def count_with_status(
        self, patient_id: str, statuses: Iterable[SessionStatus]
    ) -> int: ...

    @abstractmethod
    async def due_for_attempt(self, now: datetime) -> list[Session]:
        """processing / pending_sync sessions whose next attempt is due."""

    @abstractmethod
    async def ready_to_process(self, now: datetime) -> list[Session]:
        """in_progress sessions whose processing start has passed."""

    @abstractmethod
    async def active_past_planned_end(self, now: datetime) -> list[Session]: ...

    @abstractmethod
    async def active_created_before(self, cutoff: datetime) -> list[Session]: ...

    @abstractmethod
    async def completed_scored(
        self, patient_id: str, limit: int | None = None
    ) -> list[Session]:
        """Completed sessions with a score, newest first by creation time."""

    @abstractmethod
    async def count_completed_scored(self, patient_id: str) -> int: ...

    @abstractmethod
    async def completed_scored_in_week(
        self, patient_id: str, week_number: int
    ) -> list[Session]:
        """Completed sessions with a score in a week, highest score first."""

    @abstractmethod
    async def completed_for_patient(self, patient_id: str) -> list[Session]: ...

    @abstractmethod
    async def set_weekly_counted(
        self, patient_id: str, week_number: int, counted_ids: Sequence[int]
    ) -> None:
        """Flag exactly ``counted_ids`` as counted for the week, the rest not."""

    @abstractmethod
    async def set_baseline_score(
        self, patient_id: str, baseline: float, session_id: int | None = None
    ) -> None:
        """Snapshot a baseline onto one session, or all of a patient's sessions."""


class ReadingRepository(ABC):
    @abstractmethod
    async def insert_many(self, readings: Sequence[HeartRateReading]) -> int:
        """Insert readings, ignoring duplicates.  Returns rows inserted."""

    @abstractmethod
    async def in_window(
        self, patient_id: str, start: datetime, end: datetime
    ) -> list[HeartRateReading]:
        """Readings with start <= recorded_at <= end, oldest first."""

    @abstractmethod
    async def for_patient(self, patient_id: str) -> list[HeartRateReading]: ...

    @abstractmethod
    async def latest_timestamp(self, patient_id: str) -> datetime | None: ...


class CredentialRepository(ABC):
    """Credential rows.  Lock columns are written only via compare_and_set_lock / clear_lock."""

    @abstractmethod
    async def get(self, patient_id: str) -> CredentialRecord | None: ...

    @abstractmethod
    async def patient_ids(self) -> list[str]:
        """Patients holding a valid credential."""

    @abstractmethod
    async def update_tokens(
        self,
        patient_id: str,
        access_token: str,
        expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> None: ...

    @abstractmethod
    async def mark_invalid(self, patient_id: str, reason: str, at: datetime) -> None: ...

    @abstractmethod
    async def expire_access_token(self, patient_id: str, at: datetime) -> None: ...

    @abstractmethod
    async def compare_and_set_lock(
        self,
        patient_id: str,
        holder: str,
        now: datetime,
        expected_in_use: bool,
        expected_locked_at: datetime | None,
    ) -> bool:
        """Take the lock only if the row still matches what the caller observed.

        Returns:
            True when exactly one row was updated.
        """

    @abstractmethod
    async def clear_lock(self, patient_id: str, now: datetime) -> None: ...

    @abstractmethod
    async def clear_locks_older_than(self, cutoff: datetime, now: datetime) -> int: ...


class BaselineRepository(ABC):
    @abstractmethod
    async def insert(self, threshold: BaselineThreshold) -> None: ...

    @abstractmethod
    async def latest(self, patient_id: str) -> BaselineThreshold | None:
        """The row with the highest milestone session count."""


class WeeklyScoreRepository(ABC):
    @abstractmethod
    async def get(self, patient_id: str, week_number: int) -> WeeklyScore | None: ...

    @abstractmethod
    async def upsert(self, score: WeeklyScore) -> None: ...


@dataclass
class Repositories:
    """Bundle of repositories handed to services and workers."""

    patients: PatientRepository
    sessions: SessionRepository
    readings: ReadingRepository
    credentials: CredentialRepository
    baselines: BaselineRepository
    weekly_scores: WeeklyScoreRepository
    vitals: PatientVitalsRepository

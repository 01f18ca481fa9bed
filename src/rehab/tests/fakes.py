"""In-memory repositories, provider and clock for pipeline tests.

The repositories copy on read and write so tests observe persisted state
the same way the Postgres implementations expose it.
"""

from __future__ import annotations

import copy
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from src.rehab.base import (
    BaselineThreshold,
    CredentialRecord,
    HeartRateReading,
    HeartRateSample,
    OAuthTokens,
    Patient,
    PatientVitals,
    Session,
    SessionStatus,
    TelemetryProvider,
    WeeklyScore,
)
from src.rehab.repositories import (
    BaselineRepository,
    CredentialRepository,
    PatientRepository,
    PatientVitalsRepository,
    ReadingRepository,
    Repositories,
    SessionRepository,
    WeeklyScoreRepository,
)


class FakeClock:
    """Mutable clock: ``clock()`` returns ``now``; ``advance()`` moves it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryPatientRepository(PatientRepository):
    def __init__(self) -> None:
        self.rows: dict[str, Patient] = {}

    def add(self, patient: Patient) -> None:
        self.rows[patient.patient_id] = patient

    async def get(self, patient_id: str) -> Patient | None:
        return copy.deepcopy(self.rows.get(patient_id))


class InMemoryPatientVitalsRepository(PatientVitalsRepository):
    def __init__(self) -> None:
        self.rows: dict[str, PatientVitals] = {}

    def add(self, vitals: PatientVitals) -> None:
        self.rows[vitals.patient_id] = vitals

    async def latest(self, patient_id: str) -> PatientVitals | None:
        return copy.deepcopy(self.rows.get(patient_id))


class InMemorySessionRepository(SessionRepository):
    def __init__(self) -> None:
        self.rows: dict[int, Session] = {}
        self._next_id = 1

    def _all(self, patient_id: str | None = None) -> list[Session]:
        return [
            copy.deepcopy(s)
            for s in self.rows.values()
            if patient_id is None or s.patient_id == patient_id
        ]

    async def get(self, session_id: int) -> Session | None:
        return copy.deepcopy(self.rows.get(session_id))

    async def create(self, session: Session) -> Session:
        session.session_id = self._next_id
        self._next_id += 1
        self.rows[session.session_id] = copy.deepcopy(session)
        return session

    async def save(self, session: Session) -> None:
        self.rows[session.session_id] = copy.deepcopy(session)

    async def find_active(self, patient_id: str) -> Session | None:
        active = [s for s in self._all(patient_id) if s.status == SessionStatus.active]
        return max(active, key=lambda s: s.created_at, default=None)

    async def latest_for_patient(self, patient_id: str) -> Session | None:
        return max(self._all(patient_id), key=lambda s: s.created_at, default=None)

    async def count_in_week(self, patient_id: str, week_number: int) -> int:
        return sum(1 for s in self._all(patient_id) if s.week_number == week_number)

    async def count_with_status(
        self, patient_id: str, statuses: Iterable[SessionStatus]
    ) -> int:
        wanted = set(statuses)
        return sum(1 for s in self._all(patient_id) if s.status in wanted)

    async def due_for_attempt(self, now: datetime) -> list[Session]:
        due = [
            s for s in self._all()
            if s.status in (SessionStatus.processing, SessionStatus.pending_sync)
            and s.next_attempt_at is not None
            and s.next_attempt_at <= now
        ]
        return sorted(due, key=lambda s: s.next_attempt_at)

    async def ready_to_process(self, now: datetime) -> list[Session]:
        return [
            s for s in self._all()
            if s.status == SessionStatus.in_progress
            and (s.processing_starts_at is None or s.processing_starts_at <= now)
        ]

    async def active_past_planned_end(self, now: datetime) -> list[Session]:
        return [s for s in self._all() if s.status == SessionStatus.active and s.end_time <= now]

    async def active_created_before(self, cutoff: datetime) -> list[Session]:
        return [
            s for s in self._all() if s.status == SessionStatus.active and s.created_at < cutoff
        ]

    def _scored(self, patient_id: str) -> list[Session]:
        return [
            s for s in self._all(patient_id)
            if s.status == SessionStatus.completed and s.session_score is not None
        ]

    async def completed_scored(
        self, patient_id: str, limit: int | None = None
    ) -> list[Session]:
        ordered = sorted(self._scored(patient_id), key=lambda s: s.created_at, reverse=True)
        return ordered[:limit] if limit is not None else ordered

    async def count_completed_scored(self, patient_id: str) -> int:
        return len(self._scored(patient_id))

    async def completed_scored_in_week(
        self, patient_id: str, week_number: int
    ) -> list[Session]:
        in_week = [s for s in self._scored(patient_id) if s.week_number == week_number]
        return sorted(in_week, key=lambda s: (-s.session_score, s.created_at))

    async def completed_for_patient(self, patient_id: str) -> list[Session]:
        done = [s for s in self._all(patient_id) if s.status == SessionStatus.completed]
        return sorted(done, key=lambda s: s.start_time)

    async def set_weekly_counted(
        self, patient_id: str, week_number: int, counted_ids: Sequence[int]
    ) -> None:
        for s in self.rows.values():
            if (
                s.patient_id == patient_id
                and s.week_number == week_number
                and s.status == SessionStatus.completed
            ):
                s.is_counted_in_weekly = s.session_id in counted_ids

    async def set_baseline_score(
        self, patient_id: str, baseline: float, session_id: int | None = None
    ) -> None:
        for s in self.rows.values():
            if session_id is not None and s.session_id != session_id:
                continue
            if s.patient_id == patient_id:
                s.baseline_score = baseline


class InMemoryReadingRepository(ReadingRepository):
    def __init__(self) -> None:
        self.rows: dict[tuple[str, datetime], HeartRateReading] = {}

    async def insert_many(self, readings: Sequence[HeartRateReading]) -> int:
        inserted = 0
        for r in readings:
            key = (r.patient_id, r.recorded_at)
            if key not in self.rows:
                self.rows[key] = copy.deepcopy(r)
                inserted += 1
        return inserted

    async def in_window(
        self, patient_id: str, start: datetime, end: datetime
    ) -> list[HeartRateReading]:
        return sorted(
            (
                copy.deepcopy(r) for r in self.rows.values()
                if r.patient_id == patient_id and start <= r.recorded_at <= end
            ),
            key=lambda r: r.recorded_at,
        )

    async def for_patient(self, patient_id: str) -> list[HeartRateReading]:
        return sorted(
            (copy.deepcopy(r) for r in self.rows.values() if r.patient_id == patient_id),
            key=lambda r: r.recorded_at,
        )

    async def latest_timestamp(self, patient_id: str) -> datetime | None:
        stamps = [r.recorded_at for r in self.rows.values() if r.patient_id == patient_id]
        return max(stamps, default=None)


class InMemoryCredentialRepository(CredentialRepository):
    def __init__(self) -> None:
        self.rows: dict[str, CredentialRecord] = {}
        self.cas_calls = 0

    def add(self, record: CredentialRecord) -> None:
        self.rows[record.patient_id] = record

    async def get(self, patient_id: str) -> CredentialRecord | None:
        return copy.deepcopy(self.rows.get(patient_id))

    async def patient_ids(self) -> list[str]:
        return sorted(pid for pid, r in self.rows.items() if r.is_valid)

    async def update_tokens(
        self,
        patient_id: str,
        access_token: str,
        expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> None:
        record = self.rows[patient_id]
        record.access_token = access_token
        record.expires_at = expires_at
        if refresh_token is not None:
            record.refresh_token = refresh_token

    async def mark_invalid(self, patient_id: str, reason: str, at: datetime) -> None:
        record = self.rows[patient_id]
        record.status = "invalid"
        record.invalidation_reason = reason
        record.invalidated_at = at

    async def expire_access_token(self, patient_id: str, at: datetime) -> None:
        self.rows[patient_id].expires_at = at

    async def compare_and_set_lock(
        self,
        patient_id: str,
        holder: str,
        now: datetime,
        expected_in_use: bool,
        expected_locked_at: datetime | None,
    ) -> bool:
        self.cas_calls += 1
        record = self.rows.get(patient_id)
        if record is None:
            return False
        if record.in_use != expected_in_use or record.locked_at != expected_locked_at:
            return False
        record.in_use = True
        record.locked_by = holder
        record.locked_at = now
        record.last_used_at = now
        return True

    async def clear_lock(self, patient_id: str, now: datetime) -> None:
        record = self.rows[patient_id]
        record.in_use = False
        record.locked_by = None
        record.locked_at = None
        record.last_used_at = now

    async def clear_locks_older_than(self, cutoff: datetime, now: datetime) -> int:
        released = 0
        for record in self.rows.values():
            if record.in_use and record.locked_at is not None and record.locked_at < cutoff:
                record.in_use = False
                record.locked_by = None
                record.locked_at = None
                record.last_used_at = now
                released += 1
        return released


class InMemoryBaselineRepository(BaselineRepository):
    def __init__(self) -> None:
        self.rows: list[BaselineThreshold] = []

    async def insert(self, threshold: BaselineThreshold) -> None:
        if any(
            t.patient_id == threshold.patient_id
            and t.calculated_at_session == threshold.calculated_at_session
            for t in self.rows
        ):
            return
        self.rows.append(threshold)

    async def latest(self, patient_id: str) -> BaselineThreshold | None:
        mine = [t for t in self.rows if t.patient_id == patient_id]
        return max(mine, key=lambda t: t.calculated_at_session, default=None)


class InMemoryWeeklyScoreRepository(WeeklyScoreRepository):
    def __init__(self) -> None:
        self.rows: dict[tuple[str, int], WeeklyScore] = {}

    async def get(self, patient_id: str, week_number: int) -> WeeklyScore | None:
        return copy.deepcopy(self.rows.get((patient_id, week_number)))

    async def upsert(self, score: WeeklyScore) -> None:
        self.rows[(score.patient_id, score.week_number)] = copy.deepcopy(score)


def make_repositories() -> Repositories:
    return Repositories(
        patients=InMemoryPatientRepository(),
        sessions=InMemorySessionRepository(),
        readings=InMemoryReadingRepository(),
        credentials=InMemoryCredentialRepository(),
        baselines=InMemoryBaselineRepository(),
        weekly_scores=InMemoryWeeklyScoreRepository(),
        vitals=InMemoryPatientVitalsRepository(),
    )


class FakeTelemetryProvider(TelemetryProvider):
    """Provider returning canned samples (filtered to the requested range).

    ``errors`` are raised, in order, by the next fetch calls before any
    samples are returned.
    """

    SOURCE_ID = "fake"

    def __init__(
        self,
        samples: Sequence[HeartRateSample] = (),
        errors: Sequence[Exception] = (),
        refreshed: OAuthTokens | None = None,
        refresh_error: Exception | None = None,
    ) -> None:
        self.samples = list(samples)
        self.errors = list(errors)
        self.refreshed = refreshed
        self.refresh_error = refresh_error
        self.fetch_calls: list[tuple[str, datetime, datetime]] = []
        self.refresh_calls: list[str] = []

    async def fetch_heart_rate(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[HeartRateSample]:
        self.fetch_calls.append((access_token, start, end))
        if self.errors:
            raise self.errors.pop(0)
        return [s for s in self.samples if start <= s.timestamp <= end]

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        self.refresh_calls.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        if self.refreshed is None:
            raise AssertionError("refresh_token() not expected in this test")
        return self.refreshed

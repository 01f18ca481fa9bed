"""PostgreSQL implementations of the rehab repositories (asyncpg).

Table layout is in ``schema.sql``.  JSONB columns (zones, retry_schedule)
are decoded by the codec registered in ``database.init_pool``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Sequence

import asyncpg

from src.rehab.base import (
    BaselineThreshold,
    CredentialRecord,
    HealthStatus,
    HeartRateReading,
    Patient,
    PatientVitals,
    ReadingProvenance,
    RetryAttempt,
    Session,
    SessionStatus,
    SessionType,
    WeeklyScore,
    ZoneBands,
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
from src.rehab.sync.dedup import build_insert_ignore_query, build_upsert_query
from src.services.database import execute, fetch, fetchrow, fetchval, rows_affected

logger = logging.getLogger("cardiorehab.db.repositories")


# ---------------------------------------------------------------------------
# Patients
# ---------------------------------------------------------------------------


class PgPatientRepository(PatientRepository):
    async def get(self, patient_id: str) -> Patient | None:
        row = await fetchrow(
            "SELECT patient_id, age, beta_blockers, low_ef, regime_weeks FROM patients WHERE patient_id = $1",
            patient_id,
        )
        return Patient(**dict(row)) if row else None


class PgPatientVitalsRepository(PatientVitalsRepository):
    async def latest(self, patient_id: str) -> PatientVitals | None:
        row = await fetchrow(
            "SELECT patient_id, systolic, diastolic, blood_glucose, spo2, temperature, "
            "height_cm, weight_kg, cardiac_condition FROM patient_vitals "
            "WHERE patient_id = $1 ORDER BY recorded_at DESC LIMIT 1",
            patient_id,
        )
        if row is None:
            return None
        data = dict(row)
        for col in ("temperature", "height_cm", "weight_kg"):
            if data[col] is not None:
                data[col] = float(data[col])
        return PatientVitals(**data)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

_SESSION_COLUMNS = [
    "patient_id",
    "week_number",
    "attempt_number",
    "session_type",
    "session_date",
    "start_time",
    "end_time",
    "planned_duration",
    "actual_duration",
    "zones",
    "status",
    "attempt_count",
    "retry_schedule",
    "next_attempt_at",
    "last_attempt_at",
    "processing_starts_at",
    "warmup_score",
    "exercise_score",
    "cooldown_score",
    "session_score",
    "session_risk_level",
    "risk_level",
    "vital_score",
    "vital_risk_level",
    "max_hr",
    "min_hr",
    "avg_hr",
    "data_completeness",
    "baseline_score",
    "health_status",
    "is_counted_in_weekly",
    "failure_reason",
    "pushed_to_partner",
    "pushed_at",
    "push_status",
    "created_at",
    "updated_at",
]

_WAITING_STATUSES = [SessionStatus.processing.value, SessionStatus.pending_sync.value]


def _session_values(session: Session) -> list[Any]:
    values = {
        **{col: getattr(session, col) for col in _SESSION_COLUMNS},
        "session_type": session.session_type.value,
        "status": session.status.value,
        "zones": session.zones.to_json(),
        "retry_schedule": [a.to_json() for a in session.retry_schedule],
        "health_status": session.health_status.value if session.health_status else None,
    }
    return [values[col] for col in _SESSION_COLUMNS]


def _row_to_session(row: asyncpg.Record) -> Session:
    data = dict(row)
    data["session_type"] = SessionType(data["session_type"])
    data["status"] = SessionStatus(data["status"])
    data["zones"] = ZoneBands.from_json(data["zones"])
    data["retry_schedule"] = [RetryAttempt.from_json(a) for a in data["retry_schedule"] or []]
    if data.get("health_status"):
        data["health_status"] = HealthStatus(data["health_status"])
    return Session(**{k: v for k, v in data.items() if k in Session.__dataclass_fields__})


class PgSessionRepository(SessionRepository):
    async def _many(self, query: str, *args: Any) -> list[Session]:
        return [_row_to_session(r) for r in await fetch(query, *args)]

    async def _one(self, query: str, *args: Any) -> Session | None:
        row = await fetchrow(query, *args)
        return _row_to_session(row) if row else None

    async def get(self, session_id: int) -> Session | None:
        return await self._one("SELECT * FROM sessions WHERE session_id = $1", session_id)

    async def create(self, session: Session) -> Session:
        placeholders = ", ".join(f"${i + 1}" for i in range(len(_SESSION_COLUMNS)))
        session.session_id = await fetchval(
            f"INSERT INTO sessions ({', '.join(_SESSION_COLUMNS)}) "
            f"VALUES ({placeholders}) RETURNING session_id",
            *_session_values(session),
        )
        return session

    async def save(self, session: Session) -> None:
        set_clauses = ", ".join(f"{col} = ${i + 1}" for i, col in enumerate(_SESSION_COLUMNS))
        await execute(
            f"UPDATE sessions SET {set_clauses} WHERE session_id = ${len(_SESSION_COLUMNS) + 1}",
            *_session_values(session),
            session.session_id,
        )

    async def find_active(self, patient_id: str) -> Session | None:
        return await self._one(
            "SELECT * FROM sessions WHERE patient_id = $1 AND status = 'active' "
            "ORDER BY created_at DESC LIMIT 1",
            patient_id,
        )

    async def latest_for_patient(self, patient_id: str) -> Session | None:
        return await self._one(
            "SELECT * FROM sessions WHERE patient_id = $1 ORDER BY created_at DESC LIMIT 1",
            patient_id,
        )

    async def count_in_week(self, patient_id: str, week_number: int) -> int:
        return await fetchval(
            "SELECT COUNT(*) FROM sessions WHERE patient_id = $1 AND week_number = $2",
            patient_id, week_number,
        )

    async def count_with_status(
        self, patient_id: str, statuses: Iterable[SessionStatus]
    ) -> int:
        return await fetchval(
            "SELECT COUNT(*) FROM sessions WHERE patient_id = $1 AND status = ANY($2::text[])",
            patient_id, [s.value for s in statuses],
        )

    async def due_for_attempt(self, now: datetime) -> list[Session]:
        return await self._many(
            "SELECT * FROM sessions WHERE status = ANY($1::text[]) "
            "AND next_attempt_at IS NOT NULL AND next_attempt_at <= $2 "
            "ORDER BY next_attempt_at",
            _WAITING_STATUSES, now,
        )

    async def ready_to_process(self, now: datetime) -> list[Session]:
        return await self._many(
            "SELECT * FROM sessions WHERE status = 'in_progress' "
            "AND (processing_starts_at IS NULL OR processing_starts_at <= $1) "
            "ORDER BY processing_starts_at",
            now,
        )

    async def active_past_planned_end(self, now: datetime) -> list[Session]:
        return await self._many(
            "SELECT * FROM sessions WHERE status = 'active' AND end_time <= $1", now
        )

    async def active_created_before(self, cutoff: datetime) -> list[Session]:
        return await self._many(
            "SELECT * FROM sessions WHERE status = 'active' AND created_at < $1", cutoff
        )

    async def completed_scored(
        self, patient_id: str, limit: int | None = None
    ) -> list[Session]:
        return await self._many(
            "SELECT * FROM sessions WHERE patient_id = $1 AND status = 'completed' "
            "AND session_score IS NOT NULL ORDER BY created_at DESC LIMIT $2",
            patient_id, limit,
        )

    async def count_completed_scored(self, patient_id: str) -> int:
        return await fetchval(
            "SELECT COUNT(*) FROM sessions WHERE patient_id = $1 AND status = 'completed' "
            "AND session_score IS NOT NULL",
            patient_id,
        )

    async def completed_scored_in_week(
        self, patient_id: str, week_number: int
    ) -> list[Session]:
        return await self._many(
            "SELECT * FROM sessions WHERE patient_id = $1 AND week_number = $2 "
            "AND status = 'completed' AND session_score IS NOT NULL "
            "ORDER BY session_score DESC, created_at",
            patient_id, week_number,
        )

    async def completed_for_patient(self, patient_id: str) -> list[Session]:
        return await self._many(
            "SELECT * FROM sessions WHERE patient_id = $1 AND status = 'completed' "
            "ORDER BY start_time",
            patient_id,
        )

    async def set_weekly_counted(
        self, patient_id: str, week_number: int, counted_ids: Sequence[int]
    ) -> None:
        await execute(
            "UPDATE sessions SET is_counted_in_weekly = (session_id = ANY($3::bigint[])), "
            "updated_at = NOW() "
            "WHERE patient_id = $1 AND week_number = $2 AND status = 'completed'",
            patient_id, week_number, list(counted_ids),
        )

    async def set_baseline_score(
        self, patient_id: str, baseline: float, session_id: int | None = None
    ) -> None:
        if session_id is not None:
            await execute(
                "UPDATE sessions SET baseline_score = $2, updated_at = NOW() WHERE session_id = $1",
                session_id, baseline,
            )
        else:
            await execute(
                "UPDATE sessions SET baseline_score = $2, updated_at = NOW() WHERE patient_id = $1",
                patient_id, baseline,
            )


# ---------------------------------------------------------------------------
# Heart-rate readings
# ---------------------------------------------------------------------------

_READING_COLUMNS = ["patient_id", "recorded_at", "heart_rate", "provenance", "source", "session_id"]


def _row_to_reading(row: asyncpg.Record) -> HeartRateReading:
    return HeartRateReading(
        patient_id=row["patient_id"],
        recorded_at=row["recorded_at"],
        heart_rate=row["heart_rate"],
        provenance=ReadingProvenance(row["provenance"]),
        source=row["source"],
        session_id=row["session_id"],
    )


class PgReadingRepository(ReadingRepository):
    async def insert_many(self, readings: Sequence[HeartRateReading]) -> int:
        if not readings:
            return 0
        status = await execute(
            f"INSERT INTO heart_rate_readings ({', '.join(_READING_COLUMNS)}) "
            "SELECT * FROM unnest($1::text[], $2::timestamptz[], $3::int[], "
            "$4::text[], $5::text[], $6::bigint[]) "
            "ON CONFLICT (patient_id, recorded_at) DO NOTHING",
            [r.patient_id for r in readings],
            [r.recorded_at for r in readings],
            [r.heart_rate for r in readings],
            [r.provenance.value for r in readings],
            [r.source for r in readings],
            [r.session_id for r in readings],
        )
        inserted = rows_affected(status)
        logger.debug("Inserted %d/%d readings", inserted, len(readings))
        return inserted

    async def in_window(
        self, patient_id: str, start: datetime, end: datetime
    ) -> list[HeartRateReading]:
        rows = await fetch(
            "SELECT * FROM heart_rate_readings WHERE patient_id = $1 "
            "AND recorded_at BETWEEN $2 AND $3 ORDER BY recorded_at",
            patient_id, start, end,
        )
        return [_row_to_reading(r) for r in rows]

    async def for_patient(self, patient_id: str) -> list[HeartRateReading]:
        rows = await fetch(
            "SELECT * FROM heart_rate_readings WHERE patient_id = $1 ORDER BY recorded_at",
            patient_id,
        )
        return [_row_to_reading(r) for r in rows]

    async def latest_timestamp(self, patient_id: str) -> datetime | None:
        return await fetchval(
            "SELECT MAX(recorded_at) FROM heart_rate_readings WHERE patient_id = $1", patient_id
        )


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class PgCredentialRepository(CredentialRepository):
    async def get(self, patient_id: str) -> CredentialRecord | None:
        row = await fetchrow(
            "SELECT * FROM telemetry_credentials WHERE patient_id = $1", patient_id
        )
        if row is None:
            return None
        data = dict(row)
        data.pop("updated_at", None)
        return CredentialRecord(**data)

    async def patient_ids(self) -> list[str]:
        rows = await fetch(
            "SELECT patient_id FROM telemetry_credentials WHERE status = 'valid' ORDER BY patient_id"
        )
        return [r["patient_id"] for r in rows]

    async def update_tokens(
        self,
        patient_id: str,
        access_token: str,
        expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> None:
        await execute(
            "UPDATE telemetry_credentials SET access_token = $2, expires_at = $3, "
            "refresh_token = COALESCE($4, refresh_token), updated_at = NOW() "
            "WHERE patient_id = $1",
            patient_id, access_token, expires_at, refresh_token,
        )

    async def mark_invalid(self, patient_id: str, reason: str, at: datetime) -> None:
        await execute(
            "UPDATE telemetry_credentials SET status = 'invalid', invalidated_at = $2, "
            "invalidation_reason = $3, updated_at = NOW() WHERE patient_id = $1",
            patient_id, at, reason,
        )

    async def expire_access_token(self, patient_id: str, at: datetime) -> None:
        await execute(
            "UPDATE telemetry_credentials SET expires_at = $2, updated_at = NOW() "
            "WHERE patient_id = $1",
            patient_id, at,
        )

    async def compare_and_set_lock(
        self,
        patient_id: str,
        holder: str,
        now: datetime,
        expected_in_use: bool,
        expected_locked_at: datetime | None,
    ) -> bool:
        status = await execute(
            "UPDATE telemetry_credentials SET in_use = TRUE, locked_by = $2, locked_at = $3, "
            "last_used_at = $3, updated_at = NOW() "
            "WHERE patient_id = $1 AND in_use = $4 AND locked_at IS NOT DISTINCT FROM $5",
            patient_id, holder, now, expected_in_use, expected_locked_at,
        )
        return rows_affected(status) == 1

    async def clear_lock(self, patient_id: str, now: datetime) -> None:
        await execute(
            "UPDATE telemetry_credentials SET in_use = FALSE, locked_by = NULL, "
            "locked_at = NULL, last_used_at = $2, updated_at = NOW() WHERE patient_id = $1",
            patient_id, now,
        )

    async def clear_locks_older_than(self, cutoff: datetime, now: datetime) -> int:
        status = await execute(
            "UPDATE telemetry_credentials SET in_use = FALSE, locked_by = NULL, "
            "locked_at = NULL, last_used_at = $2, updated_at = NOW() "
            "WHERE in_use AND locked_at < $1",
            cutoff, now,
        )
        return rows_affected(status)


# ---------------------------------------------------------------------------
# Baselines / weekly scores
# ---------------------------------------------------------------------------

_BASELINE_COLUMNS = [
    "patient_id",
    "calculated_at_session",
    "baseline_score",
    "standard_deviation",
    "threshold_minus_2sd",
    "threshold_minus_1sd",
    "threshold_plus_1sd",
    "threshold_plus_2sd",
    "resting_heart_rate",
    "created_at",
]

_WEEKLY_COLUMNS = ["patient_id", "week_number", "weekly_score", "cumulative_score"]


class PgBaselineRepository(BaselineRepository):
    async def insert(self, threshold: BaselineThreshold) -> None:
        await execute(
            build_insert_ignore_query(
                "baseline_thresholds", _BASELINE_COLUMNS, ["patient_id", "calculated_at_session"]
            ),
            *[getattr(threshold, col) for col in _BASELINE_COLUMNS],
        )

    async def latest(self, patient_id: str) -> BaselineThreshold | None:
        row = await fetchrow(
            f"SELECT {', '.join(_BASELINE_COLUMNS)} FROM baseline_thresholds "
            "WHERE patient_id = $1 ORDER BY calculated_at_session DESC LIMIT 1",
            patient_id,
        )
        return BaselineThreshold(**dict(row)) if row else None


class PgWeeklyScoreRepository(WeeklyScoreRepository):
    async def get(self, patient_id: str, week_number: int) -> WeeklyScore | None:
        row = await fetchrow(
            "SELECT patient_id, week_number, weekly_score, cumulative_score, updated_at "
            "FROM weekly_scores WHERE patient_id = $1 AND week_number = $2",
            patient_id, week_number,
        )
        return WeeklyScore(**dict(row)) if row else None

    async def upsert(self, score: WeeklyScore) -> None:
        await execute(
            build_upsert_query("weekly_scores", _WEEKLY_COLUMNS, ["patient_id", "week_number"]),
            *[getattr(score, col) for col in _WEEKLY_COLUMNS],
        )


def build_repositories() -> Repositories:
    """Postgres-backed repository bundle over the shared pool."""
    return Repositories(
        patients=PgPatientRepository(),
        sessions=PgSessionRepository(),
        readings=PgReadingRepository(),
        credentials=PgCredentialRepository(),
        baselines=PgBaselineRepository(),
        weekly_scores=PgWeeklyScoreRepository(),
        vitals=PgPatientVitalsRepository(),
    )

"""Deduplication for heart-rate readings.

The same minute can arrive several times: overlapping buffer cycles within
one attempt, repeated attempts for one session, and bulk historical syncs
covering the session window.

Dedup keys:
    - heart_rate_readings: (patient_id, recorded_at) — UNIQUE constraint
    - within a fetch:      sample timestamp
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Sequence

from src.rehab.base import HeartRateReading, HeartRateSample, ReadingProvenance, round_half_up
from src.rehab.imputation import ImputedPoint

logger = logging.getLogger("cardiorehab.rehab.sync.dedup")


def reading_key(patient_id: str, recorded_at: datetime) -> str:
    """Dedup key matching the UNIQUE constraint on heart_rate_readings."""
    return f"{patient_id}:{recorded_at.isoformat()}"


class InMemoryDedupCache:
    """In-process dedup cache for one fetch or sync run.

    Not a replacement for the database UNIQUE constraint, which is the
    authoritative dedup mechanism.
    """

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def is_seen(self, key: str) -> bool:
        return key in self._seen

    def mark_seen(self, key: str) -> None:
        self._seen.add(key)

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)


def merge_samples(batches: Iterable[Sequence[HeartRateSample]]) -> list[HeartRateSample]:
    """Merge fetch batches keeping the first sample seen per timestamp, sorted."""
    by_ts: dict[datetime, HeartRateSample] = {}
    for batch in batches:
        for sample in batch:
            by_ts.setdefault(sample.timestamp, sample)
    return [by_ts[ts] for ts in sorted(by_ts)]


def filter_window(
    samples: Iterable[HeartRateSample], start: datetime, end: datetime
) -> list[HeartRateSample]:
    """Keep samples with start <= timestamp <= end."""
    return [s for s in samples if start <= s.timestamp <= end]


def points_to_readings(
    patient_id: str,
    points: Sequence[ImputedPoint],
    source: str,
    session_id: int | None = None,
) -> list[HeartRateReading]:
    """Convert a completed series into storable readings, tagging provenance."""
    return [
        HeartRateReading(
            patient_id=patient_id,
            recorded_at=p.timestamp,
            heart_rate=int(round_half_up(p.value)),
            provenance=ReadingProvenance.imputed if p.is_imputed else ReadingProvenance.primary,
            source=source,
            session_id=session_id,
        )
        for p in points
    ]


def samples_to_readings(
    patient_id: str, samples: Sequence[HeartRateSample], source: str
) -> list[HeartRateReading]:
    cache = InMemoryDedupCache()
    readings: list[HeartRateReading] = []
    for sample in samples:
        key = reading_key(patient_id, sample.timestamp)
        if cache.is_seen(key):
            continue
        cache.mark_seen(key)
        readings.append(
            HeartRateReading(
                patient_id=patient_id,
                recorded_at=sample.timestamp,
                heart_rate=int(round_half_up(sample.value)),
                source=source,
            )
        )
    return readings


def build_insert_ignore_query(table: str, columns: list[str], conflict_columns: list[str]) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO NOTHING query.

    Readings are append-only, so a conflicting row is left untouched.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.

    Returns:
        Parameterized SQL string.
    """
    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({', '.join(conflict_columns)}) DO NOTHING"
    )


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    On conflict, updates the non-key columns and stamps ``updated_at``.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({', '.join(conflict_columns)}) "
        f"DO UPDATE SET {update_set}, updated_at = NOW()"
    )

"""Shared fixtures and builders for cardiac rehab pipeline tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Sequence

import pytest

from src.rehab.base import (
    CredentialRecord,
    HeartRateSample,
    Patient,
    Session,
    SessionStatus,
    SessionType,
)
from src.rehab.config_loader import PipelineConfig, load_pipeline_config
from src.rehab.repositories import Repositories
from src.rehab.tests.fakes import FakeClock, FakeTelemetryProvider, make_repositories
from src.rehab.zones import calculate_zones

# Canonical test patient and wall-clock
TEST_PATIENT_ID = "patient-0042"
TEST_NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
TEST_TOKEN = "access-token-abc"
TEST_REFRESH_TOKEN = "refresh-token-xyz"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_patient(patient_id: str = TEST_PATIENT_ID, age: int = 60, **kwargs) -> Patient:
    return Patient(patient_id=patient_id, age=age, **kwargs)


def make_session(
    start: datetime,
    week: int = 1,
    duration: int | None = None,
    patient_id: str = TEST_PATIENT_ID,
    status: SessionStatus = SessionStatus.in_progress,
    **kwargs,
) -> Session:
    """A session for a 60-year-old without comorbidities (target 112 in week 1)."""
    zones = calculate_zones(60, False, False, week)
    minutes = duration or zones.session_duration
    return Session(
        patient_id=patient_id,
        week_number=week,
        attempt_number=kwargs.pop("attempt_number", 1),
        session_type=kwargs.pop("session_type", SessionType.start_stop),
        session_date=start.date(),
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        planned_duration=zones.session_duration,
        zones=zones,
        status=status,
        actual_duration=kwargs.pop("actual_duration", minutes),
        created_at=kwargs.pop("created_at", start),
        **kwargs,
    )


def minute_samples(
    start: datetime, values: Sequence[float], skip: Sequence[int] = ()
) -> list[HeartRateSample]:
    """One sample per minute from ``start``, leaving out the ``skip`` indices."""
    return [
        HeartRateSample(timestamp=start + timedelta(minutes=i), value=v)
        for i, v in enumerate(values)
        if i not in skip
    ]


def make_credential(
    patient_id: str = TEST_PATIENT_ID,
    expires_at: datetime | None = None,
    **kwargs,
) -> CredentialRecord:
    return CredentialRecord(
        patient_id=patient_id,
        access_token=kwargs.pop("access_token", TEST_TOKEN),
        refresh_token=kwargs.pop("refresh_token", TEST_REFRESH_TOKEN),
        expires_at=expires_at or TEST_NOW + timedelta(hours=1),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Load the real pipeline config for tests."""
    return load_pipeline_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(TEST_NOW)


@pytest.fixture
def repos() -> Repositories:
    """In-memory repositories holding one patient with a valid credential."""
    bundle = make_repositories()
    bundle.patients.add(make_patient())
    bundle.credentials.add(make_credential())
    return bundle


@pytest.fixture
def provider() -> FakeTelemetryProvider:
    return FakeTelemetryProvider()

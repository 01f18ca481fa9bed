"""Tests for access-token resolution and refresh."""

from __future__ import annotations

from datetime import timedelta

import pytest

from src.rehab.base import (
    CredentialInvalidError,
    CredentialNotFoundError,
    OAuthTokens,
    RefreshTokenExpiredError,
)
from src.rehab.credentials import CredentialService
from src.rehab.repositories import Repositories
from src.rehab.tests.conftest import (
    TEST_NOW,
    TEST_PATIENT_ID,
    TEST_REFRESH_TOKEN,
    TEST_TOKEN,
)
from src.rehab.tests.fakes import FakeClock, FakeTelemetryProvider


def _service(repos: Repositories, provider: FakeTelemetryProvider, clock: FakeClock) -> CredentialService:
    return CredentialService(
        repos.credentials, provider, refresh_buffer=timedelta(seconds=300), clock=clock
    )


class TestGetValidToken:
    @pytest.mark.asyncio
    async def test_fresh_token_returned_without_refresh(
        self, repos: Repositories, provider: FakeTelemetryProvider, clock: FakeClock
    ) -> None:
        token = await _service(repos, provider, clock).get_valid_token(TEST_PATIENT_ID)
        assert token == TEST_TOKEN
        assert provider.refresh_calls == []

    @pytest.mark.asyncio
    async def test_token_inside_buffer_is_refreshed(
        self, repos: Repositories, clock: FakeClock
    ) -> None:
        repos.credentials.rows[TEST_PATIENT_ID].expires_at = TEST_NOW + timedelta(minutes=4)
        new_expiry = TEST_NOW + timedelta(hours=1)
        provider = FakeTelemetryProvider(
            refreshed=OAuthTokens("new-access", "new-refresh", new_expiry)
        )

        token = await _service(repos, provider, clock).get_valid_token(TEST_PATIENT_ID)

        assert token == "new-access"
        assert provider.refresh_calls == [TEST_REFRESH_TOKEN]
        record = repos.credentials.rows[TEST_PATIENT_ID]
        assert record.access_token == "new-access"
        assert record.refresh_token == "new-refresh"
        assert record.expires_at == new_expiry

    @pytest.mark.asyncio
    async def test_dead_refresh_token_marks_invalid(
        self, repos: Repositories, clock: FakeClock
    ) -> None:
        repos.credentials.rows[TEST_PATIENT_ID].expires_at = TEST_NOW - timedelta(minutes=1)
        provider = FakeTelemetryProvider(refresh_error=RefreshTokenExpiredError("invalid_grant"))

        with pytest.raises(RefreshTokenExpiredError):
            await _service(repos, provider, clock).get_valid_token(TEST_PATIENT_ID)

        record = repos.credentials.rows[TEST_PATIENT_ID]
        assert record.status == "invalid"
        assert record.invalidated_at == TEST_NOW

    @pytest.mark.asyncio
    async def test_invalid_credential_raises(
        self, repos: Repositories, provider: FakeTelemetryProvider, clock: FakeClock
    ) -> None:
        repos.credentials.rows[TEST_PATIENT_ID].status = "invalid"
        with pytest.raises(CredentialInvalidError):
            await _service(repos, provider, clock).get_valid_token(TEST_PATIENT_ID)

    @pytest.mark.asyncio
    async def test_missing_credential_raises(
        self, repos: Repositories, provider: FakeTelemetryProvider, clock: FakeClock
    ) -> None:
        with pytest.raises(CredentialNotFoundError):
            await _service(repos, provider, clock).get_valid_token("nobody")

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(
        self, repos: Repositories, provider: FakeTelemetryProvider, clock: FakeClock
    ) -> None:
        record = repos.credentials.rows[TEST_PATIENT_ID]
        record.expires_at = TEST_NOW - timedelta(minutes=1)
        record.refresh_token = None

        with pytest.raises(RefreshTokenExpiredError):
            await _service(repos, provider, clock).get_valid_token(TEST_PATIENT_ID)
        assert record.status == "invalid"


class TestInvalidateAccessToken:
    @pytest.mark.asyncio
    async def test_forces_refresh_on_next_call(
        self, repos: Repositories, clock: FakeClock
    ) -> None:
        provider = FakeTelemetryProvider(
            refreshed=OAuthTokens("rotated", None, TEST_NOW + timedelta(hours=1))
        )
        service = _service(repos, provider, clock)

        await service.invalidate_access_token(TEST_PATIENT_ID)
        assert await service.get_valid_token(TEST_PATIENT_ID) == "rotated"
        # refresh_token kept when the provider does not rotate it
        assert repos.credentials.rows[TEST_PATIENT_ID].refresh_token == TEST_REFRESH_TOKEN

"""Tests for the /api/v1/auth/token-status endpoint."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.dependencies import get_credential_repository
from src.rehab.repositories import Repositories
from src.rehab.tests.conftest import TEST_NOW, TEST_PATIENT_ID, make_credential
from src.routers import credentials


@pytest.fixture
def client(repos: Repositories) -> TestClient:
    app = FastAPI()
    app.include_router(credentials.router, prefix="/api/v1")
    app.dependency_overrides[get_credential_repository] = lambda: repos.credentials
    return TestClient(app)


class TestTokenStatusEndpoint:
    def test_valid_credential_is_connected(self, client: TestClient) -> None:
        response = client.get(f"/api/v1/auth/token-status/{TEST_PATIENT_ID}")

        assert response.status_code == 200
        assert response.json() == {
            "connected": True,
            "message": "Telemetry connected",
            "invalidated_at": None,
            "reason": None,
        }

    def test_missing_credential_is_not_connected(self, client: TestClient) -> None:
        body = client.get("/api/v1/auth/token-status/nobody").json()

        assert body["connected"] is False
        assert body["message"] == "Telemetry not connected"
        assert body["reason"] is None

    def test_invalidated_credential_reports_reason(
        self, client: TestClient, repos: Repositories
    ) -> None:
        repos.credentials.add(
            make_credential(
                status="invalid",
                invalidated_at=TEST_NOW,
                invalidation_reason="invalid_grant",
            )
        )

        body = client.get(f"/api/v1/auth/token-status/{TEST_PATIENT_ID}").json()

        assert body["connected"] is False
        assert body["message"] == "Telemetry access expired. Please reconnect."
        assert body["reason"] == "invalid_grant"
        assert body["invalidated_at"].startswith(TEST_NOW.date().isoformat())

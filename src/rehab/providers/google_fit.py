"""Google Fit REST adapter for heart-rate telemetry.

Environment variables:
    GOOGLE_CLIENT_ID      — OAuth2 client ID
    GOOGLE_CLIENT_SECRET  — OAuth2 client secret

Endpoints used:
    POST /fitness/v1/users/me/dataset:aggregate — 1-minute heart-rate buckets
    POST https://oauth2.googleapis.com/token    — refresh_token grant
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone

import httpx

from src.rehab.base import (
    HeartRateSample,
    OAuthTokens,
    RefreshTokenExpiredError,
    TelemetryError,
    TelemetryProvider,
    TelemetryRateLimitedError,
    TelemetryUnauthorizedError,
    round_half_up,
    utc_now,
)

logger = logging.getLogger("cardiorehab.rehab.providers.google_fit")

_FIT_AGGREGATE_URL = "https://www.googleapis.com/fitness/v1/users/me/dataset:aggregate"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_HEART_RATE_TYPE = "com.google.heart_rate.bpm"
_BUCKET_MILLIS = 60_000

# OAuth error codes that mean the refresh token itself is dead
_DEAD_REFRESH_ERRORS = frozenset({"invalid_grant", "invalid_token"})


def _to_millis(ts: datetime) -> int:
    return int(ts.timestamp() * 1000)


class GoogleFitProvider(TelemetryProvider):
    """Google Fit heart-rate provider.

    Every request is bounded by ``timeout`` seconds; a timeout surfaces as a
    TelemetryError and is retried on the session's schedule.
    """

    SOURCE_ID = "google_fit"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the Google Fit provider.

        Args:
            client_id:     OAuth2 client ID (GOOGLE_CLIENT_ID env var).
            client_secret: OAuth2 client secret (GOOGLE_CLIENT_SECRET env var).
            timeout:       Per-request timeout in seconds.
            http_client:   Optional pre-configured httpx client (for testing).
        """
        self._client_id = client_id or os.environ.get("GOOGLE_CLIENT_ID", "")
        self._client_secret = client_secret or os.environ.get("GOOGLE_CLIENT_SECRET", "")
        self._timeout = timeout
        self._http_client = http_client

    # ------------------------------------------------------------------
    # TelemetryProvider interface
    # ------------------------------------------------------------------

    async def fetch_heart_rate(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[HeartRateSample]:
        """Fetch 1-minute aggregated heart rate between start and end.

        Args:
            access_token: OAuth2 Bearer token.
            start:        Window start (inclusive).
            end:          Window end.

        Returns:
            Samples in provider order, bpm rounded to integers.
        """
        body = {
            "aggregateBy": [{"dataTypeName": _HEART_RATE_TYPE}],
            "bucketByTime": {"durationMillis": _BUCKET_MILLIS},
            "startTimeMillis": _to_millis(start),
            "endTimeMillis": _to_millis(end),
        }
        headers = {"Authorization": f"Bearer {access_token}"}

        try:
            response = await self._post(_FIT_AGGREGATE_URL, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise TelemetryError(f"Google Fit request failed: {exc}") from exc

        if response.status_code == 401:
            raise TelemetryUnauthorizedError("Access token expired or invalid")
        if response.status_code == 429:
            raise TelemetryRateLimitedError("Google Fit rate limit exceeded")
        if response.is_error:
            raise TelemetryError(
                f"Google Fit returned HTTP {response.status_code}: {response.text[:200]}"
            )

        samples = self.parse_aggregate(response.json())
        logger.debug("Google Fit: %d samples for %s → %s", len(samples), start, end)
        return samples

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        """Refresh an expired Google OAuth2 access token.

        Raises:
            RefreshTokenExpiredError: Google answered invalid_grant / invalid_token.
            TelemetryError:           Any other token endpoint failure.
        """
        data = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            response = await self._post(_GOOGLE_TOKEN_URL, data=data)
        except httpx.HTTPError as exc:
            raise TelemetryError(f"Token refresh request failed: {exc}") from exc

        if response.status_code in (400, 401):
            payload = self._json_or_empty(response)
            if payload.get("error") in _DEAD_REFRESH_ERRORS:
                raise RefreshTokenExpiredError(
                    payload.get("error_description") or "Refresh token expired"
                )
        if response.is_error:
            raise TelemetryError(f"Token refresh returned HTTP {response.status_code}")

        payload = response.json()
        expires_in = self._safe_int(payload.get("expires_in")) or 3600
        return OAuthTokens(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token", refresh_token),
            expires_at=utc_now() + timedelta(seconds=expires_in),
            token_type=payload.get("token_type", "Bearer"),
        )

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @classmethod
    def parse_aggregate(cls, payload: dict) -> list[HeartRateSample]:
        """Extract samples from a dataset:aggregate response.

        Reads ``bucket[].dataset[0].point[]``; points without a floating
        point value are skipped.
        """
        samples: list[HeartRateSample] = []
        for bucket in payload.get("bucket", []):
            datasets = bucket.get("dataset") or []
            if not datasets:
                continue
            for point in datasets[0].get("point", []):
                values = point.get("value") or []
                fp_val = cls._safe_float(values[0].get("fpVal")) if values else None
                nanos = cls._safe_int(point.get("startTimeNanos"))
                if not fp_val or nanos is None:
                    continue
                samples.append(
                    HeartRateSample(
                        timestamp=datetime.fromtimestamp(nanos / 1e9, tz=timezone.utc),
                        value=round_half_up(fp_val),
                    )
                )
        return samples

    @staticmethod
    def _json_or_empty(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        if self._http_client:
            return await self._http_client.post(url, timeout=self._timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(url, **kwargs)

"""Valid-access-token resolution for a patient's telemetry credential.

Callers must already hold the patient's credential lock (see
``src.rehab.sync.credential_lock``): refreshing rotates the stored token and
two concurrent refreshes would race on it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from src.rehab.base import (
    CredentialInvalidError,
    CredentialNotFoundError,
    RefreshTokenExpiredError,
    TelemetryProvider,
    utc_now,
)
from src.rehab.config_loader import get_pipeline_config
from src.rehab.repositories import CredentialRepository

logger = logging.getLogger("cardiorehab.rehab.credentials")


class CredentialService:
    """Return a usable access token, refreshing it when close to expiry."""

    def __init__(
        self,
        credentials: CredentialRepository,
        provider: TelemetryProvider,
        refresh_buffer: timedelta | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._credentials = credentials
        self._provider = provider
        self._refresh_buffer = refresh_buffer or timedelta(
            seconds=get_pipeline_config().credentials.refresh_buffer_seconds
        )
        self._clock = clock

    async def get_valid_token(self, patient_id: str) -> str:
        """Return an access token valid for at least the refresh buffer.

        Args:
            patient_id: Patient whose credential to use.

        Returns:
            Bearer access token.

        Raises:
            CredentialNotFoundError:  No credential row exists.
            CredentialInvalidError:   The credential was marked invalid earlier.
            RefreshTokenExpiredError: The provider rejected the refresh token.
        """
        record = await self._credentials.get(patient_id)
        if record is None:
            raise CredentialNotFoundError(f"No credential for patient {patient_id}")
        if not record.is_valid:
            raise CredentialInvalidError(
                f"Credential for patient {patient_id} is invalid: {record.invalidation_reason}"
            )

        now = self._clock()
        if record.expires_at is not None and now < record.expires_at - self._refresh_buffer:
            return record.access_token

        if not record.refresh_token:
            await self._credentials.mark_invalid(patient_id, "No refresh token stored", now)
            raise RefreshTokenExpiredError(f"No refresh token for patient {patient_id}")

        logger.info("Refreshing access token for patient %s", patient_id)
        try:
            tokens = await self._provider.refresh_token(record.refresh_token)
        except RefreshTokenExpiredError as exc:
            await self._credentials.mark_invalid(patient_id, str(exc) or "Refresh token expired", now)
            logger.error("Refresh token expired for patient %s: %s", patient_id, exc)
            raise

        await self._credentials.update_tokens(
            patient_id,
            tokens.access_token,
            tokens.expires_at,
            refresh_token=tokens.refresh_token,
        )
        return tokens.access_token

    async def invalidate_access_token(self, patient_id: str) -> None:
        """Force the next get_valid_token() call to refresh."""
        await self._credentials.expire_access_token(patient_id, self._clock())

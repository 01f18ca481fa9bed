"""Bulk historical heart-rate sync.

Runs at the bulk-sync hours (00/06/12/18 UTC by default) and pulls every
connected patient's telemetry since the last stored reading.  Sessions that
exhaust their live attempts are scored from this data by the fallback
attempt, ten minutes after each run.

For each patient:
    1. Skip when a session is mid-processing (its attempts own the credential)
    2. Take the credential lock as ``historical_sync``
    3. Fetch in fixed-size chunks from the last stored reading up to now
    4. Store readings, ignoring duplicates
    5. Estimate resting heart rate and push it to the partner

Patients skipped in the first pass get one more try after a short wait.

Usage::

    job = HistoricalSyncJob(repos, GoogleFitProvider(), push_client)
    results = await job.run(utc_now())
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from src.rehab.base import (
    CredentialError,
    HeartRateSample,
    SessionStatus,
    TelemetryProvider,
    utc_now,
)
from src.rehab.config_loader import PipelineConfig, get_pipeline_config
from src.rehab.credentials import CredentialService
from src.rehab.push import PartnerPushClient
from src.rehab.repositories import Repositories
from src.rehab.resting_hr import estimate_resting_hr
from src.rehab.sync.credential_lock import CredentialLockManager
from src.rehab.sync.dedup import merge_samples, samples_to_readings
from src.rehab.sync.schedule import next_bulk_sync_time

logger = logging.getLogger("cardiorehab.rehab.sync.historical_sync")

HISTORICAL_SYNC_SOURCE = "historical_sync"
LOCK_HOLDER = "historical_sync"


@dataclass
class HistoricalSyncResult:
    """Outcome of syncing one patient.

    Attributes:
        patient_id:   Patient synced.
        status:       'success', 'no_data', 'skipped', 'token_expired' or 'error'.
        record_count: Readings written (duplicates excluded).
        resting_hr:   Resting heart rate estimate pushed, if any.
        error:        Reason for a non-success status.
    """

    patient_id: str
    status: str = "success"
    record_count: int = 0
    resting_hr: float | None = None
    error: str | None = None


class HistoricalSyncJob:
    """Periodic bulk sync of stored telemetry for every connected patient."""

    def __init__(
        self,
        repos: Repositories,
        provider: TelemetryProvider,
        push_client: PartnerPushClient | None = None,
        config: PipelineConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        lock_manager: CredentialLockManager | None = None,
        credential_service: CredentialService | None = None,
        sleeper: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._repos = repos
        self._provider = provider
        self._push = push_client
        self._config = config or get_pipeline_config()
        self._clock = clock
        self._sleeper = sleeper
        self._locks = lock_manager or CredentialLockManager(
            repos.credentials,
            stale_after=timedelta(minutes=self._config.credentials.lock_stale_minutes),
            clock=clock,
        )
        self._credentials = credential_service or CredentialService(
            repos.credentials,
            provider,
            refresh_buffer=timedelta(seconds=self._config.credentials.refresh_buffer_seconds),
            clock=clock,
        )

    def next_run_time(self, now: datetime) -> datetime:
        """When the next bulk sync starts."""
        return next_bulk_sync_time(now, self._config.bulk_sync)

    async def run(self, now: datetime | None = None) -> list[HistoricalSyncResult]:
        """Sync every patient holding a credential.

        Args:
            now: Sync horizon (defaults to the clock).

        Returns:
            One HistoricalSyncResult per patient, reflecting the retry for
            patients skipped in the first pass.
        """
        now = now or self._clock()
        patient_ids = await self._repos.credentials.patient_ids()
        if not patient_ids:
            logger.info("Historical sync: no connected patients")
            return []

        logger.info("Historical sync: %d patient(s) up to %s", len(patient_ids), now.isoformat())
        results = [await self._sync_guarded(patient_id, now) for patient_id in patient_ids]
        await self._retry_skipped(results, now)

        counts: dict[str, int] = {}
        for r in results:
            counts[r.status] = counts.get(r.status, 0) + 1
        logger.info(
            "Historical sync complete: %s, %d records",
            ", ".join(f"{k}={v}" for k, v in sorted(counts.items())),
            sum(r.record_count for r in results),
        )
        return results

    async def _sync_guarded(self, patient_id: str, now: datetime) -> HistoricalSyncResult:
        try:
            return await self.sync_patient(patient_id, now)
        except Exception as exc:
            logger.exception("Historical sync failed for patient %s", patient_id)
            return HistoricalSyncResult(patient_id, status="error", error=str(exc))

    async def _retry_skipped(self, results: list[HistoricalSyncResult], now: datetime) -> None:
        """Wait, then sync each skipped patient once more, replacing its result in place."""
        skipped = [i for i, r in enumerate(results) if r.status == "skipped"]
        if not skipped:
            return
        delay = self._config.bulk_sync.skipped_retry_delay_minutes * 60
        logger.info(
            "Historical sync: retrying %d skipped patient(s) in %d s", len(skipped), delay
        )
        await self._sleeper(delay)
        retry_now = max(now, self._clock())
        for i in skipped:
            results[i] = await self._sync_guarded(results[i].patient_id, retry_now)
            if results[i].status == "skipped":
                logger.warning(
                    "Historical sync: patient %s still skipped after retry (%s)",
                    results[i].patient_id, results[i].error,
                )

    async def sync_patient(self, patient_id: str, now: datetime) -> HistoricalSyncResult:
        """Sync one patient; also usable for an operator-triggered sync."""
        busy = await self._repos.sessions.count_with_status(
            patient_id, [SessionStatus.processing]
        )
        if busy:
            logger.info(
                "Historical sync: patient %s has %d processing session(s), skipping",
                patient_id, busy,
            )
            return HistoricalSyncResult(patient_id, status="skipped", error="session processing")

        try:
            async with self._locks.hold(patient_id, LOCK_HOLDER) as acquired:
                if not acquired:
                    logger.info("Historical sync: credential for %s locked, skipping", patient_id)
                    return HistoricalSyncResult(patient_id, status="skipped", error="lock_unavailable")
                token = await self._credentials.get_valid_token(patient_id)
                samples = await self._fetch_since_last(patient_id, token, now)
        except CredentialError as exc:
            logger.error("Historical sync: credential unusable for patient %s: %s", patient_id, exc)
            return HistoricalSyncResult(patient_id, status="token_expired", error=str(exc))

        inserted = 0
        if samples:
            readings = samples_to_readings(patient_id, samples, HISTORICAL_SYNC_SOURCE)
            inserted = await self._repos.readings.insert_many(readings)
        logger.info("Historical sync: patient %s → %d new readings", patient_id, inserted)

        result = HistoricalSyncResult(
            patient_id, status="success" if samples else "no_data", record_count=inserted
        )
        result.resting_hr = await self._update_resting_hr(patient_id)
        return result

    async def _fetch_since_last(
        self, patient_id: str, access_token: str, now: datetime
    ) -> list[HeartRateSample]:
        cfg = self._config.bulk_sync
        start = await self._repos.readings.latest_timestamp(patient_id)
        if start is None:
            start = now - timedelta(hours=cfg.default_lookback_hours)
        chunk = timedelta(hours=cfg.chunk_hours)

        batches: list[list[HeartRateSample]] = []
        current = start
        while current < now:
            chunk_end = min(current + chunk, now)
            try:
                batches.append(
                    await self._provider.fetch_heart_rate(access_token, current, chunk_end)
                )
            except CredentialError:
                raise
            except Exception as exc:
                logger.warning(
                    "Historical sync: chunk %s → %s failed for %s: %s",
                    current.isoformat(), chunk_end.isoformat(), patient_id, exc,
                )
            current = chunk_end
        return merge_samples(batches)

    async def _update_resting_hr(self, patient_id: str) -> float | None:
        readings = await self._repos.readings.for_patient(patient_id)
        sessions = await self._repos.sessions.completed_for_patient(patient_id)
        resting = estimate_resting_hr(readings, sessions)
        if resting is None:
            logger.info("Historical sync: not enough resting data for patient %s", patient_id)
            return None
        if self._push is not None:
            await self._push.push_resting_hr(patient_id, resting)
        return resting

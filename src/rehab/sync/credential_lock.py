"""Single-writer lock over a patient's telemetry credential.

Only one worker at a time may refresh the credential or fetch with it.  The
lock is embedded in the credential row (in_use, locked_by, locked_at,
last_used_at) and is best-effort: a holder that crashes is recovered by
staleness takeover once its lock is older than the staleness window.

Acquisition is a compare-and-set: the update only lands if the row still
holds the (in_use, locked_at) pair the caller just read, so two workers
racing for the same free or stale lock cannot both win.

Usage::

    locks = CredentialLockManager(repos.credentials)
    async with locks.hold(patient_id, f"session_{session_id}") as acquired:
        if not acquired:
            return  # busy, try again next sweep
        ...
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncGenerator, Callable

from src.rehab.base import CredentialNotFoundError, utc_now
from src.rehab.config_loader import get_pipeline_config
from src.rehab.repositories import CredentialRepository

logger = logging.getLogger("cardiorehab.rehab.sync.credential_lock")


class CredentialLockManager:
    """Acquire and release the per-patient credential lock."""

    def __init__(
        self,
        credentials: CredentialRepository,
        stale_after: timedelta | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the lock manager.

        Args:
            credentials: Credential repository holding the lock columns.
            stale_after: Age after which a held lock may be taken over.
            clock:       Source of the current time.
        """
        self._credentials = credentials
        self._stale_after = stale_after or timedelta(
            minutes=get_pipeline_config().credentials.lock_stale_minutes
        )
        self._clock = clock

    def is_stale(self, locked_at: datetime | None, now: datetime) -> bool:
        return locked_at is None or now - locked_at > self._stale_after

    async def acquire(self, patient_id: str, holder: str) -> bool:
        """Try to take the lock.

        Args:
            patient_id: Patient whose credential to lock.
            holder:     Identifier recorded as the lock owner.

        Returns:
            True if acquired (fresh or by stale takeover), False if busy or
            another caller won the race.

        Raises:
            CredentialNotFoundError: The patient has no credential row.
        """
        record = await self._credentials.get(patient_id)
        if record is None:
            raise CredentialNotFoundError(f"No credential for patient {patient_id}")

        now = self._clock()
        if record.in_use and not self.is_stale(record.locked_at, now):
            logger.debug(
                "Credential for %s busy (held by %s since %s)",
                patient_id, record.locked_by, record.locked_at,
            )
            return False

        acquired = await self._credentials.compare_and_set_lock(
            patient_id,
            holder,
            now,
            expected_in_use=record.in_use,
            expected_locked_at=record.locked_at,
        )
        if not acquired:
            logger.debug("Lost credential lock race for %s to another worker", patient_id)
            return False

        if record.in_use:
            logger.warning(
                "Took over stale credential lock for %s from %s (locked at %s)",
                patient_id, record.locked_by, record.locked_at,
            )
        else:
            logger.debug("Credential lock for %s acquired by %s", patient_id, holder)
        return True

    async def release(self, patient_id: str) -> None:
        await self._credentials.clear_lock(patient_id, self._clock())
        logger.debug("Credential lock for %s released", patient_id)

    async def release_stale_locks(self, now: datetime | None = None) -> int:
        """Force-release every lock older than the staleness window."""
        now = now or self._clock()
        released = await self._credentials.clear_locks_older_than(now - self._stale_after, now)
        if released:
            logger.warning("Released %d stale credential lock(s)", released)
        return released

    @asynccontextmanager
    async def hold(self, patient_id: str, holder: str) -> AsyncGenerator[bool, None]:
        """Acquire for the duration of the block; release only if acquired."""
        acquired = await self.acquire(patient_id, holder)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(patient_id)

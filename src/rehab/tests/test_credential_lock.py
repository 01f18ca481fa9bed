"""Tests for the per-patient credential lock."""

from __future__ import annotations

from datetime import timedelta

import pytest

from src.rehab.base import CredentialNotFoundError
from src.rehab.repositories import Repositories
from src.rehab.sync.credential_lock import CredentialLockManager
from src.rehab.tests.conftest import TEST_NOW, TEST_PATIENT_ID
from src.rehab.tests.fakes import FakeClock


@pytest.fixture
def locks(repos: Repositories, clock: FakeClock) -> CredentialLockManager:
    return CredentialLockManager(repos.credentials, stale_after=timedelta(minutes=5), clock=clock)


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_acquire_free_lock(self, locks: CredentialLockManager, repos: Repositories) -> None:
        assert await locks.acquire(TEST_PATIENT_ID, "session_1")
        record = repos.credentials.rows[TEST_PATIENT_ID]
        assert record.in_use
        assert record.locked_by == "session_1"
        assert record.locked_at == TEST_NOW

    @pytest.mark.asyncio
    async def test_second_holder_is_refused(self, locks: CredentialLockManager) -> None:
        assert await locks.acquire(TEST_PATIENT_ID, "session_1")
        assert not await locks.acquire(TEST_PATIENT_ID, "session_2")

    @pytest.mark.asyncio
    async def test_release_frees_lock(
        self, locks: CredentialLockManager, repos: Repositories
    ) -> None:
        await locks.acquire(TEST_PATIENT_ID, "session_1")
        await locks.release(TEST_PATIENT_ID)
        record = repos.credentials.rows[TEST_PATIENT_ID]
        assert not record.in_use
        assert record.locked_by is None

    @pytest.mark.asyncio
    async def test_missing_credential_raises(self, locks: CredentialLockManager) -> None:
        with pytest.raises(CredentialNotFoundError):
            await locks.acquire("nobody", "session_1")


class TestStaleTakeover:
    @pytest.mark.asyncio
    async def test_lock_older_than_window_is_taken_over(
        self, locks: CredentialLockManager, repos: Repositories, clock: FakeClock
    ) -> None:
        await locks.acquire(TEST_PATIENT_ID, "crashed_worker")
        clock.advance(minutes=6)

        assert await locks.acquire(TEST_PATIENT_ID, "session_7")
        assert repos.credentials.rows[TEST_PATIENT_ID].locked_by == "session_7"

    @pytest.mark.asyncio
    async def test_recent_lock_is_not_taken_over(
        self, locks: CredentialLockManager, clock: FakeClock
    ) -> None:
        await locks.acquire(TEST_PATIENT_ID, "busy_worker")
        clock.advance(minutes=1)

        assert not await locks.acquire(TEST_PATIENT_ID, "session_7")

    @pytest.mark.asyncio
    async def test_release_stale_locks(
        self, locks: CredentialLockManager, repos: Repositories, clock: FakeClock
    ) -> None:
        await locks.acquire(TEST_PATIENT_ID, "crashed_worker")
        clock.advance(minutes=10)

        assert await locks.release_stale_locks() == 1
        assert not repos.credentials.rows[TEST_PATIENT_ID].in_use


class TestCompareAndSet:
    @pytest.mark.asyncio
    async def test_losing_the_race_returns_false(
        self, locks: CredentialLockManager, repos: Repositories
    ) -> None:
        """Another worker locks the row between our read and our update."""
        original_get = repos.credentials.get

        async def get_then_race(patient_id: str):
            record = await original_get(patient_id)
            await repos.credentials.compare_and_set_lock(
                patient_id, "rival", TEST_NOW, expected_in_use=False, expected_locked_at=None
            )
            return record

        repos.credentials.get = get_then_race
        assert not await locks.acquire(TEST_PATIENT_ID, "session_1")
        assert repos.credentials.rows[TEST_PATIENT_ID].locked_by == "rival"


class TestHold:
    @pytest.mark.asyncio
    async def test_hold_releases_on_exit(
        self, locks: CredentialLockManager, repos: Repositories
    ) -> None:
        async with locks.hold(TEST_PATIENT_ID, "session_1") as acquired:
            assert acquired
            assert repos.credentials.rows[TEST_PATIENT_ID].in_use
        assert not repos.credentials.rows[TEST_PATIENT_ID].in_use

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(
        self, locks: CredentialLockManager, repos: Repositories
    ) -> None:
        with pytest.raises(RuntimeError):
            async with locks.hold(TEST_PATIENT_ID, "session_1"):
                raise RuntimeError("fetch blew up")
        assert not repos.credentials.rows[TEST_PATIENT_ID].in_use

    @pytest.mark.asyncio
    async def test_busy_hold_does_not_release_other_holder(
        self, locks: CredentialLockManager, repos: Repositories
    ) -> None:
        await locks.acquire(TEST_PATIENT_ID, "historical_sync")
        async with locks.hold(TEST_PATIENT_ID, "session_1") as acquired:
            assert not acquired
        assert repos.credentials.rows[TEST_PATIENT_ID].locked_by == "historical_sync"

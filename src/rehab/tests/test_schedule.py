"""Tests for retry schedule arithmetic."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.rehab.config_loader import PipelineConfig
from src.rehab.sync import schedule
from src.rehab.tests.conftest import TEST_NOW


class TestDelaysAndThresholds:
    @pytest.mark.parametrize(
        "attempt, minutes",
        [(1, 0), (2, 5), (6, 5), (7, 15), (8, 30), (9, 60), (10, 180), (11, 360)],
    )
    def test_attempt_delays(
        self, pipeline_config: PipelineConfig, attempt: int, minutes: int
    ) -> None:
        assert schedule.attempt_delay(attempt, pipeline_config.retry) == timedelta(minutes=minutes)

    def test_unknown_attempt_has_no_delay(self, pipeline_config: PipelineConfig) -> None:
        assert schedule.attempt_delay(12, pipeline_config.retry) is None

    @pytest.mark.parametrize(
        "attempt, threshold",
        [(1, 0.70), (2, 0.70), (3, 0.60), (4, 0.60), (5, 0.50), (6, 0.50), (7, 0.40), (11, 0.40), (12, 0.40)],
    )
    def test_completeness_tiers(
        self, pipeline_config: PipelineConfig, attempt: int, threshold: float
    ) -> None:
        assert schedule.completeness_threshold(attempt, pipeline_config.retry) == threshold

    def test_fallback_attempt_number(self, pipeline_config: PipelineConfig) -> None:
        assert schedule.is_fallback_attempt(12, pipeline_config.retry)
        assert not schedule.is_fallback_attempt(11, pipeline_config.retry)


class TestBuildSchedule:
    def test_eleven_pending_attempts(self, pipeline_config: PipelineConfig) -> None:
        items = schedule.build_retry_schedule(TEST_NOW, pipeline_config.retry)
        assert [i.attempt for i in items] == list(range(1, 12))
        assert all(i.is_pending for i in items)

    def test_scheduled_for_accumulates_delays(self, pipeline_config: PipelineConfig) -> None:
        items = schedule.build_retry_schedule(TEST_NOW, pipeline_config.retry)
        assert items[0].scheduled_for == TEST_NOW
        assert items[1].scheduled_for == TEST_NOW + timedelta(minutes=5)
        assert items[6].scheduled_for == TEST_NOW + timedelta(minutes=40)
        # 0 + 5×5 + 15 + 30 + 60 + 180 + 360
        assert items[10].scheduled_for == TEST_NOW + timedelta(minutes=670)


class TestRecordAttempt:
    def test_only_matching_entry_changes(self, pipeline_config: PipelineConfig) -> None:
        items = schedule.build_retry_schedule(TEST_NOW, pipeline_config.retry)
        updated = schedule.record_attempt(items, 2, "insufficient_data", TEST_NOW, data_points=4)

        assert updated[1].status == "completed"
        assert updated[1].result == "insufficient_data"
        assert updated[1].data_points == 4
        assert items[1].is_pending  # original untouched
        assert all(i.is_pending for i in updated if i.attempt != 2)

    def test_missing_attempt_is_appended(self, pipeline_config: PipelineConfig) -> None:
        items = schedule.build_retry_schedule(TEST_NOW, pipeline_config.retry)
        updated = schedule.record_attempt(items, 12, "success", TEST_NOW)
        assert len(updated) == 12
        assert updated[-1].attempt == 12

    def test_next_pending_attempt(self, pipeline_config: PipelineConfig) -> None:
        items = schedule.build_retry_schedule(TEST_NOW, pipeline_config.retry)
        items = schedule.record_attempt(items, 1, "no_data", TEST_NOW)
        assert schedule.next_pending_attempt(items).attempt == 2

    def test_next_pending_none_when_exhausted(self, pipeline_config: PipelineConfig) -> None:
        items = schedule.build_retry_schedule(TEST_NOW, pipeline_config.retry)
        for attempt in range(1, 12):
            items = schedule.record_attempt(items, attempt, "no_data", TEST_NOW)
        assert schedule.next_pending_attempt(items) is None


class TestBulkSyncTimes:
    @pytest.mark.parametrize(
        "now, expected",
        [
            (datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc), datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)),
            (datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc), datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc)),
            (datetime(2026, 3, 2, 19, 30, tzinfo=timezone.utc), datetime(2026, 3, 3, 0, 0, tzinfo=timezone.utc)),
        ],
    )
    def test_next_bulk_sync_time(
        self, pipeline_config: PipelineConfig, now: datetime, expected: datetime
    ) -> None:
        assert schedule.next_bulk_sync_time(now, pipeline_config.bulk_sync) == expected

    def test_fallback_runs_ten_minutes_after_boundary(self, pipeline_config: PipelineConfig) -> None:
        run_at = schedule.fallback_attempt_time(
            TEST_NOW, pipeline_config.retry, pipeline_config.bulk_sync
        )
        assert run_at == datetime(2026, 3, 2, 12, 10, tzinfo=timezone.utc)


class TestShouldAttemptNow:
    def test_due_within_grace(self, pipeline_config: PipelineConfig) -> None:
        due = TEST_NOW + timedelta(seconds=45)
        assert schedule.should_attempt_now(due, TEST_NOW, pipeline_config.retry)

    def test_not_due_beyond_grace(self, pipeline_config: PipelineConfig) -> None:
        due = TEST_NOW + timedelta(minutes=2)
        assert not schedule.should_attempt_now(due, TEST_NOW, pipeline_config.retry)

    def test_unscheduled_is_due(self, pipeline_config: PipelineConfig) -> None:
        assert schedule.should_attempt_now(None, TEST_NOW, pipeline_config.retry)

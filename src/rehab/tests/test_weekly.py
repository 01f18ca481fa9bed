"""Tests for weekly top-N and cumulative score aggregation."""

from __future__ import annotations

from datetime import timedelta

import pytest

from src.rehab.base import SessionStatus, WeeklyScore
from src.rehab.config_loader import PipelineConfig
from src.rehab.repositories import Repositories
from src.rehab.tests.conftest import TEST_NOW, TEST_PATIENT_ID, make_session
from src.rehab.weekly import WeeklyAggregator, cumulative_score, weekly_score


class TestFormulas:
    def test_weekly_is_mean_of_top_scores(self) -> None:
        assert weekly_score([90, 80, 70]) == 80.0

    def test_weekly_rounds_to_two_places(self) -> None:
        assert weekly_score([90, 80, 81]) == 83.67

    def test_empty_week_scores_zero(self) -> None:
        assert weekly_score([]) == 0.0

    def test_week_one_cumulative_equals_weekly(self) -> None:
        assert cumulative_score(1, 80.0, None) == 80.0

    def test_later_week_blends_with_previous(self) -> None:
        # 0.6 × 90 + 0.4 × 70
        assert cumulative_score(2, 90.0, 70.0) == 82.0

    def test_missing_previous_week_uses_weekly(self) -> None:
        assert cumulative_score(3, 90.0, None) == 90.0


class TestWeeklyAggregator:
    @pytest.mark.asyncio
    async def test_counts_top_three_only(
        self, repos: Repositories, pipeline_config: PipelineConfig
    ) -> None:
        for i, score in enumerate([90, 80, 70, 60]):
            await repos.sessions.create(
                make_session(
                    TEST_NOW + timedelta(days=i),
                    status=SessionStatus.completed,
                    session_score=score,
                )
            )

        result = await WeeklyAggregator(repos, pipeline_config.weekly).update(TEST_PATIENT_ID, 1)

        assert result.weekly_score == 80.0
        assert result.cumulative_score == 80.0
        counted = {s.session_score: s.is_counted_in_weekly for s in repos.sessions.rows.values()}
        assert counted == {90: True, 80: True, 70: True, 60: False}

    @pytest.mark.asyncio
    async def test_better_session_displaces_counted_one(
        self, repos: Repositories, pipeline_config: PipelineConfig
    ) -> None:
        aggregator = WeeklyAggregator(repos, pipeline_config.weekly)
        for i, score in enumerate([70, 70, 70]):
            await repos.sessions.create(
                make_session(
                    TEST_NOW + timedelta(days=i), status=SessionStatus.completed, session_score=score
                )
            )
        await aggregator.update(TEST_PATIENT_ID, 1)

        await repos.sessions.create(
            make_session(
                TEST_NOW + timedelta(days=3), status=SessionStatus.completed, session_score=100
            )
        )
        result = await aggregator.update(TEST_PATIENT_ID, 1)

        assert result.weekly_score == 80.0
        assert sum(s.is_counted_in_weekly for s in repos.sessions.rows.values()) == 3
        assert repos.sessions.rows[4].is_counted_in_weekly

    @pytest.mark.asyncio
    async def test_week_two_blends_previous_weekly(
        self, repos: Repositories, pipeline_config: PipelineConfig
    ) -> None:
        await repos.weekly_scores.upsert(
            WeeklyScore(TEST_PATIENT_ID, 1, weekly_score=70.0, cumulative_score=70.0)
        )
        await repos.sessions.create(
            make_session(TEST_NOW, week=2, status=SessionStatus.completed, session_score=90)
        )

        result = await WeeklyAggregator(repos, pipeline_config.weekly).update(TEST_PATIENT_ID, 2)

        assert result.weekly_score == 90.0
        assert result.cumulative_score == 82.0
        assert (await repos.weekly_scores.get(TEST_PATIENT_ID, 2)).cumulative_score == 82.0

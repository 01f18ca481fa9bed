"""Tests for personalised heart-rate zone calculation."""

from __future__ import annotations

import pytest

from src.rehab.zones import (
    calculate_zones,
    comorbidity_reduction,
    planned_duration,
    target_percentage,
)


class TestComorbidityReduction:
    def test_no_conditions(self) -> None:
        assert comorbidity_reduction(False, False) == 0

    def test_beta_blockers_only(self) -> None:
        assert comorbidity_reduction(True, False) == 15

    def test_low_ef_only(self) -> None:
        assert comorbidity_reduction(False, True) == 10

    def test_both_conditions(self) -> None:
        assert comorbidity_reduction(True, True) == 20


class TestWeekTables:
    def test_target_percentage_first_and_last_week(self) -> None:
        assert target_percentage(1) == 70
        assert target_percentage(12) == 78

    def test_weeks_past_table_clamp(self) -> None:
        """Longer regimes keep the week 12 target."""
        assert target_percentage(16) == 78

    def test_planned_duration_grows_one_minute_per_week(self) -> None:
        assert planned_duration(1) == 20
        assert planned_duration(12) == 31

    def test_week_zero_raises(self) -> None:
        with pytest.raises(ValueError):
            target_percentage(0)
        with pytest.raises(ValueError):
            planned_duration(0)


class TestCalculateZones:
    def test_healthy_sixty_year_old_week_one(self) -> None:
        zones = calculate_zones(age=60, beta_blockers=False, low_ef=False, week=1)
        assert zones.max_permissible_hr == 160
        assert zones.target_hr == 112
        assert (zones.warmup_min, zones.warmup_max) == (97, 107)
        assert (zones.exercise_min, zones.exercise_max) == (107, 117)
        assert (zones.cooldown_min, zones.cooldown_max) == (112, 122)
        assert zones.session_duration == 20

    def test_beta_blockers_lower_target(self) -> None:
        # 160 × (70 − 15) / 100 = 88
        zones = calculate_zones(age=60, beta_blockers=True, low_ef=False, week=1)
        assert zones.target_hr == 88

    def test_target_rounds_half_up(self) -> None:
        # 155 × 71 / 100 = 110.05 → 110; 150 × 73 / 100 = 109.5 → 110
        assert calculate_zones(65, False, False, 2).target_hr == 110
        assert calculate_zones(70, False, False, 5).target_hr == 110

    def test_band_widths_follow_target(self) -> None:
        zones = calculate_zones(age=45, beta_blockers=True, low_ef=True, week=8)
        t = zones.target_hr
        assert zones.warmup_min == t - 15
        assert zones.exercise_max == t + 5
        assert zones.cooldown_max == t + 10

    def test_invalid_age_raises(self) -> None:
        with pytest.raises(ValueError, match="Age"):
            calculate_zones(age=0, beta_blockers=False, low_ef=False, week=1)

    def test_round_trips_through_json(self) -> None:
        from src.rehab.base import ZoneBands

        zones = calculate_zones(60, False, True, 3)
        assert ZoneBands.from_json(zones.to_json()) == zones

"""Tests for per-minute gap imputation and completeness."""

from __future__ import annotations

from datetime import timedelta

from src.rehab.base import HeartRateSample
from src.rehab.imputation import (
    average_by_minute,
    expected_minutes,
    impute_session,
    median,
)
from src.rehab.tests.conftest import TEST_NOW, minute_samples

START = TEST_NOW
END = TEST_NOW + timedelta(minutes=10)


class TestHelpers:
    def test_median_odd(self) -> None:
        assert median([3, 1, 2]) == 2

    def test_median_even_averages_and_rounds(self) -> None:
        assert median([100, 101]) == 101  # 100.5 rounds half up

    def test_median_empty(self) -> None:
        assert median([]) is None

    def test_median_even_unsorted_input(self) -> None:
        assert median([104, 98, 110, 101]) == 103  # 102.5 rounds half up

    def test_expected_minutes_floors_start(self) -> None:
        minutes = expected_minutes(START + timedelta(seconds=40), END + timedelta(seconds=40))
        assert len(minutes) == 10
        assert minutes[0] == START

    def test_average_by_minute_collapses_duplicates(self) -> None:
        samples = [
            HeartRateSample(START + timedelta(seconds=5), 100),
            HeartRateSample(START + timedelta(seconds=35), 110),
        ]
        assert average_by_minute(samples) == {START: 105.0}


class TestImputeSession:
    def test_complete_series_is_untouched(self) -> None:
        values = [100 + i for i in range(10)]
        result = impute_session(minute_samples(START, values), START, END)
        assert result.completeness == 1.0
        assert result.method == "none"
        assert result.values == [float(v) for v in values]
        assert result.imputed_count == 0

    def test_interpolates_interior_gap(self) -> None:
        values = [100, 0, 0, 106, 106, 106, 106, 106, 106, 106]
        result = impute_session(minute_samples(START, values, skip=(1, 2)), START, END)
        assert result.method == "interpolation"
        assert result.completeness == 0.8
        assert result.values[1] == 102.0
        assert result.values[2] == 104.0
        assert result.points[1].is_imputed

    def test_edges_use_nearest_real_minute(self) -> None:
        values = [0, 110, 111, 112, 113, 114, 115, 116, 117, 0]
        result = impute_session(minute_samples(START, values, skip=(0, 9)), START, END)
        assert result.values[0] == 110.0
        assert result.values[9] == 117.0

    def test_low_coverage_fills_with_median(self) -> None:
        samples = minute_samples(START, [90, 0, 0, 0, 0, 0, 0, 0, 0, 110], skip=range(1, 9))
        result = impute_session(samples, START, END)
        assert result.method == "median"
        assert result.completeness == 0.2
        assert result.median == 100
        assert all(v == 100 for v in result.values[1:9])

    def test_no_readings_returns_empty(self) -> None:
        result = impute_session([], START, END)
        assert result.points == []
        assert result.completeness == 0.0

    def test_readings_outside_minutes_count_as_nothing(self) -> None:
        late = [HeartRateSample(END + timedelta(minutes=5), 100)]
        result = impute_session(late, START, END)
        assert result.completeness == 0.0
        assert result.median == 100

    def test_completeness_rounded_to_three_places(self) -> None:
        end = START + timedelta(minutes=3)
        result = impute_session(minute_samples(START, [100, 101, 102], skip=(1, 2)), START, end)
        assert result.completeness == 0.333

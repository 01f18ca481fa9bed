"""Gap imputation for per-minute session heart-rate series.

Wearables deliver sparse, late and sometimes duplicated samples.  Scoring
needs one value per minute of the session window, so missing minutes are
filled in:

    coverage < 40%   → every gap gets the median of the real readings
    coverage ≥ 40%   → linear interpolation between the nearest real minutes,
                       forward/backward fill at the edges, median if isolated

Completeness (real minutes / expected minutes) is reported alongside the
series and drives the orchestrator's acceptance gate.
"""

from __future__ import annotations

import logging
import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Sequence

from src.rehab.base import HeartRateSample, round_half_up

logger = logging.getLogger("cardiorehab.rehab.imputation")

# Coverage below which interpolation is considered unreliable
INTERPOLATION_MIN_COVERAGE = 0.4

_MINUTE = timedelta(minutes=1)


@dataclass(frozen=True)
class ImputedPoint:
    """One minute of the completed series."""

    timestamp: datetime
    value: float
    is_imputed: bool = False


@dataclass
class ImputationResult:
    """Completed series plus coverage statistics.

    Attributes:
        points:        One entry per expected minute, in order.
        completeness:  Real minutes / expected minutes (3 dp).
        median:        Median of the raw real readings (None when empty).
        method:        'none', 'median' or 'interpolation'.
    """

    points: list[ImputedPoint] = field(default_factory=list)
    completeness: float = 0.0
    median: float | None = None
    method: str = "none"

    @property
    def values(self) -> list[float]:
        return [p.value for p in self.points]

    @property
    def real_count(self) -> int:
        return sum(1 for p in self.points if not p.is_imputed)

    @property
    def imputed_count(self) -> int:
        return sum(1 for p in self.points if p.is_imputed)


def floor_to_minute(ts: datetime) -> datetime:
    return ts.replace(second=0, microsecond=0)


def median(values: Sequence[float]) -> float | None:
    """Median with the two middle values averaged (and rounded) for even counts."""
    if not values:
        return None
    value = statistics.median(values)
    if len(values) % 2 == 0:
        return round_half_up(value)
    return value


def expected_minutes(start: datetime, end: datetime) -> list[datetime]:
    """Minute timestamps covering [start, end), starting at start floored."""
    count = int(round_half_up((end - start).total_seconds() / 60))
    first = floor_to_minute(start)
    return [first + i * _MINUTE for i in range(max(count, 0))]


def average_by_minute(readings: Sequence[HeartRateSample]) -> dict[datetime, float]:
    """Collapse readings that floor to the same minute into their mean."""
    buckets: dict[datetime, list[float]] = defaultdict(list)
    for sample in readings:
        buckets[floor_to_minute(sample.timestamp)].append(float(sample.value))
    return {minute: statistics.fmean(vals) for minute, vals in buckets.items()}


def impute_session(
    readings: Sequence[HeartRateSample], start: datetime, end: datetime
) -> ImputationResult:
    """Fill missing minutes of a session window.

    Args:
        readings: Real samples already filtered to the session window.
        start:    Session start time.
        end:      Session end time.

    Returns:
        ImputationResult.  Empty (completeness 0) when there are no readings
        or the window has no whole minutes.
    """
    minutes = expected_minutes(start, end)
    if not readings or not minutes:
        logger.debug("Imputation skipped: %d readings, %d minutes", len(readings), len(minutes))
        return ImputationResult()

    by_minute = average_by_minute(readings)
    real_flags = [m in by_minute for m in minutes]
    real_count = sum(real_flags)
    total = len(minutes)
    coverage = real_count / total
    fallback = median([float(s.value) for s in readings])

    if real_count == 0:
        # Readings exist but none land inside the expected minutes
        logger.debug("Imputation: no readings fall on expected minutes")
        return ImputationResult(median=fallback)

    use_median_only = coverage < INTERPOLATION_MIN_COVERAGE
    real_indices = [i for i, is_real in enumerate(real_flags) if is_real]

    points: list[ImputedPoint] = []
    for index, minute in enumerate(minutes):
        if real_flags[index]:
            points.append(ImputedPoint(minute, by_minute[minute]))
            continue

        if use_median_only:
            value = fallback
        else:
            value = _interpolate(index, minutes, by_minute, real_indices, fallback)
        points.append(ImputedPoint(minute, float(value), is_imputed=True))

    completeness = round_half_up(real_count / total, 3)
    method = "none" if real_count == total else ("median" if use_median_only else "interpolation")
    logger.debug(
        "Imputation: %d/%d real minutes (%.1f%%), method=%s",
        real_count, total, coverage * 100, method,
    )
    return ImputationResult(points=points, completeness=completeness, median=fallback, method=method)


def _interpolate(
    index: int,
    minutes: list[datetime],
    by_minute: dict[datetime, float],
    real_indices: list[int],
    fallback: float | None,
) -> float:
    """Resolve one missing minute from its nearest real neighbours."""
    prev_idx = next((i for i in reversed(real_indices) if i < index), None)
    next_idx = next((i for i in real_indices if i > index), None)

    if prev_idx is not None and next_idx is not None:
        prev_val = by_minute[minutes[prev_idx]]
        next_val = by_minute[minutes[next_idx]]
        fraction = (index - prev_idx) / (next_idx - prev_idx)
        return round_half_up(prev_val + (next_val - prev_val) * fraction)
    if prev_idx is not None:
        return round_half_up(by_minute[minutes[prev_idx]])
    if next_idx is not None:
        return round_half_up(by_minute[minutes[next_idx]])
    return fallback if fallback is not None else 0.0

"""Phase-based session scoring against personalised heart-rate zones.

A completed per-minute series is split into warmup, exercise and cooldown
phases and each phase is scored 0–100:

    warmup   — share of minutes at or above the warmup lower bound
    exercise — deviation of the phase average from the exercise band,
               capped at 80 when the phase is erratic (range > 25 bpm)
    cooldown — deviation of the phase average from the cooldown band

Overall score = round(0.1 × warmup + 0.8 × exercise + 0.1 × cooldown).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from src.rehab.base import ZoneBands, round_half_up

logger = logging.getLogger("cardiorehab.rehab.scoring")

WARMUP_MINUTES = 5
COOLDOWN_MINUTES = 5
MIN_COOLDOWN_MINUTES = 2

WARMUP_WEIGHT = 0.1
EXERCISE_WEIGHT = 0.8
COOLDOWN_WEIGHT = 0.1

# Exercise phase: deviation (bpm) below the band → score
_EXERCISE_BELOW_BUCKETS: tuple[tuple[int, int], ...] = (
    (5, 100),
    (10, 95),
    (15, 80),
    (20, 70),
    (30, 20),
    (40, 15),
    (50, 10),
    (60, 8),
)
_EXERCISE_BELOW_FLOOR = 5

# Exercise phase: bpm above the upper bound → score
_EXERCISE_ABOVE_BUCKETS: tuple[tuple[int, int], ...] = ((10, 80), (20, 70))
_EXERCISE_ABOVE_FLOOR = 20

_EXERCISE_VARIABILITY_LIMIT = 25
_EXERCISE_VARIABILITY_CAP = 80

# Cooldown phase: deviation (bpm) outside the band → score
_COOLDOWN_BUCKETS: tuple[tuple[int, int], ...] = ((5, 100), (10, 90), (15, 80), (25, 60))
_COOLDOWN_FLOOR = 40


@dataclass(frozen=True)
class SessionPhases:
    warmup: list[float]
    exercise: list[float]
    cooldown: list[float]


@dataclass(frozen=True)
class SessionScore:
    """Per-phase and overall scores for one session."""

    warmup_score: int
    exercise_score: int
    cooldown_score: int
    overall_score: int


@dataclass(frozen=True)
class HeartRateStats:
    max_hr: int
    min_hr: int
    avg_hr: int


def _bucket(deviation: float, buckets: Sequence[tuple[int, int]], floor: int) -> int:
    for limit, score in buckets:
        if deviation <= limit:
            return score
    return floor


def _band_deviation(avg: float, low: float, high: float) -> int:
    return int(round_half_up(min(abs(avg - low), abs(avg - high))))


def split_phases(
    values: Sequence[float], actual_duration: int, planned_duration: int | None = None
) -> SessionPhases:
    """Split a per-minute series into warmup, exercise and cooldown.

    Warmup is always the first 5 minutes.  When the session ran short of
    plan the cooldown shrinks proportionally (minimum 2 minutes); otherwise
    it is the last 5 minutes.  Exercise takes whatever lies between.

    Args:
        values:           Completed per-minute heart-rate series.
        actual_duration:  Minutes actually exercised.
        planned_duration: Minutes planned for the week (None = same as actual).

    Returns:
        SessionPhases.
    """
    series = list(values)
    cooldown_minutes = COOLDOWN_MINUTES
    if planned_duration and actual_duration < planned_duration:
        ratio = actual_duration / planned_duration
        cooldown_minutes = max(MIN_COOLDOWN_MINUTES, int(round_half_up(COOLDOWN_MINUTES * ratio)))

    return SessionPhases(
        warmup=series[:WARMUP_MINUTES],
        exercise=series[WARMUP_MINUTES:actual_duration - cooldown_minutes],
        cooldown=series[-cooldown_minutes:] if series else [],
    )


def warmup_score(values: Sequence[float], warmup_min: float) -> int:
    """Percentage of warmup minutes at or above the warmup lower bound."""
    if not values:
        return 0
    in_range = sum(1 for hr in values if hr >= warmup_min)
    return int(round_half_up(in_range / len(values) * 100))


def exercise_score(values: Sequence[float], zone_min: float, zone_max: float) -> int:
    """Score the exercise phase average against the exercise band."""
    if not values:
        return 0

    avg = sum(values) / len(values)
    if zone_min <= avg <= zone_max:
        score = 100
    elif avg > zone_max:
        score = _bucket(avg - zone_max, _EXERCISE_ABOVE_BUCKETS, _EXERCISE_ABOVE_FLOOR)
    else:
        deviation = _band_deviation(avg, zone_min, zone_max)
        score = _bucket(deviation, _EXERCISE_BELOW_BUCKETS, _EXERCISE_BELOW_FLOOR)

    if max(values) - min(values) > _EXERCISE_VARIABILITY_LIMIT:
        score = min(score, _EXERCISE_VARIABILITY_CAP)
    return score


def cooldown_score(values: Sequence[float], zone_min: float, zone_max: float) -> int:
    """Score the cooldown phase average against the cooldown band."""
    if not values:
        return 0

    avg = sum(values) / len(values)
    if zone_min <= avg <= zone_max:
        return 100
    return _bucket(_band_deviation(avg, zone_min, zone_max), _COOLDOWN_BUCKETS, _COOLDOWN_FLOOR)


def score_session(
    values: Sequence[float],
    zones: ZoneBands,
    actual_duration: int,
    planned_duration: int | None = None,
) -> SessionScore:
    """Score a completed session series.

    Args:
        values:           Completed per-minute heart-rate series.
        zones:            The session's zone snapshot.
        actual_duration:  Minutes actually exercised.
        planned_duration: Minutes planned for the week.

    Returns:
        SessionScore with phase and overall scores.
    """
    phases = split_phases(values, actual_duration, planned_duration)
    w = warmup_score(phases.warmup, zones.warmup_min)
    e = exercise_score(phases.exercise, zones.exercise_min, zones.exercise_max)
    c = cooldown_score(phases.cooldown, zones.cooldown_min, zones.cooldown_max)
    overall = int(round_half_up(WARMUP_WEIGHT * w + EXERCISE_WEIGHT * e + COOLDOWN_WEIGHT * c))

    logger.debug(
        "Scored session: warmup=%d exercise=%d cooldown=%d overall=%d "
        "(phases %d/%d/%d min)",
        w, e, c, overall,
        len(phases.warmup), len(phases.exercise), len(phases.cooldown),
    )
    return SessionScore(warmup_score=w, exercise_score=e, cooldown_score=c, overall_score=overall)


def heart_rate_stats(values: Sequence[float]) -> HeartRateStats | None:
    if not values:
        return None
    return HeartRateStats(
        max_hr=int(round_half_up(max(values))),
        min_hr=int(round_half_up(min(values))),
        avg_hr=int(round_half_up(sum(values) / len(values))),
    )


def determine_risk_level(score: float) -> str:
    """Map a session score to the partner system's risk band."""
    if score <= 50:
        return "High"
    if score <= 79:
        return "Moderate"
    return "Low"

"""Personalised heart-rate zone calculator.

Pure function of patient attributes and programme week:

    max_permissible_hr = 220 − age
    target_hr          = round(max_permissible_hr × (week_pct − reduction) / 100)

Comorbidity reduction (percentage points):
    beta-blockers + low EF → 20
    beta-blockers only     → 15
    low EF only            → 10
"""

from __future__ import annotations

from src.rehab.base import ZoneBands, round_half_up

# Target percentage of max permissible HR for programme weeks 1..12
WEEKLY_TARGET_PCT: tuple[int, ...] = (70, 71, 71, 72, 73, 73, 74, 75, 75, 76, 77, 78)

BASE_SESSION_MINUTES = 19


def comorbidity_reduction(beta_blockers: bool, low_ef: bool) -> int:
    """Return the percentage-point reduction for the patient's conditions."""
    if beta_blockers and low_ef:
        return 20
    if beta_blockers:
        return 15
    if low_ef:
        return 10
    return 0


def target_percentage(week: int) -> int:
    """Return the week's target percentage; weeks past the table clamp to the last entry."""
    if week < 1:
        raise ValueError(f"Programme week must be >= 1, got {week}")
    return WEEKLY_TARGET_PCT[min(week, len(WEEKLY_TARGET_PCT)) - 1]


def planned_duration(week: int) -> int:
    """Planned session length in minutes for a programme week."""
    if week < 1:
        raise ValueError(f"Programme week must be >= 1, got {week}")
    return BASE_SESSION_MINUTES + week


def calculate_zones(age: int, beta_blockers: bool, low_ef: bool, week: int) -> ZoneBands:
    """Compute the warmup/exercise/cooldown bands for one programme week.

    Cooldown is the band just above target: [target, target + 10].

    Args:
        age:           Patient age in years.
        beta_blockers: On beta-blocker medication.
        low_ef:        Low ejection fraction diagnosis.
        week:          1-based programme week.

    Returns:
        ZoneBands for the week.

    Raises:
        ValueError: If age or week is out of range.
    """
    if not (0 < age < 220):
        raise ValueError(f"Age must be between 1 and 219, got {age}")

    max_hr = 220 - age
    pct = target_percentage(week) - comorbidity_reduction(beta_blockers, low_ef)
    target = int(round_half_up(max_hr * pct / 100))

    return ZoneBands(
        max_permissible_hr=max_hr,
        target_hr=target,
        warmup_min=target - 15,
        warmup_max=target - 5,
        exercise_min=target - 5,
        exercise_max=target + 5,
        cooldown_min=target,
        cooldown_max=target + 10,
        session_duration=planned_duration(week),
    )

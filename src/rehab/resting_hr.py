"""Resting heart rate estimate from off-session readings.

Steps:
    1. Drop readings that fall inside any completed session window.
    2. Keep values in the typical resting band [50, 80] bpm.
    3. Drop outliers outside mean ± 2 SD of what is left.
    4. Return the median, or None if any step leaves nothing.
"""

from __future__ import annotations

import logging
import statistics
from datetime import datetime, timedelta
from typing import Sequence

from src.rehab.base import HeartRateReading, Session, round_half_up

logger = logging.getLogger("cardiorehab.rehab.resting_hr")

RESTING_MIN_BPM = 50
RESTING_MAX_BPM = 80
OUTLIER_SD = 2


def _session_windows(sessions: Sequence[Session]) -> list[tuple[datetime, datetime]]:
    return [
        (s.start_time, s.start_time + timedelta(minutes=s.effective_duration))
        for s in sessions
    ]


def estimate_resting_hr(
    readings: Sequence[HeartRateReading], completed_sessions: Sequence[Session]
) -> float | None:
    """Estimate resting HR for one patient.

    Args:
        readings:           All stored readings for the patient.
        completed_sessions: The patient's completed sessions.

    Returns:
        Median resting HR rounded to 2 dp, or None.
    """
    windows = _session_windows(completed_sessions)
    off_session = [
        r.heart_rate
        for r in readings
        if not any(start <= r.recorded_at <= end for start, end in windows)
    ]

    in_band = [hr for hr in off_session if RESTING_MIN_BPM <= hr <= RESTING_MAX_BPM]
    if not in_band:
        logger.debug("Resting HR: no off-session readings in %d-%d bpm", RESTING_MIN_BPM, RESTING_MAX_BPM)
        return None

    mean = statistics.fmean(in_band)
    sd = statistics.pstdev(in_band, mean)
    kept = [hr for hr in in_band if mean - OUTLIER_SD * sd <= hr <= mean + OUTLIER_SD * sd]
    if not kept:
        return None

    value = statistics.median(kept)
    logger.debug(
        "Resting HR: %d readings → %d in band → %d after outliers → %.2f",
        len(readings), len(in_band), len(kept), value,
    )
    return round_half_up(float(value), 2)

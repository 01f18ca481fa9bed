"""Robust personal baseline and health-status classification.

The baseline is recomputed only at milestone counts of completed, scored
sessions (1, 3, 7 and 14 by default):

    count 1      → baseline = that session's score, snapshotted on it
    count 3/7/14 → baseline = median of the 3 most recent scores
                   SD       = 1.4826 × MAD (median absolute deviation)
                   thresholds at baseline ± 1 SD and ± 2 SD

MAD is used instead of the sample SD so one bad session cannot swing the
thresholds.  Each later session is classified against the newest row:

    score < −2SD          → at_risk
    −2SD ≤ score < −1SD   → declining
    −1SD ≤ score ≤ +1SD   → consistent
    +1SD < score ≤ +2SD   → improving
    score > +2SD          → strong_improvement
"""

from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass
from typing import Sequence

from src.rehab.base import BaselineThreshold, HealthStatus, round_half_up
from src.rehab.config_loader import BaselineConfig, get_pipeline_config
from src.rehab.repositories import Repositories
from src.rehab.resting_hr import estimate_resting_hr

logger = logging.getLogger("cardiorehab.rehab.baseline")


@dataclass(frozen=True)
class RobustStats:
    baseline: float
    mad: float
    standard_deviation: float


def robust_stats(scores: Sequence[float], mad_scale: float = 1.4826) -> RobustStats:
    """Median baseline and MAD-derived SD for a window of scores.

    Raises:
        ValueError: If scores is empty.
    """
    if not scores:
        raise ValueError("robust_stats() needs at least one score")
    baseline = float(statistics.median(scores))
    mad = float(statistics.median(abs(s - baseline) for s in scores))
    return RobustStats(baseline=baseline, mad=mad, standard_deviation=mad_scale * mad)


def build_threshold(
    patient_id: str,
    milestone: int,
    scores: Sequence[float],
    resting_hr: float | None = None,
    mad_scale: float = 1.4826,
) -> BaselineThreshold:
    """Compute a BaselineThreshold row, every value stored at 2 dp."""
    stats = robust_stats(scores, mad_scale)
    b, sd = stats.baseline, stats.standard_deviation
    return BaselineThreshold(
        patient_id=patient_id,
        calculated_at_session=milestone,
        baseline_score=round_half_up(b, 2),
        standard_deviation=round_half_up(sd, 2),
        threshold_minus_2sd=round_half_up(b - 2 * sd, 2),
        threshold_minus_1sd=round_half_up(b - sd, 2),
        threshold_plus_1sd=round_half_up(b + sd, 2),
        threshold_plus_2sd=round_half_up(b + 2 * sd, 2),
        resting_heart_rate=resting_hr,
    )


def classify_health_status(
    score: float, threshold: BaselineThreshold | None
) -> HealthStatus | None:
    """Place a session score in the patient's threshold bands."""
    if threshold is None:
        return None
    if score < threshold.threshold_minus_2sd:
        return HealthStatus.at_risk
    if score < threshold.threshold_minus_1sd:
        return HealthStatus.declining
    if score <= threshold.threshold_plus_1sd:
        return HealthStatus.consistent
    if score <= threshold.threshold_plus_2sd:
        return HealthStatus.improving
    return HealthStatus.strong_improvement


class BaselineEngine:
    """Milestone-driven baseline maintenance over the repositories."""

    def __init__(self, repos: Repositories, config: BaselineConfig | None = None) -> None:
        self._repos = repos
        self._config = config or get_pipeline_config().baseline

    async def check_milestone(self, patient_id: str) -> float | None:
        """Recompute the baseline if the patient just reached a milestone.

        Args:
            patient_id: Patient whose session count to check.

        Returns:
            The new baseline, or None when the count is not a milestone.
        """
        count = await self._repos.sessions.count_completed_scored(patient_id)
        if count not in self._config.milestones:
            return None

        recent = await self._repos.sessions.completed_scored(
            patient_id, limit=self._config.window_size
        )
        if not recent:
            return None

        if count == self._config.milestones[0]:
            first = recent[0]
            baseline = round_half_up(float(first.session_score), 2)
            await self._repos.sessions.set_baseline_score(
                patient_id, baseline, session_id=first.session_id
            )
            logger.info("Initial baseline for patient %s: %.2f", patient_id, baseline)
            return baseline

        resting_hr = await self.resting_heart_rate(patient_id)
        threshold = build_threshold(
            patient_id,
            count,
            [float(s.session_score) for s in recent],
            resting_hr=resting_hr,
            mad_scale=self._config.mad_scale,
        )
        await self._repos.baselines.insert(threshold)
        await self._repos.sessions.set_baseline_score(patient_id, threshold.baseline_score)

        logger.info(
            "Baseline at session %d for patient %s: %.2f (SD %.2f, thresholds %.2f/%.2f/%.2f/%.2f)",
            count, patient_id, threshold.baseline_score, threshold.standard_deviation,
            threshold.threshold_minus_2sd, threshold.threshold_minus_1sd,
            threshold.threshold_plus_1sd, threshold.threshold_plus_2sd,
        )
        return threshold.baseline_score

    async def health_status(self, patient_id: str, score: float) -> HealthStatus | None:
        threshold = await self._repos.baselines.latest(patient_id)
        return classify_health_status(score, threshold)

    async def resting_heart_rate(self, patient_id: str) -> float | None:
        readings = await self._repos.readings.for_patient(patient_id)
        sessions = await self._repos.sessions.completed_for_patient(patient_id)
        return estimate_resting_hr(readings, sessions)

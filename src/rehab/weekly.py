"""Weekly and cumulative score aggregation.

For each (patient, week) the best three completed session scores count:

    weekly     = mean(top 3)            (0 when the week has no scores)
    cumulative = weekly                           for week 1
               = 0.6 × weekly + 0.4 × previous    for later weeks
               = weekly                           if the previous row is missing
"""

from __future__ import annotations

import logging
from typing import Sequence

from src.rehab.base import WeeklyScore, round_half_up
from src.rehab.config_loader import WeeklyConfig, get_pipeline_config
from src.rehab.repositories import Repositories

logger = logging.getLogger("cardiorehab.rehab.weekly")


def weekly_score(top_scores: Sequence[float]) -> float:
    if not top_scores:
        return 0.0
    return round_half_up(sum(top_scores) / len(top_scores), 2)


def cumulative_score(
    week_number: int,
    weekly: float,
    previous_weekly: float | None,
    current_weight: float = 0.6,
    previous_weight: float = 0.4,
) -> float:
    if week_number <= 1 or previous_weekly is None:
        return round_half_up(weekly, 2)
    return round_half_up(current_weight * weekly + previous_weight * previous_weekly, 2)


class WeeklyAggregator:
    """Recompute a week's counted sessions and upsert its WeeklyScore row."""

    def __init__(self, repos: Repositories, config: WeeklyConfig | None = None) -> None:
        self._repos = repos
        self._config = config or get_pipeline_config().weekly

    async def update(self, patient_id: str, week_number: int) -> WeeklyScore:
        """Refresh the weekly score after a session in the week completes.

        Args:
            patient_id:  Patient to aggregate.
            week_number: Programme week of the completed session.

        Returns:
            The upserted WeeklyScore.
        """
        ranked = await self._repos.sessions.completed_scored_in_week(patient_id, week_number)
        counted = ranked[: self._config.top_n]
        await self._repos.sessions.set_weekly_counted(
            patient_id, week_number, [s.session_id for s in counted]
        )

        weekly = weekly_score([float(s.session_score) for s in counted])
        previous = None
        if week_number > 1:
            prev_row = await self._repos.weekly_scores.get(patient_id, week_number - 1)
            previous = prev_row.weekly_score if prev_row else None

        score = WeeklyScore(
            patient_id=patient_id,
            week_number=week_number,
            weekly_score=weekly,
            cumulative_score=cumulative_score(
                week_number,
                weekly,
                previous,
                self._config.current_weight,
                self._config.previous_weight,
            ),
        )
        await self._repos.weekly_scores.upsert(score)
        logger.info(
            "Weekly score for patient %s week %d: %.2f (cumulative %.2f, %d counted)",
            patient_id, week_number, score.weekly_score, score.cumulative_score, len(counted),
        )
        return score

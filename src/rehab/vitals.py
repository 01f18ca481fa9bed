"""Clinical-vitals risk score combined with the session score.

Each recorded vital contributes risk points:

    age          0–3   (≤30, ≤45, ≤65, older)
    BMI          0–2   (normal 18.5–25)
    BP           0–10  (systolic and diastolic scored separately)
    SpO2         0–5
    glucose      0–5   (fasting "F", post-prandial "PP" or random)

The points are normalised against VITALS_MAX_POINTS and inverted so that,
like the session score, higher means healthier.  The vital score is the
even blend of the two.  Without recorded vitals it is the session score.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from src.rehab.base import PatientVitals, round_half_up
from src.rehab.scoring import determine_risk_level

logger = logging.getLogger("cardiorehab.rehab.vitals")

VITALS_MAX_POINTS = 30
VITALS_WEIGHT = 0.5
SESSION_WEIGHT = 0.5

_NUMBER = re.compile(r"\d+(?:\.\d+)?")

# Glucose (mg/dL) upper bounds → points, per measurement context
_FASTING_BUCKETS: tuple[tuple[float, int], ...] = ((80, 5), (100, 0), (125, 3))
_POST_PRANDIAL_BUCKETS: tuple[tuple[float, int], ...] = ((120, 5), (170, 3), (190, 0), (220, 3))
_RANDOM_BUCKETS: tuple[tuple[float, int], ...] = ((80, 5), (120, 3), (140, 0), (160, 3))
_GLUCOSE_CEILING_POINTS = 5


@dataclass(frozen=True)
class VitalAssessment:
    """Vitals risk points and the combined vital score.

    Attributes:
        vitals_points:    Raw risk points (None when no vitals are recorded).
        vital_score:      Blend of inverted vitals and session score, 2 dp.
        vital_risk_level: 'High', 'Moderate' or 'Low'.
    """

    vitals_points: int | None
    vital_score: float
    vital_risk_level: str


def evaluate_age(age: int) -> int:
    if age <= 30:
        return 0
    if age <= 45:
        return 1
    if age <= 65:
        return 2
    return 3


def evaluate_bmi(height_cm: float | None, weight_kg: float | None) -> int:
    if not height_cm or not weight_kg:
        return 0
    bmi = weight_kg / (height_cm / 100) ** 2
    if bmi < 18.5:
        return 1
    if bmi < 25:
        return 0
    if bmi < 30:
        return 1
    return 2


def evaluate_blood_pressure(systolic: int | None, diastolic: int | None) -> int:
    points = 0
    if systolic:
        if systolic > 154:
            points += 5
        elif systolic > 132 or systolic < 81:
            points += 3
    if diastolic:
        if diastolic > 99:
            points += 5
        elif diastolic > 88 or diastolic < 63:
            points += 3
    return points


def evaluate_spo2(spo2: int | None) -> int:
    if not spo2:
        return 0
    if 97 <= spo2 <= 100:
        return 0
    if 95 <= spo2 < 97:
        return 3
    return 5


def evaluate_glucose(reading: str | None) -> int:
    """Score a free-text glucose reading such as ``"110 F"`` or ``"150 PP"``.

    Unparseable readings score 0, like missing ones.
    """
    if not reading:
        return 0
    match = _NUMBER.search(reading)
    if match is None:
        logger.debug("Unparseable glucose reading %r ignored", reading)
        return 0
    value = float(match.group())

    marker = reading.upper()
    if "PP" in marker:
        buckets = _POST_PRANDIAL_BUCKETS
    elif "F" in marker:
        buckets = _FASTING_BUCKETS
    else:
        buckets = _RANDOM_BUCKETS
    for upper, points in buckets:
        if value <= upper:
            return points
    return _GLUCOSE_CEILING_POINTS


def calculate_vitals_points(age: int, vitals: PatientVitals) -> int:
    """Total risk points for a patient's recorded vitals."""
    return (
        evaluate_age(age)
        + evaluate_bmi(vitals.height_cm, vitals.weight_kg)
        + evaluate_blood_pressure(vitals.systolic, vitals.diastolic)
        + evaluate_spo2(vitals.spo2)
        + evaluate_glucose(vitals.blood_glucose)
    )


def assess_vitals(
    age: int, vitals: PatientVitals | None, session_score: int
) -> VitalAssessment:
    """Combine vitals risk with a session score.

    Args:
        age:           Patient age in years.
        vitals:        Latest vitals, or None when none are recorded.
        session_score: Overall session score 0–100.

    Returns:
        VitalAssessment; the risk level uses the session-score bands.
    """
    if vitals is None:
        score = float(session_score)
        return VitalAssessment(None, score, determine_risk_level(score))

    points = calculate_vitals_points(age, vitals)
    health = 100 - points / VITALS_MAX_POINTS * 100
    score = round_half_up(VITALS_WEIGHT * health + SESSION_WEIGHT * session_score, 2)
    logger.debug(
        "Vitals for %s: %d points → health %.2f, session %d → vital score %.2f",
        vitals.patient_id, points, health, session_score, score,
    )
    return VitalAssessment(points, score, determine_risk_level(score))

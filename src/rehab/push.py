"""Push client for the downstream clinical partner system.

Push failures never change session state.  Every call returns a
PushOutcome that the caller records on the session for later remediation.

Endpoints (relative to the configured base URL):
    POST /cardiac-rehab-session/{patient_id} — scored session result
    POST /token-expired/{patient_id}         — patient must reconnect
    POST /rehab-resting-hr/{patient_id}      — resting heart rate update
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from src.rehab.base import Session, round_half_up, utc_now

logger = logging.getLogger("cardiorehab.rehab.push")


@dataclass(frozen=True)
class PushOutcome:
    success: bool
    status_code: int | None = None
    error: str | None = None

    @property
    def status(self) -> str:
        return "success" if self.success else "failed"


def format_session_payload(session: Session, cumulative_score: float | None) -> dict[str, Any]:
    """Build the partner payload for a completed session.

    Top-level keys are snake_case; the nested ``session_data`` and
    ``session_zones`` objects use the partner's camelCase field names.
    """
    zones = session.zones
    return {
        "patient_id": session.patient_id,
        "session_number": session.attempt_number,
        "week_number": session.week_number,
        "session_risk_score": session.session_score or 0,
        "cumulative_risk_score": cumulative_score or 0,
        "risk_level": session.risk_level or session.session_risk_level or "Low",
        "session_risk_level": session.session_risk_level or "Low",
        "vital_score": session.vital_score,
        "vital_risk_level": session.vital_risk_level,
        "baseline_score": session.baseline_score or 0,
        "health_status": session.health_status.value if session.health_status else None,
        "session_data": {
            "sessionDate": session.session_date.isoformat(),
            "sessionStartTime": session.start_time.isoformat(),
            "sessionDuration": session.effective_duration,
            "MaxHR": session.max_hr or 0,
            "MinHR": session.min_hr or 0,
            "AvgHR": session.avg_hr or 0,
            "sessionRiskLevel": session.session_risk_level or "Low",
            "dataCompleteness": session.data_completeness,
        },
        "session_zones": {
            "targetHR": zones.target_hr,
            "maxPermissibleHR": zones.max_permissible_hr,
            "warmupZoneMin": zones.warmup_min,
            "warmupZoneMax": zones.warmup_max,
            "exerciseZoneMin": zones.exercise_min,
            "exerciseZoneMax": zones.exercise_max,
            "cooldownZoneMin": zones.cooldown_min,
            "cooldownZoneMax": zones.cooldown_max,
            "sessionDuration": zones.session_duration,
        },
    }


class PartnerPushClient:
    """httpx client for the partner system.  Never raises on delivery failure."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the push client.

        Args:
            base_url:    Partner API root, e.g. ``https://partner.example/api/patients``.
            timeout:     Per-request timeout in seconds.
            http_client: Optional pre-configured httpx client (for testing).
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http_client = http_client

    async def push_session_result(
        self, session: Session, cumulative_score: float | None = None
    ) -> PushOutcome:
        payload = format_session_payload(session, cumulative_score)
        outcome = await self._post(f"/cardiac-rehab-session/{session.patient_id}", payload)
        if outcome.success:
            logger.info("Pushed session %s to partner", session.session_id)
        else:
            logger.warning("Partner push failed for session %s: %s", session.session_id, outcome.error)
        return outcome

    async def notify_token_expired(
        self, patient_id: str, session_id: int | None = None
    ) -> PushOutcome:
        payload = {
            "patient_id": patient_id,
            "message": "Telemetry access expired. Patient needs to reconnect.",
            "timestamp": utc_now().isoformat(),
            "session_id": session_id,
            "action_required": "reconnect_telemetry",
        }
        outcome = await self._post(f"/token-expired/{patient_id}", payload)
        if not outcome.success:
            logger.warning("Token-expired notice failed for patient %s: %s", patient_id, outcome.error)
        return outcome

    async def push_resting_hr(self, patient_id: str, resting_hr: float) -> PushOutcome:
        payload = {"patient_id": patient_id, "hr": int(round_half_up(resting_hr))}
        outcome = await self._post(f"/rehab-resting-hr/{patient_id}", payload)
        if not outcome.success:
            logger.warning("Resting HR push failed for patient %s: %s", patient_id, outcome.error)
        return outcome

    async def _post(self, path: str, payload: dict) -> PushOutcome:
        url = f"{self._base_url}{path}"
        try:
            if self._http_client:
                response = await self._http_client.post(url, json=payload, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=payload)
        except httpx.HTTPError as exc:
            return PushOutcome(success=False, error=str(exc) or type(exc).__name__)

        if response.is_error:
            return PushOutcome(
                success=False,
                status_code=response.status_code,
                error=f"HTTP {response.status_code}: {response.text[:200]}",
            )
        return PushOutcome(success=True, status_code=response.status_code)

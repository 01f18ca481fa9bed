"""Telemetry connection status, checked by clients before starting a session."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter

from src.dependencies import Credentials
from src.models.credentials import TokenStatusRead

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger("cardiorehab.routers.credentials")


@router.get("/token-status/{patient_id}", response_model=TokenStatusRead)
async def get_token_status(patient_id: str, credentials: Credentials) -> Any:
    record = await credentials.get(patient_id)
    if record is None:
        return TokenStatusRead(connected=False, message="Telemetry not connected")

    if not record.is_valid:
        logger.info("Patient %s needs to reconnect telemetry: %s", patient_id, record.invalidation_reason)
        return TokenStatusRead(
            connected=False,
            message="Telemetry access expired. Please reconnect.",
            invalidated_at=record.invalidated_at,
            reason=record.invalidation_reason,
        )

    return TokenStatusRead(connected=True, message="Telemetry connected")

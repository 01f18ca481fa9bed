"""Session lifecycle endpoints: start, stop, report and status polling."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException

from src.dependencies import Sessions
from src.models.base import ErrorDetail
from src.models.sessions import (
    SessionRead,
    SessionReportRequest,
    SessionStartRequest,
    SessionStatusRead,
)
from src.rehab.base import PatientNotFoundError, SessionConflictError, SessionNotFoundError

router = APIRouter(prefix="/sessions", tags=["sessions"])
logger = logging.getLogger("cardiorehab.routers.sessions")

_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorDetail},
    404: {"model": ErrorDetail},
    409: {"model": ErrorDetail},
}


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (SessionNotFoundError, PatientNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, SessionConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@router.post("/start", response_model=SessionRead, status_code=201, responses=_ERROR_RESPONSES)
async def start_session(body: SessionStartRequest, service: Sessions) -> Any:
    try:
        return await service.start_session(body.patient_id, body.week_number)
    except (PatientNotFoundError, SessionConflictError, ValueError) as exc:
        raise _http_error(exc) from exc


@router.post("/{session_id}/stop", response_model=SessionRead, responses=_ERROR_RESPONSES)
async def stop_session(session_id: int, service: Sessions) -> Any:
    try:
        return await service.stop_session(session_id)
    except (SessionNotFoundError, SessionConflictError) as exc:
        raise _http_error(exc) from exc


@router.post("/report", response_model=SessionRead, status_code=201, responses=_ERROR_RESPONSES)
async def report_session(body: SessionReportRequest, service: Sessions) -> Any:
    """Record a completed session; it is processed on the next retry sweep."""
    try:
        return await service.report_completed_session(
            body.patient_id, body.week_number, body.start_time, body.end_time
        )
    except (PatientNotFoundError, ValueError) as exc:
        raise _http_error(exc) from exc


@router.get("/{session_id}/status", response_model=SessionStatusRead, responses=_ERROR_RESPONSES)
async def get_session_status(session_id: int, service: Sessions) -> Any:
    try:
        return await service.get_status(session_id)
    except SessionNotFoundError as exc:
        raise _http_error(exc) from exc

"""Pydantic models for telemetry credential status."""

from __future__ import annotations

from datetime import datetime

from src.models.base import RehabBase


class TokenStatusRead(RehabBase):
    """Whether a patient's telemetry connection is usable.

    ``invalidated_at`` and ``reason`` are set only when the credential was
    revoked and the patient has to reconnect.
    """

    connected: bool
    message: str
    invalidated_at: datetime | None = None
    reason: str | None = None

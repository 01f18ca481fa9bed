"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from src.config import Settings, get_settings
from src.rehab.repositories import CredentialRepository, Repositories
from src.rehab.sessions import SessionService
from src.services.repositories import build_repositories


@lru_cache
def get_repositories() -> Repositories:
    """Postgres-backed repositories; overridden with in-memory fakes in tests."""
    return build_repositories()


def get_session_service(
    repos: Annotated[Repositories, Depends(get_repositories)],
) -> SessionService:
    return SessionService(repos)


def get_credential_repository(
    repos: Annotated[Repositories, Depends(get_repositories)],
) -> CredentialRepository:
    return repos.credentials


# Annotated shortcuts for route signatures
AppSettings = Annotated[Settings, Depends(get_settings)]
Sessions = Annotated[SessionService, Depends(get_session_service)]
Credentials = Annotated[CredentialRepository, Depends(get_credential_repository)]

"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file).

    Clinical and retry tunables live in ``src/rehab/pipeline_config.yaml``.
    """

    # --- App ---
    app_name: str = "CardioRehab"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str  # postgres connection string for asyncpg
    db_pool_min_size: int = 2
    db_pool_max_size: int = 20
    apply_schema_on_startup: bool = False  # run schema.sql when the pool opens

    # --- Telemetry (Google Fit) ---
    telemetry_source: str = "google_fit"
    google_client_id: str = ""
    google_client_secret: str = ""
    telemetry_timeout_seconds: float = 10.0

    # --- Partner push ---
    partner_api_base_url: str = ""  # empty disables pushes
    push_timeout_seconds: float = 10.0

    # --- Workers ---
    workers_enabled: bool = True
    max_concurrent_attempts: int = 5

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]

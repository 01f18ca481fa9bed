"""Heart-rate telemetry providers.

Each provider implements the TelemetryProvider ABC and handles:
- OAuth2 access-token refresh
- Fetching per-minute heart-rate samples for a time range
- Mapping HTTP failures onto the telemetry error taxonomy

Available providers:
    GoogleFitProvider — Google Fit REST API (OAuth2)
"""

from src.rehab.providers.google_fit import GoogleFitProvider

__all__ = ["GoogleFitProvider"]

# Registry: source_id → provider class
PROVIDER_REGISTRY: dict[str, type] = {
    "google_fit": GoogleFitProvider,
}


def get_provider(source_id: str) -> "type":
    """Return the provider class for a given source slug.

    Raises:
        KeyError: If the source_id is not registered.
    """
    if source_id not in PROVIDER_REGISTRY:
        raise KeyError(
            f"No telemetry provider registered for source '{source_id}'. "
            f"Available: {list(PROVIDER_REGISTRY)}"
        )
    return PROVIDER_REGISTRY[source_id]

"""SQLAlchemy models."""

from fhir_bridge.models.integration import ClientStatus, ExternalApiClient
from fhir_bridge.models.store import ApiNamespace, ApiResource

__all__ = [
    "ApiNamespace",
    "ApiResource",
    "ClientStatus",
    "ExternalApiClient",
]

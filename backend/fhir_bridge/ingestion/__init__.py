"""External data ingestion into derived FHIR resources."""

from fhir_bridge.ingestion.state import Credential, ExternalClientState, IntegrationState
from fhir_bridge.ingestion.whoop import AUTH_RETRY_LIMIT, WhoopSync

__all__ = [
    "AUTH_RETRY_LIMIT",
    "Credential",
    "ExternalClientState",
    "IntegrationState",
    "WhoopSync",
]

"""CapabilityStatement for the FHIR endpoint.

Derived from the namespace registry and the search parameter registry on
every request; nothing is stored.
"""

from datetime import datetime, timezone
from typing import Any

from fhir_bridge import __version__
from fhir_bridge.config import settings
from fhir_bridge.namespaces import NamespaceRegistry
from fhir_bridge.search.compiler import COMMON_SEARCH_PARAMS
from fhir_bridge.search.parameters import DEFAULT_REGISTRY, SearchParameterRegistry

FHIR_VERSION = "4.0.1"
INTERACTIONS = ("read", "create", "update", "delete", "search-type")


def resource_capability(
    resource_type: str,
    registry: SearchParameterRegistry = DEFAULT_REGISTRY,
) -> dict[str, Any]:
    """Interactions and search parameters for one resource type."""
    return {
        "type": resource_type,
        "interaction": [{"code": code} for code in INTERACTIONS],
        "searchParam": [dict(param) for param in COMMON_SEARCH_PARAMS]
        + [param.to_capability() for param in registry.for_type(resource_type)],
    }


def capability_statement(
    namespaces: NamespaceRegistry,
    registry: SearchParameterRegistry = DEFAULT_REGISTRY,
    base_url: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Build the server's CapabilityStatement.

    Args:
        namespaces: Supported resource types.
        registry: Search parameters per resource type.
        base_url: Override for the configured FHIR base URL.
        now: Timestamp for the ``date`` element (defaults to current UTC time).

    Returns:
        CapabilityStatement resource.
    """
    now = now or datetime.now(timezone.utc)
    return {
        "resourceType": "CapabilityStatement",
        "status": "active",
        "date": now.isoformat(),
        "kind": "instance",
        "software": {"name": "fhir-bridge", "version": __version__},
        "implementation": {
            "description": "FHIR R4 facade over a schemaless property store",
            "url": base_url or settings.fhir_base_url,
        },
        "fhirVersion": FHIR_VERSION,
        "format": ["json"],
        "rest": [
            {
                "mode": "server",
                "resource": [
                    resource_capability(resource_type, registry)
                    for resource_type in namespaces.resource_types()
                ],
            }
        ],
    }

"""Resource codec.

Converts between stored property documents and canonical FHIR resources,
and builds the Bundle and OperationOutcome envelopes. The resource's
``resourceType`` lives in the stored properties; ``id`` and ``meta`` are
always derived from the store and never persisted inside the document.
"""

from __future__ import annotations

import copy
from typing import Any

import httpx

from fhir_bridge.config import settings
from fhir_bridge.store.base import Document

# Keys owned by the server; stripped on write, overlaid on read
DERIVED_KEYS = ("id", "meta")


def _base_url(base_url: str | None) -> str:
    return (base_url or settings.fhir_base_url).rstrip("/")


def to_canonical(document: Document) -> dict[str, Any]:
    """Convert a stored document to its canonical FHIR representation.

    Args:
        document: Stored document; never mutated.

    Returns:
        ``{resourceType, id, meta, ...properties}``.
    """
    properties = copy.deepcopy(document.properties)
    resource: dict[str, Any] = {
        "resourceType": properties.pop("resourceType", None),
        "id": str(document.id),
        "meta": {
            "versionId": str(int(document.updated_at.timestamp())),
            "lastUpdated": document.updated_at.isoformat(),
        },
    }
    for key, value in properties.items():
        if key not in DERIVED_KEYS:
            resource[key] = value
    return resource


def to_document(resource: dict[str, Any], resource_type: str) -> dict[str, Any]:
    """Convert a canonical resource to the property map that gets stored.

    Drops the server-assigned ``id``/``meta`` and pins ``resourceType``.
    """
    properties = {
        key: copy.deepcopy(value) for key, value in resource.items() if key not in DERIVED_KEYS
    }
    properties["resourceType"] = resource_type
    return properties


def full_url(resource_type: str, resource_id: Any, base_url: str | None = None) -> str:
    return f"{_base_url(base_url)}/fhir/{resource_type}/{resource_id}"


def _bundle_links(
    request_url: str,
    total: int,
    page: int | None,
    page_size: int | None,
) -> list[dict[str, str]]:
    links = [{"relation": "self", "url": request_url}]
    if page is None or page_size is None:
        return links

    url = httpx.URL(request_url)
    if page > 1:
        links.append(
            {"relation": "previous", "url": str(url.copy_set_param("page", str(page - 1)))}
        )
    if page * page_size < total:
        links.append({"relation": "next", "url": str(url.copy_set_param("page", str(page + 1)))})
    return links


def to_bundle(
    documents: list[Document],
    resource_type: str,
    request_url: str,
    total_count: int | None = None,
    *,
    page: int | None = None,
    page_size: int | None = None,
    base_url: str | None = None,
) -> dict[str, Any]:
    """Wrap documents in a searchset Bundle.

    Args:
        documents: The page of documents to include.
        resource_type: Resource type searched.
        request_url: URL of the search request (the ``self`` link).
        total_count: Matches before pagination; defaults to ``len(documents)``.
        page: Current page, enables previous/next links with ``page_size``.
        page_size: Page size used for the search.
        base_url: Override for the configured FHIR base URL.

    Returns:
        Bundle resource.
    """
    total = total_count if total_count is not None else len(documents)
    return {
        "resourceType": "Bundle",
        "type": "searchset",
        "total": total,
        "link": _bundle_links(request_url, total, page, page_size),
        "entry": [
            {
                "fullUrl": full_url(resource_type, document.id, base_url),
                "resource": to_canonical(document),
                "search": {"mode": "match"},
            }
            for document in documents
        ],
    }


def operation_outcome(
    errors: Any,
    severity: str = "error",
    code: str = "invalid",
) -> dict[str, Any]:
    """Build an OperationOutcome from one error or a list of errors."""
    if not isinstance(errors, list):
        errors = [errors]
    return {
        "resourceType": "OperationOutcome",
        "issue": [
            {
                "severity": severity,
                "code": code,
                "diagnostics": error if isinstance(error, str) else str(error),
            }
            for error in errors
        ],
    }


def exception_outcome(exc: BaseException) -> dict[str, Any]:
    """Single ``exception`` issue carrying the failure's class name."""
    return {
        "resourceType": "OperationOutcome",
        "issue": [
            {
                "severity": "error",
                "code": "exception",
                "diagnostics": str(exc),
                "details": {"text": type(exc).__name__},
            }
        ],
    }


def not_found_outcome(resource_type: str, resource_id: Any) -> dict[str, Any]:
    return {
        "resourceType": "OperationOutcome",
        "issue": [
            {
                "severity": "error",
                "code": "not-found",
                "diagnostics": f"{resource_type} with id {resource_id} not found",
            }
        ],
    }

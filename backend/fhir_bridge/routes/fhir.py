"""FHIR REST routes.

Type-level search and create, instance-level read, update and delete for
every namespace in the registry, plus the CapabilityStatement. Responses
use the ``application/fhir+json`` media type; errors are rendered as
OperationOutcome resources by ``fhir_error_handler``.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from fhir_bridge.database import get_db
from fhir_bridge.errors import BadRequest, FhirError, NotFound, UnsupportedResourceType, ValidationError
from fhir_bridge.namespaces import NamespaceRegistry, NamespaceSpec
from fhir_bridge.search.compiler import compile_search
from fhir_bridge.services.capability import capability_statement
from fhir_bridge.services.codec import (
    full_url,
    not_found_outcome,
    operation_outcome,
    to_bundle,
    to_canonical,
)
from fhir_bridge.services.validator import ResourceValidator
from fhir_bridge.store.base import PropertyStore
from fhir_bridge.store.sql import SqlPropertyStore

logger = logging.getLogger(__name__)

FHIR_MEDIA_TYPE = "application/fhir+json"


class FhirJSONResponse(JSONResponse):
    media_type = FHIR_MEDIA_TYPE


router = APIRouter(prefix="/fhir", tags=["fhir"], default_response_class=FhirJSONResponse)


# =============================================================================
# Dependencies
# =============================================================================


def get_namespaces(request: Request) -> NamespaceRegistry:
    return request.app.state.namespaces


def get_validator(request: Request) -> ResourceValidator:
    return request.app.state.validator


def get_store(request: Request, db: AsyncSession = Depends(get_db)) -> PropertyStore:
    """Return the configured property store.

    The in-process store is shared by all requests. Otherwise the SQL store
    wraps the request's session, committed when the request succeeds.
    """
    store = getattr(request.app.state, "store", None)
    if store is not None:
        return store
    return SqlPropertyStore(db, request.app.state.namespaces)


def _namespace(namespaces: NamespaceRegistry, resource_type: str) -> NamespaceSpec:
    namespace = namespaces.get(resource_type)
    if namespace is None:
        raise UnsupportedResourceType(resource_type)
    return namespace


async def _read_body(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise BadRequest("Request body must be valid JSON") from None


# =============================================================================
# Error rendering
# =============================================================================


def error_outcome(exc: FhirError) -> dict[str, Any]:
    """OperationOutcome for a request-path error."""
    if isinstance(exc, ValidationError):
        return exc.operation_outcome or operation_outcome(exc.errors)
    if isinstance(exc, NotFound):
        return not_found_outcome(exc.resource_type, exc.resource_id)
    return operation_outcome(exc.message, code=exc.code)


async def fhir_error_handler(request: Request, exc: FhirError) -> FhirJSONResponse:
    logger.info(
        "%s %s -> %d %s: %s",
        request.method,
        request.url.path,
        exc.status_code,
        type(exc).__name__,
        exc.message,
    )
    return FhirJSONResponse(status_code=exc.status_code, content=error_outcome(exc))


# =============================================================================
# Capability
# =============================================================================


@router.get("")
@router.get("/metadata")
async def metadata(namespaces: NamespaceRegistry = Depends(get_namespaces)) -> dict[str, Any]:
    """Return the server CapabilityStatement."""
    return capability_statement(namespaces)


# =============================================================================
# Type level
# =============================================================================


@router.get("/{resource_type}")
async def search_resources(
    resource_type: str,
    request: Request,
    namespaces: NamespaceRegistry = Depends(get_namespaces),
    store: PropertyStore = Depends(get_store),
) -> dict[str, Any]:
    """Search a resource type.

    Supports ``_id``, ``_lastUpdated``, the type's registered search
    parameters and ``page``/``_count`` pagination.

    Returns:
        A searchset Bundle with the total number of matches.

    Raises:
        UnsupportedResourceType: 404 if the type has no namespace.
        BadRequest: 400 if a parameter value is malformed.
    """
    namespace = _namespace(namespaces, resource_type)
    query = compile_search(resource_type, request.query_params)
    documents, total = await store.query_documents(
        namespace, query.predicates, page=query.page, page_size=query.page_size
    )
    return to_bundle(
        documents,
        resource_type,
        str(request.url),
        total,
        page=query.page,
        page_size=query.page_size,
    )


@router.post("/{resource_type}", status_code=status.HTTP_201_CREATED)
async def create_resource(
    resource_type: str,
    request: Request,
    response: Response,
    namespaces: NamespaceRegistry = Depends(get_namespaces),
    validator: ResourceValidator = Depends(get_validator),
    store: PropertyStore = Depends(get_store),
) -> dict[str, Any]:
    """Validate and store a new resource.

    Raises:
        UnsupportedResourceType: 404 if the type has no namespace.
        ValidationError: 422 with every collected issue.
    """
    namespace = _namespace(namespaces, resource_type)
    properties = validator.validate_or_raise(resource_type, await _read_body(request))
    document = await store.create_document(namespace, properties)

    logger.info("Created %s/%s", resource_type, document.id)
    response.headers["Location"] = full_url(resource_type, document.id)
    return to_canonical(document)


# =============================================================================
# Instance level
# =============================================================================


@router.get("/{resource_type}/{resource_id}")
async def read_resource(
    resource_type: str,
    resource_id: str,
    namespaces: NamespaceRegistry = Depends(get_namespaces),
    store: PropertyStore = Depends(get_store),
) -> dict[str, Any]:
    """Read a resource by id.

    Raises:
        NotFound: 404 if no such resource exists.
    """
    namespace = _namespace(namespaces, resource_type)
    document = await store.find_document(namespace, resource_id)
    return to_canonical(document)


@router.put("/{resource_type}/{resource_id}")
async def update_resource(
    resource_type: str,
    resource_id: str,
    request: Request,
    namespaces: NamespaceRegistry = Depends(get_namespaces),
    validator: ResourceValidator = Depends(get_validator),
    store: PropertyStore = Depends(get_store),
) -> dict[str, Any]:
    """Replace a resource's content.

    Raises:
        NotFound: 404 if no such resource exists.
        ValidationError: 422 with every collected issue.
    """
    namespace = _namespace(namespaces, resource_type)
    document = await store.find_document(namespace, resource_id)
    properties = validator.validate_or_raise(resource_type, await _read_body(request))
    document = await store.update_document(document, properties)

    logger.info("Updated %s/%s", resource_type, document.id)
    return to_canonical(document)


@router.delete("/{resource_type}/{resource_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_resource(
    resource_type: str,
    resource_id: str,
    namespaces: NamespaceRegistry = Depends(get_namespaces),
    store: PropertyStore = Depends(get_store),
) -> Response:
    """Delete a resource.

    Raises:
        NotFound: 404 if no such resource exists.
    """
    namespace = _namespace(namespaces, resource_type)
    document = await store.find_document(namespace, resource_id)
    await store.delete_document(document)

    logger.info("Deleted %s/%s", resource_type, resource_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

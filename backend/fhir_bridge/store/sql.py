"""PostgreSQL property store.

Documents live in ``api_resources.properties`` (JSONB). Predicates compile
to JSONB path, containment and pattern clauses so any resource type can be
searched without a per-type table.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import ColumnElement, Select, false, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fhir_bridge.errors import ConstraintViolation, NotFound
from fhir_bridge.models.store import ApiNamespace, ApiResource
from fhir_bridge.namespaces import NamespaceSpec
from fhir_bridge.search.predicates import (
    COMPARATORS,
    IdIn,
    Path,
    Predicate,
    PropertyCompare,
    PropertyContains,
    PropertyEquals,
    PropertyMatches,
    UpdatedAt,
)
from fhir_bridge.store.base import Document, PropertyStore

logger = logging.getLogger(__name__)


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _text_at(path: Path) -> ColumnElement:
    """``properties->>'key'`` for one step, ``properties#>>'{a,b}'`` for a path."""
    if len(path) == 1:
        return ApiResource.properties[path[0]].astext
    return ApiResource.properties[tuple(path)].astext


def _nest(path: Path, value: Any) -> dict[str, Any]:
    """Wrap ``value`` in objects keyed by ``path`` for a top-level ``@>``."""
    nested = value
    for step in reversed(path):
        if not isinstance(step, str):
            raise ValueError(f"Containment paths must be object keys, got {path!r}")
        nested = {step: nested}
    return nested


def _escape_like(pattern: str) -> str:
    return pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def predicate_clause(predicate: Predicate) -> ColumnElement:
    """Compile one predicate into a SQLAlchemy clause."""
    if isinstance(predicate, IdIn):
        ids = [uid for uid in map(_parse_uuid, predicate.ids) if uid is not None]
        if not ids:
            # Malformed ids can never match
            return false()
        return ApiResource.id.in_(ids)
    if isinstance(predicate, UpdatedAt):
        return COMPARATORS[predicate.op](ApiResource.updated_at, predicate.value)
    if isinstance(predicate, PropertyEquals):
        return _text_at(predicate.path) == predicate.value
    if isinstance(predicate, PropertyContains):
        return ApiResource.properties.contains(_nest(predicate.path, predicate.value))
    if isinstance(predicate, PropertyMatches):
        return _text_at(predicate.path).ilike(f"%{_escape_like(predicate.pattern)}%", escape="\\")
    if isinstance(predicate, PropertyCompare):
        return COMPARATORS[predicate.op](_text_at(predicate.path), predicate.value)
    raise TypeError(f"Unsupported predicate: {predicate!r}")


def build_query(namespace_slug: str, predicates: list[Predicate]) -> Select:
    """Select documents in a namespace matching all predicates."""
    query = select(ApiResource).where(ApiResource.namespace_slug == namespace_slug)
    for predicate in predicates:
        query = query.where(predicate_clause(predicate))
    return query


def _to_document(row: ApiResource) -> Document:
    return Document(
        id=row.id,
        namespace=row.namespace_slug,
        properties=dict(row.properties),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlPropertyStore(PropertyStore):
    """Property store over an async SQLAlchemy session.

    The session is owned by the caller, which decides when to commit.
    """

    def __init__(self, session: AsyncSession, namespaces: Iterable[NamespaceSpec] = ()):
        """Initialize store with database session.

        Args:
            session: Async SQLAlchemy session.
            namespaces: Namespaces known up front, used to name resource
                types in errors about documents.
        """
        self.session = session
        self._resource_types = {namespace.slug: namespace.resource_type for namespace in namespaces}

    def _not_found(self, document: Document) -> NotFound:
        resource_type = self._resource_types.get(document.namespace, document.namespace)
        return NotFound(resource_type, str(document.id))

    async def ensure_namespace(self, namespace: NamespaceSpec) -> None:
        self._resource_types[namespace.slug] = namespace.resource_type
        row = await self.session.get(ApiNamespace, namespace.slug)
        if row is None:
            row = ApiNamespace(slug=namespace.slug)
            self.session.add(row)
        row.name = namespace.name
        row.version = namespace.version
        row.properties = {name: asdict(spec) for name, spec in namespace.properties.items()}
        row.associations = [asdict(assoc) for assoc in namespace.associations]
        await self.session.flush()

    async def create_document(
        self, namespace: NamespaceSpec, properties: dict[str, Any]
    ) -> Document:
        now = datetime.now(timezone.utc)
        row = ApiResource(
            id=uuid.uuid4(),
            namespace_slug=namespace.slug,
            properties=properties,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        try:
            await self.session.flush()
        except IntegrityError as e:
            logger.warning("Store rejected %s document: %s", namespace.resource_type, e.orig)
            raise ConstraintViolation(str(e.orig)) from e
        return _to_document(row)

    async def _get_row(self, namespace_slug: str, document_id: Any) -> ApiResource | None:
        key = _parse_uuid(document_id)
        if key is None:
            return None
        result = await self.session.execute(
            select(ApiResource).where(
                ApiResource.id == key,
                ApiResource.namespace_slug == namespace_slug,
            )
        )
        return result.scalar_one_or_none()

    async def find_document(self, namespace: NamespaceSpec, document_id: str) -> Document:
        row = await self._get_row(namespace.slug, document_id)
        if row is None:
            raise NotFound(namespace.resource_type, document_id)
        return _to_document(row)

    async def query_documents(
        self,
        namespace: NamespaceSpec,
        predicates: list[Predicate],
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Document], int]:
        query = build_query(namespace.slug, predicates)

        count_query = select(func.count()).select_from(query.subquery())
        total_result = await self.session.execute(count_query)
        total = total_result.scalar() or 0

        query = (
            query.order_by(ApiResource.created_at, ApiResource.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self.session.execute(query)
        return [_to_document(row) for row in result.scalars().all()], total

    async def update_document(self, document: Document, properties: dict[str, Any]) -> Document:
        row = await self._get_row(document.namespace, document.id)
        if row is None:
            raise self._not_found(document)
        row.properties = properties
        row.updated_at = datetime.now(timezone.utc)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise ConstraintViolation(str(e.orig)) from e
        return _to_document(row)

    async def delete_document(self, document: Document) -> None:
        row = await self._get_row(document.namespace, document.id)
        if row is None:
            raise self._not_found(document)
        await self.session.delete(row)
        await self.session.flush()

"""In-process property store.

Keeps documents in dictionaries keyed by namespace slug. Every operation
completes without awaiting, so single writes are atomic under asyncio.
Used for local runs (STORE_BACKEND=memory) and tests.
"""

from __future__ import annotations

import copy
import json
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any, Callable

from fhir_bridge.errors import ConstraintViolation, NotFound
from fhir_bridge.namespaces import NamespaceSpec
from fhir_bridge.search.predicates import Predicate, matches_all
from fhir_bridge.store.base import Document, PropertyStore


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryPropertyStore(PropertyStore):
    """Property store held in process memory."""

    def __init__(
        self,
        namespaces: Iterable[NamespaceSpec] = (),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._clock = clock
        self._namespaces: dict[str, NamespaceSpec] = {}
        self._documents: dict[str, dict[uuid.UUID, Document]] = {}
        for namespace in namespaces:
            self._register(namespace)

    def _register(self, namespace: NamespaceSpec) -> None:
        self._namespaces[namespace.slug] = namespace
        self._documents.setdefault(namespace.slug, {})

    def _bucket(self, namespace: NamespaceSpec) -> dict[uuid.UUID, Document]:
        try:
            return self._documents[namespace.slug]
        except KeyError:
            raise LookupError(f"Namespace {namespace.slug} does not exist") from None

    @staticmethod
    def _snapshot(properties: dict[str, Any]) -> dict[str, Any]:
        # Stored maps must be plain JSON and isolated from the caller's copy
        try:
            return json.loads(json.dumps(properties))
        except (TypeError, ValueError) as e:
            raise ConstraintViolation(f"Properties are not valid JSON: {e}") from e

    async def ensure_namespace(self, namespace: NamespaceSpec) -> None:
        self._register(namespace)

    async def create_document(
        self, namespace: NamespaceSpec, properties: dict[str, Any]
    ) -> Document:
        bucket = self._bucket(namespace)
        now = self._clock()
        document = Document(
            id=uuid.uuid4(),
            namespace=namespace.slug,
            properties=self._snapshot(properties),
            created_at=now,
            updated_at=now,
        )
        bucket[document.id] = document
        return copy.deepcopy(document)

    async def find_document(self, namespace: NamespaceSpec, document_id: str) -> Document:
        bucket = self._bucket(namespace)
        try:
            key = uuid.UUID(str(document_id))
        except ValueError:
            raise NotFound(namespace.resource_type, document_id) from None
        document = bucket.get(key)
        if document is None:
            raise NotFound(namespace.resource_type, document_id)
        return copy.deepcopy(document)

    async def query_documents(
        self,
        namespace: NamespaceSpec,
        predicates: list[Predicate],
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Document], int]:
        bucket = self._bucket(namespace)
        matched = [doc for doc in bucket.values() if matches_all(doc, predicates)]
        matched.sort(key=lambda doc: (doc.created_at, str(doc.id)))
        offset = (page - 1) * page_size
        return copy.deepcopy(matched[offset : offset + page_size]), len(matched)

    async def update_document(self, document: Document, properties: dict[str, Any]) -> Document:
        bucket = self._documents.get(document.namespace, {})
        stored = bucket.get(document.id)
        if stored is None:
            namespace = self._namespaces.get(document.namespace)
            resource_type = namespace.resource_type if namespace else document.namespace
            raise NotFound(resource_type, str(document.id))
        stored.properties = self._snapshot(properties)
        stored.updated_at = self._clock()
        return copy.deepcopy(stored)

    async def delete_document(self, document: Document) -> None:
        bucket = self._documents.get(document.namespace, {})
        if bucket.pop(document.id, None) is None:
            namespace = self._namespaces.get(document.namespace)
            resource_type = namespace.resource_type if namespace else document.namespace
            raise NotFound(resource_type, str(document.id))

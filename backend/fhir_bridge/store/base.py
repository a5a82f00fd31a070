"""Base property store interface."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fhir_bridge.namespaces import NamespaceSpec
from fhir_bridge.search.predicates import Predicate


@dataclass
class Document:
    """A stored, schemaless record belonging to one namespace."""

    id: uuid.UUID
    namespace: str
    properties: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class PropertyStore(ABC):
    """Abstract base class for property store backends."""

    @abstractmethod
    async def ensure_namespace(self, namespace: NamespaceSpec) -> None:
        """Create or update the namespace container for a resource type."""
        ...

    @abstractmethod
    async def create_document(
        self, namespace: NamespaceSpec, properties: dict[str, Any]
    ) -> Document:
        """
        Insert a new document.

        Args:
            namespace: Target namespace.
            properties: Property map to store verbatim.

        Returns:
            The stored Document with store-assigned id and timestamps.

        Raises:
            ConstraintViolation: If the store refuses the write.
        """
        ...

    @abstractmethod
    async def find_document(self, namespace: NamespaceSpec, document_id: str) -> Document:
        """
        Fetch a document by id.

        Raises:
            NotFound: If no document with that id exists in the namespace.
        """
        ...

    @abstractmethod
    async def query_documents(
        self,
        namespace: NamespaceSpec,
        predicates: list[Predicate],
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Document], int]:
        """
        Query a namespace with an AND of predicates.

        Returns:
            The requested page of documents (oldest first) and the total
            number of matches before pagination.
        """
        ...

    @abstractmethod
    async def update_document(self, document: Document, properties: dict[str, Any]) -> Document:
        """Replace a document's properties and bump ``updated_at``."""
        ...

    @abstractmethod
    async def delete_document(self, document: Document) -> None:
        ...

    async def first_document(
        self, namespace: NamespaceSpec, predicates: list[Predicate]
    ) -> Document | None:
        """First (oldest) document matching all predicates, if any."""
        documents, _ = await self.query_documents(namespace, predicates, page=1, page_size=1)
        return documents[0] if documents else None

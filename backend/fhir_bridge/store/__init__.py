"""Property store backends.

Stores persist schemaless documents per namespace and evaluate search
predicates against their property maps.
"""

from fhir_bridge.store.base import Document, PropertyStore
from fhir_bridge.store.memory import MemoryPropertyStore
from fhir_bridge.store.sql import SqlPropertyStore

__all__ = ["Document", "MemoryPropertyStore", "PropertyStore", "SqlPropertyStore"]

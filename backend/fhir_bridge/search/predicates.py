"""Store predicates.

Each predicate addresses the document either through its store-owned
columns (id, updated_at) or through a path into the opaque property map, so
it can be evaluated without a fixed schema. ``matches`` evaluates a
predicate in Python; the SQL adapter compiles the same predicates into
JSONB clauses. A list of predicates is a logical AND.
"""

from __future__ import annotations

import json
import operator
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Union

if TYPE_CHECKING:
    from fhir_bridge.store.base import Document

PathElement = Union[str, int]
Path = tuple[PathElement, ...]

COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "=": operator.eq,
    ">=": operator.ge,
    "<=": operator.le,
    ">": operator.gt,
    "<": operator.lt,
}

_MISSING = object()


def resolve_path(properties: Any, path: Path) -> Any:
    """Walk a path of keys/indexes into a property map.

    Returns the sentinel ``_MISSING`` when any step is absent.
    """
    current = properties
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or not -len(current) <= step < len(current):
                return _MISSING
            current = current[step]
        else:
            if not isinstance(current, dict) or step not in current:
                return _MISSING
            current = current[step]
    return current


def as_text(value: Any) -> str | None:
    """Text form of a JSON value, as PostgreSQL's ``->>`` renders it."""
    if value is _MISSING or value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    return json.dumps(value)


def json_contains(container: Any, contained: Any) -> bool:
    """JSONB ``@>`` semantics: does ``container`` contain ``contained``?"""
    if isinstance(contained, dict):
        if not isinstance(container, dict):
            return False
        return all(
            key in container and json_contains(container[key], value)
            for key, value in contained.items()
        )
    if isinstance(contained, list):
        if not isinstance(container, list):
            return False
        return all(
            any(json_contains(candidate, item) for candidate in container)
            for item in contained
        )
    if isinstance(container, list):
        # A top-level array contains a bare primitive it holds
        return contained in container
    return container == contained and type(container) is type(contained)


@dataclass(frozen=True)
class IdIn:
    """Document id is one of the given ids."""

    ids: tuple[str, ...]

    def matches(self, document: Document) -> bool:
        return str(document.id) in self.ids


@dataclass(frozen=True)
class UpdatedAt:
    """Compare the document's ``updated_at`` timestamp."""

    op: str
    value: datetime

    def matches(self, document: Document) -> bool:
        return COMPARATORS[self.op](document.updated_at, self.value)


@dataclass(frozen=True)
class PropertyEquals:
    """Text value at ``path`` equals ``value`` exactly."""

    path: Path
    value: str

    def matches(self, document: Document) -> bool:
        return as_text(resolve_path(document.properties, self.path)) == self.value


@dataclass(frozen=True)
class PropertyContains:
    """JSON value at ``path`` contains ``value`` (array/object containment)."""

    path: Path
    value: Any

    def matches(self, document: Document) -> bool:
        found = resolve_path(document.properties, self.path)
        if found is _MISSING:
            return False
        return json_contains(found, self.value)


@dataclass(frozen=True)
class PropertyMatches:
    """Case-insensitive substring match against the text at ``path``."""

    path: Path
    pattern: str

    def matches(self, document: Document) -> bool:
        text = as_text(resolve_path(document.properties, self.path))
        return text is not None and self.pattern.lower() in text.lower()


@dataclass(frozen=True)
class PropertyCompare:
    """Lexical comparison of the text at ``path`` (ISO dates compare in order)."""

    path: Path
    op: str
    value: str

    def matches(self, document: Document) -> bool:
        text = as_text(resolve_path(document.properties, self.path))
        if text is None:
            return False
        return COMPARATORS[self.op](text, self.value)


Predicate = Union[IdIn, UpdatedAt, PropertyEquals, PropertyContains, PropertyMatches, PropertyCompare]


def matches_all(document: Document, predicates: list[Predicate]) -> bool:
    return all(predicate.matches(document) for predicate in predicates)

"""Search compiler.

Turns request query parameters into an ordered conjunction of store
predicates plus pagination. Common parameters come first (``_id``, then
``_lastUpdated``), followed by the resource type's registered parameters.
Parameters a type does not know are ignored.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from fhir_bridge.errors import BadRequest
from fhir_bridge.search.parameters import (
    DEFAULT_REGISTRY,
    SearchParameterRegistry,
    end_of_day,
    parse_date,
    split_date_prefix,
    start_of_day,
)
from fhir_bridge.search.predicates import IdIn, Predicate, UpdatedAt

logger = logging.getLogger(__name__)

# Pagination defaults
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

COMMON_SEARCH_PARAMS = [
    {"name": "_id", "type": "token", "documentation": "Logical id of the resource"},
    {"name": "_lastUpdated", "type": "date", "documentation": "Last updated date"},
]


@dataclass
class SearchQuery:
    """Compiled search: predicates to AND together plus the page to fetch."""

    predicates: list[Predicate] = field(default_factory=list)
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE


def compile_id(value: str) -> list[Predicate]:
    ids = tuple(part.strip() for part in value.split(",") if part.strip())
    return [IdIn(ids)]


def compile_last_updated(value: str) -> list[Predicate]:
    """Compile ``_lastUpdated`` with its optional comparison prefix.

    ``ge2024-01-01`` -> updated_at >= 2024-01-01T00:00:00; no prefix selects
    the whole calendar day.
    """
    op, literal = split_date_prefix(value)
    day = parse_date(literal)
    if op is None:
        return [UpdatedAt(">=", start_of_day(day)), UpdatedAt("<=", end_of_day(day))]
    return [UpdatedAt(op, start_of_day(day))]


def _parse_int(name: str, value: str | None, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise BadRequest(f"Invalid {name}: {value}") from None


def compile_pagination(params: Mapping[str, str]) -> tuple[int, int]:
    """Page (default 1) and page size (default 20, clamped to 1..100)."""
    page = max(_parse_int("page", params.get("page"), 1), 1)
    page_size = _parse_int("_count", params.get("_count"), DEFAULT_PAGE_SIZE)
    page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
    return page, page_size


def compile_search(
    resource_type: str,
    params: Mapping[str, str],
    registry: SearchParameterRegistry = DEFAULT_REGISTRY,
) -> SearchQuery:
    """Compile query parameters for a resource type.

    Args:
        resource_type: FHIR resource type being searched.
        params: Query parameters (single value per name).
        registry: Registry of type-specific search parameters.

    Returns:
        The compiled SearchQuery.

    Raises:
        BadRequest: If a parameter value is malformed.
    """
    predicates: list[Predicate] = []

    if params.get("_id"):
        predicates.extend(compile_id(params["_id"]))
    if params.get("_lastUpdated"):
        predicates.extend(compile_last_updated(params["_lastUpdated"]))

    for parameter in registry.for_type(resource_type):
        value = params.get(parameter.name)
        if value:
            predicates.extend(parameter.build(value))

    page, page_size = compile_pagination(params)
    logger.debug(
        "Compiled %s search into %d predicates (page=%d, size=%d)",
        resource_type,
        len(predicates),
        page,
        page_size,
    )
    return SearchQuery(predicates=predicates, page=page, page_size=page_size)

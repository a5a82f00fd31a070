"""FHIR search.

Search parameters compile into store-agnostic predicates over document
paths; each store backend evaluates or translates them.
"""

from fhir_bridge.search.compiler import SearchQuery, compile_search
from fhir_bridge.search.parameters import (
    DEFAULT_REGISTRY,
    SearchParameter,
    SearchParameterRegistry,
)

__all__ = [
    "DEFAULT_REGISTRY",
    "SearchParameter",
    "SearchParameterRegistry",
    "SearchQuery",
    "compile_search",
]

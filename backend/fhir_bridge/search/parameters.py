"""Search parameter registry.

Maps each resource type to the ordered list of search parameters it
supports. A parameter knows how to turn a raw query value into store
predicates; the capability statement reads the same registry, so what is
advertised is exactly what is compiled.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable

from fhir_bridge.errors import BadRequest
from fhir_bridge.search.predicates import (
    Path,
    Predicate,
    PropertyCompare,
    PropertyContains,
    PropertyEquals,
    PropertyMatches,
)
from fhir_bridge.utils.fhir_helpers import (
    coding_filter,
    normalize_reference,
    parse_fhir_date,
    parse_token,
)

# FHIR date search prefixes -> comparison operator
DATE_PREFIXES = {
    "ge": ">=",
    "le": "<=",
    "gt": ">",
    "lt": "<",
}


@dataclass(frozen=True)
class SearchParameter:
    """A named search parameter and its predicate builder.

    Args:
        name: Query parameter name (e.g. 'birthdate').
        type: FHIR search parameter type (token, date, string, reference).
        documentation: Human-readable description for the capability statement.
        build: Function turning the raw query value into predicates.
    """

    name: str
    type: str
    documentation: str
    build: Callable[[str], list[Predicate]]

    def to_capability(self) -> dict[str, str]:
        return {"name": self.name, "type": self.type, "documentation": self.documentation}


@dataclass
class SearchParameterRegistry:
    """Registry of search parameters by resource type."""

    _parameters: dict[str, list[SearchParameter]] = field(default_factory=dict)

    def register(self, resource_type: str, parameter: SearchParameter) -> None:
        """Append a parameter to a resource type's ordered list."""
        self._parameters.setdefault(resource_type, []).append(parameter)

    def for_type(self, resource_type: str) -> list[SearchParameter]:
        """Parameters for a resource type, in registration order."""
        return list(self._parameters.get(resource_type, []))

    def resource_types(self) -> list[str]:
        return list(self._parameters)


# =============================================================================
# Date handling
# =============================================================================


def parse_date(literal: str) -> date:
    """Parse a search date literal.

    Raises:
        BadRequest: If the literal is not a valid ISO date.
    """
    try:
        return parse_fhir_date(literal)
    except ValueError:
        raise BadRequest(f"Invalid date format: {literal}") from None


def split_date_prefix(value: str) -> tuple[str | None, str]:
    """Split ``ge2024-01-01`` into (">=", "2024-01-01"); no prefix -> (None, value)."""
    prefix = value[:2]
    if prefix in DATE_PREFIXES:
        return DATE_PREFIXES[prefix], value[2:]
    return None, value


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def end_of_day(day: date) -> datetime:
    return datetime.combine(day, time.max, tzinfo=timezone.utc)


# =============================================================================
# Predicate builders
# =============================================================================


def exact(path: Path) -> Callable[[str], list[Predicate]]:
    def build(value: str) -> list[Predicate]:
        return [PropertyEquals(path, value)]

    return build


def substring(path: Path) -> Callable[[str], list[Predicate]]:
    def build(value: str) -> list[Predicate]:
        return [PropertyMatches(path, value)]

    return build


def identifier(value: str) -> list[Predicate]:
    """Match any identifier with this value (optionally ``system|value``)."""
    system, code = parse_token(value)
    entry: dict[str, str] = {"value": code}
    if system:
        entry["system"] = system
    return [PropertyContains(("identifier",), [entry])]


def exact_date(path: Path) -> Callable[[str], list[Predicate]]:
    def build(value: str) -> list[Predicate]:
        return [PropertyEquals(path, parse_date(value).isoformat())]

    return build


def date_range(path: Path) -> Callable[[str], list[Predicate]]:
    """Prefix grammar over an ISO date/dateTime property.

    Properties hold ISO strings, so comparisons are lexical against day
    boundaries and the literal's day is taken as a whole: ``le`` and ``gt``
    compare against the start of the next day, ``ge`` and ``lt`` against
    the start of the day itself. An unprefixed date selects [day, next day).
    """

    def build(value: str) -> list[Predicate]:
        op, literal = split_date_prefix(value)
        day = parse_date(literal)
        start = day.isoformat()
        next_start = (day + timedelta(days=1)).isoformat()
        if op is None:
            return [PropertyCompare(path, ">=", start), PropertyCompare(path, "<", next_start)]
        if op == "<=":
            return [PropertyCompare(path, "<", next_start)]
        if op == ">":
            return [PropertyCompare(path, ">=", next_start)]
        return [PropertyCompare(path, op, start)]

    return build


def reference(default_type: str, path: Path) -> Callable[[str], list[Predicate]]:
    def build(value: str) -> list[Predicate]:
        return [PropertyEquals(path, normalize_reference(value, default_type))]

    return build


def codeable_concept(path: Path) -> Callable[[str], list[Predicate]]:
    """Token match against a CodeableConcept property."""

    def build(value: str) -> list[Predicate]:
        system, code = parse_token(value)
        return [PropertyContains(path, {"coding": [coding_filter(system, code)]})]

    return build


def codeable_concept_list(path: Path) -> Callable[[str], list[Predicate]]:
    """Token match against an array of CodeableConcepts (e.g. category)."""

    def build(value: str) -> list[Predicate]:
        system, code = parse_token(value)
        return [PropertyContains(path, [{"coding": [coding_filter(system, code)]}])]

    return build


# =============================================================================
# Default registry
# =============================================================================


def _subject() -> SearchParameter:
    return SearchParameter(
        "subject", "reference", "Patient reference", reference("Patient", ("subject", "reference"))
    )


def _status(documentation: str = "Status") -> SearchParameter:
    return SearchParameter("status", "token", documentation, exact(("status",)))


def _identifier(documentation: str) -> SearchParameter:
    return SearchParameter("identifier", "token", documentation, identifier)


def build_default_registry() -> SearchParameterRegistry:
    """Register the search parameters for every supported resource type."""
    registry = SearchParameterRegistry()

    for param in (
        SearchParameter("name", "string", "Patient name", substring(("name",))),
        SearchParameter("birthdate", "date", "Birth date", exact_date(("birthDate",))),
        SearchParameter("gender", "token", "Gender", exact(("gender",))),
        _identifier("Patient identifier"),
    ):
        registry.register("Patient", param)

    for param in (
        _subject(),
        SearchParameter("code", "token", "Observation code", codeable_concept(("code",))),
        SearchParameter("date", "date", "Observation date", date_range(("effectiveDateTime",))),
        SearchParameter(
            "category", "token", "Observation category", codeable_concept_list(("category",))
        ),
        _status("Observation status"),
    ):
        registry.register("Observation", param)

    for param in (
        SearchParameter("name", "string", "Practitioner name", substring(("name",))),
        _identifier("Practitioner identifier (NPI, license)"),
        SearchParameter("gender", "token", "Gender", exact(("gender",))),
    ):
        registry.register("Practitioner", param)

    for param in (
        SearchParameter("name", "string", "Organization name", substring(("name",))),
        _identifier("Organization identifier"),
    ):
        registry.register("Organization", param)

    for param in (_subject(), _status("Encounter status")):
        registry.register("Encounter", param)

    for param in (
        SearchParameter(
            "manufacturer", "string", "Device manufacturer", substring(("manufacturer",))
        ),
        _status("Device status"),
    ):
        registry.register("Device", param)

    for param in (
        _subject(),
        SearchParameter(
            "clinical-status",
            "token",
            "Clinical status",
            codeable_concept(("clinicalStatus",)),
        ),
        SearchParameter("code", "token", "Condition code", codeable_concept(("code",))),
    ):
        registry.register("Condition", param)

    for param in (_subject(), _status("CarePlan status")):
        registry.register("CarePlan", param)

    return registry


DEFAULT_REGISTRY = build_default_registry()

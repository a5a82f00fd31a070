"""Shared FHIR parsing utilities.

Reference and token helpers used by the search parameters and the
ingestion pipeline. All functions are pure.
"""

from datetime import date, datetime
from typing import Any


def extract_reference_id(reference: str | None) -> str | None:
    """Extract FHIR ID from a reference string.

    Handles both formats:
    - "urn:uuid:abc-123" -> "abc-123"
    - "Patient/abc-123" -> "abc-123"

    Args:
        reference: FHIR reference string

    Returns:
        Extracted ID or None if reference is empty/None
    """
    if not reference:
        return None

    if reference.startswith("urn:uuid:"):
        return reference[9:]  # len("urn:uuid:")
    elif "/" in reference:
        return reference.split("/")[-1]
    return reference


def format_reference(resource_type: str, resource_id: Any) -> str:
    """Build a relative literal reference, e.g. ``Patient/123``."""
    return f"{resource_type}/{resource_id}"


def normalize_reference(value: str, default_type: str) -> str:
    """Normalize a reference search value to ``Type/id``.

    A bare id or ``urn:uuid:`` reference is qualified with ``default_type``;
    an absolute URL keeps only its last two path segments.

    Args:
        value: Search value (``123``, ``urn:uuid:123``, ``Patient/123`` or a full URL)
        default_type: Resource type assumed for bare ids

    Returns:
        Relative reference string
    """
    value = value.strip()
    if value.startswith("urn:uuid:") or "/" not in value:
        return format_reference(default_type, extract_reference_id(value))
    parts = [part for part in value.split("/") if part]
    return "/".join(parts[-2:])


def parse_token(value: str) -> tuple[str | None, str]:
    """Split a token search value into (system, code).

    ``system|code`` -> (system, code); ``|code`` -> ("", code) meaning no
    system; ``code`` -> (None, code) meaning any system.
    """
    if "|" not in value:
        return None, value
    system, code = value.split("|", 1)
    return system, code


def coding_filter(system: str | None, code: str) -> dict[str, Any]:
    """Coding fragment for a JSON containment match on a token."""
    coding: dict[str, Any] = {"code": code}
    if system:
        coding["system"] = system
    return coding


def parse_fhir_date(value: str) -> date:
    """Parse the date part of an ISO date or dateTime literal.

    Raises:
        ValueError: If the literal is not an ISO date/dateTime.
    """
    value = value.strip()
    if not value:
        raise ValueError("empty date")
    return datetime.fromisoformat(value).date()

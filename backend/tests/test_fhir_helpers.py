"""Tests for shared FHIR helper utilities."""

from datetime import date

import pytest

from fhir_bridge.utils.fhir_helpers import (
    coding_filter,
    extract_reference_id,
    format_reference,
    normalize_reference,
    parse_fhir_date,
    parse_token,
)


class TestExtractReferenceId:
    """Tests for extract_reference_id function."""

    def test_extracts_from_urn_uuid(self):
        """Test extraction from urn:uuid format."""
        result = extract_reference_id("urn:uuid:abc-123-def")
        assert result == "abc-123-def"

    def test_extracts_from_resource_reference(self):
        """Test extraction from ResourceType/id format."""
        result = extract_reference_id("Patient/patient-123")
        assert result == "patient-123"

    def test_returns_none_for_none(self):
        """Test returns None for None input."""
        assert extract_reference_id(None) is None

    def test_returns_none_for_empty_string(self):
        """Test returns None for empty string."""
        assert extract_reference_id("") is None

    def test_returns_plain_id_unchanged(self):
        """Test returns plain ID without prefix unchanged."""
        assert extract_reference_id("plain-id-no-prefix") == "plain-id-no-prefix"


class TestReferences:
    """Tests for format_reference and normalize_reference."""

    def test_format_reference(self):
        assert format_reference("Device", "abc") == "Device/abc"

    def test_bare_id_gets_default_type(self):
        assert normalize_reference("123", "Patient") == "Patient/123"

    def test_typed_reference_unchanged(self):
        assert normalize_reference("Patient/123", "Patient") == "Patient/123"

    def test_absolute_url_keeps_type_and_id(self):
        result = normalize_reference("http://example.org/fhir/Patient/123", "Patient")
        assert result == "Patient/123"

    def test_urn_uuid_gets_default_type(self):
        assert normalize_reference("urn:uuid:abc-123", "Patient") == "Patient/abc-123"

    def test_strips_whitespace(self):
        assert normalize_reference("  123 ", "Patient") == "Patient/123"


class TestTokens:
    """Tests for token parsing and coding filters."""

    def test_code_only(self):
        assert parse_token("8867-4") == (None, "8867-4")

    def test_system_and_code(self):
        assert parse_token("http://loinc.org|8867-4") == ("http://loinc.org", "8867-4")

    def test_empty_system(self):
        assert parse_token("|8867-4") == ("", "8867-4")

    def test_coding_filter_with_system(self):
        assert coding_filter("http://loinc.org", "8867-4") == {
            "code": "8867-4",
            "system": "http://loinc.org",
        }

    def test_coding_filter_without_system(self):
        assert coding_filter(None, "8867-4") == {"code": "8867-4"}
        assert coding_filter("", "8867-4") == {"code": "8867-4"}


class TestParseFhirDate:
    """Tests for parse_fhir_date function."""

    def test_date(self):
        assert parse_fhir_date("2024-01-15") == date(2024, 1, 15)

    def test_datetime_keeps_date_part(self):
        assert parse_fhir_date("2024-01-15T23:30:00+00:00") == date(2024, 1, 15)

    def test_invalid_raises(self):
        with pytest.raises(ValueError):
            parse_fhir_date("not-a-date")

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            parse_fhir_date("  ")

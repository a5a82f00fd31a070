"""Tests for store predicates and the property store backends."""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError

from fhir_bridge.errors import ConstraintViolation, NotFound
from fhir_bridge.models.store import ApiNamespace
from fhir_bridge.namespaces import DEVICE, PATIENT, NamespaceSpec, PropertySpec
from fhir_bridge.search.predicates import (
    IdIn,
    PropertyCompare,
    PropertyContains,
    PropertyEquals,
    PropertyMatches,
    UpdatedAt,
    json_contains,
    matches_all,
)
from fhir_bridge.store.base import Document
from fhir_bridge.store.memory import MemoryPropertyStore
from fhir_bridge.store.sql import SqlPropertyStore, build_query, predicate_clause

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


def make_document(properties: dict) -> Document:
    return Document(
        id=uuid.uuid4(),
        namespace="fhir-patient",
        properties=properties,
        created_at=NOW,
        updated_at=NOW,
    )


def compile_pg(clause):
    return clause.compile(dialect=postgresql.dialect())


# =============================================================================
# Predicates
# =============================================================================


class TestPredicates:
    """Tests for in-process predicate evaluation."""

    def test_id_in(self):
        document = make_document({})
        assert IdIn((str(document.id), "other")).matches(document)
        assert not IdIn(("other",)).matches(document)

    def test_updated_at(self):
        document = make_document({})
        assert UpdatedAt(">=", NOW).matches(document)
        assert not UpdatedAt(">", NOW).matches(document)
        assert UpdatedAt("<", NOW + timedelta(seconds=1)).matches(document)

    def test_property_equals_nested_path(self):
        document = make_document({"code": {"coding": [{"code": "8867-4"}]}})
        assert PropertyEquals(("code", "coding", 0, "code"), "8867-4").matches(document)
        assert not PropertyEquals(("code", "coding", 1, "code"), "8867-4").matches(document)

    def test_property_equals_missing_path(self):
        assert not PropertyEquals(("gender",), "female").matches(make_document({}))

    def test_property_equals_renders_scalars_as_text(self):
        document = make_document({"active": True, "count": 3})
        assert PropertyEquals(("active",), "true").matches(document)
        assert PropertyEquals(("count",), "3").matches(document)

    def test_property_matches_is_case_insensitive_over_json_text(self):
        document = make_document({"name": [{"given": ["John"], "family": "Smith"}]})
        assert PropertyMatches(("name",), "john").matches(document)
        assert PropertyMatches(("name",), "SMITH").matches(document)
        assert not PropertyMatches(("name",), "Jane").matches(document)

    def test_property_compare_is_lexical(self):
        document = make_document({"effectiveDateTime": "2024-03-09T07:00:00Z"})
        assert PropertyCompare(("effectiveDateTime",), ">=", "2024-03-09").matches(document)
        assert PropertyCompare(("effectiveDateTime",), "<", "2024-03-10").matches(document)
        assert not PropertyCompare(("effectiveDateTime",), "<", "2024-03-09").matches(document)

    def test_property_compare_missing_value(self):
        assert not PropertyCompare(("effectiveDateTime",), "<", "2024").matches(make_document({}))

    def test_property_contains(self):
        document = make_document(
            {"identifier": [{"system": "mrn", "value": "1"}, {"system": "ssn", "value": "2"}]}
        )
        assert PropertyContains(("identifier",), [{"value": "2"}]).matches(document)
        assert not PropertyContains(("identifier",), [{"system": "mrn", "value": "2"}]).matches(
            document
        )

    def test_matches_all(self):
        document = make_document({"gender": "female", "name": [{"given": ["Jane"]}]})
        assert matches_all(document, [])
        assert matches_all(
            document, [PropertyEquals(("gender",), "female"), PropertyMatches(("name",), "jane")]
        )
        assert not matches_all(
            document, [PropertyEquals(("gender",), "female"), PropertyMatches(("name",), "john")]
        )


class TestJsonContains:
    """Tests for JSONB containment semantics."""

    def test_object_subset(self):
        assert json_contains({"a": 1, "b": 2}, {"a": 1})
        assert not json_contains({"a": 1}, {"a": 2})

    def test_array_elements_in_any_order(self):
        assert json_contains([1, 2, 3], [3, 1])
        assert not json_contains([1, 2], [4])

    def test_nested(self):
        container = {"coding": [{"system": "http://loinc.org", "code": "8867-4"}]}
        assert json_contains(container, {"coding": [{"code": "8867-4"}]})

    def test_type_mismatch(self):
        assert not json_contains({"a": "1"}, {"a": 1})
        assert not json_contains([{"a": 1}], {"a": 1})


# =============================================================================
# Memory store
# =============================================================================


class TestMemoryPropertyStore:
    """Tests for MemoryPropertyStore."""

    @pytest.mark.asyncio
    async def test_create_and_find(self, store):
        created = await store.create_document(PATIENT, {"resourceType": "Patient"})
        found = await store.find_document(PATIENT, str(created.id))

        assert found.id == created.id
        assert found.namespace == "fhir-patient"
        assert found.properties == {"resourceType": "Patient"}
        assert found.created_at == found.updated_at

    @pytest.mark.asyncio
    async def test_find_unknown_id(self, store):
        with pytest.raises(NotFound) as exc_info:
            await store.find_document(PATIENT, str(uuid.uuid4()))
        assert exc_info.value.resource_type == "Patient"

    @pytest.mark.asyncio
    async def test_find_malformed_id(self, store):
        with pytest.raises(NotFound):
            await store.find_document(PATIENT, "not-a-uuid")

    @pytest.mark.asyncio
    async def test_namespaces_are_isolated(self, store):
        created = await store.create_document(PATIENT, {"resourceType": "Patient"})
        with pytest.raises(NotFound):
            await store.find_document(DEVICE, str(created.id))

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self, store):
        properties = {"resourceType": "Patient", "name": [{"family": "Smith"}]}
        created = await store.create_document(PATIENT, properties)

        properties["name"][0]["family"] = "Changed"
        created.properties["name"][0]["family"] = "Changed too"

        found = await store.find_document(PATIENT, str(created.id))
        assert found.properties["name"][0]["family"] == "Smith"

    @pytest.mark.asyncio
    async def test_non_json_properties_are_rejected(self, store):
        with pytest.raises(ConstraintViolation):
            await store.create_document(PATIENT, {"tags": {"a", "b"}})

    @pytest.mark.asyncio
    async def test_query_orders_oldest_first_and_counts_total(self, store):
        for family in ("A", "B", "C"):
            await store.create_document(PATIENT, {"gender": "female", "family": family})
        await store.create_document(PATIENT, {"gender": "male", "family": "D"})

        documents, total = await store.query_documents(
            PATIENT, [PropertyEquals(("gender",), "female")], page=1, page_size=2
        )
        assert total == 3
        assert [doc.properties["family"] for doc in documents] == ["A", "B"]

        documents, total = await store.query_documents(
            PATIENT, [PropertyEquals(("gender",), "female")], page=2, page_size=2
        )
        assert total == 3
        assert [doc.properties["family"] for doc in documents] == ["C"]

    @pytest.mark.asyncio
    async def test_first_document(self, store):
        first = await store.create_document(PATIENT, {"gender": "female"})
        await store.create_document(PATIENT, {"gender": "female"})

        found = await store.first_document(PATIENT, [PropertyEquals(("gender",), "female")])
        assert found.id == first.id
        assert await store.first_document(PATIENT, [PropertyEquals(("gender",), "male")]) is None

    @pytest.mark.asyncio
    async def test_update_bumps_updated_at(self, store):
        created = await store.create_document(PATIENT, {"gender": "female"})
        updated = await store.update_document(created, {"gender": "male"})

        assert updated.id == created.id
        assert updated.properties == {"gender": "male"}
        assert updated.created_at == created.created_at
        assert updated.updated_at > created.updated_at

    @pytest.mark.asyncio
    async def test_delete(self, store):
        created = await store.create_document(PATIENT, {"gender": "female"})
        await store.delete_document(created)

        with pytest.raises(NotFound):
            await store.find_document(PATIENT, str(created.id))
        with pytest.raises(NotFound):
            await store.delete_document(created)
        with pytest.raises(NotFound):
            await store.update_document(created, {})

    @pytest.mark.asyncio
    async def test_unknown_namespace(self):
        store = MemoryPropertyStore()
        with pytest.raises(LookupError):
            await store.create_document(PATIENT, {})

    @pytest.mark.asyncio
    async def test_ensure_namespace(self):
        widget = NamespaceSpec(
            name="FhirWidget",
            slug="fhir-widget",
            resource_type="Widget",
            properties={"label": PropertySpec("string")},
        )
        store = MemoryPropertyStore()
        await store.ensure_namespace(widget)
        created = await store.create_document(widget, {"label": "x"})
        assert created.namespace == "fhir-widget"


# =============================================================================
# SQL store
# =============================================================================


class TestPredicateClause:
    """Tests for predicate compilation to PostgreSQL JSONB clauses."""

    def test_property_equals_single_key(self):
        compiled = compile_pg(predicate_clause(PropertyEquals(("gender",), "female")))
        assert "api_resources.properties ->>" in str(compiled)
        assert "female" in compiled.params.values()

    def test_property_equals_nested_path(self):
        clause = predicate_clause(PropertyEquals(("subject", "reference"), "Patient/1"))
        assert "api_resources.properties #>>" in str(compile_pg(clause))

    def test_property_contains(self):
        clause = predicate_clause(PropertyContains(("identifier",), [{"value": "MRN-001"}]))
        compiled = compile_pg(clause)
        assert "@>" in str(compiled)
        assert {"identifier": [{"value": "MRN-001"}]} in compiled.params.values()

    def test_property_matches(self):
        compiled = compile_pg(predicate_clause(PropertyMatches(("name",), "jo_hn%")))
        assert "ILIKE" in str(compiled)
        assert "%jo\\_hn\\%%" in compiled.params.values()

    def test_property_compare(self):
        compiled = compile_pg(
            predicate_clause(PropertyCompare(("effectiveDateTime",), "<", "2024-03-10"))
        )
        assert " < " in str(compiled)

    def test_updated_at(self):
        compiled = compile_pg(predicate_clause(UpdatedAt(">=", NOW)))
        assert "api_resources.updated_at >=" in str(compiled)

    def test_id_in(self):
        document_id = uuid.uuid4()
        compiled = compile_pg(predicate_clause(IdIn((str(document_id), "bogus"))))
        assert "api_resources.id IN" in str(compiled)

    def test_id_in_with_only_malformed_ids(self):
        assert str(compile_pg(predicate_clause(IdIn(("bogus",))))) == "false"

    def test_build_query_filters_namespace(self):
        query = build_query("fhir-patient", [PropertyEquals(("gender",), "female")])
        sql = str(compile_pg(query))
        assert "api_resources.namespace_slug =" in sql
        assert "->>" in sql


class TestSqlPropertyStore:
    """Tests for SqlPropertyStore with a mocked session."""

    @pytest.fixture
    def session(self):
        session = MagicMock()
        session.flush = AsyncMock()
        session.get = AsyncMock(return_value=None)
        session.execute = AsyncMock(return_value=MagicMock())
        session.delete = AsyncMock()
        return session

    @pytest.mark.asyncio
    async def test_malformed_id_is_not_found_without_query(self, session):
        store = SqlPropertyStore(session)
        with pytest.raises(NotFound):
            await store.find_document(PATIENT, "not-a-uuid")
        session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_document(self, session):
        store = SqlPropertyStore(session)
        document = await store.create_document(PATIENT, {"resourceType": "Patient"})

        assert isinstance(document.id, uuid.UUID)
        assert document.namespace == "fhir-patient"
        assert document.properties == {"resourceType": "Patient"}
        assert document.created_at == document.updated_at
        session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_integrity_error_becomes_constraint_violation(self, session):
        session.flush.side_effect = IntegrityError("INSERT", {}, Exception("violates"))
        store = SqlPropertyStore(session)

        with pytest.raises(ConstraintViolation):
            await store.create_document(PATIENT, {"resourceType": "Patient"})
        session.add.assert_called_once()

    @pytest.mark.asyncio
    async def test_ensure_namespace_creates_row(self, session):
        store = SqlPropertyStore(session)
        await store.ensure_namespace(PATIENT)

        row = session.add.call_args.args[0]
        assert isinstance(row, ApiNamespace)
        assert row.slug == "fhir-patient"
        assert row.name == "FhirPatient"
        assert row.properties["birthDate"]["required"] is True
        assert row.associations[0]["namespace"] == "FhirObservation"
        session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ensure_namespace_updates_existing_row(self, session):
        existing = ApiNamespace(slug="fhir-patient", name="Old", version="0")
        session.get.return_value = existing
        store = SqlPropertyStore(session)

        await store.ensure_namespace(PATIENT)

        session.add.assert_not_called()
        assert existing.name == "FhirPatient"
        assert existing.version == "1"

    @pytest.mark.asyncio
    async def test_update_missing_row_names_resource_type(self, session):
        session.execute.return_value.scalar_one_or_none.return_value = None
        store = SqlPropertyStore(session, [PATIENT])
        document = make_document({})

        with pytest.raises(NotFound) as exc_info:
            await store.update_document(document, {"resourceType": "Patient"})
        assert exc_info.value.resource_type == "Patient"
        assert exc_info.value.message == f"Patient with id {document.id} not found"

    @pytest.mark.asyncio
    async def test_delete_missing_row_uses_ensured_namespace(self, session):
        session.execute.return_value.scalar_one_or_none.return_value = None
        store = SqlPropertyStore(session)
        await store.ensure_namespace(DEVICE)
        document = make_document({})
        document.namespace = "fhir-device"

        with pytest.raises(NotFound) as exc_info:
            await store.delete_document(document)
        assert exc_info.value.resource_type == "Device"
        session.delete.assert_not_called()

"""Pytest configuration and shared fixtures.

This module provides centralized test fixtures for:
- HTTP client for API testing (in-memory property store)
- Namespace registry and property store
- Common FHIR test data
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from fhir_bridge.main import app
from fhir_bridge.namespaces import NamespaceRegistry
from fhir_bridge.routes.fhir import get_store
from fhir_bridge.store.memory import MemoryPropertyStore

FIXED_NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


class TickingClock:
    """Clock advancing one second per call, so insertion order is stable."""

    def __init__(self, start: datetime = FIXED_NOW):
        self.current = start

    def __call__(self) -> datetime:
        now = self.current
        self.current = now + timedelta(seconds=1)
        return now


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def namespaces() -> NamespaceRegistry:
    """Registry with every supported resource type."""
    return NamespaceRegistry()


@pytest.fixture
def store(namespaces) -> MemoryPropertyStore:
    """Empty in-memory property store with all namespaces created."""
    return MemoryPropertyStore(namespaces, clock=TickingClock())


# =============================================================================
# HTTP Client Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def client(store):
    """Async test client for the FastAPI app.

    Overrides the store dependency with the test's in-memory store, so
    route tests can seed and inspect it directly.
    """

    async def override_get_store():
        yield store

    app.dependency_overrides[get_store] = override_get_store

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.pop(get_store, None)


# =============================================================================
# FHIR Test Data
# =============================================================================


@pytest.fixture
def patient_id() -> str:
    """Generate a unique patient ID for testing."""
    return str(uuid.uuid4())


@pytest.fixture
def sample_patient() -> dict:
    """Valid Patient resource."""
    return {
        "resourceType": "Patient",
        "name": [{"family": "Smith", "given": ["John"]}],
        "gender": "male",
        "birthDate": "1985-06-15",
        "identifier": [{"system": "http://hospital.example/mrn", "value": "MRN-001"}],
    }


@pytest.fixture
def sample_observation(patient_id) -> dict:
    """Valid heart-rate Observation for ``patient_id``."""
    return {
        "resourceType": "Observation",
        "status": "final",
        "category": [
            {
                "coding": [
                    {
                        "system": "http://terminology.hl7.org/CodeSystem/observation-category",
                        "code": "vital-signs",
                    }
                ]
            }
        ],
        "code": {"coding": [{"system": "http://loinc.org", "code": "8867-4"}]},
        "subject": {"reference": f"Patient/{patient_id}"},
        "effectiveDateTime": "2024-03-09T07:00:00Z",
        "valueQuantity": {"value": 52, "unit": "bpm"},
    }

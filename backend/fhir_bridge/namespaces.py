"""FHIR R4 namespace definitions.

A namespace is the schema/container for one resource type in the property
store. Each definition declares the property schema used by the validator
and the associations to other namespaces. Definitions are created at
startup and never change while the application is running.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

GENDERS = ("male", "female", "other", "unknown")


@dataclass(frozen=True)
class PropertySpec:
    """Schema entry for a single property.

    Args:
        type: One of string, date, datetime, boolean, integer, array, object.
        required: Whether the property must be present and non-null.
        default: Value applied when the property is absent (resourceType only).
        enum: Allowed values for string properties.
        description: Free-text documentation.
    """

    type: str
    required: bool = False
    default: Any = None
    enum: tuple[str, ...] | None = None
    description: str | None = None


@dataclass(frozen=True)
class Association:
    namespace: str
    type: str
    foreign_key: str


@dataclass(frozen=True)
class NamespaceSpec:
    """A resource type's namespace: slug, schema and associations."""

    name: str
    slug: str
    resource_type: str
    properties: dict[str, PropertySpec]
    associations: tuple[Association, ...] = ()
    version: str = "1"

    @property
    def required_fields(self) -> list[str]:
        return [name for name, spec in self.properties.items() if spec.required]


def _resource_type(resource_type: str) -> PropertySpec:
    return PropertySpec("string", default=resource_type)


PATIENT = NamespaceSpec(
    name="FhirPatient",
    slug="fhir-patient",
    resource_type="Patient",
    properties={
        "resourceType": _resource_type("Patient"),
        "identifier": PropertySpec("array", description="Patient identifiers (MRN, SSN, etc.)"),
        "name": PropertySpec("array", required=True, description="Patient name(s)"),
        "gender": PropertySpec("string", enum=GENDERS),
        "birthDate": PropertySpec("date", required=True),
        "telecom": PropertySpec("array", description="Phone, email, etc."),
        "address": PropertySpec("array"),
        "active": PropertySpec("boolean", default=True),
        "deceased": PropertySpec("boolean", default=False),
        "deceasedDateTime": PropertySpec("datetime"),
        "maritalStatus": PropertySpec("object"),
        "contact": PropertySpec("array", description="Emergency contacts"),
        "communication": PropertySpec("array", description="Languages"),
        "generalPractitioner": PropertySpec("array", description="Primary care providers"),
        "managingOrganization": PropertySpec("object"),
        "photo": PropertySpec("array"),
        "link": PropertySpec("array", description="Links to other patient resources"),
    },
    associations=(
        Association("FhirObservation", "has_many", "subject_id"),
        Association("FhirEncounter", "has_many", "subject_id"),
        Association("FhirCondition", "has_many", "subject_id"),
    ),
)

OBSERVATION = NamespaceSpec(
    name="FhirObservation",
    slug="fhir-observation",
    resource_type="Observation",
    properties={
        "resourceType": _resource_type("Observation"),
        "status": PropertySpec(
            "string",
            required=True,
            enum=(
                "registered",
                "preliminary",
                "final",
                "amended",
                "corrected",
                "cancelled",
                "entered-in-error",
                "unknown",
            ),
        ),
        "category": PropertySpec("array", description="vital-signs, laboratory, imaging, etc."),
        "code": PropertySpec("object", required=True, description="LOINC, SNOMED CT, etc."),
        "subject": PropertySpec("object", required=True),
        "subject_id": PropertySpec("string", description="Reference to FhirPatient"),
        "encounter": PropertySpec("object"),
        "encounter_id": PropertySpec("string"),
        "effectiveDateTime": PropertySpec("datetime"),
        "effectivePeriod": PropertySpec("object"),
        "issued": PropertySpec("datetime"),
        "valueQuantity": PropertySpec("object", description="Numeric value with unit"),
        "valueCodeableConcept": PropertySpec("object"),
        "valueString": PropertySpec("string"),
        "valueBoolean": PropertySpec("boolean"),
        "valueInteger": PropertySpec("integer"),
        "valueRange": PropertySpec("object"),
        "interpretation": PropertySpec("array"),
        "note": PropertySpec("array"),
        "referenceRange": PropertySpec("array"),
        "device": PropertySpec("object"),
        "device_id": PropertySpec("string"),
        "performer": PropertySpec("array"),
    },
    associations=(
        Association("FhirPatient", "belongs_to", "subject_id"),
        Association("FhirEncounter", "belongs_to", "encounter_id"),
        Association("FhirDevice", "belongs_to", "device_id"),
    ),
)

PRACTITIONER = NamespaceSpec(
    name="FhirPractitioner",
    slug="fhir-practitioner",
    resource_type="Practitioner",
    properties={
        "resourceType": _resource_type("Practitioner"),
        "identifier": PropertySpec("array", description="NPI, license numbers"),
        "active": PropertySpec("boolean", default=True),
        "name": PropertySpec("array", required=True),
        "telecom": PropertySpec("array"),
        "address": PropertySpec("array"),
        "gender": PropertySpec("string", enum=GENDERS),
        "birthDate": PropertySpec("date"),
        "photo": PropertySpec("array"),
        "qualification": PropertySpec("array", description="Certifications, degrees"),
        "communication": PropertySpec("array"),
    },
)

ORGANIZATION = NamespaceSpec(
    name="FhirOrganization",
    slug="fhir-organization",
    resource_type="Organization",
    properties={
        "resourceType": _resource_type("Organization"),
        "identifier": PropertySpec("array"),
        "active": PropertySpec("boolean", default=True),
        "type": PropertySpec("array", description="Hospital, clinic, pharmacy, etc."),
        "name": PropertySpec("string", required=True),
        "alias": PropertySpec("array"),
        "telecom": PropertySpec("array"),
        "address": PropertySpec("array"),
        "partOf": PropertySpec("object", description="Parent organization"),
        "contact": PropertySpec("array"),
        "endpoint": PropertySpec("array"),
    },
)

ENCOUNTER = NamespaceSpec(
    name="FhirEncounter",
    slug="fhir-encounter",
    resource_type="Encounter",
    properties={
        "resourceType": _resource_type("Encounter"),
        "identifier": PropertySpec("array"),
        "status": PropertySpec(
            "string",
            required=True,
            enum=(
                "planned",
                "arrived",
                "triaged",
                "in-progress",
                "onleave",
                "finished",
                "cancelled",
            ),
        ),
        "class": PropertySpec(
            "object", required=True, description="inpatient, outpatient, emergency"
        ),
        "type": PropertySpec("array"),
        "priority": PropertySpec("object"),
        "subject": PropertySpec("object", required=True),
        "subject_id": PropertySpec("string"),
        "participant": PropertySpec("array", description="Practitioners involved"),
        "period": PropertySpec("object", description="Start and end time"),
        "length": PropertySpec("object"),
        "reasonCode": PropertySpec("array"),
        "diagnosis": PropertySpec("array"),
        "hospitalization": PropertySpec("object"),
        "location": PropertySpec("array"),
    },
    associations=(
        Association("FhirPatient", "belongs_to", "subject_id"),
        Association("FhirObservation", "has_many", "encounter_id"),
    ),
)

DEVICE = NamespaceSpec(
    name="FhirDevice",
    slug="fhir-device",
    resource_type="Device",
    properties={
        "resourceType": _resource_type("Device"),
        "identifier": PropertySpec("array"),
        "udiCarrier": PropertySpec("array"),
        "status": PropertySpec(
            "string", enum=("active", "inactive", "entered-in-error", "unknown")
        ),
        "statusReason": PropertySpec("array"),
        "distinctIdentifier": PropertySpec("string"),
        "manufacturer": PropertySpec("string"),
        "manufactureDate": PropertySpec("datetime"),
        "expirationDate": PropertySpec("datetime"),
        "lotNumber": PropertySpec("string"),
        "serialNumber": PropertySpec("string"),
        "deviceName": PropertySpec("array"),
        "modelNumber": PropertySpec("string"),
        "type": PropertySpec("object", description="Wearable, monitor, etc."),
        "version": PropertySpec("array"),
        "patient": PropertySpec("object"),
        "owner": PropertySpec("object"),
        "contact": PropertySpec("array"),
        "url": PropertySpec("string"),
        "note": PropertySpec("array"),
    },
)

CONDITION = NamespaceSpec(
    name="FhirCondition",
    slug="fhir-condition",
    resource_type="Condition",
    properties={
        "resourceType": _resource_type("Condition"),
        "identifier": PropertySpec("array"),
        "clinicalStatus": PropertySpec("object", required=True),
        "verificationStatus": PropertySpec("object"),
        "category": PropertySpec("array"),
        "severity": PropertySpec("object"),
        "code": PropertySpec("object", description="ICD-10, SNOMED CT"),
        "bodySite": PropertySpec("array"),
        "subject": PropertySpec("object", required=True),
        "subject_id": PropertySpec("string"),
        "encounter": PropertySpec("object"),
        "onsetDateTime": PropertySpec("datetime"),
        "onsetPeriod": PropertySpec("object"),
        "abatementDateTime": PropertySpec("datetime"),
        "recordedDate": PropertySpec("datetime"),
        "recorder": PropertySpec("object"),
        "asserter": PropertySpec("object"),
        "stage": PropertySpec("array"),
        "evidence": PropertySpec("array"),
        "note": PropertySpec("array"),
    },
    associations=(Association("FhirPatient", "belongs_to", "subject_id"),),
)

CARE_PLAN = NamespaceSpec(
    name="FhirCarePlan",
    slug="fhir-careplan",
    resource_type="CarePlan",
    properties={
        "resourceType": _resource_type("CarePlan"),
        "identifier": PropertySpec("array"),
        "instantiatesCanonical": PropertySpec("array"),
        "instantiatesUri": PropertySpec("array"),
        "basedOn": PropertySpec("array"),
        "replaces": PropertySpec("array"),
        "partOf": PropertySpec("array"),
        "status": PropertySpec(
            "string",
            required=True,
            enum=(
                "draft",
                "active",
                "on-hold",
                "revoked",
                "completed",
                "entered-in-error",
                "unknown",
            ),
        ),
        "intent": PropertySpec("string", required=True),
        "category": PropertySpec("array"),
        "title": PropertySpec("string"),
        "description": PropertySpec("string"),
        "subject": PropertySpec("object", required=True),
        "subject_id": PropertySpec("string"),
        "encounter": PropertySpec("object"),
        "period": PropertySpec("object"),
        "created": PropertySpec("datetime"),
        "author": PropertySpec("object"),
        "contributor": PropertySpec("array"),
        "careTeam": PropertySpec("array"),
        "addresses": PropertySpec("array"),
        "supportingInfo": PropertySpec("array"),
        "goal": PropertySpec("array"),
        "activity": PropertySpec("array"),
        "note": PropertySpec("array"),
    },
    associations=(Association("FhirPatient", "belongs_to", "subject_id"),),
)

ALL_NAMESPACES: tuple[NamespaceSpec, ...] = (
    PATIENT,
    OBSERVATION,
    PRACTITIONER,
    ORGANIZATION,
    ENCOUNTER,
    DEVICE,
    CONDITION,
    CARE_PLAN,
)


@dataclass
class NamespaceRegistry:
    """Lookup of namespaces by resource type.

    Passed explicitly to every component that needs store access; there is
    no module-level lookup by slug.
    """

    namespaces: tuple[NamespaceSpec, ...] = ALL_NAMESPACES
    _by_type: dict[str, NamespaceSpec] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._by_type = {ns.resource_type: ns for ns in self.namespaces}

    def get(self, resource_type: str) -> NamespaceSpec | None:
        """Get the namespace for a resource type, or None if unsupported."""
        return self._by_type.get(resource_type)

    def resource_types(self) -> list[str]:
        return [ns.resource_type for ns in self.namespaces]

    def __iter__(self) -> Iterator[NamespaceSpec]:
        return iter(self.namespaces)

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._by_type

"""FHIR R4 resource adaptation engine over a schemaless property store."""

__version__ = "0.1.0"

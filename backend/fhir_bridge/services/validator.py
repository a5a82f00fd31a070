"""Resource validation against per-type namespace schemas.

Each namespace schema is turned into a pydantic model once, when the
validator is built. A validation call runs TypeCheck (shape, resourceType,
JSON types, date formats, enumerations) and FieldCheck (required fields)
and reports every issue it finds rather than stopping at the first one.
Unknown properties are allowed and kept as-is.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    StringConstraints,
    create_model,
)
from pydantic import ValidationError as PydanticValidationError

from fhir_bridge.errors import UnsupportedResourceType, ValidationError
from fhir_bridge.namespaces import NamespaceRegistry, NamespaceSpec
from fhir_bridge.services.codec import exception_outcome, operation_outcome, to_document

logger = logging.getLogger(__name__)

# FHIR date: YYYY, YYYY-MM or YYYY-MM-DD
DATE_PATTERN = r"^\d{4}(-\d{2}(-\d{2})?)?$"
# FHIR dateTime: partial dates, or a full date with time and optional zone
DATETIME_PATTERN = (
    r"^\d{4}(-\d{2}(-\d{2}(T\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:\d{2})?)?)?)?$"
)

SCHEMA_TYPES: dict[str, Any] = {
    "string": StrictStr,
    "date": Annotated[str, StringConstraints(pattern=DATE_PATTERN)],
    "datetime": Annotated[str, StringConstraints(pattern=DATETIME_PATTERN)],
    "boolean": StrictBool,
    "integer": StrictInt,
    "array": list[Any],
    "object": dict[str, Any],
}


@dataclass
class ValidationResult:
    """Outcome of validating one candidate resource."""

    valid: bool
    resource: dict[str, Any] | None = None
    errors: list[str] = field(default_factory=list)
    operation_outcome: dict[str, Any] | None = None


def build_schema_model(namespace: NamespaceSpec) -> type[BaseModel]:
    """Create the pydantic model checking a namespace's declared properties.

    Every field is optional at this stage; required-ness is checked
    separately so absent and null values report the same message. FHIR
    property names are used as aliases because some (e.g. ``class``) are not
    valid Python identifiers.
    """
    fields: dict[str, Any] = {}
    for index, (name, spec) in enumerate(namespace.properties.items()):
        annotation = Literal[spec.enum] if spec.enum else SCHEMA_TYPES[spec.type]
        fields[f"field_{index}"] = (Optional[annotation], Field(default=None, alias=name))
    return create_model(
        f"{namespace.name}Schema",
        __config__=ConfigDict(extra="allow"),
        **fields,
    )


def _describe(namespace: NamespaceSpec, error: dict[str, Any]) -> str:
    name = str(error["loc"][0]) if error["loc"] else namespace.resource_type
    spec = namespace.properties.get(name)
    if error["type"] == "literal_error" and spec is not None and spec.enum:
        return f"{name} must be one of: {', '.join(spec.enum)}"
    if error["type"] == "string_pattern_mismatch" and spec is not None:
        return f"{name} must be a valid FHIR {spec.type}"
    return f"{name}: {error['msg']}"


class ResourceValidator:
    """Validates candidate resources for the namespaces in a registry."""

    def __init__(self, namespaces: NamespaceRegistry):
        self.namespaces = namespaces
        self._models = {ns.resource_type: build_schema_model(ns) for ns in namespaces}

    def _namespace(self, resource_type: str) -> NamespaceSpec:
        namespace = self.namespaces.get(resource_type)
        if namespace is None:
            raise UnsupportedResourceType(resource_type)
        return namespace

    def _type_check(self, namespace: NamespaceSpec, data: Any) -> list[str]:
        if not isinstance(data, Mapping):
            raise TypeError(
                f"{namespace.resource_type} resource must be a JSON object, "
                f"got {type(data).__name__}"
            )

        errors: list[str] = []
        declared_type = data.get("resourceType")
        if declared_type is not None and declared_type != namespace.resource_type:
            errors.append(f"resourceType must be {namespace.resource_type}")

        candidate = {key: value for key, value in data.items() if key != "resourceType"}
        try:
            self._models[namespace.resource_type].model_validate(candidate)
        except PydanticValidationError as e:
            errors.extend(_describe(namespace, error) for error in e.errors())
        return errors

    def _field_check(self, namespace: NamespaceSpec, data: Mapping[str, Any]) -> list[str]:
        return [
            f"{name} is required"
            for name in namespace.required_fields
            if data.get(name) is None
        ]

    def validate(self, resource_type: str, data: Any) -> ValidationResult:
        """Validate a candidate resource.

        Args:
            resource_type: Target resource type (e.g. 'Patient').
            data: Candidate resource as decoded JSON.

        Returns:
            ValidationResult; when valid, ``resource`` is the property map
            to store.

        Raises:
            UnsupportedResourceType: If the type has no namespace.
        """
        namespace = self._namespace(resource_type)

        try:
            errors = self._type_check(namespace, data)
            errors.extend(self._field_check(namespace, data))
        except Exception as e:
            logger.warning("Validation of %s raised %s: %s", resource_type, type(e).__name__, e)
            return ValidationResult(
                valid=False,
                errors=[str(e)],
                operation_outcome=exception_outcome(e),
            )

        if errors:
            return ValidationResult(
                valid=False,
                errors=errors,
                operation_outcome=operation_outcome(errors),
            )
        return ValidationResult(valid=True, resource=to_document(dict(data), resource_type))

    def validate_or_raise(self, resource_type: str, data: Any) -> dict[str, Any]:
        """Validate and return the accepted resource.

        Raises:
            ValidationError: With all collected messages when invalid.
        """
        result = self.validate(resource_type, data)
        if not result.valid:
            raise ValidationError(result.errors, operation_outcome=result.operation_outcome)
        return result.resource

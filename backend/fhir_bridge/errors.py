"""Exception taxonomy.

Request-path errors carry the HTTP status and OperationOutcome issue code
they are rendered with. Ingestion errors are plain exceptions recorded
against the external client before being re-raised.
"""

from typing import Any


class FhirError(Exception):
    """Base class for errors rendered as an OperationOutcome."""

    status_code = 500
    code = "exception"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(FhirError):
    """Unknown document id within a namespace."""

    status_code = 404
    code = "not-found"

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(f"{resource_type} with id {resource_id} not found")
        self.resource_type = resource_type
        self.resource_id = resource_id


class UnsupportedResourceType(FhirError):
    status_code = 404
    code = "not-supported"

    def __init__(self, resource_type: str):
        super().__init__(f"Resource type {resource_type} is not supported")
        self.resource_type = resource_type


class BadRequest(FhirError):
    """Malformed query parameter."""

    status_code = 400
    code = "invalid"


class ValidationError(FhirError):
    """Schema violation on a candidate resource.

    The message is the concatenation of all collected errors. When the
    validator built its own outcome (e.g. for an exception issue) it is kept
    so the caller can render it unchanged.
    """

    status_code = 422
    code = "invalid"

    def __init__(
        self,
        errors: list[str],
        operation_outcome: dict[str, Any] | None = None,
    ):
        super().__init__(", ".join(errors))
        self.errors = errors
        self.operation_outcome = operation_outcome


class ConstraintViolation(FhirError):
    """The property store refused a write."""

    status_code = 422
    code = "invalid"


# =============================================================================
# Ingestion
# =============================================================================


class IngestionError(Exception):
    """Base class for ingestion pipeline failures."""


class AuthorizationError(IngestionError):
    """The metric source rejected the access token after the retry budget."""


class TokenRefreshError(IngestionError):
    """The refresh-token exchange failed; nothing was persisted."""


class SourceError(IngestionError):
    """The metric source answered with a non-success status."""

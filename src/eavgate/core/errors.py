"""
Error types for the eavgate runtime.

Malformed *data* never raises: it is recorded on the object being validated.
The exceptions below are reserved for programmer and configuration errors
(unknown schemas, broken schema definitions, object lookups that cannot be
satisfied). The orchestrator converts them into an error body.
"""

from enum import StrEnum
from typing import Any


class ErrorType(StrEnum):
    """The ``type`` field of an error body."""

    BAD_REQUEST = "Bad Request"
    FORBIDDEN = "Forbidden"
    ERROR = "error"


def error_body(
    message: str,
    error_type: ErrorType,
    path: str,
    data: dict[str, Any] | list[Any] | None = None,
) -> dict[str, Any]:
    """Build the ``{message, type, path, data}`` error body returned to callers."""
    return {
        "message": message,
        "type": str(error_type),
        "path": path,
        "data": data if data is not None else {},
    }


class GatewayError(Exception):
    """Base exception for all eavgate errors."""

    error_type: ErrorType = ErrorType.BAD_REQUEST

    def __init__(
        self,
        message: str,
        path: str = "",
        data: dict[str, Any] | None = None,
    ):
        self.message = message
        self.path = path
        self.data = data or {}
        super().__init__(message)

    def to_error_body(self) -> dict[str, Any]:
        return error_body(self.message, self.error_type, self.path, self.data)


class SchemaError(GatewayError):
    """
    Raised when a schema definition is invalid.

    Examples:
    - Unknown attribute type or format
    - Object attribute without a target entity
    - Duplicate attribute names within one entity
    - Reference to an entity that is not registered
    """

    pass


class UnknownSchemaError(SchemaError):
    """Raised when no entity can be found for a name or route."""

    pass


class ObjectLookupError(GatewayError):
    """
    Raised when an object cannot be resolved for a request.

    Examples:
    - Id is not a valid uuid
    - No object with that id (or external id) exists
    - Object belongs to a different entity than the one requested
    """

    pass


class AccessDeniedError(GatewayError):
    """
    Raised when the request context may not perform an operation.

    Examples:
    - No active organization while one is required
    - Deleting an object that would orphan children that may not be orphaned
    """

    error_type = ErrorType.FORBIDDEN

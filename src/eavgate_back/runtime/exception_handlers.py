"""
Exception handlers for applications embedding the gateway.

Provides centralized conversion of gateway errors into the
``{message, type, path, data}`` error body:
- GatewayError and subclasses (400, or 403 for access errors)
- Pydantic validation errors raised while loading schema definitions (400)
"""

from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse, Response

from eavgate.core.errors import ErrorType, GatewayError, error_body
from eavgate_back.runtime.mutation_service import MutationResult


def mutation_response(result: MutationResult) -> Response:
    """Turn a ``MutationResult`` into an HTTP response."""
    if result.result is None:
        return Response(status_code=int(result.response_type))
    return JSONResponse(status_code=int(result.response_type), content=result.result)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register gateway exception handlers on a FastAPI application.

    Handles:
    - GatewayError: error body with 400, 403 when the error type is Forbidden
    - ValidationError: invalid schema definitions as a Bad Request error body

    Args:
        app: FastAPI application instance
    """
    from fastapi import Request
    from pydantic import ValidationError

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> Response:
        """Convert gateway errors to their error body."""
        status_code = 403 if exc.error_type == ErrorType.FORBIDDEN else 400
        return JSONResponse(status_code=status_code, content=exc.to_error_body())

    @app.exception_handler(ValidationError)
    async def schema_validation_handler(request: Request, exc: ValidationError) -> Response:
        """Convert pydantic errors on schema definitions to 400 Bad Request."""
        data: dict[str, Any] = {
            ".".join(str(part) for part in error["loc"]) or "schema": error["msg"]
            for error in exc.errors()
        }
        return JSONResponse(
            status_code=400,
            content=error_body(
                "Invalid schema definition", ErrorType.BAD_REQUEST, request.url.path, data
            ),
        )

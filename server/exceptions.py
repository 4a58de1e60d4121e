"""
API Error Handling Module
=========================

Every error leaves the API in the same envelope:

    {
        "success": false,
        "error": "Feature 'base' not found",
        "error_code": "NOT_FOUND",
        "details": {"resource": "feature", "id": "base"}
    }

An optional "message" carries a hint for the user (for example which
features to disable first).

This module provides:
- ErrorResponse Pydantic model describing the envelope
- APIError and subclasses for errors raised by routers
- A handler mapping domain errors (api.errors) by kind
- register_exception_handlers(app)

Error Codes:
- VALIDATION_ERROR: Input validation failed (400)
- BAD_REQUEST: Invalid request (400)
- CONFLICT: Duplicate id, dependency rule, integration conflict (400)
- NOT_FOUND: Resource not found (404)
- DATABASE_ERROR: Feature store failed (500)
- INTERNAL_ERROR: Unexpected server error (500)
"""

import logging
from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.errors import FeatureBuilderError

_logger = logging.getLogger(__name__)


# =============================================================================
# Error Response Schema
# =============================================================================


class ErrorResponse(BaseModel):
    """Envelope returned for every failed request."""

    success: bool = Field(default=False)

    error: str = Field(
        ...,
        description="Human-readable error message",
        examples=["Feature 'base' not found"]
    )

    error_code: str = Field(
        ...,
        description="Machine-readable error code for programmatic handling",
        examples=["NOT_FOUND", "CONFLICT", "VALIDATION_ERROR"]
    )

    message: str | None = Field(
        default=None,
        description="Optional hint on how to resolve the error"
    )

    details: dict[str, Any] | None = Field(
        default=None,
        description="Optional additional error details (field errors, context, etc.)"
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "success": False,
                "error": "Cannot disable feature 'base': enabled features depend on it (priority)",
                "error_code": "CONFLICT",
                "details": {"feature_id": "base", "dependent_features": ["priority"]}
            }
        }
    )


# =============================================================================
# Error Codes
# =============================================================================


class ErrorCode:
    """Standard error codes used across the API."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    DATABASE_ERROR = "DATABASE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    BAD_REQUEST = "BAD_REQUEST"


# Domain error kind -> (status, error code)
DOMAIN_ERROR_MAP: dict[str, tuple[int, str]] = {
    "not_found": (status.HTTP_404_NOT_FOUND, ErrorCode.NOT_FOUND),
    "conflict": (status.HTTP_400_BAD_REQUEST, ErrorCode.CONFLICT),
    "validation": (status.HTTP_400_BAD_REQUEST, ErrorCode.VALIDATION_ERROR),
    "persistence": (status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCode.DATABASE_ERROR),
}


# =============================================================================
# Custom Exception Classes
# =============================================================================


class APIError(Exception):
    """Base class for errors raised directly by routers."""

    def __init__(
        self,
        error_code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
        hint: str | None = None
    ):
        self.error_code = error_code
        self.message = message
        self.status_code = status_code
        self.details = details
        self.hint = hint
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error=self.message,
            error_code=self.error_code,
            message=self.hint,
            details=self.details
        )


class NotFoundError(APIError):
    """
    Resource not found (404).

    Example:
        raise NotFoundError("dependency", "priority -> base")
    """

    def __init__(
        self,
        resource: str,
        identifier: Any = None,
        message: str | None = None
    ):
        if message is None:
            if identifier is not None:
                message = f"{resource.title()} '{identifier}' not found"
            else:
                message = f"{resource.title()} not found"

        details = {"resource": resource}
        if identifier is not None:
            details["id"] = identifier

        super().__init__(
            error_code=ErrorCode.NOT_FOUND,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details=details
        )


class BadRequestError(APIError):
    """Request errors that fit no other category (400)."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            error_code=ErrorCode.BAD_REQUEST,
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details
        )


# =============================================================================
# Exception Handlers
# =============================================================================


def create_error_response(
    error_code: str,
    message: str,
    details: dict[str, Any] | None = None,
    hint: str | None = None
) -> dict[str, Any]:
    """Build the error envelope dictionary."""
    response: dict[str, Any] = {
        "success": False,
        "error": message,
        "error_code": error_code,
    }
    if hint is not None:
        response["message"] = hint
    if details is not None:
        response["details"] = details
    return response


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            error_code=exc.error_code,
            message=exc.message,
            details=exc.details,
            hint=exc.hint
        )
    )


def _domain_hint(exc: FeatureBuilderError) -> str | None:
    dependents = getattr(exc, "dependents", None)
    if dependents:
        return f"Disable or remove these features first: {', '.join(dependents)}"
    return None


async def domain_error_handler(request: Request, exc: FeatureBuilderError) -> JSONResponse:
    """Map api.errors exceptions to the envelope by their kind."""
    status_code, error_code = DOMAIN_ERROR_MAP.get(
        exc.kind,
        (status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCode.INTERNAL_ERROR),
    )

    if status_code >= 500:
        _logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
        # Store internals stay in the log
        message = "Feature store operation failed" if exc.kind == "persistence" else exc.message
    else:
        message = exc.message

    return JSONResponse(
        status_code=status_code,
        content=create_error_response(
            error_code=error_code,
            message=message,
            details=exc.details,
            hint=_domain_hint(exc)
        )
    )


async def validation_error_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """Request body/query validation failures become 400 with field details."""
    errors = []
    for error in exc.errors():
        loc = error.get("loc", [])
        field_parts = [str(p) for p in loc if p not in ("body", "query", "path")]
        field = ".".join(field_parts) if field_parts else "unknown"

        errors.append({
            "field": field,
            "message": error.get("msg", "Validation error"),
            "type": error.get("type", "value_error")
        })

    if len(errors) == 1:
        message = f"Validation error on field '{errors[0]['field']}': {errors[0]['message']}"
    else:
        message = f"Validation failed with {len(errors)} errors"

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=create_error_response(
            error_code=ErrorCode.VALIDATION_ERROR,
            message=message,
            details={"errors": errors}
        )
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException
) -> JSONResponse:
    """Wrap HTTPException (including routing 404/405) in the envelope."""
    status_to_code = {
        400: ErrorCode.BAD_REQUEST,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.CONFLICT,
        422: ErrorCode.VALIDATION_ERROR,
        500: ErrorCode.INTERNAL_ERROR,
    }
    error_code = status_to_code.get(
        exc.status_code,
        ErrorCode.BAD_REQUEST if exc.status_code < 500 else ErrorCode.INTERNAL_ERROR,
    )

    if isinstance(exc.detail, dict):
        message = exc.detail.get("message", str(exc.detail))
        details = {k: v for k, v in exc.detail.items() if k != "message"}
    else:
        message = str(exc.detail) if exc.detail else "An error occurred"
        details = None

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            error_code=error_code,
            message=message,
            details=details if details else None
        ),
        headers=getattr(exc, "headers", None)
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    _logger.exception("Unhandled exception: %s", exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            error_code=ErrorCode.INTERNAL_ERROR,
            message="An unexpected error occurred"
        )
    )


def register_exception_handlers(app) -> None:
    """
    Register all exception handlers with the FastAPI app.

    Example:
        from server.exceptions import register_exception_handlers

        app = FastAPI()
        register_exception_handlers(app)
    """
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(FeatureBuilderError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)


__all__ = [
    "ErrorResponse",
    "ErrorCode",
    "APIError",
    "NotFoundError",
    "BadRequestError",
    "create_error_response",
    "api_error_handler",
    "domain_error_handler",
    "validation_error_handler",
    "http_exception_handler",
    "generic_exception_handler",
    "register_exception_handlers",
]

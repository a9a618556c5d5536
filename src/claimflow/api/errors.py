"""Claimflow API exception handlers.

Global exception handlers:
- ClaimflowError: domain errors, rendered with their own status and code
- HTTPException: FastAPI/Starlette HTTP exceptions
- RequestValidationError / pydantic ValidationError: 400 VALIDATION_FAILED
- Exception: catch-all (fail closed, no stack traces)
"""

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from claimflow.api.error_model import (
    code_for_routing_status,
    error_response,
    error_response_for,
    request_id_for,
)
from claimflow.errors import ClaimflowError, InternalError, ValidationError

logger = logging.getLogger(__name__)


def _safe_validation_details(errors: list[Any]) -> list[dict[str, Any]]:
    """Field path and message per error; raw inputs are not echoed back."""
    details: list[dict[str, Any]] = []
    for error in errors:
        loc = error.get("loc", ())
        safe_loc = [str(part) for part in loc if part not in ("body", "query", "path")]
        details.append(
            {
                "field": ".".join(safe_loc) if safe_loc else "request",
                "message": error.get("msg", "Validation error"),
            }
        )
    return details


async def claimflow_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, ClaimflowError)

    if exc.status_code >= 500:
        logger.error("Internal error: %s", exc.message)

    return error_response_for(request, exc)


async def http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, HTTPException)

    return error_response(
        request,
        code=code_for_routing_status(exc.status_code),
        message=str(exc.detail) if exc.detail else f"HTTP {exc.status_code}",
        http_status=exc.status_code,
        details=None,
    )


async def request_validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map request and input-model validation failures to 400."""
    assert isinstance(exc, (RequestValidationError, PydanticValidationError))

    details = _safe_validation_details(list(exc.errors()))
    return error_response(
        request,
        code=ValidationError.default_code,
        message="Request validation failed",
        http_status=ValidationError.status_code,
        details={"errors": details} if details else None,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all. Returns a generic 500 and logs the exception."""
    logger.exception(
        "Unhandled exception: %s",
        type(exc).__name__,
        extra={"request_id": request_id_for(request)},
    )

    return error_response_for(request, InternalError("An internal error occurred"))

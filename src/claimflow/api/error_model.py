"""The error envelope returned for every non-2xx Claimflow response.

    {"code": "NOT_FOUND", "message": "Claim not found", "details": null,
     "request_id": "..."}

details never carries stack traces or raw input values.
"""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from claimflow.api.middleware.request_id import REQUEST_ID_HEADER, get_request_id
from claimflow.errors import ClaimflowError, InternalError, NotFoundError


class ErrorEnvelope(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None
    request_id: str


# Starlette raises HTTPException itself only for unmatched paths and methods.
ROUTING_ERROR_CODES: dict[int, str] = {
    404: NotFoundError.default_code,
    405: "METHOD_NOT_ALLOWED",
}


def code_for_routing_status(status_code: int) -> str:
    if status_code in ROUTING_ERROR_CODES:
        return ROUTING_ERROR_CODES[status_code]
    return InternalError.default_code if status_code >= 500 else "HTTP_ERROR"


def request_id_for(request: Request) -> str:
    """The id bound by RequestIdMiddleware, or a fresh one outside it."""
    request_id = getattr(request.state, "request_id", None) or get_request_id()
    return str(request_id) if request_id else str(uuid.uuid4())


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    http_status: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    envelope = ErrorEnvelope(
        code=code, message=message, details=details, request_id=request_id_for(request)
    )
    return JSONResponse(
        status_code=http_status,
        content=envelope.model_dump(mode="json"),
        headers={REQUEST_ID_HEADER: envelope.request_id},
    )


def error_response_for(request: Request, exc: ClaimflowError) -> JSONResponse:
    return error_response(
        request,
        code=exc.code,
        message=exc.message,
        http_status=exc.status_code,
        details=exc.details,
    )

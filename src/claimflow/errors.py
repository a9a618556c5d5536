"""Claimflow error taxonomy.

Every error raised by the core carries a stable HTTP status code, a
machine-readable code and a human-readable message. BusinessRule and
Validation errors also carry structured details so clients can reconstruct
the cause programmatically.

The API layer maps these to the error envelope in claimflow.api.errors.
"""

from __future__ import annotations

from typing import Any


class ClaimflowError(Exception):
    """Base class for all operational errors raised by the claim core.

    Attributes:
        status_code: HTTP status code for the error kind.
        code: Machine-readable error code.
        message: Human-readable error message.
        details: Optional structured metadata.
    """

    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Render the error as a JSON-safe dict."""
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(ClaimflowError):
    """Malformed input (400). Raised by the validation layer."""

    status_code = 400
    default_code = "VALIDATION_FAILED"


class UnauthorizedError(ClaimflowError):
    """Missing or invalid identity (401)."""

    status_code = 401
    default_code = "UNAUTHORIZED"

    def __init__(self, message: str = "Unauthorized", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ClaimflowError):
    """Role, ownership or lock-state violation (403)."""

    status_code = 403
    default_code = "FORBIDDEN"

    def __init__(self, message: str = "Access forbidden", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ClaimflowError):
    """Resource absent, or owned by another tenant (404).

    Cross-tenant lookups produce the same error as missing rows so that
    existence is never leaked across organizations.
    """

    status_code = 404
    default_code = "NOT_FOUND"

    def __init__(self, resource: str, **kwargs: Any) -> None:
        self.resource = resource
        super().__init__(f"{resource} not found", **kwargs)


class BusinessRuleError(ClaimflowError):
    """Structurally valid but policy-invalid request (422).

    Always carries an explicit code and the relevant state as details.
    """

    status_code = 422
    default_code = "BUSINESS_RULE_VIOLATION"

    def __init__(
        self,
        message: str,
        code: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)


class InternalError(ClaimflowError):
    """Unexpected, non-operational failure (500)."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal server error", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)

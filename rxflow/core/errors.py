# rxflow/core/errors.py
"""
Application error taxonomy.

Services raise these; the exception handlers in rxflow.main turn them into
`{"error": message, "code": code, "detail"?: ...}` responses with the class's
HTTP status. Endpoints never build error responses by hand.
"""
from typing import Any


class AppError(Exception):
    """Base class for all domain errors."""

    code = "APP_ERROR"
    http_status = 500

    def __init__(
        self,
        message: str,
        code: str | None = None,
        detail: Any = None,
        http_status: int | None = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.detail is not None:
            body["detail"] = self.detail
        return body


class ValidationError(AppError):
    """Malformed input or a precondition on the entity's state not met. 400."""

    code = "VALIDATION_ERROR"
    http_status = 400


class ForbiddenError(AppError):
    """Caller's role may not perform the action. 403."""

    code = "FORBIDDEN"
    http_status = 403


class NotFoundError(AppError):
    """Entity missing, or owned by another clinic. 404."""

    code = "NOT_FOUND"
    http_status = 404


class ConflictError(AppError):
    """Entity is terminal, already claimed, or an idempotency key was reused. 409."""

    code = "CONFLICT"
    http_status = 409


class InternalError(AppError):
    code = "INTERNAL_ERROR"
    http_status = 500


class ExternalServiceError(AppError):
    """A downstream HTTP dependency failed after retries."""

    code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502

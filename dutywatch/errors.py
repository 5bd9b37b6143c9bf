from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


class ConflictError(ApiError):
    def __init__(self, message: str, *, code: str = "CONFLICT", details: dict[str, Any] | None = None):
        super().__init__(409, code, message, details)


class NotFoundError(ApiError):
    def __init__(self, message: str, *, code: str = "NOT_FOUND", details: dict[str, Any] | None = None):
        super().__init__(404, code, message, details)


class ForbiddenError(ApiError):
    def __init__(self, message: str = "Forbidden.", *, code: str = "FORBIDDEN", details: dict[str, Any] | None = None):
        super().__init__(403, code, message, details)


class InvalidStateError(ApiError):
    def __init__(self, message: str, *, code: str = "INVALID_STATE", details: dict[str, Any] | None = None):
        super().__init__(409, code, message, details)


class ValidationError(ApiError):
    """Expected, user-facing rejection of an input by a domain rule."""

    def __init__(self, message: str, *, code: str = "VALIDATION_ERROR", details: dict[str, Any] | None = None):
        super().__init__(422, code, message, details)


class EditWindowExpiredError(ValidationError):
    def __init__(self, *, window_minutes: int):
        super().__init__(
            f"Hourly logs can only be edited within {window_minutes} minutes of submission.",
            code="EDIT_WINDOW_EXPIRED",
            details={"window_minutes": window_minutes},
        )


class BreakLimitExceededError(ValidationError):
    def __init__(self, *, break_minutes: int, max_break_minutes: int):
        super().__init__(
            f"Break exceeds maximum allowed duration of {max_break_minutes} minutes.",
            code="BREAK_LIMIT_EXCEEDED",
            details={"break_minutes": break_minutes, "max_break_minutes": max_break_minutes},
        )


class AccountSuspendedError(ForbiddenError):
    def __init__(self, suspended_until: datetime):
        super().__init__(
            f"Your account is suspended until {suspended_until.date().isoformat()}",
            code="ACCOUNT_SUSPENDED",
            details={"suspended_until": suspended_until.isoformat()},
        )
        self.suspended_until = suspended_until


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    payload: dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=status_code, content=payload)

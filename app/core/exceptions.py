"""HTTP-facing error hierarchy.

Every error rendered to a caller carries a stable machine-readable code so
clients can branch on it without parsing messages.
"""

from __future__ import annotations

from typing import Any


class AppError(Exception):
    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, *, error_code: str | None = None, extra: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.extra = extra or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "errorCode": self.error_code, **self.extra}


class UnauthorizedError(AppError):
    status_code = 401
    error_code = "UNAUTHORIZED"


class ServiceUnavailableError(AppError):
    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"

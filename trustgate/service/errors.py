from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for engine exceptions that a routing layer maps to responses.

    Each subclass carries an HTTP status_code and a stable error_code:
    - validation_error (400)
    - forbidden (403)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Caller passed arguments the engine cannot act on (400)."""
    status_code = 400
    error_code = "validation_error"


class ForbiddenError(ServiceError):
    """Access denied by a verification requirement (403)."""
    status_code = 403
    error_code = "forbidden"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ForbiddenError",
]

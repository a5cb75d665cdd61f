from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every failure carries a stable error kind plus a human-readable message:
    - invalid_argument (400)
    - unauthorized (401)
    - permission_denied (403)
    - not_found (404)
    - already_exists (409)
    - internal (500)
    - delivery_failed (500)
    """

    status_code: int = 400
    error_code: str = "invalid_argument"

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


class InvalidArgumentError(ServiceError):
    """Malformed input, wrong password, expired code or mismatched confirmation (400)."""
    status_code = 400
    error_code = "invalid_argument"


class AuthenticationError(ServiceError):
    """Bearer credential missing, invalid or revoked (401)."""
    status_code = 401
    error_code = "unauthorized"


class PermissionDeniedError(ServiceError):
    """Inactive provider or disabled feature (403)."""
    status_code = 403
    error_code = "permission_denied"


class NotFoundError(ServiceError):
    """User, provider or code absent (404)."""
    status_code = 404
    error_code = "not_found"


class AlreadyExistsError(ServiceError):
    """Uniqueness violation, e.g. duplicate registration (409)."""
    status_code = 409
    error_code = "already_exists"


class InternalError(ServiceError):
    """Persistence, hashing, signing or gateway failure (500)."""
    status_code = 500
    error_code = "internal"


class DeliveryFailedError(InternalError):
    """State change committed but the notification could not be delivered.

    ``detail`` always carries ``committed=True`` so callers can tell this apart
    from a failure that left nothing behind.
    """

    error_code = "delivery_failed"

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail={**(detail or {}), "committed": True})


__all__ = [
    "ServiceError",
    "InvalidArgumentError",
    "AuthenticationError",
    "PermissionDeniedError",
    "NotFoundError",
    "AlreadyExistsError",
    "InternalError",
    "DeliveryFailedError",
]

from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when an insert or update breaks a uniqueness or FK constraint.

    ``field`` names the colliding column group (``email``, ``provider_link``,
    ``admin_email``...) so callers can tell which invariant failed.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.field = field or self.detail.get("field")


__all__ = ["ConstraintViolation"]

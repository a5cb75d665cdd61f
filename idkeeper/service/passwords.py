from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError, InvalidHash, VerificationError, VerifyMismatchError

from idkeeper.logging import get_logger
from idkeeper.service.errors import InternalError

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class SecretHasher:
    """One-way password hashing with argon2id.

    Verification goes through argon2's own constant-time comparison; any
    malformed or mismatching hash simply verifies as False.
    """

    def __init__(
        self,
        *,
        time_cost: Optional[int] = None,
        memory_cost: Optional[int] = None,
    ) -> None:
        kwargs = {}
        if time_cost is not None:
            kwargs["time_cost"] = time_cost
        if memory_cost is not None:
            kwargs["memory_cost"] = memory_cost
        self._hasher = PasswordHasher(type=Type.ID, **kwargs)

    def hash(self, secret: str) -> str:
        try:
            return self._hasher.hash(secret)
        except HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise InternalError("failed to hash password") from exc

    def verify(self, stored_hash: Optional[str], candidate: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, candidate)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

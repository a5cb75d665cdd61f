"""Time-boxed single-use codes.

Email verification, password reset and MFA all follow the same lifecycle:
a random code is generated, its SHA-256 digest is persisted against the
owning user, the cleartext goes out through the notification gateway, and
the first successful redemption deletes the record.  ``SingleUseCodes``
implements that lifecycle once and is parameterized by a ``CodePolicy``.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from idkeeper.logging import get_logger
from idkeeper.service.email import NotificationKind, Notifier
from idkeeper.service.errors import (
    DeliveryFailedError,
    InvalidArgumentError,
    NotFoundError,
)
from idkeeper.storage.models import CodeKind, VerificationCode

logger = get_logger(__name__)


def generate_code(nbytes: int = 16) -> str:
    """Return a URL-safe random code (22 characters for the default 16 bytes)."""
    return secrets.token_urlsafe(nbytes)


def generate_state() -> str:
    """Anti-CSRF state for OAuth authorization redirects."""
    return secrets.token_urlsafe(24)


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


class CodeStore(Protocol):
    def add_verification_code(
        self, user_id: str, kind: CodeKind, code_hash: str, created_at: datetime
    ) -> VerificationCode: ...

    def get_verification_code(
        self, kind: CodeKind, code_hash: str
    ) -> Optional[VerificationCode]: ...

    def delete_verification_code(self, kind: CodeKind, code_hash: str) -> bool: ...

    def delete_user_codes(self, user_id: str, kind: CodeKind) -> int: ...


@dataclass(frozen=True)
class CodePolicy:
    kind: CodeKind
    ttl: timedelta
    notification: NotificationKind
    nbytes: int = 16


class SingleUseCodes:
    """Issue, redeem and consume codes for one flow."""

    def __init__(
        self,
        store: CodeStore,
        policy: CodePolicy,
        *,
        clock: Callable[[], datetime],
        single_outstanding: bool = False,
    ) -> None:
        self.store = store
        self.policy = policy
        self._clock = clock
        self.single_outstanding = single_outstanding

    @property
    def kind(self) -> CodeKind:
        return self.policy.kind

    def issue(self, user_id: str) -> str:
        """Persist a fresh code for ``user_id`` and return its cleartext."""
        code = generate_code(self.policy.nbytes)
        if self.single_outstanding:
            dropped = self.store.delete_user_codes(user_id, self.kind)
            if dropped:
                logger.info(
                    "codes_superseded", user_id=user_id, kind=self.kind.value, count=dropped
                )
        self.store.add_verification_code(
            user_id, self.kind, hash_code(code), self._clock()
        )
        logger.info("code_issued", user_id=user_id, kind=self.kind.value)
        return code

    def redeem(self, code: str) -> VerificationCode:
        """Look up an outstanding code and check its age without consuming it.

        Raises:
            NotFoundError: no outstanding code matches
            InvalidArgumentError: the code is older than the policy window
        """
        if not code:
            raise InvalidArgumentError("code is required")
        record = self.store.get_verification_code(self.kind, hash_code(code))
        if record is None:
            logger.warning("code_not_found", kind=self.kind.value)
            raise NotFoundError("code not found")
        if record.is_expired(self._clock(), self.policy.ttl.total_seconds()):
            logger.warning("code_expired", kind=self.kind.value, user_id=record.user_id)
            raise InvalidArgumentError("code is expired")
        return record

    def consume(self, record: VerificationCode) -> None:
        """Delete a redeemed code; only the caller whose delete removes it wins.

        Raises:
            NotFoundError: another redemption consumed the code first
        """
        if not self.store.delete_verification_code(record.kind, record.code_hash):
            logger.warning("code_already_consumed", kind=self.kind.value, user_id=record.user_id)
            raise NotFoundError("code not found")

    def deliver(
        self,
        notifier: Notifier,
        recipient: str,
        code: str,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        """Hand the cleartext code to the notification gateway.

        Called after the code is committed; a failed delivery leaves the code
        in place and raises ``DeliveryFailedError``.
        """
        if notifier.deliver(recipient, self.policy.notification, code):
            return
        logger.error("code_delivery_failed", kind=self.kind.value)
        raise DeliveryFailedError(
            f"{self.policy.notification.value} email failed to send",
            detail=detail,
        )

from __future__ import annotations

from typing import Optional, Protocol

from idkeeper.logging import get_logger
from idkeeper.service.errors import (
    AlreadyExistsError,
    InternalError,
    InvalidArgumentError,
    PermissionDeniedError,
)
from idkeeper.service.providers import ExternalIdentity
from idkeeper.storage.errors import ConstraintViolation
from idkeeper.storage.models import AuthProvider, UserIdentity

logger = get_logger(__name__)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class IdentityStore(Protocol):
    def get_auth_provider_by_name(self, name: str) -> Optional[AuthProvider]: ...

    def get_external_user(self, provider: str, email: str) -> Optional[UserIdentity]: ...

    def create_external_user(
        self, name: str, email: str, provider: str, provider_uid: str
    ) -> UserIdentity: ...


class ExternalIdentityReconciler:
    """Find-or-create the local account for a provider-vouched identity."""

    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    def require_active_provider(self, provider: str) -> AuthProvider:
        record = self.store.get_auth_provider_by_name(provider)
        if not record or not record.active:
            logger.warning("external_login_provider_disabled", provider=provider)
            raise PermissionDeniedError("Auth provider is not enabled")
        return record

    def reconcile(self, identity: ExternalIdentity) -> UserIdentity:
        """Return the existing account for (provider, email) or create one.

        New accounts start verified since the provider vouched for the address.
        When two callbacks race to create the same account, the loser's insert
        fails on a uniqueness constraint and the winner's row is returned.
        """
        provider = (identity.provider or "").strip().lower()
        email = normalize_email(identity.email)
        if not email or not identity.provider_uid:
            raise InvalidArgumentError("provider identity requires an email and id")
        self.require_active_provider(provider)

        existing = self.store.get_external_user(provider, email)
        if existing:
            logger.info("external_login_existing", user_id=existing.id, provider=provider)
            return existing

        name = (identity.name or "").strip() or email.split("@")[0]
        try:
            created = self.store.create_external_user(
                name, email, provider, str(identity.provider_uid)
            )
        except ConstraintViolation as exc:
            winner = self.store.get_external_user(provider, email)
            if winner:
                logger.info("external_login_race_resolved", user_id=winner.id, provider=provider)
                return winner
            logger.warning("external_login_conflict", provider=provider, field=exc.field)
            if exc.field == "email":
                raise AlreadyExistsError("email already registered") from exc
            if exc.field == "provider_link":
                raise AlreadyExistsError("provider identity already linked") from exc
            raise InternalError("failed to create external user") from exc

        logger.info("external_user_created", user_id=created.id, provider=provider)
        return created

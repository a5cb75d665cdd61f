from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CodeKind(str, Enum):
    """Flows that hand out time-boxed single-use codes."""

    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    MFA = "mfa"


@dataclass
class User:
    id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class EmailRecord:
    user_id: str
    email: str
    is_verified: bool = False


@dataclass
class LocalCredential:
    user_id: str
    password_hash: str
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ProviderLink:
    user_id: str
    provider: str
    provider_uid: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuthProvider:
    id: int
    name: str
    client_id: Optional[str] = None
    # Ciphertext produced by the vault; never the cleartext secret
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    active: bool = False
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)


@dataclass
class VerificationCode:
    user_id: str
    kind: CodeKind
    code_hash: str
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime, ttl_seconds: float) -> bool:
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (now - created).total_seconds() > ttl_seconds


@dataclass
class RevocationEntry:
    user_id: str
    jti: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Admin:
    id: str
    email: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserIdentity:
    """User joined with its email record and, when present, credential or provider link."""

    id: str
    name: str
    email: str
    verified: bool = False
    provider: Optional[str] = None
    password_hash: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_standard(self) -> bool:
        return self.password_hash is not None


# Providers seeded on a fresh store; credentials are filled in by admins
DEFAULT_AUTH_PROVIDERS = ("google", "github")

MFA_SETTING = "mfa"
SETTING_ENABLED = "enabled"
SETTING_DISABLED = "disabled"

from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from idkeeper.storage.models import AuthProvider, UserIdentity

_VALID_ERROR_CODES = frozenset({
    "invalid_argument",
    "unauthorized",
    "permission_denied",
    "not_found",
    "already_exists",
    "internal",
    "delivery_failed",
})


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error kind")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class SignupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    email: str
    password: str

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        cleaned = _normalize_unicode(value).strip()
        if not cleaned:
            raise ValueError("name is required")
        return cleaned

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class CodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=128)


class VerifyEmailRequest(BaseModel):
    """Either an emailed code or a signed verification token."""

    token: str = Field(..., min_length=1, max_length=2048)


class PasswordResetConfirmRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=128)
    password: str
    password_confirmation: str

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ExternalLoginRequest(BaseModel):
    provider: str = Field(..., min_length=1, max_length=64)
    email: str
    provider_uid: str = Field(..., min_length=1, max_length=256)
    name: str = Field(default="", max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_external_email(cls, value: str) -> str:
        return _validate_email(value)


class RevocationRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    jti: str = Field(..., min_length=1, max_length=64)


class AdminCredentialsRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)


class AuthProviderCredentialsRequest(BaseModel):
    client_id: str = Field(..., min_length=1, max_length=512)
    client_secret: str = Field(..., min_length=1, max_length=1024)
    redirect_uri: str = Field(..., min_length=1, max_length=2048)

    @model_validator(mode="after")
    def _strip_values(self):
        self.client_id = self.client_id.strip()
        self.redirect_uri = self.redirect_uri.strip()
        return self


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    verified: bool
    provider: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_identity(cls, identity: UserIdentity) -> "UserResponse":
        return cls(
            id=identity.id,
            name=identity.name,
            email=identity.email,
            verified=identity.verified,
            provider=identity.provider,
            created_at=identity.created_at,
        )


class SessionResponse(BaseModel):
    user: UserResponse
    mfa_required: bool = False
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_at: Optional[datetime] = None


class AuthProviderResponse(BaseModel):
    id: int
    name: str
    active: bool
    configured: bool
    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_provider(cls, provider: AuthProvider) -> "AuthProviderResponse":
        # client_secret stays server-side
        return cls(
            id=provider.id,
            name=provider.name,
            active=provider.active,
            configured=provider.is_configured,
            client_id=provider.client_id,
            redirect_uri=provider.redirect_uri,
            updated_at=provider.updated_at,
        )


class AuthorizationUrlResponse(BaseModel):
    provider: str
    url: str
    state: str
    expires_at: datetime


class AdminTokenResponse(BaseModel):
    admin_id: str
    email: str
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime

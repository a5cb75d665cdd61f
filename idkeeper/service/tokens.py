from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from idkeeper.config import Settings
from idkeeper.logging import get_logger
from idkeeper.service.errors import InternalError
from idkeeper.storage.models import Admin, UserIdentity

logger = get_logger(__name__)

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_EMAIL_VERIFICATION = "email_verification"
TOKEN_TYPE_ADMIN = "admin"


@dataclass
class IssuedToken:
    token: str
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass
class SessionClaims:
    user_id: str
    name: str
    email: str
    verified: bool
    provider: Optional[str]
    jti: str
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Optional["SessionClaims"]:
        user = payload.get("user")
        if not isinstance(user, dict) or not user.get("id") or not payload.get("jti"):
            return None
        return cls(
            user_id=str(user["id"]),
            name=user.get("name") or "",
            email=user.get("email") or "",
            verified=bool(user.get("verified")),
            provider=user.get("provider"),
            jti=str(payload["jti"]),
            issued_at=datetime.fromtimestamp(payload.get("iat", 0), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )


class TokenIssuer:
    """HS256 signed session, email-verification and admin tokens."""

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        leeway: timedelta = timedelta(seconds=0),
    ) -> None:
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._leeway = leeway

    def _secret(self) -> bytes:
        if not self.settings.jwt_secret:
            raise InternalError("token signing secret is not configured")
        return self.settings.jwt_secret.encode()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret(), signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(
        self, token: str, *, token_type: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        """Return the payload if signature, issuer, audience and expiry check out."""
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted; anything else is an algorithm confusion attempt
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            logger.warning("jwt_signature_mismatch")
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        if token_type and payload.get("token_type") != token_type:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        now_ts = self._clock().timestamp()
        if exp_ts <= now_ts - self._leeway.total_seconds():
            return None
        return payload

    def _base_claims(self, token_type: str, ttl: timedelta) -> tuple[dict[str, Any], datetime, datetime]:
        issued_at = self._clock()
        expires_at = issued_at + ttl
        claims = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "token_type": token_type,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return claims, issued_at, expires_at

    def issue_session_token(self, identity: UserIdentity) -> IssuedToken:
        claims, issued_at, expires_at = self._base_claims(
            TOKEN_TYPE_ACCESS, timedelta(hours=self.settings.session_token_ttl_hours)
        )
        user_claims: dict[str, Any] = {
            "id": identity.id,
            "name": identity.name,
            "email": identity.email,
            "verified": identity.verified,
        }
        if identity.provider:
            user_claims["provider"] = identity.provider
        jti = str(uuid.uuid4())
        claims.update({"sub": identity.id, "jti": jti, "user": user_claims})
        return IssuedToken(self.encode(claims), jti, issued_at, expires_at)

    def decode_session_token(self, token: str) -> Optional[SessionClaims]:
        payload = self.decode(token, token_type=TOKEN_TYPE_ACCESS)
        if payload is None:
            return None
        return SessionClaims.from_payload(payload)

    def issue_verification_token(self, user_id: str) -> str:
        claims, _, _ = self._base_claims(
            TOKEN_TYPE_EMAIL_VERIFICATION,
            timedelta(hours=self.settings.verification_token_ttl_hours),
        )
        claims["id"] = user_id
        return self.encode(claims)

    def decode_verification_token(self, token: str) -> Optional[str]:
        payload = self.decode(token, token_type=TOKEN_TYPE_EMAIL_VERIFICATION)
        if payload is None or not payload.get("id"):
            return None
        return str(payload["id"])

    def issue_admin_token(self, admin: Admin) -> IssuedToken:
        claims, issued_at, expires_at = self._base_claims(
            TOKEN_TYPE_ADMIN, timedelta(hours=self.settings.admin_token_ttl_hours)
        )
        jti = str(uuid.uuid4())
        claims.update(
            {"sub": admin.id, "jti": jti, "admin": {"id": admin.id, "email": admin.email}}
        )
        return IssuedToken(self.encode(claims), jti, issued_at, expires_at)

    def decode_admin_token(self, token: str) -> Optional[dict[str, Any]]:
        payload = self.decode(token, token_type=TOKEN_TYPE_ADMIN)
        if payload is None or not isinstance(payload.get("admin"), dict):
            return None
        return payload["admin"]


def looks_like_token(value: str) -> bool:
    """Signed tokens have three dot-separated segments; codes never contain dots."""
    return isinstance(value, str) and value.count(".") == 2

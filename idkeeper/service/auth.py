from __future__ import annotations

import contextlib
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, ContextManager, List, Optional, Protocol

from idkeeper.config import Settings, VerificationMode
from idkeeper.logging import get_logger
from idkeeper.service.codes import CodePolicy, CodeStore, SingleUseCodes, generate_state
from idkeeper.service.email import NotificationKind, Notifier
from idkeeper.service.errors import (
    AlreadyExistsError,
    AuthenticationError,
    DeliveryFailedError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from idkeeper.service.identity import ExternalIdentityReconciler, normalize_email
from idkeeper.service.passwords import SecretHasher
from idkeeper.service.providers import (
    ExternalIdentity,
    OAuthClient,
    OAuthExchangeError,
    get_strategy,
    validate_redirect_uri,
)
from idkeeper.service.revocation import RevocationLedger
from idkeeper.service.tokens import SessionClaims, TokenIssuer, looks_like_token
from idkeeper.service.vault import CredentialVault, VaultError
from idkeeper.storage.errors import ConstraintViolation
from idkeeper.storage.models import (
    MFA_SETTING,
    SETTING_DISABLED,
    SETTING_ENABLED,
    Admin,
    AuthProvider,
    CodeKind,
    RevocationEntry,
    UserIdentity,
)
from idkeeper.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class CredentialStore(CodeStore, Protocol):
    """Persistence operations the orchestrator relies on.

    Lookups return ``None`` when nothing matches; uniqueness failures raise
    ``ConstraintViolation``. ``transaction()`` groups calls so they commit or
    roll back together.
    """

    def transaction(self) -> ContextManager[Any]: ...

    def create_standard_user(
        self, name: str, email: str, password_hash: str
    ) -> UserIdentity: ...

    def create_external_user(
        self, name: str, email: str, provider: str, provider_uid: str
    ) -> UserIdentity: ...

    def get_standard_user_by_email(self, email: str) -> Optional[UserIdentity]: ...

    def get_external_user(self, provider: str, email: str) -> Optional[UserIdentity]: ...

    def get_user_identity(self, user_id: str) -> Optional[UserIdentity]: ...

    def list_users(self, limit: int = 100) -> List[UserIdentity]: ...

    def mark_email_verified(self, user_id: str) -> bool: ...

    def save_password(self, user_id: str, password_hash: str) -> None: ...

    def purge_codes_before(self, kind: CodeKind, cutoff: datetime) -> int: ...

    def add_revocation(self, user_id: str, jti: str) -> RevocationEntry: ...

    def is_token_revoked(self, user_id: str, jti: str) -> bool: ...

    def list_auth_providers(self) -> List[AuthProvider]: ...

    def get_auth_provider(self, provider_id: int) -> Optional[AuthProvider]: ...

    def get_auth_provider_by_name(self, name: str) -> Optional[AuthProvider]: ...

    def update_auth_provider_credentials(
        self, provider_id: int, client_id: str, client_secret: str, redirect_uri: str
    ) -> Optional[AuthProvider]: ...

    def set_auth_provider_active(
        self, provider_id: int, active: bool
    ) -> Optional[AuthProvider]: ...

    def get_setting(self, name: str) -> Optional[str]: ...

    def set_setting(self, name: str, value: str) -> None: ...

    def create_admin(self, email: str, password_hash: str) -> Admin: ...

    def get_admin_by_email(self, email: str) -> Optional[Admin]: ...


@dataclass
class RegistrationResult:
    user: UserIdentity
    verification_mode: VerificationMode


@dataclass
class LoginResult:
    user: UserIdentity
    token: Optional[str] = None
    jti: Optional[str] = None
    expires_at: Optional[datetime] = None
    mfa_required: bool = False


@dataclass
class AdminLoginResult:
    admin: Admin
    token: str
    expires_at: datetime


@dataclass
class ProviderCredentials:
    provider: str
    client_id: str
    client_secret: str
    redirect_uri: str


@dataclass
class AuthorizationRequest:
    provider: str
    url: str
    state: str
    expires_at: datetime


class AuthService:
    """Registration, login, MFA, verification, reset and provider administration.

    Holds no per-user state between calls; everything durable goes through the
    store. Notification and vault calls happen outside store transactions, so
    a failed delivery never undoes a committed change.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: Optional[RedisCache | SyncRedisCache],
        settings: Settings,
        *,
        notifier: Notifier,
        vault: CredentialVault,
        hasher: Optional[SecretHasher] = None,
        tokens: Optional[TokenIssuer] = None,
        ledger: Optional[RevocationLedger] = None,
        oauth_client: Optional[OAuthClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.notifier = notifier
        self.vault = vault
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.hasher = hasher or SecretHasher()
        self.tokens = tokens or TokenIssuer(settings, clock=self._clock)
        self.session_ttl = timedelta(hours=settings.session_token_ttl_hours)
        self.ledger = ledger or RevocationLedger(store, cache, session_ttl=self.session_ttl)
        self.oauth_client = oauth_client or OAuthClient()
        self.reconciler = ExternalIdentityReconciler(store)
        self.logger = logger

        single = settings.single_outstanding_code
        self.email_codes = SingleUseCodes(
            store,
            CodePolicy(
                CodeKind.EMAIL_VERIFICATION,
                timedelta(hours=settings.email_code_ttl_hours),
                NotificationKind.EMAIL_VERIFICATION,
            ),
            clock=self._now,
            single_outstanding=single,
        )
        self.reset_codes = SingleUseCodes(
            store,
            CodePolicy(
                CodeKind.PASSWORD_RESET,
                timedelta(hours=settings.reset_code_ttl_hours),
                NotificationKind.PASSWORD_RESET,
            ),
            clock=self._now,
            single_outstanding=single,
        )
        self.mfa_codes = SingleUseCodes(
            store,
            CodePolicy(
                CodeKind.MFA,
                timedelta(minutes=settings.mfa_code_ttl_minutes),
                NotificationKind.MFA_CODE,
            ),
            clock=self._now,
            single_outstanding=single,
        )

        # In-process OAuth state used when no Redis cache is configured
        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, tuple[str, datetime]] = {}

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return self._clock()

    @contextlib.contextmanager
    def _with_state_lock(self):
        with self._state_lock:
            yield

    # MFA setting
    def _mfa_active(self, override: Optional[bool] = None) -> bool:
        if override is not None:
            return override
        return self.get_mfa()

    def get_mfa(self) -> bool:
        value = self.store.get_setting(MFA_SETTING)
        if value is None:
            return bool(self.settings.enable_mfa)
        return value == SETTING_ENABLED

    def toggle_mfa(self) -> bool:
        enabled = not self.get_mfa()
        self.store.set_setting(MFA_SETTING, SETTING_ENABLED if enabled else SETTING_DISABLED)
        self.logger.info("mfa_setting_toggled", enabled=enabled)
        return enabled

    # sessions
    def _issue_session(self, user: UserIdentity) -> LoginResult:
        issued = self.tokens.issue_session_token(user)
        self.logger.info("session_issued", user_id=user.id, provider=user.provider)
        return LoginResult(
            user=user,
            token=issued.token,
            jti=issued.jti,
            expires_at=issued.expires_at,
        )

    # registration and login
    async def register_user(self, name: str, email: str, password: str) -> RegistrationResult:
        if not self.settings.allow_signup:
            raise PermissionDeniedError("signup is disabled")
        email = normalize_email(email)
        name = (name or "").strip()
        if not email:
            raise InvalidArgumentError("email is required")
        if not password:
            raise InvalidArgumentError("password is required")
        if not name:
            raise InvalidArgumentError("name is required")

        if self.store.get_standard_user_by_email(email):
            self.logger.info("register_duplicate_email")
            raise AlreadyExistsError("email already registered")

        password_hash = self.hasher.hash(password)
        try:
            user = self.store.create_standard_user(name, email, password_hash)
        except ConstraintViolation as exc:
            self.logger.info("register_constraint_violation", field=exc.field)
            raise AlreadyExistsError("email already registered") from exc
        self.logger.info("user_registered", user_id=user.id)

        await self._send_email_verification(user)
        return RegistrationResult(
            user=user, verification_mode=self.settings.email_verification_mode
        )

    async def _send_email_verification(self, user: UserIdentity) -> None:
        detail = {"user_id": user.id}
        if self.settings.email_verification_mode == VerificationMode.TOKEN:
            token = self.tokens.issue_verification_token(user.id)
            if not self.notifier.deliver(
                user.email, NotificationKind.EMAIL_VERIFICATION, token
            ):
                self.logger.error("verification_token_delivery_failed", user_id=user.id)
                raise DeliveryFailedError(
                    "email_verification email failed to send", detail=detail
                )
            return
        code = self.email_codes.issue(user.id)
        self.email_codes.deliver(self.notifier, user.email, code, detail=detail)

    async def login_user(
        self,
        email: str,
        password: str,
        *,
        mfa_enabled: Optional[bool] = None,
    ) -> LoginResult:
        email = normalize_email(email)
        if not email or not password:
            raise InvalidArgumentError("email and password are required")
        user = self.store.get_standard_user_by_email(email)
        if not user:
            self.logger.warning("login_unknown_user")
            raise NotFoundError("user not found")
        if not self.hasher.verify(user.password_hash, password):
            self.logger.warning("login_password_mismatch", user_id=user.id)
            raise InvalidArgumentError("incorrect password")

        if self.hasher.needs_rehash(user.password_hash):
            self.store.save_password(user.id, self.hasher.hash(password))
            self.logger.info("password_rehashed", user_id=user.id)

        if not self._mfa_active(mfa_enabled):
            return self._issue_session(user)

        code = self.mfa_codes.issue(user.id)
        self.mfa_codes.deliver(self.notifier, user.email, code, detail={"user_id": user.id})
        self.logger.info("mfa_challenge_issued", user_id=user.id)
        return LoginResult(user=user, mfa_required=True)

    async def confirm_mfa(self, code: str) -> LoginResult:
        record = self.mfa_codes.redeem(code)
        self.mfa_codes.consume(record)
        user = self.store.get_user_identity(record.user_id)
        if not user:
            raise NotFoundError("user not found")
        self.logger.info("mfa_confirmed", user_id=user.id)
        return self._issue_session(user)

    # email verification
    async def request_email_verification(self, email: str) -> UserIdentity:
        email = normalize_email(email)
        if not email:
            raise InvalidArgumentError("email is required")
        user = self.store.get_standard_user_by_email(email)
        if not user:
            raise NotFoundError("user not found")
        if user.verified:
            raise InvalidArgumentError("user is already verified")
        await self._send_email_verification(user)
        return user

    async def verify_email(self, token_or_code: str) -> UserIdentity:
        """Accept either a signed verification token or an emailed code."""
        value = (token_or_code or "").strip()
        if not value:
            raise InvalidArgumentError("code is required")

        if looks_like_token(value):
            user_id = self.tokens.decode_verification_token(value)
            if not user_id:
                self.logger.warning("email_verification_token_invalid")
                raise InvalidArgumentError("invalid token")
            if not self.store.mark_email_verified(user_id):
                raise NotFoundError("user not found")
        else:
            record = self.email_codes.redeem(value)
            user_id = record.user_id
            with self.store.transaction():
                if not self.store.mark_email_verified(user_id):
                    raise NotFoundError("user not found")
                self.email_codes.consume(record)

        user = self.store.get_user_identity(user_id)
        if not user:
            raise NotFoundError("user not found")
        self.logger.info("email_verified", user_id=user.id)
        return user

    # password reset
    async def request_password_reset(self, email: str) -> None:
        email = normalize_email(email)
        if not email:
            raise InvalidArgumentError("email is required")
        user = self.store.get_standard_user_by_email(email)
        if not user:
            raise NotFoundError("user not found")
        code = self.reset_codes.issue(user.id)
        self.reset_codes.deliver(self.notifier, user.email, code, detail={"user_id": user.id})

    async def confirm_password_reset(
        self, code: str, password: str, password_confirmation: str
    ) -> UserIdentity:
        if not code:
            raise InvalidArgumentError("code is required")
        if password != password_confirmation:
            raise InvalidArgumentError("passwords do not match")
        if not password:
            raise InvalidArgumentError("password is required")
        record = self.reset_codes.redeem(code)

        password_hash = self.hasher.hash(password)
        try:
            with self.store.transaction():
                self.store.save_password(record.user_id, password_hash)
                self.reset_codes.consume(record)
        except ConstraintViolation as exc:
            raise NotFoundError("user not found") from exc
        self.logger.info("password_reset_completed", user_id=record.user_id)
        user = self.store.get_user_identity(record.user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def purge_expired_codes(self) -> int:
        """Delete codes past their window; they would be rejected at use anyway."""
        now = self._now()
        purged = 0
        for codes in (self.email_codes, self.reset_codes, self.mfa_codes):
            purged += self.store.purge_codes_before(codes.kind, now - codes.policy.ttl)
        if purged:
            self.logger.info("expired_codes_purged", count=purged)
        return purged

    # external identities
    async def external_login(
        self, provider: str, email: str, provider_uid: str, name: str = ""
    ) -> LoginResult:
        user = self.reconciler.reconcile(
            ExternalIdentity(
                provider=provider, provider_uid=provider_uid, email=email, name=name
            )
        )
        return self._issue_session(user)

    async def get_authorization_url(self, provider: str) -> AuthorizationRequest:
        provider = (provider or "").strip().lower()
        strategy = get_strategy(provider)
        record = self.store.get_auth_provider_by_name(provider)
        if not strategy or not record:
            raise NotFoundError("Auth provider not found")
        if not record.client_id or not record.redirect_uri:
            raise InvalidArgumentError("Client ID or redirect URL are not set")
        if not record.active:
            raise PermissionDeniedError("Auth provider is not active")

        state = generate_state()
        expires_at = self._now() + timedelta(minutes=self.settings.oauth_state_ttl_minutes)
        if self.cache:
            await self.cache.set_oauth_state(state, provider, expires_at)
        else:
            with self._with_state_lock():
                self._oauth_states[state] = (provider, expires_at)
        url = strategy.authorization_url(record.client_id, record.redirect_uri, state)
        self.logger.info("oauth_authorization_started", provider=provider)
        return AuthorizationRequest(
            provider=provider, url=url, state=state, expires_at=expires_at
        )

    async def _pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        if self.cache:
            try:
                return await self.cache.pop_oauth_state(state)
            except Exception as exc:
                self.logger.error("pop_oauth_state_failed", error=str(exc))
                raise InternalError("oauth state lookup failed") from exc
        with self._with_state_lock():
            return self._oauth_states.pop(state, None)

    def cleanup_expired_states(self) -> int:
        """Drop expired in-process OAuth states. Redis expires its own keys."""
        now = self._now()
        with self._with_state_lock():
            expired = [s for s, (_, exp) in self._oauth_states.items() if exp <= now]
            for state in expired:
                self._oauth_states.pop(state, None)
        if expired:
            self.logger.info("auth_state_cleanup", oauth=len(expired))
        return len(expired)

    async def complete_oauth(self, provider: str, code: str, state: str) -> LoginResult:
        provider = (provider or "").strip().lower()
        if not code or not state:
            raise InvalidArgumentError("code and state are required")
        stored = await self._pop_oauth_state(state)
        if not stored:
            self.logger.warning("oauth_state_unknown", provider=provider)
            raise InvalidArgumentError("invalid or expired oauth state")
        stored_provider, expires_at = stored
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if stored_provider != provider or expires_at <= self._now():
            self.logger.warning("oauth_state_rejected", provider=provider)
            raise InvalidArgumentError("invalid or expired oauth state")

        strategy = get_strategy(provider)
        if not strategy:
            raise NotFoundError("Auth provider not found")
        credentials = self.get_auth_provider_credentials(provider)
        try:
            identity = await self.oauth_client.exchange_code(
                strategy,
                client_id=credentials.client_id,
                client_secret=credentials.client_secret,
                redirect_uri=credentials.redirect_uri,
                code=code,
            )
        except OAuthExchangeError as exc:
            raise AuthenticationError(str(exc)) from exc
        user = self.reconciler.reconcile(identity)
        return self._issue_session(user)

    # revocation
    async def logout_user(self, user_id: str, jti: str) -> RevocationEntry:
        if not user_id or not jti:
            raise InvalidArgumentError("user id and token id are required")
        return await self.ledger.revoke(user_id, jti)

    async def verify_token_revocation(self, user_id: str, jti: str) -> bool:
        if not user_id or not jti:
            raise InvalidArgumentError("user id and token id are required")
        return await self.ledger.is_revoked(user_id, jti)

    async def authenticate(self, token: Optional[str]) -> SessionClaims:
        """Decode a bearer session token and reject it once revoked."""
        claims = self.tokens.decode_session_token(token or "")
        if not claims:
            raise AuthenticationError("invalid or expired token")
        if await self.ledger.is_revoked(claims.user_id, claims.jti):
            self.logger.warning("revoked_token_presented", user_id=claims.user_id)
            raise AuthenticationError("token has been revoked")
        return claims

    # admins
    async def register_admin(self, email: str, password: str) -> Admin:
        email = normalize_email(email)
        if not email or not password:
            raise InvalidArgumentError("email and password are required")
        if self.store.get_admin_by_email(email):
            raise AlreadyExistsError("admin already exists")
        try:
            admin = self.store.create_admin(email, self.hasher.hash(password))
        except ConstraintViolation as exc:
            raise AlreadyExistsError("admin already exists") from exc
        self.logger.info("admin_registered", admin_id=admin.id)
        return admin

    async def login_admin(self, email: str, password: str) -> AdminLoginResult:
        email = normalize_email(email)
        admin = self.store.get_admin_by_email(email) if email else None
        if not admin:
            raise NotFoundError("admin not found")
        if not self.hasher.verify(admin.password_hash, password or ""):
            self.logger.warning("admin_login_password_mismatch", admin_id=admin.id)
            raise InvalidArgumentError("incorrect password")
        issued = self.tokens.issue_admin_token(admin)
        return AdminLoginResult(admin=admin, token=issued.token, expires_at=issued.expires_at)

    def authenticate_admin(self, token: Optional[str]) -> dict:
        admin = self.tokens.decode_admin_token(token or "")
        if not admin:
            raise AuthenticationError("admin token required")
        return admin

    def list_users(self, limit: int = 100) -> List[UserIdentity]:
        return self.store.list_users(limit=max(1, min(limit, 500)))

    # provider credentials
    def list_auth_providers(self) -> List[AuthProvider]:
        return self.store.list_auth_providers()

    def set_auth_provider_credentials(
        self,
        provider_id: int,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
    ) -> AuthProvider:
        if not client_id or not client_secret or not redirect_uri:
            raise InvalidArgumentError("Client ID, Client Secret, or redirectURL are not set")
        try:
            validate_redirect_uri(redirect_uri)
        except ValueError as exc:
            raise InvalidArgumentError(str(exc)) from exc
        if not self.store.get_auth_provider(provider_id):
            raise NotFoundError("Auth provider not found")
        try:
            ciphertext = self.vault.encrypt(client_secret)
        except VaultError as exc:
            raise InternalError("failed to encrypt client secret") from exc
        updated = self.store.update_auth_provider_credentials(
            provider_id, client_id, ciphertext, redirect_uri
        )
        if not updated:
            raise NotFoundError("Auth provider not found")
        self.logger.info("auth_provider_credentials_set", provider=updated.name)
        return updated

    def get_auth_provider_credentials(self, provider_name: str) -> ProviderCredentials:
        record = self.store.get_auth_provider_by_name((provider_name or "").strip().lower())
        if not record or not record.active:
            raise PermissionDeniedError("Auth provider is not enabled")
        if not record.is_configured:
            raise InvalidArgumentError("Client ID, Client Secret, or redirectURL are not set")
        try:
            secret = self.vault.decrypt(record.client_secret)
        except VaultError as exc:
            raise InternalError("failed to decrypt client secret") from exc
        return ProviderCredentials(
            provider=record.name,
            client_id=record.client_id,
            client_secret=secret,
            redirect_uri=record.redirect_uri,
        )

    def enable_auth_provider(self, provider_id: int) -> AuthProvider:
        record = self.store.get_auth_provider(provider_id)
        if not record:
            raise NotFoundError("Auth provider not found")
        if not record.is_configured:
            raise InvalidArgumentError("Client ID, Client Secret, or redirectURL are not set")
        updated = self.store.set_auth_provider_active(provider_id, True)
        if not updated:
            raise NotFoundError("Auth provider not found")
        self.logger.info("auth_provider_enabled", provider=updated.name)
        return updated

    def disable_auth_provider(self, provider_id: int) -> AuthProvider:
        updated = self.store.set_auth_provider_active(provider_id, False)
        if not updated:
            raise NotFoundError("Auth provider not found")
        self.logger.info("auth_provider_disabled", provider=updated.name)
        return updated

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query

from idkeeper.api.schemas import (
    AdminCredentialsRequest,
    AdminTokenResponse,
    AuthorizationUrlResponse,
    AuthProviderCredentialsRequest,
    AuthProviderResponse,
    CodeRequest,
    EmailRequest,
    Envelope,
    ExternalLoginRequest,
    LoginRequest,
    PasswordResetConfirmRequest,
    RevocationRequest,
    SessionResponse,
    SignupRequest,
    UserResponse,
    VerifyEmailRequest,
)
from idkeeper.service.auth import LoginResult
from idkeeper.service.errors import AuthenticationError
from idkeeper.service.runtime import get_runtime
from idkeeper.service.tokens import SessionClaims

router = APIRouter(prefix="/v1")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_user(authorization: Optional[str] = Header(None)) -> SessionClaims:
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationError("bearer token required")
    return await get_runtime().auth.authenticate(token)


async def get_admin(authorization: Optional[str] = Header(None)) -> dict:
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationError("admin token required")
    return get_runtime().auth.authenticate_admin(token)


def _session_envelope(result: LoginResult) -> Envelope:
    return Envelope(
        status="ok",
        data=SessionResponse(
            user=UserResponse.from_identity(result.user),
            mfa_required=result.mfa_required,
            access_token=result.token,
            token_type="bearer" if result.token else None,
            expires_at=result.expires_at,
        ),
    )


# auth
@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    """Register a standard account and send the email verification artifact.

    Raises:
        409: email already registered
        500: delivery_failed when the account was created but the email was not sent
    """
    runtime = get_runtime()
    result = await runtime.auth.register_user(body.name, body.email, body.password)
    return Envelope(
        status="ok",
        data={
            "user": UserResponse.from_identity(result.user),
            "verification_mode": result.verification_mode.value,
        },
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Returns a session token, or ``mfa_required=true`` when a code was emailed
    and must be confirmed through ``/auth/mfa/confirm``.
    """
    runtime = get_runtime()
    result = await runtime.auth.login_user(body.email, body.password)
    return _session_envelope(result)


@router.post("/auth/mfa/confirm", response_model=Envelope, tags=["auth"])
async def confirm_mfa(body: CodeRequest):
    runtime = get_runtime()
    return _session_envelope(await runtime.auth.confirm_mfa(body.code))


@router.post("/auth/email/verification", response_model=Envelope, tags=["auth"])
async def request_email_verification(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.request_email_verification(body.email)
    return Envelope(status="ok", data={"sent": True})


@router.post("/auth/email/verify", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data=UserResponse.from_identity(user))


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.request_password_reset(body.email)
    return Envelope(status="ok", data={"sent": True})


@router.post("/auth/password/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirmRequest):
    runtime = get_runtime()
    user = await runtime.auth.confirm_password_reset(
        body.code, body.password, body.password_confirmation
    )
    return Envelope(status="ok", data=UserResponse.from_identity(user))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: SessionClaims = Depends(get_user)):
    return Envelope(
        status="ok",
        data={
            "id": principal.user_id,
            "name": principal.name,
            "email": principal.email,
            "verified": principal.verified,
            "provider": principal.provider,
            "expires_at": principal.expires_at.isoformat(),
        },
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: SessionClaims = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout_user(principal.user_id, principal.jti)
    return Envelope(status="ok", data={"revoked": True})


# oauth
@router.get("/auth/oauth/{provider}/authorize", response_model=Envelope, tags=["oauth"])
async def oauth_authorize(provider: str = Path(..., max_length=64)):
    runtime = get_runtime()
    request = await runtime.auth.get_authorization_url(provider)
    return Envelope(
        status="ok",
        data=AuthorizationUrlResponse(
            provider=request.provider,
            url=request.url,
            state=request.state,
            expires_at=request.expires_at,
        ),
    )


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["oauth"])
async def oauth_callback(
    provider: str = Path(..., max_length=64),
    code: str = Query(..., min_length=1, max_length=2048),
    state: str = Query(..., min_length=1, max_length=256),
):
    runtime = get_runtime()
    return _session_envelope(await runtime.auth.complete_oauth(provider, code, state))


# admin
@router.post("/admin/login", response_model=Envelope, tags=["admin"])
async def admin_login(body: AdminCredentialsRequest):
    runtime = get_runtime()
    result = await runtime.auth.login_admin(body.email, body.password)
    return Envelope(
        status="ok",
        data=AdminTokenResponse(
            admin_id=result.admin.id,
            email=result.admin.email,
            access_token=result.token,
            expires_at=result.expires_at,
        ),
    )


@router.post("/admin/admins", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_admin(body: AdminCredentialsRequest, admin: dict = Depends(get_admin)):
    runtime = get_runtime()
    created = await runtime.auth.register_admin(body.email, body.password)
    return Envelope(status="ok", data={"id": created.id, "email": created.email})


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500), admin: dict = Depends(get_admin)
):
    runtime = get_runtime()
    users = runtime.auth.list_users(limit=limit)
    return Envelope(
        status="ok", data={"items": [UserResponse.from_identity(u) for u in users]}
    )


@router.get("/admin/settings/mfa", response_model=Envelope, tags=["admin"])
async def admin_get_mfa(admin: dict = Depends(get_admin)):
    return Envelope(status="ok", data={"enabled": get_runtime().auth.get_mfa()})


@router.post("/admin/settings/mfa/toggle", response_model=Envelope, tags=["admin"])
async def admin_toggle_mfa(admin: dict = Depends(get_admin)):
    return Envelope(status="ok", data={"enabled": get_runtime().auth.toggle_mfa()})


@router.get("/admin/auth-providers", response_model=Envelope, tags=["admin"])
async def admin_list_auth_providers(admin: dict = Depends(get_admin)):
    runtime = get_runtime()
    providers = runtime.auth.list_auth_providers()
    return Envelope(
        status="ok",
        data={"items": [AuthProviderResponse.from_provider(p) for p in providers]},
    )


@router.put(
    "/admin/auth-providers/{provider_id}/credentials",
    response_model=Envelope,
    tags=["admin"],
)
async def admin_set_auth_provider_credentials(
    body: AuthProviderCredentialsRequest,
    provider_id: int = Path(..., ge=1),
    admin: dict = Depends(get_admin),
):
    runtime = get_runtime()
    provider = runtime.auth.set_auth_provider_credentials(
        provider_id, body.client_id, body.client_secret, body.redirect_uri
    )
    return Envelope(status="ok", data=AuthProviderResponse.from_provider(provider))


@router.post(
    "/admin/auth-providers/{provider_id}/enable", response_model=Envelope, tags=["admin"]
)
async def admin_enable_auth_provider(
    provider_id: int = Path(..., ge=1), admin: dict = Depends(get_admin)
):
    provider = get_runtime().auth.enable_auth_provider(provider_id)
    return Envelope(status="ok", data=AuthProviderResponse.from_provider(provider))


@router.post(
    "/admin/auth-providers/{provider_id}/disable", response_model=Envelope, tags=["admin"]
)
async def admin_disable_auth_provider(
    provider_id: int = Path(..., ge=1), admin: dict = Depends(get_admin)
):
    provider = get_runtime().auth.disable_auth_provider(provider_id)
    return Envelope(status="ok", data=AuthProviderResponse.from_provider(provider))


@router.post("/admin/external-login", response_model=Envelope, tags=["admin"])
async def admin_external_login(body: ExternalLoginRequest, admin: dict = Depends(get_admin)):
    """Find-or-create an account for an identity already vouched for by a provider.

    For trusted gateways that run the OAuth exchange themselves.
    """
    runtime = get_runtime()
    result = await runtime.auth.external_login(
        body.provider, body.email, body.provider_uid, body.name
    )
    return _session_envelope(result)


@router.post("/admin/revocations", response_model=Envelope, tags=["admin"])
async def admin_revoke_token(body: RevocationRequest, admin: dict = Depends(get_admin)):
    runtime = get_runtime()
    await runtime.auth.logout_user(body.user_id, body.jti)
    return Envelope(status="ok", data={"revoked": True})


@router.post("/admin/revocations/check", response_model=Envelope, tags=["admin"])
async def admin_check_revocation(body: RevocationRequest, admin: dict = Depends(get_admin)):
    runtime = get_runtime()
    revoked = await runtime.auth.verify_token_revocation(body.user_id, body.jti)
    return Envelope(status="ok", data={"revoked": revoked})

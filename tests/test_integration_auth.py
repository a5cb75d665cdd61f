"""Integration tests for the HTTP auth flow.

Tests the complete flow including:
- User signup and email verification
- Login with and without MFA
- Password reset
- Logout and revocation
- Admin provider and user management
"""

import asyncio
import uuid

import pytest
from fastapi.testclient import TestClient

from idkeeper import app as app_module
from idkeeper.service.email import NotificationKind
from idkeeper.service.runtime import get_runtime

PASSWORD = "TestPassword123!"


@pytest.fixture
def client(notifier):
    """Create a test client whose runtime records outgoing emails."""
    runtime = get_runtime()
    runtime.auth.notifier = notifier
    # Settings and providers persist in the shared state directory
    runtime.store.set_setting("mfa", "disabled")
    for provider in runtime.store.list_auth_providers():
        runtime.store.set_auth_provider_active(provider.id, False)
    return TestClient(app_module.app)


@pytest.fixture
def email():
    # The memory store persists under SHARED_FS_ROOT across tests
    return f"user-{uuid.uuid4().hex[:12]}@example.com"


@pytest.fixture
def admin_headers():
    admin_email = f"admin-{uuid.uuid4().hex[:12]}@example.com"
    auth = get_runtime().auth
    asyncio.run(auth.register_admin(admin_email, PASSWORD))
    login = asyncio.run(auth.login_admin(admin_email, PASSWORD))
    return {"Authorization": f"Bearer {login.token}"}


def _signup(client, email, password=PASSWORD):
    return client.post(
        "/v1/auth/signup", json={"name": "Test User", "email": email, "password": password}
    )


def _login(client, email, password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


class TestSignupFlow:
    """Tests for user registration."""

    def test_signup_creates_user(self, client, email, notifier):
        response = _signup(client, email)

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["email"] == email
        assert data["user"]["verified"] is False
        assert data["verification_mode"] == "code"
        assert notifier.last_code(NotificationKind.EMAIL_VERIFICATION)

    def test_signup_rejects_duplicate_email(self, client, email):
        _signup(client, email)
        response = _signup(client, email.upper())

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "already_exists"

    def test_signup_rejects_short_password(self, client, email):
        response = _signup(client, email, password="short")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_argument"

    def test_signup_rejects_invalid_email(self, client):
        response = _signup(client, "not-an-email")
        assert response.status_code == 400

    def test_signup_delivery_failure(self, client, email, notifier):
        """The account is kept and the error says so."""
        notifier.fail = True
        response = _signup(client, email)

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "delivery_failed"
        assert error["details"]["committed"] is True

        notifier.fail = False
        assert _login(client, email).status_code == 200


class TestLoginFlow:
    def test_login_and_me(self, client, email):
        _signup(client, email)
        response = _login(client, email)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["mfa_required"] is False
        assert data["token_type"] == "bearer"

        me = client.get(
            "/v1/auth/me", headers={"Authorization": f"Bearer {data['access_token']}"}
        )
        assert me.status_code == 200
        assert me.json()["data"]["email"] == email

    def test_login_wrong_password(self, client, email):
        _signup(client, email)
        response = _login(client, email, password="WrongPassword123!")
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "incorrect password"

    def test_login_unknown_user(self, client, email):
        response = _login(client, email)
        assert response.status_code == 404

    def test_me_requires_token(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_mfa_flow(self, client, email, notifier, admin_headers):
        """Once an admin enables MFA, login needs the emailed code."""
        _signup(client, email)
        toggled = client.post("/v1/admin/settings/mfa/toggle", headers=admin_headers)
        assert toggled.json()["data"]["enabled"] is True

        pending = _login(client, email).json()["data"]
        assert pending["mfa_required"] is True
        assert pending["access_token"] is None

        code = notifier.last_code(NotificationKind.MFA_CODE)
        confirmed = client.post("/v1/auth/mfa/confirm", json={"code": code})
        assert confirmed.status_code == 200
        assert confirmed.json()["data"]["access_token"]

        replay = client.post("/v1/auth/mfa/confirm", json={"code": code})
        assert replay.status_code == 404


class TestEmailVerification:
    def test_verify_with_code(self, client, email, notifier):
        _signup(client, email)
        code = notifier.last_code(NotificationKind.EMAIL_VERIFICATION)

        response = client.post("/v1/auth/email/verify", json={"token": code})

        assert response.status_code == 200
        assert response.json()["data"]["verified"] is True

        again = client.post("/v1/auth/email/verification", json={"email": email})
        assert again.status_code == 400

    def test_resend_verification(self, client, email, notifier):
        _signup(client, email)
        response = client.post("/v1/auth/email/verification", json={"email": email})

        assert response.status_code == 200
        assert len(notifier.sent) == 2


class TestPasswordReset:
    def test_reset_flow(self, client, email, notifier):
        _signup(client, email)
        assert client.post("/v1/auth/password/reset", json={"email": email}).status_code == 200
        code = notifier.last_code(NotificationKind.PASSWORD_RESET)

        response = client.post(
            "/v1/auth/password/reset/confirm",
            json={
                "code": code,
                "password": "NewPassword456!",
                "password_confirmation": "NewPassword456!",
            },
        )

        assert response.status_code == 200
        assert _login(client, email, "NewPassword456!").status_code == 200
        assert _login(client, email).status_code == 400

    def test_mismatched_confirmation(self, client, email, notifier):
        _signup(client, email)
        client.post("/v1/auth/password/reset", json={"email": email})
        code = notifier.last_code(NotificationKind.PASSWORD_RESET)

        response = client.post(
            "/v1/auth/password/reset/confirm",
            json={
                "code": code,
                "password": "NewPassword456!",
                "password_confirmation": "OtherPassword456!",
            },
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "passwords do not match"


class TestLogout:
    def test_logout_revokes_token(self, client, email):
        _signup(client, email)
        token = _login(client, email).json()["data"]["access_token"]
        headers = {"Authorization": f"Bearer {token}"}

        assert client.post("/v1/auth/logout", headers=headers).status_code == 200

        response = client.get("/v1/auth/me", headers=headers)
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "token has been revoked"

    def test_admin_revocation_check(self, client, email, admin_headers):
        _signup(client, email)
        token = _login(client, email).json()["data"]["access_token"]
        me = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        user_id = me.json()["data"]["id"]
        jti = get_runtime().auth.tokens.decode_session_token(token).jti
        body = {"user_id": user_id, "jti": jti}

        check = client.post("/v1/admin/revocations/check", json=body, headers=admin_headers)
        assert check.json()["data"]["revoked"] is False

        client.post("/v1/admin/revocations", json=body, headers=admin_headers)
        check = client.post("/v1/admin/revocations/check", json=body, headers=admin_headers)
        assert check.json()["data"]["revoked"] is True


class TestAdminRoutes:
    def test_admin_routes_require_admin_token(self, client, email):
        _signup(client, email)
        token = _login(client, email).json()["data"]["access_token"]

        response = client.get("/v1/admin/users", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_list_users(self, client, email, admin_headers):
        _signup(client, email)
        response = client.get("/v1/admin/users", headers=admin_headers)

        assert response.status_code == 200
        emails = {u["email"] for u in response.json()["data"]["items"]}
        assert email in emails

    def test_provider_configuration(self, client, admin_headers):
        providers = client.get("/v1/admin/auth-providers", headers=admin_headers)
        google = next(p for p in providers.json()["data"]["items"] if p["name"] == "google")
        assert "client_secret" not in google

        updated = client.put(
            f"/v1/admin/auth-providers/{google['id']}/credentials",
            json={
                "client_id": "client-123",
                "client_secret": "s3cret",
                "redirect_uri": "https://app.example.com/cb",
            },
            headers=admin_headers,
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["configured"] is True

        enabled = client.post(
            f"/v1/admin/auth-providers/{google['id']}/enable", headers=admin_headers
        )
        assert enabled.json()["data"]["active"] is True

        authorize = client.get("/v1/auth/oauth/google/authorize")
        assert authorize.status_code == 200
        assert "client_id=client-123" in authorize.json()["data"]["url"]

        client.post(f"/v1/admin/auth-providers/{google['id']}/disable", headers=admin_headers)
        assert client.get("/v1/auth/oauth/google/authorize").status_code == 403

    def test_external_login(self, client, admin_headers, email):
        auth = get_runtime().auth
        google = auth.store.get_auth_provider_by_name("google")
        auth.set_auth_provider_credentials(
            google.id, "client-123", "s3cret", "https://app.example.com/cb"
        )
        auth.enable_auth_provider(google.id)

        body = {"provider": "google", "email": email, "provider_uid": uuid.uuid4().hex}
        first = client.post("/v1/admin/external-login", json=body, headers=admin_headers)
        second = client.post("/v1/admin/external-login", json=body, headers=admin_headers)

        assert first.status_code == 200
        assert first.json()["data"]["user"]["verified"] is True
        assert first.json()["data"]["user"]["id"] == second.json()["data"]["user"]["id"]


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["checks"]["database"]["type"] == "memory"


def test_security_headers(client):
    response = client.get("/healthz")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Request-ID"]

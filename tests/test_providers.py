import httpx
import pytest

from idkeeper.service.providers import (
    OAuthClient,
    OAuthExchangeError,
    get_strategy,
    validate_redirect_uri,
)


def _client(handler):
    return OAuthClient(transport=httpx.MockTransport(handler))


def _exchange(client, provider="google", code="auth-code"):
    return client.exchange_code(
        get_strategy(provider),
        client_id="client-123",
        client_secret="s3cret",
        redirect_uri="https://app.example.com/cb",
        code=code,
    )


class TestRedirectValidation:
    def test_https_allowed(self):
        assert validate_redirect_uri("https://app.example.com/cb") == "https://app.example.com/cb"

    def test_http_only_on_localhost(self):
        assert validate_redirect_uri("http://localhost:8000/cb")
        with pytest.raises(ValueError):
            validate_redirect_uri("http://app.example.com/cb")

    def test_other_schemes_rejected(self):
        with pytest.raises(ValueError):
            validate_redirect_uri("javascript:alert(1)")


def test_strategy_lookup_is_case_insensitive():
    assert get_strategy("GitHub").name == "github"
    assert get_strategy("myspace") is None


class TestExchangeCode:
    async def test_google_exchange(self):
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.host == "oauth2.googleapis.com":
                return httpx.Response(200, json={"access_token": "at-1"})
            return httpx.Response(
                200, json={"id": "g-1", "email": "frank@example.com", "name": "Frank"}
            )

        identity = await _exchange(_client(handler))

        assert identity.provider == "google"
        assert identity.provider_uid == "g-1"
        assert identity.email == "frank@example.com"
        assert b"grant_type=authorization_code" in seen[0].content
        assert seen[1].headers["Authorization"] == "Bearer at-1"

    async def test_github_falls_back_to_email_listing(self):
        """GitHub users with a private email are resolved via the emails endpoint."""

        def handler(request):
            if request.url.path == "/login/oauth/access_token":
                return httpx.Response(200, json={"access_token": "at-2"})
            if request.url.path == "/user/emails":
                return httpx.Response(
                    200,
                    json=[
                        {"email": "old@example.com", "primary": False, "verified": True},
                        {"email": "gina@example.com", "primary": True, "verified": True},
                    ],
                )
            return httpx.Response(200, json={"id": 77, "login": "gina", "email": None})

        identity = await _exchange(_client(handler), provider="github")

        assert identity.provider_uid == "77"
        assert identity.email == "gina@example.com"
        assert identity.name == "gina"

    async def test_rejected_code(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant"})

        with pytest.raises(OAuthExchangeError):
            await _exchange(_client(handler))

    async def test_missing_access_token(self):
        def handler(request):
            return httpx.Response(200, json={"error": "bad_verification_code"})

        with pytest.raises(OAuthExchangeError):
            await _exchange(_client(handler))

    async def test_missing_email(self):
        def handler(request):
            if request.url.host == "oauth2.googleapis.com":
                return httpx.Response(200, json={"access_token": "at-1"})
            return httpx.Response(200, json={"id": "g-1"})

        with pytest.raises(OAuthExchangeError) as exc_info:
            await _exchange(_client(handler))
        assert "email" in str(exc_info.value)

    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(OAuthExchangeError):
            await _exchange(_client(handler))

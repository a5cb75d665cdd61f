from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode, urlparse

import httpx

from idkeeper.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ExternalIdentity:
    """Identity facts vouched for by an external provider."""

    provider: str
    provider_uid: str
    email: str
    name: str = ""


def _google_identity(userinfo: dict) -> dict:
    return {
        "provider_uid": userinfo.get("id") or userinfo.get("sub"),
        "email": userinfo.get("email"),
        "name": userinfo.get("name"),
    }


def _github_identity(userinfo: dict) -> dict:
    uid = userinfo.get("id")
    return {
        "provider_uid": str(uid) if uid is not None else None,
        "email": userinfo.get("email"),
        "name": userinfo.get("name") or userinfo.get("login"),
    }


def _microsoft_identity(userinfo: dict) -> dict:
    return {
        "provider_uid": userinfo.get("id"),
        "email": userinfo.get("mail") or userinfo.get("userPrincipalName"),
        "name": userinfo.get("displayName"),
    }


@dataclass(frozen=True)
class ProviderStrategy:
    """Per-provider differences: endpoints, scope and userinfo field mapping."""

    name: str
    auth_url: str
    token_url: str
    userinfo_url: str
    scope: str
    map_userinfo: Callable[[dict], dict]
    extra_auth_params: Dict[str, str] = field(default_factory=dict)
    userinfo_accept: str = "application/json"
    # Secondary endpoint listing addresses when userinfo omits the email
    emails_url: Optional[str] = None

    def authorization_url(self, client_id: str, redirect_uri: str, state: str) -> str:
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
            **self.extra_auth_params,
        }
        return f"{self.auth_url}?{urlencode(params)}"


PROVIDER_STRATEGIES: Dict[str, ProviderStrategy] = {
    "google": ProviderStrategy(
        name="google",
        auth_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        userinfo_url="https://www.googleapis.com/oauth2/v2/userinfo",
        scope="openid email profile",
        map_userinfo=_google_identity,
        extra_auth_params={"access_type": "offline", "prompt": "consent"},
    ),
    "github": ProviderStrategy(
        name="github",
        auth_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        userinfo_url="https://api.github.com/user",
        scope="read:user user:email",
        map_userinfo=_github_identity,
        userinfo_accept="application/vnd.github+json",
        emails_url="https://api.github.com/user/emails",
    ),
    "microsoft": ProviderStrategy(
        name="microsoft",
        auth_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
        userinfo_url="https://graph.microsoft.com/v1.0/me",
        scope="openid email profile User.Read",
        map_userinfo=_microsoft_identity,
    ),
}


def get_strategy(provider: str) -> Optional[ProviderStrategy]:
    return PROVIDER_STRATEGIES.get((provider or "").lower())


def validate_redirect_uri(redirect_uri: str) -> str:
    parsed = urlparse(redirect_uri)
    if parsed.scheme not in {"https", "http"}:
        raise ValueError("OAuth redirect URI must be http(s)")
    if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
        raise ValueError("Insecure redirect URI not allowed outside localhost")
    if not parsed.netloc:
        raise ValueError("OAuth redirect URI must include host")
    return redirect_uri


class OAuthExchangeError(Exception):
    """The provider rejected the code or returned an unusable identity."""


class OAuthClient:
    """Exchanges authorization codes for identities at a provider."""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self.transport = transport

    async def exchange_code(
        self,
        strategy: ProviderStrategy,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        code: str,
    ) -> ExternalIdentity:
        async with httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self.transport
        ) as client:
            try:
                token_response = await client.post(
                    strategy.token_url,
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result: Any = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    raise OAuthExchangeError("provider returned no access token")

                headers = {
                    "Authorization": f"Bearer {access_token}",
                    "Accept": strategy.userinfo_accept,
                }
                userinfo_response = await client.get(strategy.userinfo_url, headers=headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    raise OAuthExchangeError("provider userinfo is not an object")

                mapped = strategy.map_userinfo(userinfo)
                if not mapped.get("email") and strategy.emails_url:
                    emails_response = await client.get(strategy.emails_url, headers=headers)
                    if emails_response.status_code == 200:
                        mapped["email"] = next(
                            (
                                e.get("email")
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
            except httpx.HTTPStatusError as exc:
                logger.error(
                    "oauth_exchange_http_error",
                    provider=strategy.name,
                    status_code=exc.response.status_code,
                )
                raise OAuthExchangeError("provider rejected the authorization code") from exc
            except (httpx.HTTPError, ValueError) as exc:
                logger.error("oauth_exchange_error", provider=strategy.name, error=str(exc))
                raise OAuthExchangeError("provider exchange failed") from exc

        if not mapped.get("provider_uid"):
            raise OAuthExchangeError("provider identity is missing an id")
        if not mapped.get("email"):
            raise OAuthExchangeError("provider identity is missing an email")
        logger.info("oauth_exchange_success", provider=strategy.name)
        return ExternalIdentity(
            provider=strategy.name,
            provider_uid=str(mapped["provider_uid"]),
            email=mapped["email"],
            name=mapped.get("name") or mapped["email"].split("@")[0],
        )

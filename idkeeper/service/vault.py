from __future__ import annotations

import base64
import hashlib
from typing import Optional, Protocol

import httpx
from cryptography.fernet import Fernet, InvalidToken

from idkeeper.config import Settings, VaultBackend
from idkeeper.logging import get_logger

logger = get_logger(__name__)


class VaultError(Exception):
    """Encryption or decryption of a provider secret failed."""


class CredentialVault(Protocol):
    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...


class FernetVault:
    """In-process vault keyed from configured key material."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise VaultError("vault key material is required")
        self._cipher = Fernet(self._derive_key(key_material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plaintext: str) -> str:
        return self._cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._cipher.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            logger.error("vault_decrypt_failed", backend="local")
            raise VaultError("unable to decrypt provider secret") from exc


class RemoteVault:
    """Client for an external encryption service.

    Contract: ``POST {base_url}/encrypt {"plaintext": ...} -> {"ciphertext": ...}``
    and ``POST {base_url}/decrypt {"ciphertext": ...} -> {"plaintext": ...}``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not base_url:
            raise VaultError("VAULT_URL is required for the remote vault")
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    def _call(self, operation: str, field: str, value: str, result_field: str) -> str:
        try:
            response = self._client.post(f"/{operation}", json={field: value})
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "vault_http_error",
                operation=operation,
                status_code=exc.response.status_code,
            )
            raise VaultError(f"vault {operation} failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("vault_unreachable", operation=operation, error=str(exc))
            raise VaultError(f"vault {operation} failed") from exc
        result = body.get(result_field) if isinstance(body, dict) else None
        if not isinstance(result, str):
            logger.error("vault_malformed_response", operation=operation)
            raise VaultError(f"vault {operation} returned no {result_field}")
        return result

    def encrypt(self, plaintext: str) -> str:
        return self._call("encrypt", "plaintext", plaintext, "ciphertext")

    def decrypt(self, ciphertext: str) -> str:
        return self._call("decrypt", "ciphertext", ciphertext, "plaintext")

    def close(self) -> None:
        self._client.close()


def build_vault(settings: Settings) -> CredentialVault:
    if settings.vault_backend == VaultBackend.REMOTE:
        return RemoteVault(settings.vault_url or "", timeout=settings.vault_timeout_seconds)
    return FernetVault(settings.vault_key or settings.jwt_secret)

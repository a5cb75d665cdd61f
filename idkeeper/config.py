from __future__ import annotations

import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from idkeeper.logging import get_logger

logger = get_logger(__name__)


class VerificationMode(str, Enum):
    """How the registration flow proves ownership of an email address.

    - CODE: random single-use code persisted server-side (24h window)
    - TOKEN: signed claim token verified without a store lookup (72h expiry)
    """

    CODE = "code"
    TOKEN = "token"


class VaultBackend(str, Enum):
    """Where provider client secrets get encrypted."""

    LOCAL = "local"
    REMOTE = "remote"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/idkeeper", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/idkeeper", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    allow_signup: bool = env_field(
        True, "ALLOW_SIGNUP", description="Allow new standard user registrations"
    )
    enable_mfa: bool = env_field(
        False,
        "ENABLE_MFA",
        description="Default MFA state when the settings store has no 'mfa' entry",
    )
    single_outstanding_code: bool = env_field(
        False,
        "SINGLE_OUTSTANDING_CODE",
        description="Delete earlier codes of the same user and kind when a new one is issued",
    )
    email_verification_mode: VerificationMode = env_field(
        VerificationMode.CODE, "EMAIL_VERIFICATION_MODE"
    )

    # Token issuer
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("idkeeper", "JWT_ISSUER")
    jwt_audience: str = env_field("idkeeper-clients", "JWT_AUDIENCE")
    session_token_ttl_hours: int = env_field(72, "SESSION_TOKEN_TTL_HOURS")
    verification_token_ttl_hours: int = env_field(72, "VERIFICATION_TOKEN_TTL_HOURS")
    admin_token_ttl_hours: int = env_field(12, "ADMIN_TOKEN_TTL_HOURS")

    # Single-use code windows
    email_code_ttl_hours: int = env_field(24, "EMAIL_CODE_TTL_HOURS")
    reset_code_ttl_hours: int = env_field(24, "RESET_CODE_TTL_HOURS")
    mfa_code_ttl_minutes: int = env_field(10, "MFA_CODE_TTL_MINUTES")
    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("idkeeper", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Provider credential vault
    vault_backend: VaultBackend = env_field(VaultBackend.LOCAL, "VAULT_BACKEND")
    vault_url: str | None = env_field(None, "VAULT_URL")
    vault_key: str | None = env_field(
        None,
        "VAULT_KEY",
        description="Key material for the local Fernet vault; falls back to JWT_SECRET",
    )
    vault_timeout_seconds: float = env_field(10.0, "VAULT_TIMEOUT_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("email_verification_mode")
    @classmethod
    def _validate_verification_mode(cls, value: VerificationMode) -> VerificationMode:
        return VerificationMode(value)

    @field_validator("vault_backend")
    @classmethod
    def _validate_vault_backend(cls, value: VaultBackend) -> VaultBackend:
        return VaultBackend(value)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/idkeeper"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        import tempfile

        tmp_path = None
        try:
            # Write to a temp file then rename so readers never see a partial secret
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

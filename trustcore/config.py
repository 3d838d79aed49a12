from __future__ import annotations

import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from trustcore.logging import get_logger
from trustcore.service.fs import atomic_write, read_private_text

logger = get_logger(__name__)


class FederationKind(str, Enum):
    """Federation provider variants selectable by configuration."""

    GOOGLE = "google"
    GITHUB = "github"
    MICROSOFT = "microsoft"
    OIDC = "oidc"
    STATIC = "static"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and audit services."""

    database_url: str = env_field(
        "postgresql://localhost:5432/trustcore", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/trustcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    # Token settings
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("trustcore", "JWT_ISSUER")
    jwt_audience: str = env_field("trustcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    clock_skew_seconds: int = env_field(
        120,
        "CLOCK_SKEW_SECONDS",
        description="Allowance for small clock skew when checking token expiry",
    )
    require_verified_identity: bool = env_field(
        False,
        "REQUIRE_VERIFIED_IDENTITY",
        description="Reject logins from identities whose email is not verified",
    )
    # Deadlines
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    federation_timeout_seconds: float = env_field(10.0, "FEDERATION_TIMEOUT_SECONDS")
    # Federation settings
    federation_provider: FederationKind | None = env_field(None, "FEDERATION_PROVIDER")
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_SECRET")
    oidc_client_id: str | None = env_field(None, "OIDC_CLIENT_ID")
    oidc_client_secret: str | None = env_field(None, "OIDC_CLIENT_SECRET")
    oidc_authorize_url: str | None = env_field(None, "OIDC_AUTHORIZE_URL")
    oidc_token_url: str | None = env_field(None, "OIDC_TOKEN_URL")
    oidc_userinfo_url: str | None = env_field(None, "OIDC_USERINFO_URL")
    oidc_scope: str = env_field("openid email profile", "OIDC_SCOPE")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES")
    # Audit settings
    audit_signing_key_path: str | None = env_field(
        None,
        "AUDIT_SIGNING_KEY_PATH",
        description="Ed25519 private key (PEM) used to sign exported audit evidence",
    )
    archive_encryption_key: str | None = env_field(
        None,
        "ARCHIVE_ENCRYPTION_KEY",
        description="Key material for archive bundle encryption; defaults to the JWT secret",
    )
    # Retention defaults, used until an operator stores a policy
    retention_enabled: bool = env_field(True, "RETENTION_ENABLED")
    retention_active_days: int = env_field(365, "RETENTION_ACTIVE_DAYS")
    retention_archive_days: int = env_field(2555, "RETENTION_ARCHIVE_DAYS")
    retention_interval_hours: int = env_field(24, "RETENTION_INTERVAL_HOURS")
    retention_max_store_bytes: int = env_field(
        100 * 1024**3, "RETENTION_MAX_STORE_BYTES"
    )
    retention_notify_address: str | None = env_field(None, "RETENTION_NOTIFY_ADDRESS")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Trust Core", "EMAIL_FROM_NAME")

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

    @field_validator("federation_provider", mode="before")
    @classmethod
    def _validate_federation_provider(cls, value: Any) -> FederationKind | None:
        if value in (None, ""):
            return None
        return FederationKind(str(value).lower())

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "oauth_state_ttl_minutes",
        "retention_active_days",
        "retention_archive_days",
        "retention_interval_hours",
        "retention_max_store_bytes",
    )
    @classmethod
    def _ensure_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("store_timeout_seconds", "federation_timeout_seconds")
    @classmethod
    def _ensure_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/trustcore"))
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

        try:
            persisted = read_private_text(secret_path)
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
            persisted = None
        if persisted and len(persisted) >= 32:
            return persisted

        generated = secrets.token_urlsafe(64)
        try:
            atomic_write(secret_path, generated.encode(), mode=0o600)
        except OSError as exc:
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

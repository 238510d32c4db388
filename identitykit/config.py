from __future__ import annotations

import os
import secrets
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from identitykit.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PASSWORD_RESET_TTL_SECONDS = 1800


@dataclass(frozen=True)
class AuthConfig:
    """Token lifetimes and signing material handed to the auth components."""

    jwt_secret: str
    jwt_issuer: str = "identitykit"
    jwt_audience: str = "identitykit-clients"
    access_token_ttl_seconds: int = 3600
    refresh_token_ttl_seconds: int = 30 * 24 * 3600
    password_reset_ttl_seconds: int = DEFAULT_PASSWORD_RESET_TTL_SECONDS
    clock_skew_leeway_seconds: int = 0
    default_quota: str = "10GB"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


class Settings(BaseModel):
    """Runtime settings read from the environment and an optional .env file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/identitykit", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/identitykit", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("identitykit", "JWT_ISSUER")
    jwt_audience: str = env_field("identitykit-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        3600,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Access token lifetime; also reported to clients as expires_in",
    )
    refresh_token_ttl_seconds: int = env_field(
        30 * 24 * 3600,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Refresh token lifetime, both the exp claim and the stored record",
    )
    password_reset_ttl_seconds: int = env_field(
        DEFAULT_PASSWORD_RESET_TTL_SECONDS, "PASSWORD_RESET_TTL_SECONDS"
    )
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS")
    default_quota: str = env_field("10GB", "DEFAULT_QUOTA")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("IdentityKit", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8080", "APP_BASE_URL")
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    log_level: str = env_field("INFO", "LOG_LEVEL")

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

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "password_reset_ttl_seconds",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token ttl must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts.
        # shared_fs_root is declared earlier, so it is already validated here.
        fs_root = Path(info.data.get("shared_fs_root") or "/srv/identitykit")
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
        tmp_path: str | None = None
        try:
            # Atomic write: temp file then rename
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

    @property
    def allowed_origins(self) -> list[str]:
        return parse_csv(self.cors_allow_origins)

    def auth_config(self) -> AuthConfig:
        return AuthConfig(
            jwt_secret=self.jwt_secret,
            jwt_issuer=self.jwt_issuer,
            jwt_audience=self.jwt_audience,
            access_token_ttl_seconds=self.access_token_ttl_seconds,
            refresh_token_ttl_seconds=self.refresh_token_ttl_seconds,
            password_reset_ttl_seconds=self.password_reset_ttl_seconds,
            clock_skew_leeway_seconds=self.clock_skew_leeway_seconds,
            default_quota=self.default_quota,
        )


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

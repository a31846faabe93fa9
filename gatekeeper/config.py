from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatekeeper.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


_FIFTEEN_MINUTES_MS = 15 * 60 * 1000


class Settings(BaseModel):
    """Runtime settings for the credential lifecycle service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/gatekeeper", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/gatekeeper", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use in-process stores and relax external dependencies for tests",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("gatekeeper", "JWT_ISSUER")
    jwt_audience: str = env_field("gatekeeper-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of access tokens",
    )
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Lifetime of refresh tokens",
    )
    password_change_skew_ms: int = env_field(
        1000,
        "PASSWORD_CHANGE_SKEW_MS",
        description="How far password_changed_at is back-dated on every password write",
    )

    # Lockout
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_attempt_window_ms: int = env_field(
        _FIFTEEN_MINUTES_MS, "LOGIN_ATTEMPT_WINDOW_MS"
    )
    login_lock_duration_ms: int = env_field(30 * 60 * 1000, "LOGIN_LOCK_DURATION_MS")

    # Request throttling
    login_rate_window_ms: int = env_field(_FIFTEEN_MINUTES_MS, "LOGIN_RATE_WINDOW_MS")
    login_rate_max: int = env_field(20, "LOGIN_RATE_MAX")
    forgot_rate_window_ms: int = env_field(_FIFTEEN_MINUTES_MS, "FORGOT_RATE_WINDOW_MS")
    forgot_rate_max: int = env_field(5, "FORGOT_RATE_MAX")
    reset_rate_window_ms: int = env_field(_FIFTEEN_MINUTES_MS, "RESET_RATE_WINDOW_MS")
    reset_rate_max: int = env_field(10, "RESET_RATE_MAX")

    # Password reset
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")

    # Email
    smtp_host: str | None = env_field(
        None, "SMTP_HOST", description="SMTP server hostname"
    )
    smtp_port: int = env_field(
        587, "SMTP_PORT", description="SMTP server port"
    )
    smtp_user: str | None = env_field(
        None, "SMTP_USER", description="SMTP authentication username"
    )
    smtp_password: str | None = env_field(
        None, "SMTP_PASSWORD", description="SMTP authentication password"
    )
    smtp_use_tls: bool = env_field(
        True, "SMTP_USE_TLS", description="Use STARTTLS for SMTP"
    )
    email_from_address: str | None = env_field(
        None, "EMAIL_FROM_ADDRESS", description="Sender address for outgoing email"
    )
    email_from_name: str = env_field(
        "Inventory Accounts", "EMAIL_FROM_NAME", description="Sender display name"
    )

    # HTTP
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Take the client address from the first X-Forwarded-For entry",
    )
    cors_allow_origins: str = env_field(
        "", "CORS_ALLOW_ORIGINS", description="Comma separated list of allowed origins"
    )

    model_config = ConfigDict(extra="ignore", validate_default=True)

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
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "login_max_attempts",
        "login_attempt_window_ms",
        "login_lock_duration_ms",
        "login_rate_window_ms",
        "login_rate_max",
        "forgot_rate_window_ms",
        "forgot_rate_max",
        "reset_rate_window_ms",
        "reset_rate_max",
        "otp_ttl_minutes",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("password_change_skew_ms")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/gatekeeper"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
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
        tmp_path = None
        try:
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
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


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

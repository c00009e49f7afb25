from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from idgate.logging import get_logger

logger = get_logger(__name__)

_MIN_APP_KEY_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/idgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/idgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    app_key: str = env_field(
        None,
        "APP_KEY",
        description="Server secret used to sign verification links",
        validate_default=True,
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Verification and token lifetimes
    require_email_verification: bool = env_field(
        True,
        "REQUIRE_EMAIL_VERIFICATION",
        description="Block user-role logins until the email address is verified",
    )
    verification_link_ttl_minutes: int = env_field(60, "VERIFICATION_LINK_TTL_MINUTES")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    session_token_ttl_minutes: int | None = env_field(
        None,
        "SESSION_TOKEN_TTL_MINUTES",
        description="Bearer token lifetime for regular logins; unset means until revoked",
    )
    admin_token_ttl_minutes: int = env_field(24 * 60, "ADMIN_TOKEN_TTL_MINUTES")

    # Rate limits
    login_rate_limit_per_minute: int = env_field(5, "LOGIN_RATE_LIMIT_PER_MINUTE")
    forgot_password_rate_limit_per_minute: int = env_field(
        5, "FORGOT_PASSWORD_RATE_LIMIT_PER_MINUTE"
    )
    change_password_rate_limit_per_minute: int = env_field(
        5, "CHANGE_PASSWORD_RATE_LIMIT_PER_MINUTE"
    )
    verify_email_rate_limit_per_minute: int = env_field(
        6, "VERIFY_EMAIL_RATE_LIMIT_PER_MINUTE"
    )
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("idgate", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("session_token_ttl_minutes", "redis_url", mode="before")
    @classmethod
    def _blank_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator(
        "verification_link_ttl_minutes",
        "password_reset_ttl_minutes",
        "session_token_ttl_minutes",
        "admin_token_ttl_minutes",
        "login_rate_limit_per_minute",
        "forgot_password_rate_limit_per_minute",
        "change_password_rate_limit_per_minute",
        "verify_email_rate_limit_per_minute",
        "rate_limit_window_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("app_key", mode="before")
    @classmethod
    def _ensure_app_key(cls, value: Any) -> str:
        if isinstance(value, str):
            value = value.strip()
        if value:
            if len(value) < _MIN_APP_KEY_LENGTH:
                raise ValueError(
                    f"APP_KEY must be at least {_MIN_APP_KEY_LENGTH} characters"
                )
            return value
        # Persist a generated key so signed links stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/idgate"))
        key_path = fs_root / ".app_key"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "app_key_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if key_path.exists() and not key_path.is_symlink():
            try:
                persisted = key_path.read_text().strip()
                if persisted and len(persisted) >= _MIN_APP_KEY_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error("app_key_read_failed", error=str(exc), path=str(key_path))

        generated = secrets.token_urlsafe(48)
        tmp_path: str | None = None
        try:
            # Write to a temp file then rename so readers never see a partial key
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".app_key_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(key_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("app_key_persist_failed", error=str(exc), path=str(key_path))
            raise RuntimeError(
                "Unable to persist APP_KEY; set APP_KEY env var or make SHARED_FS_ROOT writable"
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

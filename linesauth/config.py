from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from linesauth.logging import get_logger

logger = get_logger(__name__)


class LogoutScope(str, Enum):
    """What a logout that names a refresh token revokes."""

    SESSION = "session"
    ALL = "all"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a signing secret persisted under SHARED_FS_ROOT, creating it once.

    Tokens stay valid across restarts without the operator having to set the
    secret explicitly.
    """

    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/linesauth"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup",
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
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp"
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
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the identity and session core."""

    database_url: str = env_field("postgresql://localhost:5432/lines", "DATABASE_URL")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Shared rate-limit window; the in-process limiter is used when unset",
    )
    shared_fs_root: str = env_field("/srv/linesauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (no Redis requirement, dev mailer)",
    )

    access_token_secret: str = env_field(None, "ACCESS_TOKEN_SECRET", validate_default=True)
    refresh_token_secret: str = env_field(None, "REFRESH_TOKEN_SECRET", validate_default=True)
    jwt_issuer: str = env_field("linesauth", "JWT_ISSUER")
    jwt_audience: str = env_field("lines-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")

    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")

    rate_limit_max_requests: int = env_field(100, "RATE_LIMIT_MAX_REQUESTS")
    rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS")

    logout_default_scope: LogoutScope = env_field(
        LogoutScope.SESSION,
        "LOGOUT_DEFAULT_SCOPE",
        description="'session' revokes only the presented refresh token, 'all' every token of the user",
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Lines", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(False, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")
    refresh_purge_interval_seconds: int = env_field(
        3600,
        "REFRESH_PURGE_INTERVAL_SECONDS",
        description="How often expired refresh tokens are deleted in the background",
    )

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("logout_default_scope")
    @classmethod
    def _validate_logout_scope(cls, value: LogoutScope) -> LogoutScope:
        return LogoutScope(value)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "otp_length",
        "otp_ttl_minutes",
        "otp_max_attempts",
        "rate_limit_max_requests",
        "rate_limit_window_seconds",
        "refresh_purge_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_leeway_seconds")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("access_token_secret", mode="before")
    @classmethod
    def _ensure_access_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".access_token_secret")

    @field_validator("refresh_token_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".refresh_token_secret")

    @model_validator(mode="after")
    def _secrets_must_differ(self) -> "Settings":
        # A leaked access secret must not be able to mint refresh tokens.
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ")
        return self


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

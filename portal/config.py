from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from portal.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(fs_root: str, filename: str) -> str:
    """Return a secret persisted under ``fs_root``, generating it on first use.

    Secrets must stay stable for the lifetime of a deployment: a rotated JWT
    secret invalidates every access token and a rotated pepper invalidates
    every modern password hash.
    """
    root = Path(fs_root)
    secret_path = root / filename

    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except PermissionError:
        # directory may be owned by another user inside containers
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=f"{filename}_", suffix=".tmp")
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
            f"Unable to persist {filename}; set it explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("secret_generated", path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Process-wide configuration, loaded once at startup and never mutated."""

    database_url: str = env_field("postgresql://localhost:5432/portal", "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/portal", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_persist: bool = env_field(
        False,
        "MEMORY_STORE_PERSIST",
        description="Write the in-memory store to SHARED_FS_ROOT/state between restarts",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")

    # Token issuance
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("portal", "JWT_ISSUER")
    jwt_audience: str = env_field("portal-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)

    # Password hashing (argon2id parameters, see DESIGN.md for the cost mapping)
    password_pepper: str = env_field(None, "PASSWORD_PEPPER", validate_default=True)
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST", ge=1)
    password_memory_cost: int = env_field(65536, "PASSWORD_MEMORY_COST", ge=8)
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM", ge=1)
    min_password_length: int = env_field(6, "MIN_PASSWORD_LENGTH", ge=1)

    # Account lifecycle
    email_verification_enabled: bool = env_field(True, "EMAIL_VERIFICATION_ENABLED")
    verification_token_ttl_hours: int = env_field(24, "VERIFICATION_TOKEN_TTL_HOURS", gt=0)
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES", gt=0)
    home_email_domain: str = env_field("example.com", "HOME_EMAIL_DOMAIN")
    default_role_code: str = env_field("CALISAN", "DEFAULT_ROLE_CODE")
    default_tenant_id: str = env_field("00", "DEFAULT_TENANT_ID")
    revoke_sessions_on_password_change: bool = env_field(
        True, "REVOKE_SESSIONS_ON_PASSWORD_CHANGE"
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Portal", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:5173", "APP_BASE_URL")

    # Rate limits
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE", ge=1)
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE", ge=1)
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE", ge=1)

    # honour X-Forwarded-For only when deployed behind a proxy that overwrites it
    trust_forwarded_for: bool = env_field(False, "TRUST_FORWARDED_FOR")

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:5173"], "CORS_ALLOW_ORIGINS"
    )

    model_config = ConfigDict(extra="ignore", frozen=True)

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

    @field_validator("home_email_domain")
    @classmethod
    def _normalize_domain(cls, value: str) -> str:
        domain = value.strip().lower().lstrip("@")
        if not domain or "." not in domain:
            raise ValueError("HOME_EMAIL_DOMAIN must be a domain such as example.com")
        return domain

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters")
            return value
        fs_root = info.data.get("shared_fs_root") or "/srv/portal"
        return _load_or_create_secret(fs_root, ".jwt_secret")

    @field_validator("password_pepper", mode="before")
    @classmethod
    def _ensure_pepper(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"PASSWORD_PEPPER must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        fs_root = info.data.get("shared_fs_root") or "/srv/portal"
        return _load_or_create_secret(fs_root, ".password_pepper")


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

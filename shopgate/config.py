from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from shopgate.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32


class Environment(str, Enum):
    """Deployment environments; production turns on secure cookies."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth, session and second-factor service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/shopgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/shopgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-memory fallbacks, runtime reset).",
    )
    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    cookie_secure: bool | None = env_field(
        None,
        "COOKIE_SECURE",
        description="Force the Secure cookie attribute; defaults to on in production",
    )
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )

    # Credential codec
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_key_id: str = env_field("primary", "JWT_KEY_ID")
    jwt_retired_keys: list[str] = env_field(
        [],
        "JWT_RETIRED_KEYS",
        description="Comma separated kid:secret pairs still accepted for verification",
    )
    jwt_issuer: str = env_field("shopgate", "JWT_ISSUER")
    jwt_audience: str = env_field("shopgate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    csrf_token_ttl_hours: int = env_field(24, "CSRF_TOKEN_TTL_HOURS")

    # Lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    account_lock_seconds: int = env_field(
        1800,
        "ACCOUNT_LOCK_DURATION",
        description="Seconds an account stays locked after too many failed logins",
    )

    # One-time codes
    email_verification_otp_ttl_seconds: int = env_field(120, "OTP_EXPIRY_SECONDS")
    two_factor_otp_ttl_seconds: int = env_field(300, "TWO_FACTOR_OTP_TTL_SECONDS")
    two_factor_disable_ttl_seconds: int = env_field(
        120, "TWO_FACTOR_DISABLE_TTL_SECONDS"
    )
    password_reset_otp_ttl_seconds: int = env_field(600, "PASSWORD_RESET_OTP_TTL_SECONDS")
    totp_issuer: str = env_field("Shopgate", "TOTP_ISSUER")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key used to encrypt TOTP secrets at rest; falls back to JWT_SECRET",
    )

    # Rate limits (requests per window per ip:route)
    login_rate_limit_per_minute: int = env_field(5, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(
        5, "REGISTER_RATE_LIMIT_PER_MINUTE"
    )
    otp_rate_limit_per_minute: int = env_field(5, "OTP_RATE_LIMIT_PER_MINUTE")
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_keys: int = env_field(
        10_000,
        "RATE_LIMIT_MAX_KEYS",
        description="Upper bound on ip:route keys tracked by the in-memory limiter",
    )

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Shopgate", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    login_path: str = env_field("/login", "LOGIN_PATH")
    support_email: str = env_field("support@shopgate.local", "SUPPORT_EMAIL")

    # Server
    host: str = env_field("127.0.0.1", "HOST")
    port: int = env_field(8000, "PORT")

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

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.environment == Environment.PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            return Environment(value.strip().lower())
        return Environment(value)

    @field_validator("cors_allow_origins", "jwt_retired_keys", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator("jwt_retired_keys")
    @classmethod
    def _validate_retired_keys(cls, value: list[str]) -> list[str]:
        for entry in value:
            kid, sep, secret = entry.partition(":")
            if not sep or not kid or not secret:
                raise ValueError("JWT_RETIRED_KEYS entries must look like kid:secret")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < MIN_JWT_SECRET_LENGTH and not _test_mode_env():
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/shopgate"))
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
                if persisted and len(persisted) >= MIN_JWT_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
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
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    def retired_signing_keys(self) -> dict[str, str]:
        keys: dict[str, str] = {}
        for entry in self.jwt_retired_keys:
            kid, _, secret = entry.partition(":")
            keys[kid] = secret
        return keys


def _test_mode_env() -> bool:
    return os.getenv("TEST_MODE", "false").lower() in {"1", "true", "yes", "on"}


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

from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from storekeep.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the storekeep web application."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/storekeep", "SHARED_FS_ROOT")
    secret_key: str = env_field(
        None,
        "SECRET_KEY",
        validate_default=True,
        description="Key material for encrypting secrets at rest and hashing remembered clients",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    # Email delivery for two-factor codes
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Storekeep", "EMAIL_FROM_NAME")
    allow_registration: bool = env_field(
        True, "ALLOW_REGISTRATION", description="Allow self-service account registration"
    )
    # Browser sessions
    session_cookie_name: str = env_field("storekeep_session", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")
    session_idle_minutes: int = env_field(
        20,
        "SESSION_IDLE_MINUTES",
        description="Sliding server-side lifetime of a non-persistent browser session",
    )
    remember_me_days: int = env_field(
        14, "REMEMBER_ME_DAYS", description="Lifetime of a persistent (remember me) session"
    )
    two_factor_pending_minutes: int = env_field(
        5,
        "TWO_FACTOR_PENDING_MINUTES",
        description="How long a password-verified principal may complete the 2FA step",
    )
    remember_client_days: int = env_field(
        14,
        "REMEMBER_CLIENT_DAYS",
        description="How long a remembered machine may skip the 2FA step",
    )
    two_factor_code_interval_seconds: int = env_field(
        180, "TWO_FACTOR_CODE_INTERVAL_SECONDS"
    )
    session_sweep_interval_seconds: int = env_field(300, "SESSION_SWEEP_INTERVAL_SECONDS")
    # Lockout
    lockout_max_failed_attempts: int = env_field(5, "LOCKOUT_MAX_FAILED_ATTEMPTS")
    lockout_minutes: int = env_field(5, "LOCKOUT_MINUTES")
    # Password policy
    password_required_length: int = env_field(6, "PASSWORD_REQUIRED_LENGTH")
    password_require_digit: bool = env_field(True, "PASSWORD_REQUIRE_DIGIT")
    password_require_lowercase: bool = env_field(True, "PASSWORD_REQUIRE_LOWERCASE")
    password_require_uppercase: bool = env_field(True, "PASSWORD_REQUIRE_UPPERCASE")
    password_require_non_alphanumeric: bool = env_field(
        True, "PASSWORD_REQUIRE_NON_ALPHANUMERIC"
    )
    # Rate limits
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    recovery_rate_limit_per_minute: int = env_field(10, "RECOVERY_RATE_LIMIT_PER_MINUTE")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("session_idle_minutes", "remember_me_days", "lockout_max_failed_attempts")
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("secret_key")
    @classmethod
    def _ensure_secret_key(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated key so encrypted state stays readable across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/storekeep"))
        secret_path = fs_root / ".secret_key"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("secret_key_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("secret_key_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".secret_key_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error("secret_key_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist secret key; set SECRET_KEY or make SHARED_FS_ROOT writable"
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

from __future__ import annotations

import os
import secrets
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from medgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Immutable runtime configuration, built once at startup and handed to
    each component's constructor."""

    # Session tokens
    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("medgate", "JWT_ISSUER")
    jwt_audience: str = env_field("medgate-api", "JWT_AUDIENCE")
    session_ttl_minutes: int = env_field(
        60 * 24 * 7, "SESSION_TTL_MINUTES", ge=1, description="Session token lifetime"
    )
    token_denylist_enabled: bool = env_field(
        True,
        "TOKEN_DENYLIST_ENABLED",
        description="Deny-list token ids on logout until they expire",
    )
    # Credential vault
    password_hash_cost: int = env_field(
        12, "PASSWORD_HASH_COST", ge=1, description="argon2id time cost"
    )
    password_hash_memory_kib: int = env_field(
        19456, "PASSWORD_HASH_MEMORY_KIB", ge=8, description="argon2id memory cost"
    )
    password_min_length: int = env_field(6, "PASSWORD_MIN_LENGTH", ge=1)
    temp_password_length: int = env_field(12, "TEMP_PASSWORD_LENGTH", ge=8)
    # Lockout policy
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lock_duration_minutes: int = env_field(120, "LOCK_DURATION_MINUTES", ge=1)
    staff_lockout_enabled: bool = env_field(
        True,
        "STAFF_LOCKOUT_ENABLED",
        description="Apply the administrator lockout policy to staff accounts",
    )
    # Verification ledger
    verification_code_ttl_minutes: int = env_field(10, "VERIFICATION_CODE_TTL_MINUTES", ge=1)
    verification_max_attempts: int = env_field(5, "VERIFICATION_MAX_ATTEMPTS", ge=1)
    verification_retention_hours: int = env_field(24, "VERIFICATION_RETENTION_HOURS", ge=1)
    verification_cleanup_interval_seconds: int = env_field(
        300, "VERIFICATION_CLEANUP_INTERVAL_SECONDS", ge=1
    )
    # Email service settings
    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Medgate", "EMAIL_FROM_NAME")
    email_timeout_seconds: float = env_field(
        20.0, "EMAIL_TIMEOUT_SECONDS", gt=0, description="Upper bound per dispatch attempt"
    )
    email_deadline_seconds: float = env_field(
        60.0, "EMAIL_DEADLINE_SECONDS", gt=0, description="Upper bound across all attempts"
    )
    email_max_attempts: int = env_field(3, "EMAIL_MAX_ATTEMPTS", ge=1)
    email_backoff_seconds: float = env_field(0.5, "EMAIL_BACKOFF_SECONDS", ge=0)
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    # Storage
    shared_fs_root: str = env_field("/srv/medgate", "SHARED_FS_ROOT")
    state_path: Optional[str] = env_field(
        None, "STATE_PATH", description="JSON snapshot file for the memory store"
    )
    redis_url: Optional[str] = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(True, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore", frozen=True)

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

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(minutes=self.session_ttl_minutes)

    @property
    def lock_duration(self) -> timedelta:
        return timedelta(minutes=self.lock_duration_minutes)

    @property
    def verification_code_ttl(self) -> timedelta:
        return timedelta(minutes=self.verification_code_ttl_minutes)

    @property
    def verification_retention(self) -> timedelta:
        return timedelta(hours=self.verification_retention_hours)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/medgate"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

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
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
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

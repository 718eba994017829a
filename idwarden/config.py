from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from idwarden.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_names(raw: str) -> list[str]:
    return [part.strip().upper() for part in raw.split(",") if part.strip()]


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/idwarden", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/idwarden", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets.",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("idwarden", "JWT_ISSUER")
    jwt_audience: str = env_field("idwarden-clients", "JWT_AUDIENCE")
    refresh_token_pepper: str | None = env_field(
        None,
        "REFRESH_TOKEN_PEPPER",
        description="Key for refresh secret digests; defaults to jwt_secret",
    )
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", ge=1
    )
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)

    challenge_ttl_minutes: int = env_field(5, "CHALLENGE_TTL_MINUTES", ge=1)
    challenge_rate_window_seconds: int = env_field(
        60, "CHALLENGE_RATE_WINDOW_SECONDS", ge=1
    )
    challenge_max_attempts: int = env_field(3, "CHALLENGE_MAX_ATTEMPTS", ge=1)
    challenge_code_length: int = env_field(6, "CHALLENGE_CODE_LENGTH", ge=4, le=10)
    log_verification_codes: bool = env_field(
        False,
        "LOG_VERIFICATION_CODES",
        description="Write plaintext codes to the log dispatcher (development only)",
    )
    default_phone_country_code: str = env_field("86", "DEFAULT_PHONE_COUNTRY_CODE")
    notify_webhook_url: str | None = env_field(
        None,
        "NOTIFY_WEBHOOK_URL",
        description="Gateway that receives codes as JSON; codes are only logged when unset",
    )
    notify_webhook_token: str | None = env_field(None, "NOTIFY_WEBHOOK_TOKEN")
    notify_webhook_timeout_seconds: float = env_field(
        10.0, "NOTIFY_WEBHOOK_TIMEOUT_SECONDS", gt=0
    )

    system_roles: str = env_field(
        "ADMIN",
        "SYSTEM_ROLES",
        description="Comma-separated role names that cannot be deleted",
    )
    default_role: str | None = env_field(
        "USER",
        "DEFAULT_ROLE",
        description="Role assigned on registration; empty disables",
    )
    admin_role: str = env_field("ADMIN", "ADMIN_ROLE")

    # Argon2id costs: passwords are slower than short-lived codes
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", ge=8
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)
    code_hash_time_cost: int = env_field(2, "CODE_HASH_TIME_COST", ge=1)
    code_hash_memory_cost: int = env_field(32768, "CODE_HASH_MEMORY_COST", ge=8)
    code_hash_parallelism: int = env_field(2, "CODE_HASH_PARALLELISM", ge=1)

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
    def system_role_names(self) -> list[str]:
        return _split_names(self.system_roles)

    @property
    def default_role_name(self) -> str | None:
        if not self.default_role or not self.default_role.strip():
            return None
        return self.default_role.strip().upper()

    @property
    def admin_role_name(self) -> str:
        return self.admin_role.strip().upper()

    @property
    def refresh_digest_key(self) -> str:
        return self.refresh_token_pepper or self.jwt_secret

    @field_validator(
        "redis_url",
        "default_role",
        "refresh_token_pepper",
        "notify_webhook_url",
        "notify_webhook_token",
    )
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("default_phone_country_code")
    @classmethod
    def _validate_country_code(cls, value: str) -> str:
        digits = value.strip().lstrip("+")
        if not digits.isdigit() or not 1 <= len(digits) <= 3 or digits[0] == "0":
            raise ValueError("default_phone_country_code must be 1-3 digits")
        return digits

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/idwarden"))
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

from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from keyward.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for credential issuance."""

    database_url: str = env_field("postgresql://localhost:5432/keyward", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_dir: str = env_field("/srv/keyward", "STATE_DIR")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviour: sync Redis client and in-memory fallbacks.",
    )
    store_timeout_seconds: float = env_field(
        3.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for a single Redis command or SQL statement",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("keyward", "JWT_ISSUER")
    jwt_audience: str = env_field("keyward-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0, "JWT_LEEWAY_SECONDS", description="Tolerated clock skew when checking exp"
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(30 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")

    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(64 * 1024, "PASSWORD_HASH_MEMORY_COST")

    verification_code_length: int = env_field(6, "VERIFICATION_CODE_LENGTH")
    verification_code_ttl_seconds: int = env_field(5 * 60, "VERIFICATION_CODE_TTL_SECONDS")

    delivery_max_attempts: int = env_field(3, "DELIVERY_MAX_ATTEMPTS")
    delivery_timeout_seconds: float = env_field(
        10.0, "DELIVERY_TIMEOUT_SECONDS", description="Budget for one send attempt"
    )
    delivery_workers: int = env_field(2, "DELIVERY_WORKERS")
    delivery_queue_size: int = env_field(1000, "DELIVERY_QUEUE_SIZE")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Keyward", "EMAIL_FROM_NAME")

    sms_gateway_url: str | None = env_field(None, "SMS_GATEWAY_URL")
    sms_gateway_token: str | None = env_field(None, "SMS_GATEWAY_TOKEN")
    sms_sender: str = env_field("Keyward", "SMS_SENDER")

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

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTL must be positive")
        return value

    @field_validator("verification_code_length")
    @classmethod
    def _code_length(cls, value: int) -> int:
        if not 4 <= value <= 12:
            raise ValueError("verification code length must be between 4 and 12")
        return value

    @field_validator("delivery_max_attempts")
    @classmethod
    def _attempts(cls, value: int) -> int:
        return max(1, value)

    # Runs before type coercion so the None default reaches the generator
    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: Any) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so issued tokens survive restarts
        state_dir = Path(os.getenv("STATE_DIR", "/srv/keyward"))
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(state_dir))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
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
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
        logger.warning("jwt_secret_generated", path=str(secret_path))
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

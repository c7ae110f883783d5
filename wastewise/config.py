from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from wastewise.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment and an optional .env file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/wastewise", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/wastewise", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables deterministic behavior and in-process fallbacks for tests",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("wastewise", "JWT_ISSUER")
    jwt_audience: str = env_field("wastewise-clients", "JWT_AUDIENCE")
    session_token_ttl_days: int = env_field(
        30,
        "SESSION_TOKEN_TTL_DAYS",
        description="Validity window of issued session tokens",
    )

    code_ttl_minutes: int = env_field(
        10,
        "CODE_TTL_MINUTES",
        description="Lifetime of emailed one-time verification codes",
    )
    code_purge_interval_seconds: int = env_field(
        300,
        "CODE_PURGE_INTERVAL_SECONDS",
        description="How often expired codes are reaped and stale inventory is marked expired",
    )
    allow_signup: bool = env_field(
        True,
        "ALLOW_SIGNUP",
        description="Allow self-service registration",
    )

    smtp_host: str | None = env_field(
        None, "SMTP_HOST", description="SMTP server hostname"
    )
    smtp_port: int = env_field(
        587, "SMTP_PORT", description="SMTP server port"
    )
    smtp_user: str | None = env_field(
        None, "SMTP_USER", description="SMTP username"
    )
    smtp_password: str | None = env_field(
        None, "SMTP_PASSWORD", description="SMTP password"
    )
    smtp_use_tls: bool = env_field(
        True, "SMTP_USE_TLS", description="Use STARTTLS for SMTP"
    )
    email_from_address: str | None = env_field(
        None, "EMAIL_FROM_ADDRESS", description="Sender email address"
    )
    email_from_name: str = env_field(
        "WasteWise", "EMAIL_FROM_NAME", description="Sender display name"
    )
    email_dev_mode: bool = env_field(
        False,
        "EMAIL_DEV_MODE",
        description="Log verification emails instead of sending when SMTP is not configured",
    )

    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str = env_field("https://api.openai.com/v1", "OPENAI_BASE_URL")
    advisor_model: str = env_field("gpt-3.5-turbo", "ADVISOR_MODEL")

    cors_allow_origins: str = env_field(
        "http://localhost:5173",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed browser origins",
    )
    expiry_alert_days: int = env_field(
        3,
        "EXPIRY_ALERT_DAYS",
        description="Inventory items expiring within this many days are reported as alerts",
    )
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    code_rate_limit_per_minute: int = env_field(5, "CODE_RATE_LIMIT_PER_MINUTE")

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
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @field_validator("session_token_ttl_days", "code_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("ttl must be positive")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/wastewise"))
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

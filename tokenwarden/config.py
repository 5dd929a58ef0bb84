from __future__ import annotations

import os
from typing import Any

from cryptography.hazmat.primitives import serialization
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import ConfigurationError

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token lifecycle service."""

    app_name: str = env_field("tokenwarden", "APP_NAME")
    database_url: str = env_field(
        "postgresql://localhost:5432/tokenwarden", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    state_root: str | None = env_field(
        None,
        "STATE_ROOT",
        description="Directory used by the in-memory store to persist a snapshot",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors used by CI",
    )

    # Signing keys are required; they are never generated on the fly.
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tokenwarden", "JWT_ISSUER")
    jwt_audience: str = env_field("tokenwarden-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking exp",
    )

    platform_private_key: str | None = env_field(None, "PLATFORM_JWT_PRIVATE_KEY")
    platform_issuer: str | None = env_field(None, "PLATFORM_JWT_ISSUER")
    platform_audience: str = env_field("platform", "PLATFORM_JWT_AUDIENCE")
    platform_token_ttl_minutes: int = env_field(60, "PLATFORM_TOKEN_TTL_MINUTES")

    verification_code_ttl_minutes: int = env_field(15, "VERIFICATION_CODE_TTL_MINUTES")
    verification_code_length: int = env_field(6, "VERIFICATION_CODE_LENGTH")

    password_hash_workers: int = env_field(
        2,
        "PASSWORD_HASH_WORKERS",
        description="Upper bound on concurrent scrypt derivations (~32 MiB each)",
    )
    signing_workers: int = env_field(4, "SIGNING_WORKERS")

    notification_api_url: str = env_field("https://api.resend.com", "NOTIFICATION_API_URL")
    notification_api_key: str | None = env_field(None, "NOTIFICATION_API_KEY")
    notification_from: str = env_field(
        "Tokenwarden <noreply@localhost>", "NOTIFICATION_FROM"
    )
    notification_timeout_seconds: float = env_field(10.0, "NOTIFICATION_TIMEOUT_SECONDS")
    cleanup_interval_seconds: int = env_field(
        24 * 60 * 60,
        "CLEANUP_INTERVAL_SECONDS",
        description="Period of the expired code and rate-limit window sweep",
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

    @field_validator("platform_private_key")
    @classmethod
    def _validate_private_key(cls, value: str | None) -> str | None:
        if not value:
            return None
        # Keys passed through env files often carry literal "\n" sequences
        pem = value.replace("\\n", "\n").strip()
        try:
            serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
        except (ValueError, TypeError) as exc:
            raise ValueError("PLATFORM_JWT_PRIVATE_KEY is not a PEM private key") from exc
        return pem

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "platform_token_ttl_minutes",
        "verification_code_ttl_minutes",
        "password_hash_workers",
        "signing_workers",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("verification_code_length")
    @classmethod
    def _code_length(cls, value: int) -> int:
        if not 4 <= value <= 12:
            raise ValueError("verification code length must be between 4 and 12")
        return value

    @field_validator("token_leeway_seconds")
    @classmethod
    def _non_negative_leeway(cls, value: int) -> int:
        if value < 0:
            raise ValueError("leeway cannot be negative")
        return value

    @property
    def effective_platform_issuer(self) -> str:
        return self.platform_issuer or self.jwt_issuer

    def require_key_material(self) -> None:
        """Raise ConfigurationError unless both signing keys are configured."""
        missing = []
        if not self.jwt_secret:
            missing.append("JWT_SECRET")
        if not self.platform_private_key:
            missing.append("PLATFORM_JWT_PRIVATE_KEY")
        if missing:
            logger.error("signing_key_missing", missing=missing)
            raise ConfigurationError(
                "signing key material is not configured",
                detail={"missing": missing},
            )


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

from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hivelog.logging import get_logger
from hivelog.service.errors import ValidationError
from hivelog.service.tokens import parse_duration

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; only production hides stack traces."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the hivelog API."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/hivelog", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; permits generated secrets and runtime resets.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    access_token_ttl: str = env_field(
        "1h", "ACCESS_TOKEN_TTL", description="Access token lifetime, e.g. 15m or 1h"
    )
    refresh_token_ttl: str = env_field(
        "7d", "REFRESH_TOKEN_TTL", description="Refresh token lifetime, e.g. 7d"
    )
    max_token_lifetime: str = env_field(
        "7d",
        "MAX_TOKEN_LIFETIME",
        description=(
            "Revocation TTL used when a token's own expiry cannot be read; "
            "must cover the longest-lived token type"
        ),
    )
    session_cookie_name: str = env_field("jwtcookie", "SESSION_COOKIE_NAME")
    refresh_cookie_name: str = env_field("refreshToken", "REFRESH_COOKIE_NAME")
    default_role: str = env_field("user", "DEFAULT_ROLE")
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")

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

    @field_validator("environment")
    @classmethod
    def _validate_environment(cls, value: Environment) -> Environment:
        return Environment(value)

    @field_validator("access_token_ttl", "refresh_token_ttl", "max_token_lifetime")
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        try:
            parse_duration(value)
        except ValidationError as exc:
            raise ValueError(exc.message) from exc
        return value

    @model_validator(mode="after")
    def _ensure_secrets(self) -> "Settings":
        if not self.jwt_secret or not self.jwt_refresh_secret:
            if not self.test_mode:
                raise ValueError(
                    "JWT_SECRET and JWT_REFRESH_SECRET must be set outside TEST_MODE"
                )
            # Ephemeral secrets: tokens do not survive a restart in test mode
            self.jwt_secret = self.jwt_secret or secrets.token_urlsafe(48)
            self.jwt_refresh_secret = self.jwt_refresh_secret or secrets.token_urlsafe(48)
            logger.warning("jwt_secrets_generated", test_mode=True)
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @model_validator(mode="after")
    def _ensure_revocation_fallback_covers_tokens(self) -> "Settings":
        longest = max(self.access_ttl_seconds, self.refresh_ttl_seconds)
        if self.max_token_lifetime_seconds < longest:
            raise ValueError(
                "MAX_TOKEN_LIFETIME must be at least as long as the longest token TTL"
            )
        return self

    @property
    def access_ttl_seconds(self) -> int:
        return parse_duration(self.access_token_ttl)

    @property
    def refresh_ttl_seconds(self) -> int:
        return parse_duration(self.refresh_token_ttl)

    @property
    def max_token_lifetime_seconds(self) -> int:
        return parse_duration(self.max_token_lifetime)

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION


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

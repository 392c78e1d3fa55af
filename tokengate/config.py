from __future__ import annotations

import os
from typing import Any, List, Literal

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tokengate.logging import get_logger
from tokengate.service.errors import ConfigurationError

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment (with ``.env`` fallback)."""

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tokengate", "JWT_ISSUER")
    jwt_audience: str = env_field("tokengate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", gt=0, description="Access token lifetime"
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        gt=0,
        description="Refresh token lifetime",
    )
    # External identity provider
    oauth_provider: str = env_field("google", "OAUTH_PROVIDER")
    oauth_client_id: str | None = env_field(None, "OAUTH_CLIENT_ID")
    oauth_client_secret: str | None = env_field(None, "OAUTH_CLIENT_SECRET")
    oauth_redirect_uri: str = env_field(
        "https://localhost:7141/api/account/login/external/callback",
        "OAUTH_REDIRECT_URI",
    )
    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES", gt=0)
    allowed_return_origins: List[str] = env_field(
        ["http://localhost:5173"],
        "ALLOWED_RETURN_ORIGINS",
        description="Origins the external login flow may redirect back to",
    )
    # Transport
    cors_allow_origins: List[str] = env_field(
        ["http://localhost:5173"], "CORS_ALLOW_ORIGINS"
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_samesite: Literal["lax", "strict", "none"] = env_field(
        "lax", "COOKIE_SAMESITE"
    )
    # Storage
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    database_url: str = env_field(
        "postgresql://localhost:5432/tokengate", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")

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
        try:
            return cls(**merged)
        except ValidationError as exc:
            raise ConfigurationError(f"invalid settings: {exc}") from exc

    @field_validator("allowed_return_origins", "cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip().rstrip("/") for item in value.split(",") if item.strip()]
        return value

    @field_validator("redis_url", "jwt_secret", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("oauth_provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        return value.strip().lower()

    def validate_startup(self) -> None:
        """Raise ``ConfigurationError`` unless the process can safely start.

        A usable signing secret and provider credentials are mandatory; unlike
        runtime failures these are never reported per request.
        """
        if not self.jwt_secret:
            raise ConfigurationError("JWT_SECRET must be set")
        if len(self.jwt_secret) < MIN_JWT_SECRET_LENGTH:
            raise ConfigurationError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        if not self.oauth_client_id:
            raise ConfigurationError("OAUTH_CLIENT_ID must be set")
        if not self.oauth_client_secret:
            raise ConfigurationError("OAUTH_CLIENT_SECRET must be set")
        logger.info(
            "settings_validated",
            issuer=self.jwt_issuer,
            audience=self.jwt_audience,
            oauth_provider=self.oauth_provider,
            use_memory_store=self.use_memory_store,
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

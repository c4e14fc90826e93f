from __future__ import annotations

import os
from enum import Enum
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_SECRET_LENGTH = 32
DEFAULT_ACCESS_TOKEN_TTL_SECONDS = 60 * 60
DEFAULT_REFRESH_TOKEN_TTL_SECONDS = 7 * 24 * 60 * 60


class KycPolicy(str, Enum):
    """Which principals must be KYC-verified before a token is issued."""

    ALL = "all"
    MERCHANT = "merchant"
    NONE = "none"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token and session lifecycle service."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="In-process session/revocation stores; only correct for a single instance",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("map-of-pi", "JWT_ISSUER")
    token_scheme_version: str = env_field(
        "1.0",
        "TOKEN_SCHEME_VERSION",
        description="Bumping this invalidates every previously issued token",
    )
    access_token_ttl_seconds: int = env_field(
        DEFAULT_ACCESS_TOKEN_TTL_SECONDS, "ACCESS_TOKEN_TTL_SECONDS"
    )
    refresh_token_ttl_seconds: int = env_field(
        DEFAULT_REFRESH_TOKEN_TTL_SECONDS, "REFRESH_TOKEN_TTL_SECONDS"
    )
    clock_skew_leeway_seconds: int = env_field(30, "CLOCK_SKEW_LEEWAY_SECONDS")

    login_rate_limit_attempts: int = env_field(5, "LOGIN_RATE_LIMIT_ATTEMPTS")
    login_rate_limit_window_seconds: int = env_field(60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")
    login_rate_limit_block_seconds: int = env_field(300, "LOGIN_RATE_LIMIT_BLOCK_SECONDS")
    refresh_rate_limit_attempts: int = env_field(5, "REFRESH_RATE_LIMIT_ATTEMPTS")
    refresh_rate_limit_window_seconds: int = env_field(60, "REFRESH_RATE_LIMIT_WINDOW_SECONDS")
    refresh_rate_limit_block_seconds: int = env_field(300, "REFRESH_RATE_LIMIT_BLOCK_SECONDS")

    breaker_failure_threshold: int = env_field(5, "BREAKER_FAILURE_THRESHOLD")
    breaker_reset_timeout_seconds: float = env_field(30.0, "BREAKER_RESET_TIMEOUT_SECONDS")
    store_call_timeout_seconds: float = env_field(2.0, "STORE_CALL_TIMEOUT_SECONDS")

    revocation_sweep_interval_seconds: int = env_field(300, "REVOCATION_SWEEP_INTERVAL_SECONDS")
    session_retention_seconds: int = env_field(
        DEFAULT_REFRESH_TOKEN_TTL_SECONDS + 24 * 60 * 60,
        "SESSION_RETENTION_SECONDS",
        description="How long session rows (including deactivated ones) are kept for audit",
    )

    pi_api_base_url: str = env_field("https://api.minepi.com", "PI_API_BASE_URL")
    pi_api_timeout_seconds: float = env_field(10.0, "PI_API_TIMEOUT_SECONDS")

    kyc_required_for: KycPolicy = env_field(KycPolicy.MERCHANT, "KYC_REQUIRED_FOR")
    principals_file: Optional[str] = env_field(
        None,
        "PRINCIPALS_FILE",
        description="JSON list of principals loaded into the in-process directory",
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

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value or len(value) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be set and at least {MIN_SECRET_LENGTH} characters long"
            )
        return value

    @field_validator("kyc_required_for")
    @classmethod
    def _validate_kyc_policy(cls, value: KycPolicy) -> KycPolicy:
        return KycPolicy(value)

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "login_rate_limit_attempts",
        "login_rate_limit_window_seconds",
        "refresh_rate_limit_attempts",
        "refresh_rate_limit_window_seconds",
        "breaker_failure_threshold",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value


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

from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from docshield.logging import get_logger

logger = get_logger(__name__)

_MIN_JWT_SECRET_LENGTH = 16


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the document service and its admission pipeline."""

    database_url: str = env_field(
        "postgresql://localhost:5432/docshield", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/docshield", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    build_sha: str | None = env_field(None, "BUILD_SHA")

    # Signed tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("docshield", "JWT_ISSUER")
    jwt_audience: str = env_field("docshield-clients", "JWT_AUDIENCE")
    session_token_ttl_hours: int = env_field(
        24, "SESSION_TOKEN_TTL_HOURS", description="Lifetime of session-class tokens"
    )
    long_lived_token_ttl_days: int = env_field(
        7,
        "LONG_LIVED_TOKEN_TTL_DAYS",
        description="Lifetime of long-lived tokens issued for remember-me logins",
    )
    two_factor_challenge_ttl_seconds: int = env_field(
        300,
        "TWO_FACTOR_CHALLENGE_TTL_SECONDS",
        description="Lifetime of the challenge handed out by the password step of a 2FA login",
    )
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest; defaults to JWT_SECRET",
    )

    # Credits
    daily_credit_limit: int = env_field(20, "DAILY_CREDIT_LIMIT")
    signup_credits: int = env_field(20, "SIGNUP_CREDITS")

    # Account lockout
    account_lockout_threshold: int = env_field(5, "ACCOUNT_LOCKOUT_THRESHOLD")
    account_lockout_minutes: int = env_field(30, "ACCOUNT_LOCKOUT_MINUTES")

    # IP reputation
    ip_max_failed_logins: int = env_field(5, "IP_MAX_FAILED_LOGINS")
    ip_block_seconds: int = env_field(30 * 60, "IP_BLOCK_SECONDS")
    ip_failed_window_seconds: int = env_field(30 * 60, "IP_FAILED_WINDOW_SECONDS")
    ip_burst_limit: int = env_field(100, "IP_BURST_LIMIT")
    ip_burst_window_seconds: int = env_field(60, "IP_BURST_WINDOW_SECONDS")
    ip_suspicious_threshold: int = env_field(5, "IP_SUSPICIOUS_THRESHOLD")
    ip_suspicious_window_seconds: int = env_field(30 * 60, "IP_SUSPICIOUS_WINDOW_SECONDS")
    ip_geo_scoring_enabled: bool = env_field(
        False,
        "IP_GEO_SCORING_ENABLED",
        description="Score addresses a configured geo resolver cannot place",
    )
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Use the first X-Forwarded-For entry as the client address",
    )

    # Fixed-window rate limits per client address
    api_rate_limit: int = env_field(100, "API_RATE_LIMIT")
    api_rate_limit_window_seconds: int = env_field(15 * 60, "API_RATE_LIMIT_WINDOW_SECONDS")
    auth_rate_limit: int = env_field(10, "AUTH_RATE_LIMIT")
    auth_rate_limit_window_seconds: int = env_field(60 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS")
    email_rate_limit: int = env_field(5, "EMAIL_RATE_LIMIT")
    email_rate_limit_window_seconds: int = env_field(
        24 * 60 * 60, "EMAIL_RATE_LIMIT_WINDOW_SECONDS"
    )

    # Email verification and password reset
    require_email_verification: bool = env_field(True, "REQUIRE_EMAIL_VERIFICATION")
    verification_token_ttl_hours: int = env_field(24, "VERIFICATION_TOKEN_TTL_HOURS")
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("DocShield", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Document analysis backend (OpenAI-compatible chat completions)
    analyzer_api_key: str | None = env_field(None, "ANALYZER_API_KEY")
    analyzer_base_url: str = env_field("https://api.openai.com/v1", "ANALYZER_BASE_URL")
    analyzer_model: str = env_field("gpt-3.5-turbo", "ANALYZER_MODEL")
    analyzer_max_chars: int = env_field(4000, "ANALYZER_MAX_CHARS")
    analyzer_timeout_seconds: float = env_field(30.0, "ANALYZER_TIMEOUT_SECONDS")
    max_document_bytes: int = env_field(5 * 1024 * 1024, "MAX_DOCUMENT_BYTES")

    # HTTP surface
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
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

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        # Tokens signed with a generated secret would silently die on restart, so
        # refuse to start instead.
        if not value or not value.strip():
            raise ValueError("JWT_SECRET must be set")
        if len(value) < _MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {_MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "daily_credit_limit",
        "signup_credits",
        "account_lockout_threshold",
        "ip_max_failed_logins",
        "ip_burst_limit",
        "api_rate_limit",
        "auth_rate_limit",
        "email_rate_limit",
    )
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must be >= 0")
        return value

    @property
    def mfa_key_material(self) -> str:
        return self.mfa_secret_key or self.jwt_secret or ""


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

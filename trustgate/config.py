from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from trustgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the verification and challenge engine."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow the in-process cache and runtime resets for tests.",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    app_name: str = env_field("Trustgate", "APP_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Critical action challenges
    challenge_ttl_seconds: int = env_field(
        10 * 60, "CHALLENGE_TTL_SECONDS", description="Lifetime of a critical action challenge"
    )

    # Trusted devices
    trusted_device_days: int = env_field(
        30, "TRUSTED_DEVICE_DAYS", description="How long a trusted device may skip MFA"
    )

    # Tenant verification policy defaults, used when a tenant has no policy row
    tenant_policy_cache_ttl_seconds: int = env_field(
        5 * 60, "TENANT_POLICY_CACHE_TTL_SECONDS"
    )
    default_require_phone_verification: bool = env_field(
        True, "DEFAULT_REQUIRE_PHONE_VERIFICATION"
    )
    default_require_mfa: bool = env_field(True, "DEFAULT_REQUIRE_MFA")
    default_phone_deadline_days: int = env_field(3, "DEFAULT_PHONE_DEADLINE_DAYS")
    default_mfa_deadline_days: int = env_field(7, "DEFAULT_MFA_DEADLINE_DAYS")

    # Login anomaly detection
    login_history_limit: int = env_field(
        10, "LOGIN_HISTORY_LIMIT", description="Recent sessions compared against a new login"
    )
    location_distance_threshold_km: float = env_field(
        100.0, "LOCATION_DISTANCE_THRESHOLD_KM"
    )
    login_alert_cooldown_seconds: int = env_field(5 * 60, "LOGIN_ALERT_COOLDOWN_SECONDS")
    suspicious_login_cooldown_seconds: int = env_field(
        15 * 60, "SUSPICIOUS_LOGIN_COOLDOWN_SECONDS"
    )
    default_alert_cooldown_seconds: int = env_field(60, "DEFAULT_ALERT_COOLDOWN_SECONDS")

    # Geolocation
    geoip_url: str | None = env_field(
        None,
        "GEOIP_URL",
        description="JSON lookup endpoint; '{ip}' is replaced with the address",
    )
    geoip_timeout_seconds: float = env_field(2.0, "GEOIP_TIMEOUT_SECONDS")

    # Email delivery (dev mode logs instead of sending when smtp_host is unset)
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Trustgate", "EMAIL_FROM_NAME")

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

    @field_validator(
        "challenge_ttl_seconds",
        "trusted_device_days",
        "tenant_policy_cache_ttl_seconds",
        "login_history_limit",
        "login_alert_cooldown_seconds",
        "suspicious_login_cooldown_seconds",
        "default_alert_cooldown_seconds",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("default_phone_deadline_days", "default_mfa_deadline_days")
    @classmethod
    def _ensure_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("deadline days cannot be negative")
        return value

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
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

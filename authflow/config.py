from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import quote

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authflow.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments recognised by configuration validation."""

    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


class ConfigError(Exception):
    """Raised when the configuration has blocking errors."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


@dataclass
class ConfigValidation:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


_SECRET_FIELDS = {
    "keycloak_client_secret",
    "keycloak_admin_client_secret",
    "redis_password",
    "smtp_password",
    "twilio_auth_token",
}


class Settings(BaseModel):
    """Runtime settings for the identity, policy and cache collaborators."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")

    # Identity provider (Keycloak)
    keycloak_url: str = env_field("http://localhost:8080", "KEYCLOAK_URL")
    keycloak_realm: str = env_field("mu-realm", "KEYCLOAK_REALM")
    keycloak_client_id: str = env_field("mu-client", "KEYCLOAK_CLIENT_ID")
    keycloak_client_secret: str | None = env_field(None, "KEYCLOAK_CLIENT_SECRET")
    keycloak_admin_client_id: str | None = env_field(
        None,
        "KEYCLOAK_ADMIN_CLIENT_ID",
        description="Service-account client for admin API calls; defaults to the main client",
    )
    keycloak_admin_client_secret: str | None = env_field(None, "KEYCLOAK_ADMIN_CLIENT_SECRET")
    keycloak_timeout_seconds: float = env_field(10.0, "KEYCLOAK_TIMEOUT_SECONDS")

    # Policy decision service (OPA)
    opa_url: str = env_field("http://localhost:8181", "OPA_URL")
    opa_policy_path: str = env_field("/v1/data/authz/decision", "OPA_POLICY_PATH")
    opa_timeout_seconds: float = env_field(5.0, "OPA_TIMEOUT_SECONDS")
    opa_enable_batching: bool = env_field(True, "OPA_ENABLE_BATCHING")
    opa_batch_size: int = env_field(50, "OPA_BATCH_SIZE")
    opa_retry_attempts: int = env_field(3, "OPA_RETRY_ATTEMPTS")
    opa_retry_delay_seconds: float = env_field(1.0, "OPA_RETRY_DELAY_SECONDS")

    # Cache store (Redis)
    redis_host: str = env_field("localhost", "REDIS_HOST")
    redis_port: int = env_field(6379, "REDIS_PORT")
    redis_password: str | None = env_field(None, "REDIS_PASSWORD")
    redis_db: int = env_field(0, "REDIS_DB")
    redis_prefix: str = env_field("smp:auth", "REDIS_PREFIX")
    redis_tls: bool = env_field(False, "REDIS_TLS")
    redis_connect_timeout_seconds: float = env_field(10.0, "REDIS_CONNECT_TIMEOUT_SECONDS")
    redis_command_timeout_seconds: float = env_field(5.0, "REDIS_COMMAND_TIMEOUT_SECONDS")
    redis_retry_attempts: int = env_field(3, "REDIS_RETRY_ATTEMPTS")
    use_memory_cache: bool = env_field(
        False,
        "USE_MEMORY_CACHE",
        description="Keep cache state in process memory instead of Redis (development and tests only)",
    )

    # Cache TTLs
    cache_enabled: bool = env_field(True, "CACHE_ENABLED")
    cache_ttl_seconds: int = env_field(3600, "CACHE_TTL_SECONDS")
    authorization_cache_ceiling_seconds: int = env_field(
        300,
        "AUTHORIZATION_CACHE_CEILING_SECONDS",
        description="Hard upper bound on how long an allow/deny decision may be served from cache",
    )
    audit_log_ttl_days: int = env_field(30, "AUDIT_LOG_TTL_DAYS")
    persist_events: bool = env_field(False, "PERSIST_EVENTS")
    event_ttl_days: int = env_field(7, "EVENT_TTL_DAYS")
    session_ttl_seconds: int = env_field(8 * 3600, "SESSION_TTL_SECONDS")
    auth_flow_ttl_minutes: int = env_field(30, "AUTH_FLOW_TTL_MINUTES")
    business_timezone: str = env_field("UTC", "BUSINESS_TIMEZONE")

    # MFA
    mfa_enabled: bool = env_field(True, "MFA_ENABLED")
    mfa_issuer: str = env_field("SMP Auth", "MFA_ISSUER")
    mfa_max_attempts: int = env_field(3, "MFA_MAX_ATTEMPTS")
    mfa_code_length: int = env_field(6, "MFA_CODE_LENGTH")
    mfa_code_expiry_seconds: int = env_field(300, "MFA_CODE_EXPIRY_SECONDS")
    mfa_setup_ttl_seconds: int = env_field(24 * 3600, "MFA_SETUP_TTL_SECONDS")
    mfa_method_ttl_days: int = env_field(365, "MFA_METHOD_TTL_DAYS")
    mfa_rate_limit_max_attempts: int = env_field(5, "MFA_RATE_LIMIT_MAX_ATTEMPTS")
    mfa_rate_limit_window_minutes: int = env_field(15, "MFA_RATE_LIMIT_WINDOW_MINUTES")
    mfa_require_backup_codes: bool = env_field(True, "MFA_REQUIRE_BACKUP_CODES")
    mfa_backup_code_count: int = env_field(10, "MFA_BACKUP_CODE_COUNT")
    mfa_remember_device_days: int = env_field(30, "MFA_REMEMBER_DEVICE_DAYS")
    mfa_enforced_roles: list[str] = env_field(["admin", "super_admin"], "MFA_ENFORCED_ROLES")
    device_trust_enabled: bool = env_field(True, "DEVICE_TRUST_ENABLED")

    # Magic links
    magic_link_enabled: bool = env_field(True, "MAGIC_LINK_ENABLED")
    magic_link_token_bytes: int = env_field(32, "MAGIC_LINK_TOKEN_BYTES")
    magic_link_expiry_minutes: int = env_field(30, "MAGIC_LINK_EXPIRY_MINUTES")
    magic_link_retention_seconds: int = env_field(
        3600,
        "MAGIC_LINK_RETENTION_SECONDS",
        description="How long a link record outlives its expiry so terminal states stay reportable",
    )
    magic_link_max_per_day: int = env_field(10, "MAGIC_LINK_MAX_PER_DAY")
    magic_link_require_existing_user: bool = env_field(False, "MAGIC_LINK_REQUIRE_EXISTING_USER")
    magic_link_auto_create_user: bool = env_field(True, "MAGIC_LINK_AUTO_CREATE_USER")
    magic_link_risk_threshold: int = env_field(50, "MAGIC_LINK_RISK_THRESHOLD")
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES")
    frontend_base_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    magic_link_path: str = env_field("/auth/magic-link", "MAGIC_LINK_PATH")
    redirect_login_path: str = env_field("/dashboard", "REDIRECT_LOGIN_PATH")
    redirect_register_path: str = env_field("/welcome", "REDIRECT_REGISTER_PATH")
    redirect_reset_password_path: str = env_field("/auth/password-reset", "REDIRECT_RESET_PASSWORD_PATH")
    redirect_verify_email_path: str = env_field("/auth/email-verified", "REDIRECT_VERIFY_EMAIL_PATH")

    # Delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("SMP Auth", "EMAIL_FROM_NAME")
    twilio_account_sid: str | None = env_field(None, "TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = env_field(None, "TWILIO_AUTH_TOKEN")
    twilio_from_number: str | None = env_field(None, "TWILIO_FROM_NUMBER")
    delivery_timeout_seconds: float = env_field(30.0, "DELIVERY_TIMEOUT_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field_info in cls.model_fields.items():
            extra = field_info.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator("mfa_enforced_roles", mode="before")
    @classmethod
    def _split_roles(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [role.strip() for role in value.split(",") if role.strip()]
        return value

    @field_validator("keycloak_url", "opa_url", "frontend_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def redis_url(self) -> str:
        scheme = "rediss" if self.redis_tls else "redis"
        auth = f":{quote(self.redis_password, safe='')}@" if self.redis_password else ""
        return f"{scheme}://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def authorization_cache_ttl_seconds(self) -> int:
        return min(self.cache_ttl_seconds, self.authorization_cache_ceiling_seconds)

    def validate_config(self) -> ConfigValidation:
        """Check endpoint formats and ranges; collect production warnings."""
        result = ConfigValidation()

        for label, url in (("KEYCLOAK_URL", self.keycloak_url), ("OPA_URL", self.opa_url)):
            if not url.startswith(("http://", "https://")):
                result.errors.append(f"{label} must start with http:// or https://")
        if not self.keycloak_realm:
            result.errors.append("KEYCLOAK_REALM is required")
        if not self.keycloak_client_id:
            result.errors.append("KEYCLOAK_CLIENT_ID is required")
        if not self.opa_policy_path.startswith("/"):
            result.errors.append("OPA_POLICY_PATH must start with /")
        if not 1 <= self.redis_port <= 65535:
            result.errors.append("REDIS_PORT must be between 1 and 65535")
        if self.redis_db < 0:
            result.errors.append("REDIS_DB must not be negative")
        for label, value in (
            ("KEYCLOAK_TIMEOUT_SECONDS", self.keycloak_timeout_seconds),
            ("OPA_TIMEOUT_SECONDS", self.opa_timeout_seconds),
            ("REDIS_COMMAND_TIMEOUT_SECONDS", self.redis_command_timeout_seconds),
        ):
            if value <= 0:
                result.errors.append(f"{label} must be positive")
        if self.opa_batch_size < 1:
            result.errors.append("OPA_BATCH_SIZE must be at least 1")

        if self.is_production:
            if "localhost" in self.keycloak_url or "127.0.0.1" in self.keycloak_url:
                result.warnings.append("Using localhost identity provider in production")
            if "localhost" in self.opa_url or "127.0.0.1" in self.opa_url:
                result.warnings.append("Using localhost policy service in production")
            if self.redis_host in {"localhost", "127.0.0.1"}:
                result.warnings.append("Using localhost Redis in production")
            if not self.redis_password:
                result.warnings.append("Redis password not set in production")
            if self.use_memory_cache:
                result.errors.append("USE_MEMORY_CACHE is not allowed in production")
        return result

    def ensure_valid(self) -> "Settings":
        result = self.validate_config()
        for warning in result.warnings:
            logger.warning("config_warning", warning=warning, environment=self.environment.value)
        if not result.valid:
            logger.error("config_invalid", errors=result.errors)
            raise ConfigError(result.errors)
        return self

    def summary(self) -> dict[str, Any]:
        """Return settings with secrets masked, for diagnostics."""
        data = self.model_dump(mode="json")
        for name in _SECRET_FIELDS:
            if data.get(name):
                data[name] = "***"
        return data


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so tests can load a fresh environment."""

    global _settings_cache
    _settings_cache = None

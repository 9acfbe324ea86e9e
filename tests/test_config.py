"""Tests for settings loading and validation."""

from unittest.mock import patch

import pytest

from authflow.config import ConfigError, Environment, Settings, get_settings, reset_settings_cache


class TestSettingsFromEnv:
    def test_environment_variables_override_defaults(self, monkeypatch):
        monkeypatch.setenv("KEYCLOAK_URL", "https://sso.example.com/")
        monkeypatch.setenv("MFA_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("MFA_ENFORCED_ROLES", "admin, auditor")
        monkeypatch.setenv("APP_ENV", "Staging")

        settings = Settings.from_env()

        assert settings.keycloak_url == "https://sso.example.com"
        assert settings.mfa_max_attempts == 5
        assert settings.mfa_enforced_roles == ["admin", "auditor"]
        assert settings.environment == Environment.STAGING

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        monkeypatch.setenv("MFA_ISSUER", "First")
        first = get_settings()
        monkeypatch.setenv("MFA_ISSUER", "Second")
        assert get_settings() is first

        reset_settings_cache()
        assert get_settings().mfa_issuer == "Second"
        reset_settings_cache()


class TestDerivedValues:
    def test_redis_url_quotes_password_and_uses_tls_scheme(self):
        settings = Settings(redis_password="p@ss/word", redis_tls=True, redis_db=2)
        assert settings.redis_url == "rediss://:p%40ss%2Fword@localhost:6379/2"

    def test_redis_url_without_password(self):
        assert Settings().redis_url == "redis://localhost:6379/0"

    def test_authorization_ttl_is_capped(self):
        assert Settings(cache_ttl_seconds=3600).authorization_cache_ttl_seconds == 300
        assert Settings(cache_ttl_seconds=120).authorization_cache_ttl_seconds == 120


class TestValidation:
    def test_defaults_are_valid(self):
        result = Settings(environment="test").validate_config()
        assert result.valid
        assert result.warnings == []

    def test_bad_values_are_reported(self):
        settings = Settings(
            keycloak_url="sso.example.com",
            opa_policy_path="v1/data/authz",
            redis_port=70000,
            opa_timeout_seconds=0,
        )
        errors = settings.validate_config().errors
        assert "KEYCLOAK_URL must start with http:// or https://" in errors
        assert "OPA_POLICY_PATH must start with /" in errors
        assert "REDIS_PORT must be between 1 and 65535" in errors
        assert "OPA_TIMEOUT_SECONDS must be positive" in errors

    def test_production_warnings(self):
        settings = Settings(environment="production")
        warnings = settings.validate_config().warnings
        assert "Redis password not set in production" in warnings
        assert "Using localhost identity provider in production" in warnings

    def test_memory_cache_is_rejected_in_production(self):
        settings = Settings(environment="production", use_memory_cache=True)
        assert "USE_MEMORY_CACHE is not allowed in production" in settings.validate_config().errors

    def test_ensure_valid_raises_and_logs_warnings(self):
        with patch("authflow.config.logger") as mock_logger:
            with pytest.raises(ConfigError) as exc_info:
                Settings(environment="production", use_memory_cache=True).ensure_valid()
        assert "USE_MEMORY_CACHE is not allowed in production" in exc_info.value.errors
        warning_events = [c[0][0] for c in mock_logger.warning.call_args_list]
        assert "config_warning" in warning_events
        mock_logger.error.assert_called_once()

    def test_summary_masks_secrets(self):
        summary = Settings(keycloak_client_secret="s3cret", redis_password="pw").summary()
        assert summary["keycloak_client_secret"] == "***"
        assert summary["redis_password"] == "***"
        assert summary["smtp_password"] is None

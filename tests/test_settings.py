"""
Tests for environment-driven configuration.
"""

import pytest
from pydantic import ValidationError

from storefront.settings import Environment, Settings, get_settings, reset_settings

pytestmark = pytest.mark.unit


def _settings(**kwargs) -> Settings:
    return Settings(_env_file=None, **kwargs)  # type: ignore[call-arg]


class TestDefaults:
    def test_route_classes(self):
        classes = {c.name: c for c in _settings().security.rate_limit.route_classes}

        assert [c for c in classes] == ["auth", "strict", "general"]
        assert (classes["auth"].window_seconds, classes["auth"].max_requests) == (900, 50)
        assert (classes["strict"].window_seconds, classes["strict"].max_requests) == (3600, 10)
        assert (classes["general"].window_seconds, classes["general"].max_requests) == (900, 100)

    def test_security_thresholds(self):
        security = _settings().security

        assert security.brute_force.max_attempts == 5
        assert security.brute_force.window_seconds == 900
        assert security.lockout.admin_lock_seconds == 24 * 60 * 60
        assert security.csrf.safe_methods == ["GET", "HEAD", "OPTIONS"]

    def test_gates_use_the_socket_peer(self):
        settings = _settings()

        assert settings.security.rate_limit.trust_forwarded_headers is False
        assert settings.audit.trust_forwarded_headers is True

    def test_audit_skip_list(self):
        assert _settings().audit.skip_paths == ["/api/health", "/api/csrf-token", "/favicon.ico"]

    def test_database_url_fallback(self):
        assert _settings().database.async_url.startswith("sqlite+aiosqlite:///")
        assert _settings(database={"url": "postgresql://u:p@db/shop"}).database.async_url == (
            "postgresql+asyncpg://u:p@db/shop"
        )


class TestEnvironmentOverrides:
    def test_nested_delimiter(self, monkeypatch):
        monkeypatch.setenv("SECURITY__BRUTE_FORCE__MAX_ATTEMPTS", "3")
        monkeypatch.setenv("AUDIT__SKIP_PATHS", '["/metrics"]')
        monkeypatch.setenv("REDIS__ENABLED", "true")

        settings = _settings()

        assert settings.security.brute_force.max_attempts == 3
        assert settings.audit.skip_paths == ["/metrics"]
        assert settings.redis.enabled is True

    def test_environment_is_case_insensitive(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "TEST")
        settings = _settings()

        assert settings.environment == Environment.TEST
        assert settings.is_testing

    def test_production_requires_secret(self):
        with pytest.raises(ValidationError):
            _settings(environment="production")
        assert _settings(environment="production", secret_key="s3cret").is_production

    def test_invalid_threshold_rejected(self, monkeypatch):
        monkeypatch.setenv("SECURITY__BRUTE_FORCE__MAX_ATTEMPTS", "0")
        with pytest.raises(ValidationError):
            _settings()


def test_get_settings_is_cached():
    reset_settings()
    try:
        assert get_settings() is get_settings()
    finally:
        reset_settings()

"""Tests for runtime settings."""

import pytest

from agencydesk.config import ConfigurationError, Settings, normalize_database_url


class TestSettingsFromEnv:

    def test_defaults(self, monkeypatch):
        for name in ("ENV", "MULTI_TENANCY_ENABLED", "DEFAULT_PAGE_SIZE", "MAX_PAGE_SIZE", "CORS_ORIGINS"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.env == "development"
        assert settings.multi_tenancy_enabled is False
        assert settings.default_page_size == 50
        assert settings.max_page_size == 100
        assert settings.cors_origins == ()

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("ENV", "test")
        monkeypatch.setenv("MULTI_TENANCY_ENABLED", "true")
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db:5432/app")
        monkeypatch.setenv("MAX_PAGE_SIZE", "200")
        monkeypatch.setenv("CORS_ORIGINS", "http://a.test, http://b.test")
        settings = Settings.from_env()
        assert settings.multi_tenancy_enabled is True
        assert settings.database_url == "postgresql://u:p@db:5432/app"
        assert settings.max_page_size == 200
        assert settings.cors_origins == ("http://a.test", "http://b.test")

    def test_non_integer_rejected(self, monkeypatch):
        monkeypatch.setenv("SESSION_TTL_HOURS", "eight")
        with pytest.raises(ConfigurationError):
            Settings.from_env()


class TestSettingsInvariants:

    def test_production_requires_encryption_key(self):
        with pytest.raises(ConfigurationError, match="FIELD_ENCRYPTION_KEY"):
            Settings(env="production", cron_secret="x")

    def test_production_requires_cron_secret(self):
        with pytest.raises(ConfigurationError, match="CRON_SECRET"):
            Settings(env="production", field_encryption_key="k")

    def test_production_with_secrets(self):
        settings = Settings(env="production", field_encryption_key="k", cron_secret="c")
        assert settings.is_production

    def test_default_page_size_cannot_exceed_max(self):
        with pytest.raises(ConfigurationError):
            Settings(default_page_size=150, max_page_size=100)


class TestNormalizeDatabaseUrl:

    def test_postgres_scheme(self):
        assert normalize_database_url("postgres://h/db") == "postgresql://h/db"

    def test_other_schemes_untouched(self):
        assert normalize_database_url("sqlite:///app.db") == "sqlite:///app.db"

    def test_empty(self):
        assert normalize_database_url("") is None

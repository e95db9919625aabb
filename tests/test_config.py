import pytest
from pydantic import ValidationError

from collabboard.config import Settings, StoreBackend, get_settings, reset_settings_cache

ACCESS = "access-secret-for-config-tests-0123456789"
REFRESH = "refresh-secret-for-config-tests-0123456789"


class TestSettings:
    def test_defaults(self):
        settings = Settings(access_token_secret=ACCESS, refresh_token_secret=REFRESH)

        assert settings.access_token_ttl_seconds == 15 * 60
        assert settings.refresh_token_ttl_seconds == 7 * 24 * 3600
        assert settings.token_cleanup_interval_hours == 24
        assert settings.store_backend == StoreBackend.MEMORY
        assert settings.cookie_secure is True

    def test_missing_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(refresh_token_secret=REFRESH)

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(access_token_secret="too-short", refresh_token_secret=REFRESH)

    def test_identical_secrets_rejected(self):
        with pytest.raises(ValidationError):
            Settings(access_token_secret=ACCESS, refresh_token_secret=ACCESS)

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValidationError):
            Settings(
                access_token_secret=ACCESS,
                refresh_token_secret=REFRESH,
                access_token_ttl_minutes=0,
            )

    def test_cors_origins_split(self):
        settings = Settings(
            access_token_secret=ACCESS,
            refresh_token_secret=REFRESH,
            cors_allow_origins="https://a.example, https://b.example ,",
        )

        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_from_env_reads_environment(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_SECRET", ACCESS)
        monkeypatch.setenv("REFRESH_TOKEN_SECRET", REFRESH)
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("REFRESH_TOKEN_TTL_DAYS", "30")
        monkeypatch.setenv("NODE_ENV", "production")
        reset_settings_cache()

        settings = get_settings()

        assert settings.access_token_ttl_seconds == 300
        assert settings.refresh_token_ttl_seconds == 30 * 24 * 3600
        assert settings.is_production
        reset_settings_cache()

    def test_settings_are_cached(self):
        reset_settings_cache()
        assert get_settings() is get_settings()

import pytest

from warden.config import Settings, TokenBackend, get_settings, reset_settings_cache


class TestSettings:
    def test_defaults(self):
        settings = Settings(token_secret="s")
        assert settings.token_ttl_seconds == 300
        assert settings.token_renew_threshold_seconds == 30
        assert settings.token_backend == TokenBackend.DATABASE
        assert settings.reaper_enabled is True

    def test_missing_secret_is_generated(self):
        first = Settings()
        second = Settings()
        assert first.token_secret and second.token_secret
        assert first.token_secret != second.token_secret

    def test_from_env_parses_values(self, monkeypatch):
        monkeypatch.setenv("TOKEN_TTL_SECONDS", "600")
        monkeypatch.setenv("TOKEN_RENEW_THRESHOLD_SECONDS", "60")
        monkeypatch.setenv("TOKEN_REAPER_ENABLED", "false")
        settings = Settings.from_env()
        assert settings.token_ttl_seconds == 600
        assert settings.token_renew_threshold_seconds == 60
        assert settings.reaper_enabled is False

    def test_threshold_not_below_ttl_is_rejected(self, monkeypatch):
        monkeypatch.setenv("TOKEN_TTL_SECONDS", "60")
        monkeypatch.setenv("TOKEN_RENEW_THRESHOLD_SECONDS", "90")
        with pytest.raises(ValueError):
            Settings.from_env()

    def test_redis_backend_requires_url(self):
        with pytest.raises(ValueError):
            Settings(token_secret="s", token_backend="redis", redis_url=None)
        settings = Settings(token_secret="s", token_backend="redis", redis_url="redis://x:6379/0")
        assert settings.token_backend == TokenBackend.REDIS

    def test_settings_are_cached_until_reset(self):
        first = get_settings()
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings() is not first

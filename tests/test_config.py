import pytest
from pydantic import ValidationError

from gatekeeper.config import Settings, get_settings, reset_settings_cache


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self):
        settings = Settings(jwt_secret="x" * 40)

        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
        assert settings.login_max_attempts == 5
        assert settings.login_attempt_window_ms == 15 * 60 * 1000
        assert settings.login_lock_duration_ms == 30 * 60 * 1000
        assert settings.otp_ttl_minutes == 10
        assert settings.password_change_skew_ms == 1000

    def test_from_env_reads_named_variables(self, monkeypatch):
        monkeypatch.setenv("LOGIN_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("OTP_TTL_MINUTES", "3")
        monkeypatch.setenv("TRUST_PROXY_HEADERS", "true")

        settings = Settings.from_env()

        assert settings.login_max_attempts == 7
        assert settings.otp_ttl_minutes == 3
        assert settings.trust_proxy_headers is True

    @pytest.mark.parametrize(
        "field", ["login_max_attempts", "otp_ttl_minutes", "login_rate_max", "access_token_ttl_minutes"]
    )
    def test_non_positive_values_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, **{field: 0})

    def test_negative_skew_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, password_change_skew_ms=-1)

    def test_missing_secret_is_generated_and_persisted(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings()
        second = Settings()

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    def test_cors_origins_split(self):
        settings = Settings(
            jwt_secret="x" * 40, cors_allow_origins="https://a.example, https://b.example,,"
        )

        assert settings.cors_origins == ["https://a.example", "https://b.example"]

    def test_settings_cache_reset(self, monkeypatch):
        reset_settings_cache()
        cached = get_settings()
        assert get_settings() is cached

        monkeypatch.setenv("LOGIN_RATE_MAX", "99")
        reset_settings_cache()

        assert get_settings().login_rate_max == 99

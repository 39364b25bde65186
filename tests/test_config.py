import pytest
from pydantic import ValidationError

from portal.config import Settings, get_settings, reset_settings_cache


class TestSecrets:
    def test_generated_secrets_are_persisted(self, tmp_path):
        first = Settings(shared_fs_root=str(tmp_path))
        second = Settings(shared_fs_root=str(tmp_path))
        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert first.password_pepper == second.password_pepper
        assert first.jwt_secret != first.password_pepper
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret
        assert oct((tmp_path / ".password_pepper").stat().st_mode & 0o777) == "0o600"

    def test_short_persisted_secret_is_replaced(self, tmp_path):
        (tmp_path / ".jwt_secret").write_text("short")
        settings = Settings(shared_fs_root=str(tmp_path), password_pepper="p" * 40)
        assert settings.jwt_secret != "short"
        assert len(settings.jwt_secret) >= 32

    def test_explicit_short_secret_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(shared_fs_root=str(tmp_path), jwt_secret="too-short")
        with pytest.raises(ValidationError):
            Settings(shared_fs_root=str(tmp_path), jwt_secret="j" * 40, password_pepper="abc")


class TestValues:
    def test_cors_origins_split(self, tmp_path):
        settings = Settings(
            shared_fs_root=str(tmp_path),
            cors_allow_origins="https://a.example.com, https://b.example.com,",
        )
        assert settings.cors_allow_origins == ["https://a.example.com", "https://b.example.com"]

    def test_home_domain_normalized(self, tmp_path):
        settings = Settings(shared_fs_root=str(tmp_path), home_email_domain=" @Example.COM ")
        assert settings.home_email_domain == "example.com"

    def test_home_domain_must_be_a_domain(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(shared_fs_root=str(tmp_path), home_email_domain="localhost")

    def test_settings_are_frozen(self, tmp_path):
        settings = Settings(shared_fs_root=str(tmp_path))
        with pytest.raises(ValidationError):
            settings.login_rate_limit_per_minute = 1

    def test_non_positive_ttl_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(shared_fs_root=str(tmp_path), access_token_ttl_minutes=0)


class TestFromEnv:
    def test_reads_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        monkeypatch.setenv("LOGIN_RATE_LIMIT_PER_MINUTE", "3")
        monkeypatch.setenv("EMAIL_VERIFICATION_ENABLED", "false")
        monkeypatch.setenv("DEFAULT_TENANT_ID", "07")
        settings = Settings.from_env()
        assert settings.login_rate_limit_per_minute == 3
        assert settings.email_verification_enabled is False
        assert settings.default_tenant_id == "07"

    def test_forwarded_for_is_untrusted_unless_enabled(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        monkeypatch.delenv("TRUST_FORWARDED_FOR", raising=False)
        assert Settings.from_env().trust_forwarded_for is False
        monkeypatch.setenv("TRUST_FORWARDED_FOR", "1")
        assert Settings.from_env().trust_forwarded_for is True

    def test_dotenv_file_is_read(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("SMTP_HOST", raising=False)
        (tmp_path / ".env").write_text("SMTP_HOST=mail.example.com\nSMTP_PORT=2525\n")
        settings = Settings.from_env()
        assert settings.smtp_host == "mail.example.com"
        assert settings.smtp_port == 2525

    def test_environment_wins_over_dotenv(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("JWT_ISSUER=from-file\n")
        monkeypatch.setenv("JWT_ISSUER", "from-env")
        assert Settings.from_env().jwt_issuer == "from-env"

    def test_cached_until_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("JWT_AUDIENCE", "other-clients")
        reset_settings_cache()
        assert get_settings().jwt_audience == "other-clients"

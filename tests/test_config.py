"""Tests for environment-driven settings."""

import pytest

from core.config import Settings


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.max_jobs_per_request == 10
        assert settings.max_pending_jobs_per_org == 100
        assert settings.code_max_workers == 4
        assert settings.smtp_password is None

    @pytest.mark.parametrize("name", ["SMTP_PASS", "SMTP_PASSWORD"])
    def test_smtp_password_env_names(self, monkeypatch, name):
        monkeypatch.setenv("SMTP_HOST", "smtp.example.com")
        monkeypatch.setenv("SMTP_USER", "mailer")
        monkeypatch.setenv(name, "secret")

        settings = Settings()
        assert settings.smtp_password == "secret"
        assert settings.smtp_configured

    def test_smtp_password_keyword(self):
        assert Settings(smtp_password="secret").smtp_password == "secret"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("MAX_PENDING_JOBS_PER_ORG", "5")
        monkeypatch.setenv("CRON_SECRET", "tick")
        settings = Settings()
        assert settings.max_pending_jobs_per_org == 5
        assert settings.cron_secret == "tick"

    def test_declared_env_names_match_field_names(self):
        for name, field in Settings.model_fields.items():
            env = (field.json_schema_extra or {}).get("env")
            if env is not None:
                assert env.lower() == name, f"{name} declares env {env}"

import pytest
from pydantic import ValidationError

from shopgate import server
from shopgate.config import Environment, Settings, reset_settings_cache


def test_cookies_are_secure_in_production(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "Production")
    settings = Settings.from_env()
    assert settings.environment == Environment.PRODUCTION
    assert settings.secure_cookies is True

    monkeypatch.setenv("COOKIE_SECURE", "false")
    assert Settings.from_env().secure_cookies is False


def test_cookies_are_not_secure_under_test():
    assert Settings.from_env().secure_cookies is False


def test_csv_values_are_split(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://shop.example.com, https://admin.example.com,")
    monkeypatch.setenv("JWT_RETIRED_KEYS", "old:retired-secret-value")
    settings = Settings.from_env()
    assert settings.cors_allow_origins == [
        "https://shop.example.com",
        "https://admin.example.com",
    ]
    assert settings.retired_signing_keys() == {"old": "retired-secret-value"}


def test_malformed_retired_key_is_rejected(monkeypatch):
    monkeypatch.setenv("JWT_RETIRED_KEYS", "missing-separator")
    with pytest.raises(ValidationError):
        Settings.from_env()


def test_short_jwt_secret_rejected_outside_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    monkeypatch.setenv("JWT_SECRET", "too-short")
    with pytest.raises(ValidationError):
        Settings.from_env()


def test_generated_jwt_secret_is_persisted(tmp_path, monkeypatch):
    monkeypatch.delenv("JWT_SECRET", raising=False)
    first = Settings.from_env().jwt_secret
    assert (tmp_path / ".jwt_secret").read_text() == first
    assert Settings.from_env().jwt_secret == first


def test_server_runs_app_with_configured_address(monkeypatch):
    calls = {}

    def fake_run(app, **kwargs):
        calls["app"] = app
        calls.update(kwargs)

    monkeypatch.setenv("HOST", "0.0.0.0")
    monkeypatch.setenv("PORT", "9100")
    monkeypatch.setattr(server.uvicorn, "run", fake_run)
    reset_settings_cache()

    server.main()

    assert calls["app"] == "shopgate.app:app"
    assert calls["host"] == "0.0.0.0"
    assert calls["port"] == 9100

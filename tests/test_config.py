import os
import stat

import pytest
from pydantic import ValidationError

from keyward.config import Settings, get_settings, reset_settings_cache

SECRET = "x" * 40


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("VERIFICATION_CODE_LENGTH", "8")
    monkeypatch.setenv("SMTP_USE_TLS", "false")
    monkeypatch.setenv("JWT_SECRET", SECRET)

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 5
    assert settings.verification_code_length == 8
    assert settings.smtp_use_tls is False
    assert settings.jwt_secret == SECRET


def test_env_file_is_used_when_variable_unset(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("JWT_ISSUER", raising=False)
    (tmp_path / ".env").write_text("JWT_ISSUER=from-dotenv\n")
    assert Settings.from_env().jwt_issuer == "from-dotenv"


def test_cached_settings_reset():
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    reset_settings_cache()
    assert get_settings() is not first


@pytest.mark.parametrize(
    "field, value",
    [
        ("access_token_ttl_minutes", 0),
        ("refresh_token_ttl_minutes", -1),
        ("verification_code_length", 3),
        ("verification_code_length", 13),
    ],
)
def test_rejects_invalid_values(field, value):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, **{field: value})


def test_attempts_floor_at_one():
    assert Settings(jwt_secret=SECRET, delivery_max_attempts=0).delivery_max_attempts == 1


def test_short_jwt_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


def test_generated_secret_is_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("STATE_DIR", str(tmp_path))

    first = Settings()
    second = Settings()

    secret_path = tmp_path / ".jwt_secret"
    assert len(first.jwt_secret) >= 32
    assert second.jwt_secret == first.jwt_secret
    assert secret_path.read_text() == first.jwt_secret
    assert stat.S_IMODE(os.stat(secret_path).st_mode) == 0o600


def test_from_env_without_secret_generates_one(monkeypatch, tmp_path):
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.setenv("STATE_DIR", str(tmp_path))

    settings = Settings.from_env()

    assert len(settings.jwt_secret) >= 32
    assert (tmp_path / ".jwt_secret").read_text() == settings.jwt_secret

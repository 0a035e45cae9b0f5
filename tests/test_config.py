import pytest
from pydantic import ValidationError

from hivelog.config import Environment, Settings


def test_secrets_required_outside_test_mode():
    with pytest.raises(ValidationError):
        Settings(test_mode=False, jwt_secret=None, jwt_refresh_secret=None)


def test_test_mode_generates_distinct_secrets():
    settings = Settings(test_mode=True, jwt_secret=None, jwt_refresh_secret=None)
    assert settings.jwt_secret
    assert settings.jwt_refresh_secret
    assert settings.jwt_secret != settings.jwt_refresh_secret


def test_identical_secrets_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="same", jwt_refresh_secret="same")


def test_duration_fields_parse_to_seconds():
    settings = Settings(
        jwt_secret="a",
        jwt_refresh_secret="b",
        access_token_ttl="15m",
        refresh_token_ttl="2d",
        max_token_lifetime="2d",
    )
    assert settings.access_ttl_seconds == 900
    assert settings.refresh_ttl_seconds == 172800
    assert settings.max_token_lifetime_seconds == 172800


def test_invalid_duration_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="a", jwt_refresh_secret="b", access_token_ttl="soon")


def test_max_lifetime_must_cover_refresh_ttl():
    with pytest.raises(ValidationError):
        Settings(
            jwt_secret="a",
            jwt_refresh_secret="b",
            refresh_token_ttl="7d",
            max_token_lifetime="1d",
        )


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("ACCESS_TOKEN_TTL", "30m")
    monkeypatch.setenv("SESSION_COOKIE_NAME", "hivecookie")
    settings = Settings.from_env()
    assert settings.environment == Environment.PRODUCTION
    assert settings.is_production
    assert settings.access_ttl_seconds == 1800
    assert settings.session_cookie_name == "hivecookie"

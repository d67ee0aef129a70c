import pytest
from pydantic import ValidationError

from vihara.config import Settings, get_settings, reset_settings_cache


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Run from an empty directory with no identity settings in the environment."""
    for name in (
        "SESSION_TIMEOUT_SECONDS",
        "MAX_CONCURRENT_SESSIONS",
        "PASSWORD_MIN_LENGTH",
        "SESSION_COOKIE_NAME",
        "SESSION_RETENTION_DAYS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    reset_settings_cache()
    yield tmp_path
    reset_settings_cache()


def test_defaults(clean_env):
    settings = Settings.from_env()

    assert settings.session_timeout_seconds == 3600
    assert settings.max_concurrent_sessions == 0
    assert settings.session_retention_days == 30
    assert settings.session_sweep_interval_seconds == 300
    assert settings.session_cookie_name == "session_id"
    assert settings.password_min_length == 6


def test_environment_overrides(clean_env, monkeypatch):
    monkeypatch.setenv("SESSION_TIMEOUT_SECONDS", "900")
    monkeypatch.setenv("MAX_CONCURRENT_SESSIONS", "2")
    monkeypatch.setenv("PASSWORD_MIN_LENGTH", "10")

    settings = Settings.from_env()

    assert settings.session_timeout_seconds == 900
    assert settings.max_concurrent_sessions == 2
    assert settings.password_min_length == 10


def test_dotenv_file_is_read_but_environment_wins(clean_env, monkeypatch):
    (clean_env / ".env").write_text(
        "SESSION_TIMEOUT_SECONDS=1200\nSESSION_COOKIE_NAME=vihara_sid\n"
    )
    monkeypatch.setenv("SESSION_COOKIE_NAME", "from_env")

    settings = Settings.from_env()

    assert settings.session_timeout_seconds == 1200
    assert settings.session_cookie_name == "from_env"


def test_get_settings_is_cached_until_reset(clean_env, monkeypatch):
    first = get_settings()
    monkeypatch.setenv("SESSION_TIMEOUT_SECONDS", "60")
    assert get_settings() is first

    reset_settings_cache()
    assert get_settings().session_timeout_seconds == 60


@pytest.mark.parametrize(
    "overrides",
    [
        {"session_timeout_seconds": 0},
        {"session_sweep_interval_seconds": -5},
        {"password_min_length": 0},
        {"max_concurrent_sessions": -1},
        {"session_retention_days": -1},
    ],
)
def test_invalid_values_rejected(overrides):
    with pytest.raises(ValidationError):
        Settings(**overrides)


def test_zero_retention_and_unlimited_sessions_allowed():
    settings = Settings(session_retention_days=0, max_concurrent_sessions=0)
    assert settings.session_retention_days == 0

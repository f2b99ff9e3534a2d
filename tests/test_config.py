import pytest

from ffedit.config import Settings


ENV_KEYS = (
    "ALLOWED_ORIGINS",
    "FRONTEND_URL",
    "MAX_CONCURRENT_JOBS",
    "RETENTION_HOURS",
    "MAX_FILE_SIZE_MB",
    "MAX_MERGE_INPUTS",
    "PORT",
    "FONT_FILE",
)


@pytest.fixture()
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    settings = Settings.load()
    assert settings.PORT == 5000
    assert settings.MAX_CONCURRENT_JOBS == 1
    assert settings.ALLOWED_ORIGINS == ["*"]
    assert settings.max_file_size_bytes == 25 * 1024 * 1024
    assert settings.retention_seconds == 24 * 3600
    assert settings.FONT_FILE is None


def test_frontend_url_adds_dev_origins(clean_env):
    clean_env.setenv("FRONTEND_URL", "https://editor.example.com")
    settings = Settings.load()
    assert settings.ALLOWED_ORIGINS[0] == "https://editor.example.com"
    assert "http://localhost:5173" in settings.ALLOWED_ORIGINS


def test_allowed_origins_list(clean_env):
    clean_env.setenv("ALLOWED_ORIGINS", "https://a.example, https://b.example ,")
    assert Settings.load().ALLOWED_ORIGINS == ["https://a.example", "https://b.example"]


@pytest.mark.parametrize(
    "key, value",
    [
        ("MAX_CONCURRENT_JOBS", "0"),
        ("RETENTION_HOURS", "0"),
        ("MAX_FILE_SIZE_MB", "0"),
        ("MAX_MERGE_INPUTS", "1"),
        ("PORT", "not-a-port"),
    ],
)
def test_invalid_values_raise(clean_env, key, value):
    clean_env.setenv(key, value)
    with pytest.raises(ValueError):
        Settings.load()

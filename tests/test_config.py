"""Tests for settings.conf loading."""

import pytest

from config import DEFAULTS, SettingsError, load_settings_conf


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in DEFAULTS:
        monkeypatch.delenv(f"SETTLEMENT_{key.upper()}", raising=False)


def write_settings(tmp_path, text):
    (tmp_path / "settings.conf").write_text(text)
    return str(tmp_path)


def test_defaults_without_file(tmp_path):
    settings = load_settings_conf(str(tmp_path))

    assert settings["store_backend"] == "postgres"
    assert settings["lock_timeout"] == 5.0
    assert settings["api_port"] == 8000
    assert settings["history_page_size"] == 20
    assert settings["log_level"] == "INFO"


def test_file_values(tmp_path):
    path = write_settings(tmp_path, (
        "[DEFAULT]\n"
        "store_backend = Memory\n"
        "lock_timeout = 0.5\n"
        "log_level = debug\n"
        "history_page_size = 50\n"
    ))
    settings = load_settings_conf(path)

    assert settings["store_backend"] == "memory"
    assert settings["lock_timeout"] == 0.5
    assert settings["log_level"] == "DEBUG"
    assert settings["history_page_size"] == 50


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = write_settings(tmp_path, "[DEFAULT]\nlock_timeout = 2\n")
    monkeypatch.setenv("SETTLEMENT_LOCK_TIMEOUT", "7.5")
    monkeypatch.setenv("SETTLEMENT_DB_URL", "postgresql://app@db:5432/settlement")

    settings = load_settings_conf(path)

    assert settings["lock_timeout"] == 7.5
    assert settings["db_url"] == "postgresql://app@db:5432/settlement"


@pytest.mark.parametrize("line", [
    "store_backend = sqlite",
    "lock_timeout = soon",
    "lock_timeout = 0",
    "api_port = 0",
    "history_page_size = many",
    "log_level = LOUD",
])
def test_invalid_values(tmp_path, line):
    path = write_settings(tmp_path, f"[DEFAULT]\n{line}\n")

    with pytest.raises(SettingsError, match="Invalid values"):
        load_settings_conf(path)


def test_missing_default_section(tmp_path):
    path = write_settings(tmp_path, "[server]\napi_port = 9000\n")

    with pytest.raises(SettingsError, match=r"\[DEFAULT\]"):
        load_settings_conf(path)


def test_unparseable_file(tmp_path):
    path = write_settings(tmp_path, "no section header here\n")

    with pytest.raises(SettingsError, match="Error parsing"):
        load_settings_conf(path)

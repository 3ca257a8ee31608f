import os

import pytest

from kumo_monitor.config import Settings, load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for key in list(os.environ):
        if key.startswith("KMON_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("KMON_CONFIG", str(tmp_path / "missing.ini"))


def test_defaults_without_file_or_env():
    settings = load_settings()
    assert settings == Settings()
    assert settings.http_port == 5055
    assert settings.journal_unit is None


def test_environment_fallbacks(monkeypatch):
    monkeypatch.setenv("KMON_KUMO_HTTP", "http://kumo:8000")
    monkeypatch.setenv("KMON_PORT", "6000")
    monkeypatch.setenv("KMON_POLL_INTERVAL", "1.5")
    monkeypatch.setenv("KMON_API_KEY", "   ")
    monkeypatch.setenv("KMON_JOURNAL_UNIT", "kumomta")
    monkeypatch.setenv("KMON_LOG_LEVEL", "debug")

    settings = load_settings()
    assert settings.kumo_url == "http://kumo:8000"
    assert settings.http_port == 6000
    assert settings.poll_interval == 1.5
    assert settings.api_key is None
    assert settings.journal_unit == "kumomta"
    assert settings.log_level == "DEBUG"


def test_ini_file_wins_over_environment(monkeypatch, tmp_path):
    config = tmp_path / "config.ini"
    config.write_text(
        "[server]\nport = 7000\napi_key = s3cret\n"
        "[sampling]\nretention_seconds = 600\n"
        "[storage]\nstate_path = ~/kumo/state.json\n"
    )
    monkeypatch.setenv("KMON_PORT", "6000")

    settings = load_settings(config)
    assert settings.http_port == 7000
    assert settings.api_key == "s3cret"
    assert settings.sample_retention == 600
    assert settings.state_path == os.path.expanduser("~/kumo/state.json")


def test_kmon_config_selects_the_file(monkeypatch, tmp_path):
    config = tmp_path / "other.ini"
    config.write_text("[logs]\ntailer = /usr/local/bin/tailer\nrestart_delay_seconds = 5\n")
    monkeypatch.setenv("KMON_CONFIG", str(config))

    settings = load_settings()
    assert settings.tailer == "/usr/local/bin/tailer"
    assert settings.restart_delay == 5.0


def test_invalid_number_raises(monkeypatch):
    monkeypatch.setenv("KMON_PORT", "not-a-port")
    with pytest.raises(ValueError):
        load_settings()

"""Tests for environment-driven configuration."""

from pathlib import Path

from haven import config


def test_defaults(monkeypatch):
    for name in ("DATA_DIR", "PORT", "LOG_LEVEL", "TURN_DEADLINE_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    assert config.data_dir() == config.DEFAULT_DATA_DIR
    assert config.port() == 13013
    assert config.log_level() == "info"
    assert config.turn_deadline() == 120.0


def test_overrides(monkeypatch):
    monkeypatch.setenv("DATA_DIR", "/tmp/haven")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("TURN_DEADLINE_SECONDS", "0")
    assert config.data_dir() == Path("/tmp/haven")
    assert config.log_level() == "debug"
    assert config.turn_deadline() is None

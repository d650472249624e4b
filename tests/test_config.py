"""Tests for conf.json loading and Settings integration."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from config import MemlogConfig, Settings, get_memlog_dir, load_conf, save_conf


@pytest.fixture(autouse=True)
def _isolate_memlog_dir(tmp_path, monkeypatch):
    """Point MEMLOG_DIR to tmp_path so tests never touch the real config."""
    monkeypatch.setenv("MEMLOG_DIR", str(tmp_path / "memlog"))


# ---------------------------------------------------------------------------
# get_memlog_dir
# ---------------------------------------------------------------------------


def test_get_memlog_dir_default(monkeypatch):
    monkeypatch.delenv("MEMLOG_DIR", raising=False)
    assert get_memlog_dir() == Path.home() / ".config" / "memlog"


def test_get_memlog_dir_env_override(monkeypatch, tmp_path):
    custom = tmp_path / "custom_dir"
    monkeypatch.setenv("MEMLOG_DIR", str(custom))
    assert get_memlog_dir() == custom


# ---------------------------------------------------------------------------
# load_conf / save_conf
# ---------------------------------------------------------------------------


def test_load_conf_defaults():
    """No conf.json file → MemlogConfig uses built-in defaults."""
    conf = load_conf()
    assert conf.database_url == ""
    assert conf.redis_url == ""
    assert conf.memory_log_capacity is None
    assert conf.eviction_retry_delay_seconds is None


def test_load_conf_from_file(tmp_path):
    memlog_dir = tmp_path / "memlog"
    memlog_dir.mkdir(parents=True)
    data = {
        "database_url": "postgresql+psycopg2://tutor@db/memlog",
        "redis_url": "redis://cache:6379/1",
        "log_level": "DEBUG",
        "memory_log_capacity": 50,
    }
    (memlog_dir / "conf.json").write_text(json.dumps(data))

    conf = load_conf()
    assert conf.database_url == "postgresql+psycopg2://tutor@db/memlog"
    assert conf.redis_url == "redis://cache:6379/1"
    assert conf.log_level == "DEBUG"
    assert conf.memory_log_capacity == 50
    assert conf.eviction_retry_delay_seconds is None


def test_load_conf_invalid_json(tmp_path, caplog):
    """Malformed JSON → falls back to defaults and logs a warning."""
    memlog_dir = tmp_path / "memlog"
    memlog_dir.mkdir(parents=True)
    (memlog_dir / "conf.json").write_text("{not valid json!!!")

    with caplog.at_level("WARNING", logger="config"):
        conf = load_conf()
    assert conf == MemlogConfig()
    assert "Failed to parse" in caplog.text


def test_save_conf_creates_dir_and_roundtrips(tmp_path, monkeypatch):
    memlog_dir = tmp_path / "deep" / "nested" / "memlog"
    monkeypatch.setenv("MEMLOG_DIR", str(memlog_dir))
    original = MemlogConfig(redis_url="redis://test:6379/2", memory_log_capacity=12)

    save_conf(original)

    assert (memlog_dir / "conf.json").exists()
    assert load_conf() == original


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def test_settings_retention_defaults(monkeypatch):
    for name in ("MEMORY_LOG_CAPACITY", "EVICTION_RETRY_DELAY_SECONDS", "EVICTION_MAX_RETRIES", "RQ_QUEUE_NAME"):
        monkeypatch.delenv(name, raising=False)
    s = Settings()
    assert s.MEMORY_LOG_CAPACITY == 30
    assert s.EVICTION_RETRY_DELAY_SECONDS == 30
    assert s.EVICTION_MAX_RETRIES == 5
    assert s.RQ_QUEUE_NAME == "memlog"


def test_env_var_overrides_defaults(monkeypatch):
    monkeypatch.setenv("MEMORY_LOG_CAPACITY", "10")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///from_env.db")
    s = Settings()
    assert s.MEMORY_LOG_CAPACITY == 10
    assert s.DATABASE_URL == "sqlite:///from_env.db"


def test_env_var_must_parse(monkeypatch):
    from pydantic import ValidationError

    monkeypatch.setenv("MEMORY_LOG_CAPACITY", "thirty")
    with pytest.raises(ValidationError):
        Settings()


def test_default_database_is_sqlite_beside_code(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    s = Settings()
    if not s.DATABASE_URL.startswith("sqlite:///"):
        pytest.skip("DATABASE_URL overridden by conf.json or .env")
    assert s.DATABASE_URL.endswith("memlog.sqlite3")

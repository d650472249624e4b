"""Pydantic settings loaded from .env, with conf.json overlay."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent

# ---------------------------------------------------------------------------
# conf.json: runtime config (separate from .env overrides)
# ---------------------------------------------------------------------------


def get_memlog_dir() -> Path:
    """Resolve the memlog data directory. MEMLOG_DIR env var or ~/.config/memlog."""
    d = os.environ.get("MEMLOG_DIR", "")
    return Path(d).expanduser() if d else Path.home() / ".config" / "memlog"


class MemlogConfig(BaseModel):
    database_url: str = ""
    redis_url: str = ""
    log_level: str = ""
    log_file: str = ""
    memory_log_capacity: int | None = None  # None = use Settings default
    eviction_retry_delay_seconds: int | None = None


_logger = logging.getLogger(__name__)


def load_conf() -> MemlogConfig:
    """Load conf.json from the memlog data directory."""
    conf_path = get_memlog_dir() / "conf.json"
    if conf_path.exists():
        try:
            return MemlogConfig.model_validate_json(conf_path.read_text())
        except Exception:
            _logger.warning("Failed to parse %s, using defaults", conf_path, exc_info=True)
    return MemlogConfig()


def save_conf(config: MemlogConfig) -> None:
    """Save conf.json to the memlog data directory."""
    memlog_dir = get_memlog_dir()
    memlog_dir.mkdir(parents=True, exist_ok=True)
    (memlog_dir / "conf.json").write_text(config.model_dump_json(indent=2))


# ---------------------------------------------------------------------------
# Bootstrap: load .env, load conf.json
# ---------------------------------------------------------------------------

load_dotenv(BASE_DIR / ".env")
_conf = load_conf()

# ---------------------------------------------------------------------------
# Settings (pydantic-settings): .env / env vars override conf.json defaults
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    DEBUG: bool = False

    DATABASE_URL: str = _conf.database_url or f"sqlite:///{BASE_DIR / 'memlog.sqlite3'}"
    REDIS_URL: str = _conf.redis_url or "redis://localhost:6379/0"
    RQ_QUEUE_NAME: str = "memlog"

    # Retention
    MEMORY_LOG_CAPACITY: int = (
        _conf.memory_log_capacity if _conf.memory_log_capacity is not None else 30
    )
    EVICTION_RETRY_DELAY_SECONDS: int = (
        _conf.eviction_retry_delay_seconds if _conf.eviction_retry_delay_seconds is not None else 30
    )
    EVICTION_MAX_RETRIES: int = 5

    LOG_LEVEL: str = _conf.log_level or "INFO"
    LOG_FILE: str = _conf.log_file or ""
    LOG_MAX_BYTES: int = 10_485_760
    LOG_BACKUP_COUNT: int = 5

    model_config = ConfigDict(
        env_file=str(BASE_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()

"""Logging setup for memlog callers and RQ workers.

``setup_logging(role)`` is called once per process. Records emitted while a
``BoundedConversationLog`` works on a conversation carry that conversation's
key, so lines from concurrent appends and sweeps can be told apart.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path

from contextvars import ContextVar

conversation_id_var: ContextVar[str] = ContextVar("conversation_id_var", default="")

_LINE_FORMAT = "%(asctime)s %(prefix)s %(name)s:%(lineno)d - %(message)s"
_NOISY_LOGGERS = ("rq.worker", "rq.queue", "sqlalchemy.engine")


class ContextFilter(logging.Filter):
    """Stamps ``role`` and the current ``conversation_id`` on each record."""

    def __init__(self, role: str) -> None:
        super().__init__()
        self.role = role

    def filter(self, record: logging.LogRecord) -> bool:
        record.role = self.role  # type: ignore[attr-defined]
        record.conversation_id = conversation_id_var.get("")  # type: ignore[attr-defined]
        return True


class ContextFormatter(logging.Formatter):
    """Formats ``2026-02-17 14:30:01 [Worker-9821][Conv 6f1c2a0b][WARNING] services.memory_log:97 - ...``"""

    def __init__(self, datefmt: str | None = None) -> None:
        super().__init__(fmt=_LINE_FORMAT, datefmt=datefmt)

    def format(self, record: logging.LogRecord) -> str:
        role = getattr(record, "role", "")
        conversation_id = getattr(record, "conversation_id", "")
        prefix = f"[{role}]" if role else ""
        if conversation_id:
            prefix += f"[Conv {conversation_id[:8]}]"
        record.prefix = f"{prefix}[{record.levelname}]"  # type: ignore[attr-defined]
        return super().format(record)


def _attach(root: logging.Logger, handler: logging.Handler, name: str, role: str) -> None:
    handler.name = name
    handler.addFilter(ContextFilter(role))
    handler.setFormatter(ContextFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)


def setup_logging(role: str) -> None:
    """Configure the root logger for *role* (e.g. ``"App"`` or ``"Worker-1234"``).

    Always logs to stderr; also to a rotating file when ``settings.LOG_FILE``
    is set. Calling it again in the same process is a no-op.
    """
    from config import settings

    root = logging.getLogger()
    if any(getattr(h, "name", None) == "_memlog_stream" for h in root.handlers):
        return

    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    _attach(root, logging.StreamHandler(sys.stderr), "_memlog_stream", role)

    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=settings.LOG_MAX_BYTES,
            backupCount=settings.LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        _attach(root, rotating, "_memlog_file", role)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

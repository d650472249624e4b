"""Storage adapters for the chat memory log.

The retention policy in services.memory_log only ever talks to a
``ConversationLogStore``. A store hands out one atomic ``StoreUnit`` per
conversation key (insert, count, oldest-N, delete-by-id, savepoint) and answers
read-only listing queries. Two implementations live here:

- ``SqlAlchemyLogStore`` — any SQLAlchemy dialect. Only the cross-process key
  lock differs per dialect (PostgreSQL advisory lock, SQL Server applock,
  SQLite's own database write lock).
- ``InMemoryLogStore`` — process-local dict of lists, for embedding and tests.
"""

from __future__ import annotations

import hashlib
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Iterator

from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from database import SessionLocal
from models.chat_memory import ChatMemoryLog
from models.user import User
from schemas.chat_memory import LogEntry
from services.errors import ConcurrencyConflict, ReferentialError, TransientStoreError
from services.locks import KeyedLock

logger = logging.getLogger(__name__)

# PostgreSQL serialization_failure / deadlock_detected, SQL Server deadlock victim
_CONFLICT_CODES = {"40001", "40P01", "1205"}


# ── Adapter interface ─────────────────────────────────────────────────────────


class StoreUnit(ABC):
    """One atomic unit of work on a single conversation key."""

    @abstractmethod
    def user_exists(self, user_id: Any) -> bool:
        ...

    @abstractmethod
    def insert(
        self,
        conversation_id: str,
        user_id: Any,
        content: str,
        created_at: datetime,
    ) -> LogEntry:
        ...

    @abstractmethod
    def count(self, conversation_id: str) -> int:
        ...

    @abstractmethod
    def oldest_ids(self, conversation_id: str, limit: int, keep: int | None = None) -> list[int]:
        """Ids of the *limit* oldest entries by ``(created_at, id)``, never including *keep*."""

    @abstractmethod
    def delete_ids(self, ids: Iterable[int]) -> int:
        ...

    @abstractmethod
    def savepoint(self):
        """Context manager scoping a nested unit; an error rolls back only its own work."""


class ConversationLogStore(ABC):
    @abstractmethod
    def unit(self, conversation_id: str):
        """Context manager yielding a locked ``StoreUnit``; commits on clean exit."""

    @abstractmethod
    def list_entries(self, conversation_id: str) -> list[LogEntry]:
        ...

    @abstractmethod
    def count(self, conversation_id: str) -> int:
        ...

    @abstractmethod
    def over_capacity_keys(self, capacity: int) -> list[str]:
        ...


# ── SQLAlchemy ────────────────────────────────────────────────────────────────


def _is_conflict(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in _CONFLICT_CODES:
        return True
    args = getattr(orig, "args", ())
    if args and str(args[0]) in _CONFLICT_CODES:
        return True
    message = str(orig).lower()
    return "database is locked" in message or "deadlock" in message


@contextmanager
def translate_db_errors() -> Iterator[None]:
    """Re-raise SQLAlchemy errors as memory log errors."""
    try:
        yield
    except IntegrityError as exc:
        raise ReferentialError(f"Integrity violation: {exc.orig}") from exc
    except DBAPIError as exc:
        if _is_conflict(exc):
            raise ConcurrencyConflict(str(exc.orig)) from exc
        raise TransientStoreError(str(exc.orig)) from exc
    except SQLAlchemyError as exc:
        raise TransientStoreError(str(exc)) from exc


def _advisory_key(conversation_id: str) -> int:
    digest = hashlib.blake2b(conversation_id.encode(), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def _acquire_dialect_lock(db: Session, conversation_id: str) -> None:
    """Take a transaction-scoped lock on *conversation_id* that other processes honour.

    SQLite needs nothing: the insert that opens every unit takes the database
    write lock, which is held until commit.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        db.execute(
            text("SELECT pg_advisory_xact_lock(:key)"),
            {"key": _advisory_key(conversation_id)},
        )
    elif dialect == "mssql":
        db.execute(
            text(
                "EXEC sp_getapplock @Resource = :resource, "
                "@LockMode = 'Exclusive', @LockOwner = 'Transaction'"
            ),
            {"resource": f"memlog:{conversation_id}"},
        )


class _SqlAlchemyUnit(StoreUnit):
    def __init__(self, db: Session):
        self.db = db

    def user_exists(self, user_id: Any) -> bool:
        with translate_db_errors():
            return self.db.get(User, user_id) is not None

    def insert(self, conversation_id, user_id, content, created_at) -> LogEntry:
        row = ChatMemoryLog(
            conversation_id=conversation_id,
            user_id=user_id,
            content=content,
            created_at=created_at,
        )
        with translate_db_errors():
            self.db.add(row)
            self.db.flush()
        return LogEntry.model_validate(row)

    def count(self, conversation_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(ChatMemoryLog)
            .where(ChatMemoryLog.conversation_id == conversation_id)
        )
        with translate_db_errors():
            return self.db.execute(stmt).scalar() or 0

    def oldest_ids(self, conversation_id: str, limit: int, keep: int | None = None) -> list[int]:
        stmt = select(ChatMemoryLog.id).where(ChatMemoryLog.conversation_id == conversation_id)
        if keep is not None:
            stmt = stmt.where(ChatMemoryLog.id != keep)
        stmt = stmt.order_by(ChatMemoryLog.created_at.asc(), ChatMemoryLog.id.asc()).limit(limit)
        with translate_db_errors():
            return list(self.db.execute(stmt).scalars().all())

    def delete_ids(self, ids: Iterable[int]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        stmt = (
            delete(ChatMemoryLog)
            .where(ChatMemoryLog.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        with translate_db_errors():
            return self.db.execute(stmt).rowcount

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        with translate_db_errors():
            nested = self.db.begin_nested()
        try:
            yield
        except BaseException:
            with translate_db_errors():
                nested.rollback()
            raise
        with translate_db_errors():
            nested.commit()


class SqlAlchemyLogStore(ConversationLogStore):
    """Relational store for ``chat_memory_log`` rows."""

    def __init__(self, session_factory: sessionmaker | None = None):
        self._session_factory = session_factory or SessionLocal
        self._locks = KeyedLock()

    @contextmanager
    def unit(self, conversation_id: str) -> Iterator[StoreUnit]:
        with self._locks.hold(conversation_id):
            db = self._session_factory()
            try:
                with translate_db_errors():
                    _acquire_dialect_lock(db, conversation_id)
                yield _SqlAlchemyUnit(db)
                with translate_db_errors():
                    db.commit()
            except BaseException:
                try:
                    db.rollback()
                except SQLAlchemyError:
                    logger.warning("Rollback failed for conversation %s", conversation_id, exc_info=True)
                raise
            finally:
                db.close()

    def list_entries(self, conversation_id: str) -> list[LogEntry]:
        stmt = (
            select(ChatMemoryLog)
            .where(ChatMemoryLog.conversation_id == conversation_id)
            .order_by(ChatMemoryLog.created_at.asc(), ChatMemoryLog.id.asc())
        )
        db = self._session_factory()
        try:
            with translate_db_errors():
                rows = db.execute(stmt).scalars().all()
                return [LogEntry.model_validate(r) for r in rows]
        finally:
            db.close()

    def count(self, conversation_id: str) -> int:
        db = self._session_factory()
        try:
            return _SqlAlchemyUnit(db).count(conversation_id)
        finally:
            db.close()

    def over_capacity_keys(self, capacity: int) -> list[str]:
        stmt = (
            select(ChatMemoryLog.conversation_id)
            .group_by(ChatMemoryLog.conversation_id)
            .having(func.count(ChatMemoryLog.id) > capacity)
        )
        db = self._session_factory()
        try:
            with translate_db_errors():
                return list(db.execute(stmt).scalars().all())
        finally:
            db.close()


# ── In-memory ─────────────────────────────────────────────────────────────────


def _entry_order(entry: LogEntry) -> tuple[datetime, int]:
    return entry.created_at, entry.id


class _InMemoryUnit(StoreUnit):
    """Works on a private copy of one key's rows; the store writes it back on commit."""

    def __init__(self, store: InMemoryLogStore, conversation_id: str):
        self._store = store
        self.conversation_id = conversation_id
        self.rows: list[LogEntry] = list(store._rows.get(conversation_id, ()))

    def _check_key(self, conversation_id: str) -> None:
        if conversation_id != self.conversation_id:
            raise ValueError(
                f"Unit for {self.conversation_id} cannot touch conversation {conversation_id}"
            )

    def user_exists(self, user_id: Any) -> bool:
        return user_id in self._store._users

    def insert(self, conversation_id, user_id, content, created_at) -> LogEntry:
        self._check_key(conversation_id)
        entry = LogEntry(
            id=self._store._next_id(),
            conversation_id=conversation_id,
            user_id=user_id,
            content=content,
            created_at=created_at,
        )
        self.rows.append(entry)
        return entry

    def count(self, conversation_id: str) -> int:
        self._check_key(conversation_id)
        return len(self.rows)

    def oldest_ids(self, conversation_id: str, limit: int, keep: int | None = None) -> list[int]:
        self._check_key(conversation_id)
        ordered = sorted(self.rows, key=_entry_order)
        return [e.id for e in ordered if e.id != keep][:limit]

    def delete_ids(self, ids: Iterable[int]) -> int:
        doomed = set(ids)
        before = len(self.rows)
        self.rows = [e for e in self.rows if e.id not in doomed]
        return before - len(self.rows)

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        snapshot = list(self.rows)
        try:
            yield
        except BaseException:
            self.rows = snapshot
            raise


class InMemoryLogStore(ConversationLogStore):
    """Process-local store. Users are registered with ``add_user``."""

    def __init__(self, user_ids: Iterable[Any] = ()):
        self._users: set[Any] = set(user_ids)
        self._rows: dict[str, list[LogEntry]] = {}
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()
        self._locks = KeyedLock()

    def add_user(self, user_id: Any) -> None:
        self._users.add(user_id)

    def _next_id(self) -> int:
        with self._id_lock:
            return next(self._ids)

    @contextmanager
    def unit(self, conversation_id: str) -> Iterator[StoreUnit]:
        with self._locks.hold(conversation_id):
            unit = _InMemoryUnit(self, conversation_id)
            yield unit
            if unit.rows:
                self._rows[conversation_id] = sorted(unit.rows, key=_entry_order)
            else:
                self._rows.pop(conversation_id, None)

    def list_entries(self, conversation_id: str) -> list[LogEntry]:
        return list(self._rows.get(conversation_id, ()))

    def count(self, conversation_id: str) -> int:
        return len(self._rows.get(conversation_id, ()))

    def over_capacity_keys(self, capacity: int) -> list[str]:
        return [key for key, rows in list(self._rows.items()) if len(rows) > capacity]

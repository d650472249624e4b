"""Root conftest — shared fixtures for all memlog tests."""

from __future__ import annotations

import os
import sys
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock

# Ensure the repo root is on sys.path
_root_dir = str(Path(__file__).resolve().parent)
if _root_dir not in sys.path:
    sys.path.insert(0, _root_dir)

# Keep tests away from the real ~/.config/memlog/conf.json
if not os.environ.get("MEMLOG_DIR"):
    os.environ["MEMLOG_DIR"] = str(Path(tempfile.gettempdir()) / "memlog-tests")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
import models  # noqa: F401 — register all models with Base

# Use in-memory SQLite for tests — StaticPool ensures all connections share the same DB
TEST_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = sessionmaker(bind=TEST_ENGINE, autoflush=False, expire_on_commit=False)

BASE_TIME = datetime(2025, 1, 6, 9, 0, 0)


class StepClock:
    """Deterministic clock: every call advances by *step* seconds."""

    def __init__(self, start: datetime = BASE_TIME, step: float = 1.0):
        self.now = start
        self.step = timedelta(seconds=step)

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + self.step
        return current


@pytest.fixture(autouse=True)
def _setup_db():
    """Create all tables before each test, drop after."""
    Base.metadata.create_all(bind=TEST_ENGINE)
    yield
    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db():
    """Yield a test database session."""
    session = TestSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db):
    from models.user import User

    u = User(
        email="author1@example.com",
        password_hash="hashed123",
        full_name="Alice Johnson",
        role="Member",
    )
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


@pytest.fixture
def sql_store():
    from services.log_stores import SqlAlchemyLogStore

    return SqlAlchemyLogStore(TestSession)


@pytest.fixture
def memory_store(user):
    from services.log_stores import InMemoryLogStore

    return InMemoryLogStore(user_ids=[user.id])


@pytest.fixture(params=["sql", "memory"])
def store(request, user):
    """Every store implementation, with ``user`` registered."""
    if request.param == "sql":
        return request.getfixturevalue("sql_store")
    return request.getfixturevalue("memory_store")


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def scheduler():
    return MagicMock()


@pytest.fixture
def memory_log(store, clock, scheduler):
    from services.memory_log import BoundedConversationLog

    return BoundedConversationLog(store, capacity=30, clock=clock, scheduler=scheduler)

"""BoundedConversationLog — per-conversation chat memory capped at a fixed size."""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from config import settings
from logging_config import conversation_id_var
from schemas.chat_memory import LogEntry
from services.errors import (
    ConcurrencyConflict,
    ReferentialError,
    TransientStoreError,
    ValidationError,
)
from services.log_stores import ConversationLogStore, StoreUnit

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _backoff(delay: float, attempt: int) -> float:
    """Exponential backoff capped at 10x delay."""
    return min(delay * (2 ** (attempt - 1)), delay * 10)


def normalize_conversation_id(conversation_id: uuid.UUID | str) -> str:
    """Return the canonical lowercase hyphenated form of a conversation key."""
    if isinstance(conversation_id, uuid.UUID):
        return str(conversation_id)
    if not isinstance(conversation_id, str):
        raise ValidationError(f"Malformed conversation id: {conversation_id!r}")
    try:
        return str(uuid.UUID(conversation_id))
    except ValueError:
        raise ValidationError(f"Malformed conversation id: {conversation_id!r}") from None


def new_conversation_id() -> str:
    """Fresh conversation key for callers starting a new conversation."""
    return str(uuid.uuid4())


class BoundedConversationLog:
    """
    Append-only log per conversation key, truncated to the most recent
    ``capacity`` entries.

    Every append runs insert, count and evict as one unit while holding the
    store's lock for that key, so concurrent appends on the same conversation
    cannot both skip eviction. Eviction runs inside a savepoint: if it fails
    the insert still commits, a corrective eviction is scheduled, and the
    caller gets a ``TransientStoreError`` carrying the stored entry.
    """

    def __init__(
        self,
        store: ConversationLogStore,
        capacity: int | None = None,
        clock: Callable[[], datetime] | None = None,
        scheduler=None,
    ):
        if capacity is None:
            capacity = settings.MEMORY_LOG_CAPACITY
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        if scheduler is None:
            from services.retention import EvictionScheduler

            scheduler = EvictionScheduler()

        self.store = store
        self.capacity = capacity
        self._clock = clock or _utcnow
        self.scheduler = scheduler

    # ========== WRITES ==========

    def append(
        self,
        conversation_id: uuid.UUID | str,
        author_user_id: Any,
        content: str,
    ) -> LogEntry:
        """Store *content* in the conversation and evict whatever no longer fits."""
        key = normalize_conversation_id(conversation_id)
        if not isinstance(content, str) or not content:
            raise ValidationError("content must be a non-empty string")
        if author_user_id is None:
            raise ValidationError("author_user_id is required")

        token = conversation_id_var.set(key)
        try:
            eviction_error: Exception | None = None
            with self.store.unit(key) as unit:
                if not unit.user_exists(author_user_id):
                    raise ReferentialError(f"User {author_user_id} does not exist")
                entry = unit.insert(key, author_user_id, content, self._clock())
                try:
                    with unit.savepoint():
                        self._evict(unit, key, keep=entry.id)
                except (TransientStoreError, ConcurrencyConflict) as exc:
                    logger.warning("Eviction failed after inserting entry %s: %s", entry.id, exc)
                    eviction_error = exc

            if eviction_error is not None:
                self._schedule_corrective_eviction(key)
                raise TransientStoreError(
                    f"Entry {entry.id} stored but eviction failed: {eviction_error}",
                    entry=entry,
                ) from eviction_error
            return entry
        finally:
            conversation_id_var.reset(token)

    def append_with_retry(
        self,
        conversation_id: uuid.UUID | str,
        author_user_id: Any,
        content: str,
        attempts: int = 3,
        base_delay: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ) -> LogEntry:
        """``append`` that retries conflicts and store outages with backoff.

        A ``TransientStoreError`` that carries an entry is raised immediately:
        the message is already stored and retrying would duplicate it.
        """
        if attempts < 1:
            raise ValueError(f"attempts must be at least 1, got {attempts}")

        attempt = 1
        while True:
            try:
                return self.append(conversation_id, author_user_id, content)
            except (ConcurrencyConflict, TransientStoreError) as exc:
                if getattr(exc, "entry", None) is not None or attempt >= attempts:
                    raise
                delay = _backoff(base_delay, attempt)
                logger.info(
                    "Append attempt %d/%d failed (%s), retrying in %.2fs",
                    attempt, attempts, type(exc).__name__, delay,
                )
                sleep(delay)
                attempt += 1

    def sweep(self, conversation_id: uuid.UUID | str) -> int:
        """Re-run the retention policy for one conversation. Returns entries evicted."""
        key = normalize_conversation_id(conversation_id)
        token = conversation_id_var.set(key)
        try:
            with self.store.unit(key) as unit:
                return self._evict(unit, key)
        finally:
            conversation_id_var.reset(token)

    def sweep_over_capacity(self) -> int:
        """Sweep every conversation currently holding more than ``capacity`` entries."""
        total = 0
        for key in self.store.over_capacity_keys(self.capacity):
            try:
                total += self.sweep(key)
            except (TransientStoreError, ConcurrencyConflict):
                logger.exception("Sweep failed for conversation %s, rescheduling", key)
                self._schedule_corrective_eviction(key)
        if total:
            logger.info("Over-capacity sweep evicted %d entries", total)
        return total

    # ========== READS ==========

    def list_entries(self, conversation_id: uuid.UUID | str) -> list[LogEntry]:
        """Entries oldest first; empty for a conversation that has none."""
        return self.store.list_entries(normalize_conversation_id(conversation_id))

    def count(self, conversation_id: uuid.UUID | str) -> int:
        return self.store.count(normalize_conversation_id(conversation_id))

    # ========== INTERNALS ==========

    def _evict(self, unit: StoreUnit, key: str, keep: int | None = None) -> int:
        overflow = unit.count(key) - self.capacity
        if overflow <= 0:
            return 0
        ids = unit.oldest_ids(key, overflow, keep=keep)
        evicted = unit.delete_ids(ids)
        logger.debug("Evicted %d entries from conversation %s", evicted, key)
        return evicted

    def _schedule_corrective_eviction(self, key: str) -> None:
        try:
            self.scheduler.schedule(key)
        except Exception:
            # The periodic over-capacity sweep still picks the key up.
            logger.exception("Could not schedule corrective eviction for %s", key)

"""Error taxonomy for the chat memory log."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from schemas.chat_memory import LogEntry


class MemoryLogError(Exception):
    """Base class for every error raised by the memory log."""


class ValidationError(MemoryLogError):
    """Malformed input. Raised before any storage mutation."""


class ReferentialError(MemoryLogError):
    """The author does not exist in the users table."""


class ConcurrencyConflict(MemoryLogError):
    """The append could not be serialized against a competing append on the same key.

    Safe to retry the whole append.
    """


class TransientStoreError(MemoryLogError):
    """The underlying store is unreachable or overloaded.

    When ``entry`` is set the insert itself was committed and only eviction
    failed; a corrective eviction has already been scheduled and the append
    must not be retried.
    """

    def __init__(self, message: str, entry: LogEntry | None = None) -> None:
        super().__init__(message)
        self.entry = entry

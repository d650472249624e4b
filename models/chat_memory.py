"""Chat memory log model — one row per stored conversation snippet."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class ChatMemoryLog(Base):
    """
    A single memory snippet of an AI conversation.

    Rows sharing a ``conversation_id`` form one log, ordered by
    ``(created_at, id)``. Rows are never updated; the retention policy in
    services.memory_log deletes the oldest ones once a conversation grows
    past capacity.
    """

    __tablename__ = "chat_memory_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    conversation_id: Mapped[str] = mapped_column(String(36))
    content: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        Index("ix_chat_memory_log_conversation_time", "conversation_id", "created_at", "id"),
        {"sqlite_autoincrement": True},
    )

    def __repr__(self):
        return f"<ChatMemoryLog {self.id} conv={self.conversation_id[:8]}>"

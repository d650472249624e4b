"""Pydantic schemas for chat memory log entries."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class LogEntry(BaseModel):
    id: int
    conversation_id: str
    user_id: int
    content: str
    created_at: datetime

    model_config = {"from_attributes": True, "frozen": True}

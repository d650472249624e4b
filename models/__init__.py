"""SQLAlchemy models — re-export all."""

from models.user import User  # noqa: F401
from models.chat_memory import ChatMemoryLog  # noqa: F401

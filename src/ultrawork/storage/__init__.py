"""Storage layer: SQLite task database and the async memory store."""

from .database import Database
from .memory import MemoryEntry, MemoryStore

__all__ = ["Database", "MemoryEntry", "MemoryStore"]

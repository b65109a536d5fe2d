"""Local record stores for weighsync."""

from weighsync.storage.base import LocalStore, SchemaCapabilities
from weighsync.storage.memory_store import InMemoryStore
from weighsync.storage.sqlite_store import SQLiteStore

__all__ = [
    "LocalStore",
    "SchemaCapabilities",
    "InMemoryStore",
    "SQLiteStore",
]

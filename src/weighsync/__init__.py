"""weighsync - multi-device sync engine for recycling-weighing records."""

from weighsync.core.context import SyncContext
from weighsync.core.entities import EntityKind, Record

__version__ = "0.1.0"

__all__ = [
    "SyncContext",
    "EntityKind",
    "Record",
    "__version__",
]

"""Core data model for weighsync."""

from weighsync.core.context import SyncContext
from weighsync.core.entities import (
    KIND_SPECS,
    MERGE_ORDER,
    EntityKind,
    KindAggregate,
    KindSpec,
    Record,
    effective_time,
)

__all__ = [
    "SyncContext",
    "EntityKind",
    "KindSpec",
    "KindAggregate",
    "KIND_SPECS",
    "MERGE_ORDER",
    "Record",
    "effective_time",
]

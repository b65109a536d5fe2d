"""Peer-to-peer and cloud synchronization for weighsync."""

from weighsync.sync.device import DeviceDescriptor, get_device_name
from weighsync.sync.errors import (
    ForeignRecordError,
    NetworkError,
    PayloadTooLargeError,
    ProtocolError,
    SchemaDriftError,
    SyncError,
    SyncUnsupportedError,
)
from weighsync.sync.protocol import (
    ChangedData,
    MergeResult,
    MismatchReport,
    SyncProgress,
    SyncResult,
    SyncStage,
)
from weighsync.sync.sync_engine import SyncEngine

__all__ = [
    "DeviceDescriptor",
    "get_device_name",
    "SyncError",
    "NetworkError",
    "ProtocolError",
    "SyncUnsupportedError",
    "PayloadTooLargeError",
    "SchemaDriftError",
    "ForeignRecordError",
    "ChangedData",
    "MergeResult",
    "MismatchReport",
    "SyncProgress",
    "SyncResult",
    "SyncStage",
    "SyncEngine",
]

"""Sync protocol data structures shared by peers, the cloud client and callers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from weighsync.core.entities import MERGE_ORDER, EntityKind, Record
from weighsync.utils.timeutils import format_timestamp, parse_timestamp, utcnow


class SyncStage(StrEnum):
    """Stage of a sync run as reported on the progress channel."""

    IDLE = "idle"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    SYNCING = "syncing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStage.COMPLETED, SyncStage.ERROR)


@dataclass(frozen=True)
class SyncProgress:
    """One progress event."""

    stage: SyncStage
    progress: int  # 0-100
    message: str
    device_count: int | None = None
    synced_records: int | None = None
    total_records: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "stage": self.stage.value,
            "progress": self.progress,
            "message": self.message,
        }
        if self.device_count is not None:
            data["deviceCount"] = self.device_count
        if self.synced_records is not None:
            data["syncedRecords"] = self.synced_records
        if self.total_records is not None:
            data["totalRecords"] = self.total_records
        return data


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one sync run."""

    success: bool
    message: str
    synced_records: int = 0
    conflicts: int = 0
    skipped: bool = False  # dropped because another run was in flight

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "syncedRecords": self.synced_records,
            "conflicts": self.conflicts,
            "skipped": self.skipped,
        }


@dataclass(frozen=True)
class MergeResult:
    """Counters produced by applying one envelope."""

    merged: int = 0
    conflicts: int = 0
    deferred: int = 0
    total: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "merged": self.merged,
            "conflicts": self.conflicts,
            "deferred": self.deferred,
            "total": self.total,
        }


@dataclass
class ChangedData:
    """Changed-data envelope: per-kind records plus the capture time."""

    records: dict[EntityKind, list[Record]] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def get(self, kind: EntityKind) -> list[Record]:
        return self.records.get(kind, [])

    @property
    def total(self) -> int:
        return sum(len(rows) for rows in self.records.values())

    def is_empty(self) -> bool:
        return self.total == 0

    def kinds_with_records(self) -> list[EntityKind]:
        return [kind for kind in MERGE_ORDER if self.records.get(kind)]

    def only(self, kind: EntityKind, rows: list[Record]) -> ChangedData:
        """Envelope carrying ``rows`` for ``kind`` and nothing else."""
        return ChangedData(records={kind: list(rows)}, timestamp=self.timestamp)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            kind.value: list(self.records.get(kind, [])) for kind in MERGE_ORDER
        }
        data["timestamp"] = format_timestamp(self.timestamp)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangedData:
        """Parse a wire envelope. Unknown keys are ignored, missing kinds are empty.

        Raises:
            ValueError: If ``data`` is not a mapping or a kind is not a list.
        """
        if not isinstance(data, dict):
            raise ValueError("Envelope must be a JSON object")

        records: dict[EntityKind, list[Record]] = {}
        for kind in MERGE_ORDER:
            rows = data.get(kind.value)
            if rows is None:
                continue
            if not isinstance(rows, list):
                raise ValueError(f"Envelope field '{kind.value}' must be a list")
            records[kind] = [row for row in rows if isinstance(row, dict)]

        return cls(
            records=records,
            timestamp=parse_timestamp(data.get("timestamp")) or utcnow(),
        )


@dataclass(frozen=True)
class PushOutcome:
    """Result of a cloud push."""

    requests: int
    batched: bool
    records: int
    merged: int = 0
    conflicts: int = 0


@dataclass(frozen=True)
class MismatchReport:
    """Result of comparing the local and cloud content fingerprints."""

    mismatched: bool
    local_hash: str
    cloud_hash: str | None
    suppressed: bool = False
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "mismatched": self.mismatched,
            "localHash": self.local_hash,
            "cloudHash": self.cloud_hash,
            "suppressed": self.suppressed,
            "reason": self.reason,
        }

"""In-memory record store."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Any

from weighsync.core.entities import KIND_SPECS, EntityKind, Record, effective_time, needs_upload
from weighsync.storage.base import LocalStore, SchemaCapabilities
from weighsync.utils.timeutils import EPOCH


class InMemoryStore(LocalStore):
    """Dict-backed store for development and testing.

    Data is lost when the process exits.
    """

    def __init__(self) -> None:
        self._records: dict[tuple[int, EntityKind], dict[Any, Record]] = defaultdict(dict)
        self._settings: dict[int, dict[str, str]] = defaultdict(dict)
        self._capabilities = SchemaCapabilities.complete()
        self._next_id = 1

    @property
    def capabilities(self) -> SchemaCapabilities:
        return self._capabilities

    async def repair_schema(self) -> SchemaCapabilities:
        self._capabilities = SchemaCapabilities.complete()
        return self._capabilities

    # ========== Records ==========

    async def list_changed(
        self,
        tenant_id: int,
        kind: EntityKind,
        *,
        since: datetime | None = None,
        needs_upload_only: bool = False,
    ) -> list[Record]:
        rows = []
        for record in self._records[(tenant_id, kind)].values():
            if needs_upload_only and not needs_upload(record):
                continue
            if since is not None:
                ts = effective_time(record)
                if ts is None or ts <= since:
                    continue
            rows.append(dict(record))
        rows.sort(key=lambda r: effective_time(r) or EPOCH)
        return rows

    async def get_record(self, tenant_id: int, kind: EntityKind, record_id: Any) -> Record | None:
        record = self._records[(tenant_id, kind)].get(record_id)
        return dict(record) if record is not None else None

    async def find_by_fields(
        self, tenant_id: int, kind: EntityKind, fields: dict[str, Any]
    ) -> Record | None:
        for record in self._records[(tenant_id, kind)].values():
            if all(record.get(key) == value for key, value in fields.items()):
                return dict(record)
        return None

    async def upsert(
        self,
        tenant_id: int,
        kind: EntityKind,
        record: Record,
        *,
        needs_upload: bool,
    ) -> Any:
        columns = KIND_SPECS[kind].columns
        table = self._records[(tenant_id, kind)]

        record_id = record.get("id")
        if record_id is None:
            record_id = self._allocate_id(table)
        elif isinstance(record_id, int):
            self._next_id = max(self._next_id, record_id + 1)

        stored = table.get(record_id, {column: None for column in columns})
        for key, value in record.items():
            if key in columns:
                stored[key] = value
        stored["id"] = record_id
        stored["activation_id"] = tenant_id
        stored["is_synced"] = not needs_upload
        table[record_id] = stored
        return record_id

    async def mark_uploaded(
        self,
        tenant_id: int,
        kind: EntityKind,
        record_id: Any,
        cloud_id: Any = None,
        expected_updated_at: str | None = None,
    ) -> bool:
        record = self._records[(tenant_id, kind)].get(record_id)
        if record is None:
            return False
        if cloud_id is not None and record.get("cloud_id") is None:
            record["cloud_id"] = cloud_id
        if expected_updated_at is not None and record.get("updated_at") != expected_updated_at:
            return False
        record["is_synced"] = True
        return True

    def _allocate_id(self, table: dict[Any, Record]) -> int:
        while self._next_id in table:
            self._next_id += 1
        record_id = self._next_id
        self._next_id += 1
        return record_id

    # ========== Settings ==========

    async def get_setting(self, tenant_id: int, key: str) -> str | None:
        return self._settings[tenant_id].get(key)

    async def set_setting(self, tenant_id: int, key: str, value: str) -> None:
        self._settings[tenant_id][key] = value

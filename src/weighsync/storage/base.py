"""Abstract base class for local record stores."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from weighsync.core.entities import (
    KIND_SPECS,
    MERGE_ORDER,
    EntityKind,
    KindAggregate,
    Record,
    aggregate_records,
    effective_time,
)
from weighsync.utils.timeutils import format_timestamp, utcnow


@dataclass(frozen=True)
class SchemaCapabilities:
    """Which columns each syncable table actually has.

    Probed once when the store is initialized and reused for every query
    until :meth:`LocalStore.repair_schema` probes again.
    """

    columns: dict[str, frozenset[str]] = field(default_factory=dict)

    def has_table(self, table: str) -> bool:
        return table in self.columns

    def has_column(self, table: str, column: str) -> bool:
        return column in self.columns.get(table, frozenset())

    def missing_columns(self, kind: EntityKind) -> list[str]:
        spec = KIND_SPECS[kind]
        present = self.columns.get(spec.table, frozenset())
        return [column for column in spec.columns if column not in present]

    @classmethod
    def complete(cls) -> SchemaCapabilities:
        """Capabilities of a store that carries every known column."""
        return cls(
            columns={spec.table: frozenset(spec.columns) for spec in KIND_SPECS.values()}
        )


class LocalStore(ABC):
    """
    Abstract interface for the device-local record store.

    All methods are tenant scoped: implementations must never return or
    modify a record whose ``activation_id`` differs from ``tenant_id``.
    """

    async def initialize(self) -> None:  # noqa: B027
        """Open connections and probe the schema. No-op by default."""

    async def close(self) -> None:  # noqa: B027
        """Release resources. No-op by default."""

    @property
    @abstractmethod
    def capabilities(self) -> SchemaCapabilities:
        """Cached schema capabilities."""
        ...

    @abstractmethod
    async def repair_schema(self) -> SchemaCapabilities:
        """Add missing sync columns and re-probe the schema.

        Returns:
            The refreshed capabilities.
        """
        ...

    # ========== Records ==========

    @abstractmethod
    async def list_changed(
        self,
        tenant_id: int,
        kind: EntityKind,
        *,
        since: datetime | None = None,
        needs_upload_only: bool = False,
    ) -> list[Record]:
        """
        List records of one kind changed after ``since``.

        Args:
            tenant_id: Tenant whose records to list
            kind: Entity kind
            since: Only records whose effective time is strictly later
            needs_upload_only: Only records not yet acknowledged by a remote

        Returns:
            Records as plain dicts, oldest first
        """
        ...

    @abstractmethod
    async def get_record(self, tenant_id: int, kind: EntityKind, record_id: Any) -> Record | None:
        """Get a record by id, or None."""
        ...

    @abstractmethod
    async def find_by_fields(
        self, tenant_id: int, kind: EntityKind, fields: dict[str, Any]
    ) -> Record | None:
        """Find the first record whose columns equal all of ``fields``."""
        ...

    @abstractmethod
    async def upsert(
        self,
        tenant_id: int,
        kind: EntityKind,
        record: Record,
        *,
        needs_upload: bool,
    ) -> Any:
        """
        Insert or replace a record.

        The stored ``activation_id`` is always ``tenant_id``. Keys that are not
        columns of the table are ignored.

        Returns:
            The record id (assigned by the store when ``record`` has none)

        Raises:
            SchemaDriftError: If the table lacks a column required for sync
        """
        ...

    @abstractmethod
    async def mark_uploaded(
        self,
        tenant_id: int,
        kind: EntityKind,
        record_id: Any,
        cloud_id: Any = None,
        expected_updated_at: str | None = None,
    ) -> bool:
        """
        Record that a remote store acknowledged a record.

        ``cloud_id`` is stored only when the record has none yet. The pending
        flag is cleared only when the stored ``updated_at`` still equals
        ``expected_updated_at`` (if given).

        Returns:
            True if the pending flag was cleared
        """
        ...

    # ========== Settings ==========

    @abstractmethod
    async def get_setting(self, tenant_id: int, key: str) -> str | None:
        ...

    @abstractmethod
    async def set_setting(self, tenant_id: int, key: str, value: str) -> None:
        ...

    # ========== Derived queries ==========

    async def get_aggregate_counts(self, tenant_id: int) -> dict[EntityKind, KindAggregate]:
        """Per-kind content aggregates used by the mismatch fingerprint."""
        result: dict[EntityKind, KindAggregate] = {}
        for kind in MERGE_ORDER:
            records = await self.list_changed(tenant_id, kind)
            result[kind] = aggregate_records(kind, records)
        return result

    async def latest_change_time(self, tenant_id: int) -> datetime | None:
        """Maximum effective timestamp across all of the tenant's records."""
        latest: datetime | None = None
        for kind in MERGE_ORDER:
            for record in await self.list_changed(tenant_id, kind):
                ts = effective_time(record)
                if ts is not None and (latest is None or ts > latest):
                    latest = ts
        return latest

    async def count_records(self, tenant_id: int) -> int:
        counts = await self.get_aggregate_counts(tenant_id)
        return sum(aggregate.count for aggregate in counts.values())

    async def count_pending(self, tenant_id: int) -> int:
        """Number of records still waiting for a cloud upload."""
        total = 0
        for kind in MERGE_ORDER:
            total += len(await self.list_changed(tenant_id, kind, needs_upload_only=True))
        return total

    async def save_local(self, tenant_id: int, kind: EntityKind, record: Record) -> Any:
        """Persist an edit made on this device and flag it for upload.

        Stamps ``created_at`` (for new records) and ``updated_at`` with the
        current time.
        """
        now = format_timestamp(utcnow())
        stamped = dict(record)
        if stamped.get("id") is None or await self.get_record(
            tenant_id, kind, stamped["id"]
        ) is None:
            stamped.setdefault("created_at", now)
        stamped["updated_at"] = now
        return await self.upsert(tenant_id, kind, stamped, needs_upload=True)

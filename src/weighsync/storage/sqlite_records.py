"""SQLite mixin for syncable record operations."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import TYPE_CHECKING, Any

from weighsync.core.entities import KIND_SPECS, EntityKind, Record, effective_time
from weighsync.sync.errors import ForeignRecordError, SchemaDriftError
from weighsync.utils.timeutils import EPOCH

if TYPE_CHECKING:
    import aiosqlite

    from weighsync.storage.base import SchemaCapabilities

logger = logging.getLogger(__name__)

# Columns without which a table cannot take part in sync at all.
_REQUIRED_COLUMNS = ("id", "activation_id", "created_at")


def _row_to_record(row: aiosqlite.Row) -> Record:
    record = dict(row)
    if "is_synced" in record:
        record["is_synced"] = bool(record["is_synced"])
    return record


def _as_drift(table: str, exc: sqlite3.OperationalError) -> SchemaDriftError | None:
    message = str(exc)
    lowered = message.lower()
    if "no such column" in lowered or "has no column named" in lowered:
        column = message.rsplit(" ", 1)[-1] if " " in message else None
        return SchemaDriftError(table, column, detail=message)
    return None


class SQLiteRecordsMixin:
    """Mixin: tenant-scoped reads and writes of syncable records."""

    # ------------------------------------------------------------------
    # Protocol stubs, satisfied by SQLiteStore at runtime.
    # ------------------------------------------------------------------

    def _ensure_conn(self) -> aiosqlite.Connection:
        raise NotImplementedError

    @property
    def capabilities(self) -> SchemaCapabilities:
        raise NotImplementedError

    # ------------------------------------------------------------------

    def _select_columns(self, kind: EntityKind) -> str:
        spec = KIND_SPECS[kind]
        present = [c for c in spec.columns if self.capabilities.has_column(spec.table, c)]
        return ", ".join(present) if present else "*"

    async def list_changed(
        self,
        tenant_id: int,
        kind: EntityKind,
        *,
        since: datetime | None = None,
        needs_upload_only: bool = False,
    ) -> list[Record]:
        """List a tenant's records of one kind, optionally changed after ``since``.

        Timestamps are compared after parsing, since stored values mix
        ``T`` and space separators.
        """
        conn = self._ensure_conn()
        spec = KIND_SPECS[kind]
        if not self.capabilities.has_table(spec.table):
            return []

        sql = f"SELECT {self._select_columns(kind)} FROM {spec.table} WHERE activation_id = ?"
        if needs_upload_only and self.capabilities.has_column(spec.table, "is_synced"):
            sql += " AND (is_synced IS NULL OR is_synced = 0)"

        try:
            async with conn.execute(sql, (tenant_id,)) as cursor:
                rows = await cursor.fetchall()
        except sqlite3.OperationalError as e:
            drift = _as_drift(spec.table, e)
            if drift is not None:
                raise drift from e
            raise

        records = [_row_to_record(row) for row in rows]
        if since is not None:
            records = [r for r in records if (effective_time(r) or EPOCH) > since]
        records.sort(key=lambda r: effective_time(r) or EPOCH)
        return records

    async def get_record(self, tenant_id: int, kind: EntityKind, record_id: Any) -> Record | None:
        conn = self._ensure_conn()
        spec = KIND_SPECS[kind]
        if not self.capabilities.has_table(spec.table):
            return None

        async with conn.execute(
            f"SELECT {self._select_columns(kind)} FROM {spec.table} "
            "WHERE activation_id = ? AND id = ?",
            (tenant_id, record_id),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_record(row) if row is not None else None

    async def find_by_fields(
        self, tenant_id: int, kind: EntityKind, fields: dict[str, Any]
    ) -> Record | None:
        conn = self._ensure_conn()
        spec = KIND_SPECS[kind]
        for column in fields:
            if not self.capabilities.has_column(spec.table, column):
                raise SchemaDriftError(spec.table, column, detail="lookup column missing")

        where = " AND ".join(f"{column} = ?" for column in fields)
        async with conn.execute(
            f"SELECT {self._select_columns(kind)} FROM {spec.table} "
            f"WHERE activation_id = ? AND {where} ORDER BY id LIMIT 1",
            (tenant_id, *fields.values()),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_record(row) if row is not None else None

    async def upsert(
        self,
        tenant_id: int,
        kind: EntityKind,
        record: Record,
        *,
        needs_upload: bool,
    ) -> Any:
        """Insert a record or update the columns it carries.

        Raises:
            SchemaDriftError: If the table or one of its required columns is missing
            ForeignRecordError: If the id is taken by another tenant's record
        """
        conn = self._ensure_conn()
        spec = KIND_SPECS[kind]
        if not self.capabilities.has_table(spec.table):
            raise SchemaDriftError(spec.table, detail="table missing")
        for column in _REQUIRED_COLUMNS:
            if not self.capabilities.has_column(spec.table, column):
                raise SchemaDriftError(spec.table, column, detail="required column missing")

        values: dict[str, Any] = {
            column: record[column]
            for column in spec.columns
            if column in record and self.capabilities.has_column(spec.table, column)
        }
        values["activation_id"] = tenant_id
        if self.capabilities.has_column(spec.table, "is_synced"):
            values["is_synced"] = 0 if needs_upload else 1
        record_id = values.pop("id", None)

        if record_id is not None:
            async with conn.execute(
                f"SELECT activation_id FROM {spec.table} WHERE id = ?", (record_id,)
            ) as cursor:
                row = await cursor.fetchone()
            if row is not None:
                if row[0] != tenant_id:
                    raise ForeignRecordError(spec.table, record_id, row[0])
                # NOT NULL columns the record does not carry keep their stored values.
                assignments = ", ".join(f"{column} = ?" for column in values)
                await self._execute_write(
                    conn,
                    spec.table,
                    f"UPDATE {spec.table} SET {assignments} WHERE activation_id = ? AND id = ?",
                    (*values.values(), tenant_id, record_id),
                )
                await conn.commit()
                return record_id
            values = {"id": record_id, **values}

        placeholders = ", ".join("?" for _ in values)
        cursor = await self._execute_write(
            conn,
            spec.table,
            f"INSERT INTO {spec.table} ({', '.join(values)}) VALUES ({placeholders})",
            tuple(values.values()),
        )
        await conn.commit()
        return record_id if record_id is not None else cursor.lastrowid

    async def _execute_write(
        self, conn: aiosqlite.Connection, table: str, sql: str, params: tuple[Any, ...]
    ) -> aiosqlite.Cursor:
        try:
            return await conn.execute(sql, params)
        except sqlite3.OperationalError as e:
            drift = _as_drift(table, e)
            if drift is not None:
                raise drift from e
            raise

    async def mark_uploaded(
        self,
        tenant_id: int,
        kind: EntityKind,
        record_id: Any,
        cloud_id: Any = None,
        expected_updated_at: str | None = None,
    ) -> bool:
        conn = self._ensure_conn()
        spec = KIND_SPECS[kind]

        if cloud_id is not None and self.capabilities.has_column(spec.table, "cloud_id"):
            await conn.execute(
                f"UPDATE {spec.table} SET cloud_id = ? "
                "WHERE activation_id = ? AND id = ? AND cloud_id IS NULL",
                (cloud_id, tenant_id, record_id),
            )

        if not self.capabilities.has_column(spec.table, "is_synced"):
            await conn.commit()
            return False

        sql = f"UPDATE {spec.table} SET is_synced = 1 WHERE activation_id = ? AND id = ?"
        params: tuple[Any, ...] = (tenant_id, record_id)
        if expected_updated_at is not None and self.capabilities.has_column(
            spec.table, "updated_at"
        ):
            sql += " AND updated_at IS ?"
            params = (*params, expected_updated_at)

        cursor = await conn.execute(sql, params)
        await conn.commit()
        return cursor.rowcount > 0

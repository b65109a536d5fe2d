"""SQLite storage backend for the local record store."""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

from weighsync.storage.base import LocalStore, SchemaCapabilities
from weighsync.storage.sqlite_records import SQLiteRecordsMixin
from weighsync.storage.sqlite_schema import (
    SCHEMA,
    SCHEMA_VERSION,
    add_missing_columns,
    create_indexes,
    probe_capabilities,
    run_migrations,
)
from weighsync.storage.sqlite_settings import SQLiteSettingsMixin

logger = logging.getLogger(__name__)


class SQLiteStore(SQLiteRecordsMixin, SQLiteSettingsMixin, LocalStore):
    """SQLite-based local record store.

    Schema capabilities are probed once in :meth:`initialize` and cached;
    only :meth:`repair_schema` probes again.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path).resolve()
        self._conn: aiosqlite.Connection | None = None
        self._capabilities = SchemaCapabilities()
        self._repaired = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def capabilities(self) -> SchemaCapabilities:
        return self._capabilities

    async def initialize(self) -> None:
        """Open the database, migrate older schemas and probe capabilities."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA synchronous=NORMAL")

        await self._conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)"
        )
        await self._conn.commit()

        async with self._conn.execute("SELECT version FROM schema_version") as cursor:
            row = await cursor.fetchone()

        if row is not None and row["version"] < SCHEMA_VERSION:
            await run_migrations(self._conn, row["version"])

        await self._conn.executescript(SCHEMA)
        await create_indexes(self._conn)

        async with self._conn.execute("SELECT version FROM schema_version") as cursor:
            row = await cursor.fetchone()
            if row is None:
                await self._conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
                )
                await self._conn.commit()

        self._capabilities = await probe_capabilities(self._conn)
        logger.debug(
            "Probed schema of %s: %d tables", self._db_path, len(self._capabilities.columns)
        )

    async def repair_schema(self) -> SchemaCapabilities:
        """Add missing columns once per store lifetime, then re-probe."""
        conn = self._ensure_conn()
        if not self._repaired:
            self._repaired = True
            added = await add_missing_columns(conn, self._capabilities)
            if added:
                logger.warning("Repaired schema drift, added columns: %s", ", ".join(added))
                await create_indexes(conn)
        self._capabilities = await probe_capabilities(conn)
        return self._capabilities

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _ensure_conn(self) -> aiosqlite.Connection:
        """Ensure the connection is available."""
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

"""SQLite schema definition for the local record store."""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING

from weighsync.core.entities import KIND_SPECS
from weighsync.storage.base import SchemaCapabilities

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 2

# Declared type for every column that is not TEXT.
COLUMN_TYPES: dict[str, str] = {
    "id": "INTEGER",
    "activation_id": "INTEGER",
    "cloud_id": "INTEGER",
    "is_synced": "INTEGER DEFAULT 0",
    "customer_id": "INTEGER",
    "session_id": "INTEGER",
    "waste_type_id": "INTEGER",
    "year": "INTEGER",
    "is_active": "INTEGER DEFAULT 1",
    "price_per_unit": "REAL",
    "total_amount": "REAL",
    "weight": "REAL",
    "unit_price": "REAL",
}

# ── Migrations ──────────────────────────────────────────────────────
# Version 1 databases predate multi-device sync: no cloud_id, updated_at or
# is_synced columns. Migrations run sequentially in initialize().

MIGRATIONS: dict[tuple[int, int], list[str]] = {
    (1, 2): [
        f"ALTER TABLE {spec.table} ADD COLUMN {column} {COLUMN_TYPES.get(column, 'TEXT')}"
        for spec in KIND_SPECS.values()
        for column in ("cloud_id", "updated_at", "is_synced")
    ]
    + [
        f"CREATE INDEX IF NOT EXISTS idx_{spec.table}_pending ON {spec.table}(activation_id, is_synced)"
        for spec in KIND_SPECS.values()
    ],
}


def _is_benign(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "duplicate column" in message or "already exists" in message


async def run_migrations(conn: aiosqlite.Connection, current_version: int) -> int:
    """Apply all pending migrations from current_version to SCHEMA_VERSION.

    Returns the final schema version after all migrations.
    """
    version = current_version

    while version < SCHEMA_VERSION:
        next_version = version + 1
        for sql in MIGRATIONS.get((version, next_version), []):
            try:
                await conn.execute(sql)
            except sqlite3.OperationalError as e:
                # Column/index may already exist (partial migration or manual fix).
                if _is_benign(e):
                    logger.debug("Migration already applied: %s", e)
                else:
                    logger.warning("Migration statement failed: %s: %s", sql[:80], e)
        version = next_version

    await conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
    await conn.commit()

    return version


async def probe_capabilities(conn: aiosqlite.Connection) -> SchemaCapabilities:
    """Read the column set of every syncable table."""
    columns: dict[str, frozenset[str]] = {}
    for spec in KIND_SPECS.values():
        async with conn.execute(f"PRAGMA table_info({spec.table})") as cursor:
            rows = await cursor.fetchall()
        if rows:
            columns[spec.table] = frozenset(row[1] for row in rows)
    return SchemaCapabilities(columns=columns)


async def add_missing_columns(
    conn: aiosqlite.Connection, capabilities: SchemaCapabilities
) -> list[str]:
    """Add every known column the live schema lacks.

    Returns:
        ``table.column`` names that were added
    """
    added: list[str] = []
    for spec in KIND_SPECS.values():
        if not capabilities.has_table(spec.table):
            continue
        for column in capabilities.missing_columns(spec.kind):
            if column == "id":
                continue
            sql = (
                f"ALTER TABLE {spec.table} ADD COLUMN {column} "
                f"{COLUMN_TYPES.get(column, 'TEXT')}"
            )
            try:
                await conn.execute(sql)
            except sqlite3.OperationalError as e:
                if not _is_benign(e):
                    raise
                continue
            added.append(f"{spec.table}.{column}")
    await conn.commit()
    return added


async def create_indexes(conn: aiosqlite.Connection) -> None:
    for sql in INDEXES:
        try:
            await conn.execute(sql)
        except sqlite3.OperationalError as e:
            logger.warning("Skipped index, schema incomplete: %s", e)
    await conn.commit()


SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS customers (
    id INTEGER PRIMARY KEY,
    activation_id INTEGER NOT NULL,
    cloud_id INTEGER,
    name TEXT,
    phone TEXT,
    address TEXT,
    license_number TEXT,
    license_photo_path TEXT,
    customer_number TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    is_synced INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS metal_types (
    id INTEGER PRIMARY KEY,
    activation_id INTEGER NOT NULL,
    cloud_id INTEGER,
    symbol TEXT,
    name TEXT,
    price_per_unit REAL,
    unit TEXT,
    is_active INTEGER DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    is_synced INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS vehicles (
    id INTEGER PRIMARY KEY,
    activation_id INTEGER NOT NULL,
    cloud_id INTEGER,
    customer_id INTEGER,
    license_plate TEXT,
    year INTEGER,
    color TEXT,
    make TEXT,
    model TEXT,
    original_ref_no TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    is_synced INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS weighing_sessions (
    id INTEGER PRIMARY KEY,
    activation_id INTEGER NOT NULL,
    cloud_id INTEGER,
    customer_id INTEGER,
    session_time TEXT,
    notes TEXT,
    total_amount REAL,
    status TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    is_synced INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS weighings (
    id INTEGER PRIMARY KEY,
    activation_id INTEGER NOT NULL,
    cloud_id INTEGER,
    session_id INTEGER,
    waste_type_id INTEGER,
    weight REAL,
    unit_price REAL,
    total_amount REAL,
    product_photo_path TEXT,
    weighing_time TEXT,
    notes TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    is_synced INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS biometric_data (
    id INTEGER PRIMARY KEY,
    activation_id INTEGER NOT NULL,
    cloud_id INTEGER,
    customer_id INTEGER,
    face_image_path TEXT,
    fingerprint_template TEXT,
    fingerprint_image_path TEXT,
    signature_image_path TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    is_synced INTEGER DEFAULT 0
);

-- Per-tenant sync cursors and bookkeeping
CREATE TABLE IF NOT EXISTS sync_settings (
    activation_id INTEGER NOT NULL,
    key TEXT NOT NULL,
    value TEXT,
    PRIMARY KEY (activation_id, key)
);
"""


# Applied one by one after SCHEMA; an index over a column a drifted table
# lacks is skipped until repair_schema() adds the column.
INDEXES: list[str] = [
    "CREATE INDEX IF NOT EXISTS idx_customers_number ON customers(activation_id, customer_number)",
    "CREATE INDEX IF NOT EXISTS idx_customers_pending ON customers(activation_id, is_synced)",
    "CREATE INDEX IF NOT EXISTS idx_metal_types_symbol ON metal_types(activation_id, symbol)",
    "CREATE INDEX IF NOT EXISTS idx_metal_types_pending ON metal_types(activation_id, is_synced)",
    "CREATE INDEX IF NOT EXISTS idx_vehicles_pending ON vehicles(activation_id, is_synced)",
    "CREATE INDEX IF NOT EXISTS idx_weighing_sessions_pending ON weighing_sessions(activation_id, is_synced)",
    "CREATE INDEX IF NOT EXISTS idx_weighings_session ON weighings(activation_id, session_id)",
    "CREATE INDEX IF NOT EXISTS idx_weighings_pending ON weighings(activation_id, is_synced)",
    "CREATE INDEX IF NOT EXISTS idx_biometric_data_customer ON biometric_data(activation_id, customer_id)",
    "CREATE INDEX IF NOT EXISTS idx_biometric_data_pending ON biometric_data(activation_id, is_synced)",
]

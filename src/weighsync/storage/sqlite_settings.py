"""SQLite mixin for per-tenant sync settings."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import aiosqlite


class SQLiteSettingsMixin:
    """Mixin: persist sync cursors such as ``last_sync_time``."""

    def _ensure_conn(self) -> aiosqlite.Connection:
        raise NotImplementedError

    async def get_setting(self, tenant_id: int, key: str) -> str | None:
        conn = self._ensure_conn()
        async with conn.execute(
            "SELECT value FROM sync_settings WHERE activation_id = ? AND key = ?",
            (tenant_id, key),
        ) as cursor:
            row = await cursor.fetchone()
        return row["value"] if row is not None else None

    async def set_setting(self, tenant_id: int, key: str, value: str) -> None:
        conn = self._ensure_conn()
        await conn.execute(
            """INSERT INTO sync_settings (activation_id, key, value)
               VALUES (?, ?, ?)
               ON CONFLICT(activation_id, key) DO UPDATE SET value = excluded.value""",
            (tenant_id, key, value),
        )
        await conn.commit()

"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from weighsync.core.context import SyncContext
from weighsync.core.entities import Record
from weighsync.storage.memory_store import InMemoryStore
from weighsync.storage.sqlite_store import SQLiteStore

TENANT = 7
OTHER_TENANT = 9


def make_customer(
    record_id: int | None = 1,
    *,
    name: str = "Nguyen Van A",
    updated_at: str | None = "2026-03-01T10:00:00",
    created_at: str = "2026-03-01T09:00:00",
    **fields: Any,
) -> Record:
    record: Record = {
        "id": record_id,
        "activation_id": TENANT,
        "name": name,
        "address": "12 Le Loi",
        "created_at": created_at,
        "updated_at": updated_at,
    }
    record.update(fields)
    return record


def make_session(
    record_id: int = 10,
    *,
    customer_id: int | None = 1,
    total_amount: float = 150.0,
    updated_at: str = "2026-03-01T10:00:00",
    **fields: Any,
) -> Record:
    record: Record = {
        "id": record_id,
        "activation_id": TENANT,
        "customer_id": customer_id,
        "session_time": "2026-03-01T09:55:00",
        "total_amount": total_amount,
        "status": "completed",
        "created_at": "2026-03-01T09:55:00",
        "updated_at": updated_at,
    }
    record.update(fields)
    return record


def make_weighing(
    record_id: int = 100,
    *,
    session_id: int = 10,
    weight: float = 12.5,
    updated_at: str = "2026-03-01T10:00:00",
    **fields: Any,
) -> Record:
    record: Record = {
        "id": record_id,
        "activation_id": TENANT,
        "session_id": session_id,
        "waste_type_id": 1,
        "weight": weight,
        "unit_price": 12.0,
        "total_amount": weight * 12.0,
        "weighing_time": "2026-03-01T09:58:00",
        "created_at": "2026-03-01T09:58:00",
        "updated_at": updated_at,
    }
    record.update(fields)
    return record


@pytest.fixture
def context() -> SyncContext:
    """Session context for the test tenant."""
    return SyncContext(tenant_id=TENANT, device_name="scale-front", instance_id="self-instance")


@pytest_asyncio.fixture
async def memory_store() -> AsyncGenerator[InMemoryStore, None]:
    store = InMemoryStore()
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def sqlite_store(tmp_path: Path) -> AsyncGenerator[SQLiteStore, None]:
    """SQLite store in a temporary directory."""
    store = SQLiteStore(tmp_path / "weighsync.db")
    await store.initialize()
    yield store
    await store.close()

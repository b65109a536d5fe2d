"""Tests for the SyncEngine orchestrator."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import TENANT, make_customer

from weighsync.core.context import SyncContext
from weighsync.core.entities import EntityKind
from weighsync.storage.memory_store import InMemoryStore
from weighsync.sync.device import DeviceDescriptor, build_descriptor
from weighsync.sync.errors import NetworkError, SyncUnsupportedError
from weighsync.sync.fingerprint import LAST_UPLOAD_KEY
from weighsync.sync.protocol import (
    ChangedData,
    MergeResult,
    PushOutcome,
    SyncProgress,
    SyncStage,
)
from weighsync.sync.sync_engine import LAST_SYNC_KEY, SyncEngine

# ── Helpers ───────────────────────────────────────────────────────────────────


async def _ack_all(
    tenant_id: int, envelope: ChangedData, on_ack: Any = None
) -> PushOutcome:
    if on_ack is not None:
        await on_ack(envelope, {"success": True})
    return PushOutcome(requests=1, batched=False, records=envelope.total)


def _make_cloud(pull: ChangedData | None = None) -> MagicMock:
    cloud = MagicMock()
    cloud.pull = AsyncMock(return_value=pull or ChangedData())
    cloud.push = AsyncMock(side_effect=_ack_all)
    cloud.fetch_fingerprint = AsyncMock(return_value=None)
    return cloud


def _make_discovery(devices: list[DeviceDescriptor]) -> MagicMock:
    discovery = MagicMock()
    discovery.available = True
    discovery.discover_devices = AsyncMock(return_value=devices)
    return discovery


class FakePeer:
    """Peer connection serving a fixed envelope and recording pushes."""

    def __init__(self, remote: ChangedData | None = None, error: Exception | None = None) -> None:
        self.remote = remote or ChangedData()
        self.error = error
        self.pulled_since: list[datetime | None] = []
        self.pushed: list[ChangedData] = []

    async def __aenter__(self) -> FakePeer:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None

    async def pull(self, since: datetime | None = None) -> ChangedData:
        if self.error is not None:
            raise self.error
        self.pulled_since.append(since)
        return self.remote

    async def push(self, tenant_id: int, envelope: ChangedData) -> MergeResult:
        self.pushed.append(envelope)
        return MergeResult(merged=envelope.total, total=envelope.total)


def _peer_device() -> DeviceDescriptor:
    return build_descriptor("192.168.1.20", 8765, TENANT, name="scale-back")


def _record_events(engine: SyncEngine) -> list[SyncProgress]:
    events: list[SyncProgress] = []
    engine.progress.subscribe(events.append)
    return events


def _terminal(events: list[SyncProgress]) -> list[SyncProgress]:
    return [e for e in events if e.stage.is_terminal]


# ── Auto sync ─────────────────────────────────────────────────────────────────


class TestAutoSync:
    async def test_nothing_configured(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        engine = SyncEngine(context, memory_store)
        events = _record_events(engine)

        result = await engine.perform_auto_sync()

        assert result.success is False
        assert result.message == "No devices found on local network and cloud sync not configured"
        assert [e.stage for e in _terminal(events)] == [SyncStage.ERROR]

    async def test_peer_first(self, context: SyncContext, memory_store: InMemoryStore) -> None:
        await memory_store.upsert(
            TENANT, EntityKind.CUSTOMER, make_customer(1, name="Local"), needs_upload=True
        )
        peer = FakePeer(
            ChangedData(records={EntityKind.CUSTOMER: [make_customer(2, name="Remote")]})
        )
        cloud = _make_cloud()
        engine = SyncEngine(
            context,
            memory_store,
            discovery=_make_discovery([_peer_device()]),
            cloud_client=cloud,
            peer_client_factory=lambda device: peer,
        )
        events = _record_events(engine)

        result = await engine.perform_auto_sync()

        assert result.success is True
        assert result.synced_records == 1
        assert await memory_store.get_record(TENANT, EntityKind.CUSTOMER, 2) is not None
        # Only the record that existed before the merge is sent back.
        assert [r["id"] for r in peer.pushed[0].get(EntityKind.CUSTOMER)] == [1]
        cloud.pull.assert_not_awaited()
        assert events[0].stage == SyncStage.DISCOVERING
        assert [e.stage for e in _terminal(events)] == [SyncStage.COMPLETED]
        assert await memory_store.get_setting(TENANT, LAST_SYNC_KEY) is not None

    async def test_falls_back_to_cloud_when_peer_fails(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        cloud = _make_cloud(ChangedData(records={EntityKind.CUSTOMER: [make_customer(5)]}))
        engine = SyncEngine(
            context,
            memory_store,
            discovery=_make_discovery([_peer_device()]),
            cloud_client=cloud,
            peer_client_factory=lambda device: FakePeer(error=NetworkError("refused")),
        )
        events = _record_events(engine)

        result = await engine.perform_auto_sync()

        assert result.success is True
        assert result.message == "Cloud sync completed successfully"
        cloud.pull.assert_awaited_once()
        assert len(_terminal(events)) == 1

    async def test_no_peers_uses_cloud(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        cloud = _make_cloud()
        engine = SyncEngine(
            context, memory_store, discovery=_make_discovery([]), cloud_client=cloud
        )
        result = await engine.perform_auto_sync()
        assert result.success is True
        cloud.pull.assert_awaited_once()

    async def test_sync_with_device_failure(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        engine = SyncEngine(
            context,
            memory_store,
            peer_client_factory=lambda device: FakePeer(error=NetworkError("timed out")),
        )
        events = _record_events(engine)

        result = await engine.sync_with_device(_peer_device())

        assert result.success is False
        assert "timed out" in result.message
        assert [e.stage for e in _terminal(events)] == [SyncStage.ERROR]
        assert engine.is_running is False


# ── Single flight ─────────────────────────────────────────────────────────────


class TestSingleFlight:
    async def test_concurrent_trigger_is_skipped(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        gate = asyncio.Event()

        async def slow_pull(tenant_id: int, since: datetime | None = None) -> ChangedData:
            await gate.wait()
            return ChangedData()

        cloud = _make_cloud()
        cloud.pull = AsyncMock(side_effect=slow_pull)
        engine = SyncEngine(context, memory_store, cloud_client=cloud)
        events = _record_events(engine)

        first = asyncio.create_task(engine.sync_with_cloud())
        while not engine.is_running:
            await asyncio.sleep(0)

        second = await engine.upload_only()
        assert second.skipped is True
        assert second.success is False
        assert second.message == "Sync already in progress"

        gate.set()
        result = await first
        assert result.success is True
        assert [e.stage for e in _terminal(events)] == [SyncStage.COMPLETED]
        assert engine.last_result == result

    async def test_guard_released_after_crash(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        cloud = _make_cloud()
        cloud.pull = AsyncMock(side_effect=RuntimeError("bug"))
        engine = SyncEngine(context, memory_store, cloud_client=cloud)

        result = await engine.sync_with_cloud()
        assert result.success is False
        assert engine.is_running is False
        assert (await engine.upload_only()).skipped is False


# ── Cloud operations ──────────────────────────────────────────────────────────


class TestCloudSync:
    async def test_cursor_advances(self, context: SyncContext, memory_store: InMemoryStore) -> None:
        cloud = _make_cloud()
        engine = SyncEngine(context, memory_store, cloud_client=cloud)

        await engine.sync_with_cloud()
        cursor = await engine.last_sync_time()
        await engine.sync_with_cloud()
        await engine.sync_with_cloud(force_full=True)

        assert cursor is not None
        since_values = [call.args[1] for call in cloud.pull.call_args_list]
        assert since_values[0] is None
        assert isinstance(since_values[1], datetime)
        assert since_values[2] is None

    async def test_unsupported_server_disables_cloud(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        cloud = _make_cloud()
        cloud.pull = AsyncMock(side_effect=SyncUnsupportedError("no endpoint", status_code=404))
        engine = SyncEngine(context, memory_store, cloud_client=cloud)

        result = await engine.sync_with_cloud()

        assert result.success is False
        assert result.message.startswith("Sync not supported")
        assert engine.cloud_disabled is True
        assert engine.cloud_available is False

        again = await engine.perform_auto_sync()
        assert again.message == "No peer available and cloud sync is not supported"
        assert cloud.pull.await_count == 1

    async def test_cloud_not_configured(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        engine = SyncEngine(context, memory_store)
        assert (await engine.sync_with_cloud()).message == "Cloud sync not configured"
        assert (await engine.download_only()).success is False

    async def test_download_only_does_not_upload(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        await memory_store.upsert(TENANT, EntityKind.CUSTOMER, make_customer(1), needs_upload=True)
        cloud = _make_cloud(ChangedData(records={EntityKind.CUSTOMER: [make_customer(2, name="B")]}))
        engine = SyncEngine(context, memory_store, cloud_client=cloud)

        result = await engine.download_only()

        assert result.success is True
        assert result.synced_records == 1
        cloud.push.assert_not_awaited()

    async def test_silent_run_emits_nothing(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        engine = SyncEngine(context, memory_store, cloud_client=_make_cloud())
        events = _record_events(engine)

        await engine.download_only(silent=True)
        await engine.upload_only(silent=True)

        assert events == []


class TestUpload:
    async def test_nothing_to_upload(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        cloud = _make_cloud()
        engine = SyncEngine(context, memory_store, cloud_client=cloud)

        result = await engine.upload_only()

        assert result.success is True
        assert result.message == "Nothing to upload"
        cloud.push.assert_not_awaited()

    async def test_acknowledged_records_marked(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        await memory_store.upsert(TENANT, EntityKind.CUSTOMER, make_customer(1), needs_upload=True)
        await memory_store.upsert(
            TENANT, EntityKind.CUSTOMER, make_customer(2, name="B"), needs_upload=False
        )

        async def push(tenant_id: int, envelope: ChangedData, on_ack: Any = None) -> PushOutcome:
            await on_ack(envelope, {"cloudIds": {"customers": {"1": 501}}})
            return PushOutcome(requests=1, batched=False, records=envelope.total)

        cloud = _make_cloud()
        cloud.push = AsyncMock(side_effect=push)
        engine = SyncEngine(context, memory_store, cloud_client=cloud)

        result = await engine.upload_only()

        assert result.synced_records == 1
        pushed = cloud.push.call_args.args[1]
        assert [r["id"] for r in pushed.get(EntityKind.CUSTOMER)] == [1]
        stored = await memory_store.get_record(TENANT, EntityKind.CUSTOMER, 1)
        assert stored["is_synced"] is True
        assert stored["cloud_id"] == 501
        assert await memory_store.get_setting(TENANT, LAST_UPLOAD_KEY) is not None

    async def test_force_all_uploads_synced_records(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        await memory_store.upsert(TENANT, EntityKind.CUSTOMER, make_customer(1), needs_upload=False)
        cloud = _make_cloud()
        engine = SyncEngine(context, memory_store, cloud_client=cloud)

        result = await engine.upload_only(force_all=True)

        assert result.synced_records == 1

    async def test_edit_during_upload_stays_pending(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        await memory_store.upsert(TENANT, EntityKind.CUSTOMER, make_customer(1), needs_upload=True)

        async def push(tenant_id: int, envelope: ChangedData, on_ack: Any = None) -> PushOutcome:
            await memory_store.upsert(
                TENANT,
                EntityKind.CUSTOMER,
                {"id": 1, "phone": "0909", "updated_at": "2026-03-09T00:00:00"},
                needs_upload=True,
            )
            await on_ack(envelope, {})
            return PushOutcome(requests=1, batched=False, records=envelope.total)

        cloud = _make_cloud()
        cloud.push = AsyncMock(side_effect=push)
        engine = SyncEngine(context, memory_store, cloud_client=cloud)

        await engine.upload_only()

        stored = await memory_store.get_record(TENANT, EntityKind.CUSTOMER, 1)
        assert stored["is_synced"] is False

    async def test_failed_upload_keeps_records_pending(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        await memory_store.upsert(TENANT, EntityKind.CUSTOMER, make_customer(1), needs_upload=True)
        cloud = _make_cloud()
        cloud.push = AsyncMock(side_effect=NetworkError("reset"))
        engine = SyncEngine(context, memory_store, cloud_client=cloud)

        result = await engine.upload_only()

        assert result.success is False
        assert await memory_store.count_pending(TENANT) == 1


class TestStartupAndMismatch:
    async def test_pull_if_empty(self, context: SyncContext, memory_store: InMemoryStore) -> None:
        cloud = _make_cloud()
        engine = SyncEngine(context, memory_store, cloud_client=cloud)

        result = await engine.pull_if_empty()

        assert result is not None and result.success
        assert cloud.pull.call_args.args == (TENANT, None)

    async def test_pull_if_empty_skips_populated_store(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        await memory_store.upsert(TENANT, EntityKind.CUSTOMER, make_customer(1), needs_upload=True)
        cloud = _make_cloud()
        engine = SyncEngine(context, memory_store, cloud_client=cloud)

        assert await engine.pull_if_empty() is None
        cloud.pull.assert_not_awaited()

    async def test_pull_if_empty_without_cloud(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        assert await SyncEngine(context, memory_store).pull_if_empty() is None

    async def test_check_mismatch_without_cloud(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        report = await SyncEngine(context, memory_store).check_mismatch()
        assert report.mismatched is False
        assert report.cloud_hash is None

    async def test_check_mismatch_is_not_gated(
        self, context: SyncContext, memory_store: InMemoryStore
    ) -> None:
        await memory_store.upsert(TENANT, EntityKind.CUSTOMER, make_customer(1), needs_upload=True)
        engine = SyncEngine(context, memory_store, cloud_client=_make_cloud())
        engine._running = True

        report = await engine.check_mismatch()
        assert report.mismatched is True


@pytest.mark.parametrize("silent", [False, True])
async def test_terminal_event_count(
    context: SyncContext, memory_store: InMemoryStore, silent: bool
) -> None:
    engine = SyncEngine(context, memory_store, cloud_client=_make_cloud())
    events = _record_events(engine)
    await engine.download_only(silent=silent)
    assert len(_terminal(events)) == (0 if silent else 1)

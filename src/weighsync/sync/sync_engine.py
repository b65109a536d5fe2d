"""Sync orchestrator: peer-first sync with cloud fallback."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from weighsync.core.context import SyncContext
from weighsync.core.entities import MERGE_ORDER
from weighsync.storage.base import LocalStore
from weighsync.sync.changes import collect_changes
from weighsync.sync.cloud_client import CloudSyncClient, cloud_ids_from
from weighsync.sync.device import DeviceDescriptor
from weighsync.sync.errors import SyncError, SyncUnsupportedError
from weighsync.sync.fingerprint import LAST_UPLOAD_KEY, MismatchDetector, compute_fingerprint
from weighsync.sync.merge import MergeEngine
from weighsync.sync.peer_client import PeerClient
from weighsync.sync.progress import ProgressChannel
from weighsync.sync.protocol import (
    ChangedData,
    MismatchReport,
    PushOutcome,
    SyncProgress,
    SyncResult,
    SyncStage,
)
from weighsync.utils.timeutils import epoch_millis, format_timestamp, parse_timestamp, utcnow

if TYPE_CHECKING:
    from weighsync.sync.discovery import PeerDiscovery

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync_time"


class PeerConnection(Protocol):
    """What the orchestrator needs from a peer client."""

    async def __aenter__(self) -> Any: ...

    async def __aexit__(self, *exc: Any) -> None: ...

    async def pull(self, since: datetime | None = None) -> ChangedData: ...

    async def push(self, tenant_id: int, envelope: ChangedData) -> Any: ...


PeerClientFactory = Callable[[DeviceDescriptor], PeerConnection]


class SyncEngine:
    """Top-level orchestrator for one login session.

    Every public sync operation is single-flight: a trigger that arrives
    while another run is active returns a ``skipped`` result immediately.
    Each run that is not ``silent`` publishes intermediate progress events
    and exactly one terminal ``COMPLETED`` or ``ERROR`` event.
    """

    def __init__(
        self,
        context: SyncContext,
        store: LocalStore,
        *,
        progress: ProgressChannel | None = None,
        discovery: PeerDiscovery | None = None,
        cloud_client: CloudSyncClient | None = None,
        merge_engine: MergeEngine | None = None,
        detector: MismatchDetector | None = None,
        peer_client_factory: PeerClientFactory | None = None,
        discovery_timeout: float = 3.0,
    ) -> None:
        self._context = context
        self._store = store
        self._progress = progress or ProgressChannel()
        self._discovery = discovery
        self._cloud = cloud_client
        self._merge = merge_engine or MergeEngine(store)
        self._detector = detector
        if self._detector is None and cloud_client is not None:
            self._detector = MismatchDetector(store, cloud_client)
        self._peer_client_factory: PeerClientFactory = peer_client_factory or PeerClient
        self._discovery_timeout = discovery_timeout

        self._running = False
        self._silent = False
        self._cloud_disabled = False
        self._last_result: SyncResult | None = None

    @property
    def progress(self) -> ProgressChannel:
        return self._progress

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cloud_available(self) -> bool:
        return self._cloud is not None and not self._cloud_disabled

    @property
    def cloud_disabled(self) -> bool:
        """True once the server reported that it has no sync endpoint."""
        return self._cloud_disabled

    @property
    def last_result(self) -> SyncResult | None:
        return self._last_result

    # ========== Public operations ==========

    async def perform_auto_sync(self) -> SyncResult:
        """Sync with the first responding peer, falling back to the cloud."""
        return await self._guarded("auto", self._auto_round)

    async def sync_with_device(self, device: DeviceDescriptor) -> SyncResult:
        return await self._guarded("device", lambda: self._device_round(device))

    async def sync_with_cloud(self, force_full: bool = False) -> SyncResult:
        return await self._guarded("cloud", lambda: self._cloud_round(force_full))

    async def upload_only(self, force_all: bool = False, silent: bool = False) -> SyncResult:
        """Push pending records (or every record with ``force_all``) to the cloud."""
        return await self._guarded("upload", lambda: self._upload_round(force_all), silent=silent)

    async def download_only(self, force_full: bool = False, silent: bool = False) -> SyncResult:
        """Pull and merge cloud changes without uploading anything."""
        return await self._guarded(
            "download", lambda: self._download_round(force_full), silent=silent
        )

    async def check_mismatch(self) -> MismatchReport:
        """Compare local and cloud fingerprints. Read-only, never gated."""
        if self._detector is None or self._cloud_disabled:
            local_hash = compute_fingerprint(
                await self._store.get_aggregate_counts(self._context.tenant_id)
            )
            return MismatchReport(False, local_hash, None, reason="cloud not available")
        return await self._detector.check(self._context.tenant_id)

    async def pull_if_empty(self) -> SyncResult | None:
        """Full cloud pull on first run, when the local store has no records."""
        if not self.cloud_available:
            return None
        if await self._store.count_records(self._context.tenant_id) > 0:
            return None
        logger.info("Local store is empty, performing initial full download")
        return await self.download_only(force_full=True)

    async def last_sync_time(self) -> str | None:
        return await self._store.get_setting(self._context.tenant_id, LAST_SYNC_KEY)

    # ========== Run plumbing ==========

    async def _guarded(
        self,
        name: str,
        operation: Callable[[], Awaitable[SyncResult]],
        silent: bool = False,
    ) -> SyncResult:
        # Check and set without an await in between.
        if self._running:
            logger.info("Sync '%s' skipped: another run is in progress", name)
            return SyncResult(False, "Sync already in progress", skipped=True)
        self._running = True
        self._silent = silent

        try:
            try:
                result = await operation()
            except SyncUnsupportedError as e:
                logger.warning("Sync '%s' failed: %s", name, e)
                result = SyncResult(False, f"Sync not supported: {e}")
            except SyncError as e:
                logger.warning("Sync '%s' failed: %s", name, e)
                result = SyncResult(False, str(e) or f"{name} sync failed")
            except Exception as e:
                logger.error("Sync '%s' crashed", name, exc_info=True)
                result = SyncResult(False, str(e) or f"{name} sync failed")

            if result.success:
                await self._emit(
                    SyncStage.COMPLETED,
                    100,
                    result.message,
                    synced_records=result.synced_records,
                )
            else:
                await self._emit(SyncStage.ERROR, 0, result.message)
            self._last_result = result
            return result
        finally:
            self._running = False
            self._silent = False

    async def _emit(self, stage: SyncStage, progress: int, message: str, **counts: Any) -> None:
        if self._silent:
            return
        await self._progress.publish(SyncProgress(stage, progress, message, **counts))

    async def _get_cursor(self) -> datetime | None:
        return parse_timestamp(await self.last_sync_time())

    async def _set_cursor(self, value: datetime) -> None:
        await self._store.set_setting(
            self._context.tenant_id, LAST_SYNC_KEY, format_timestamp(value)
        )

    # ========== Rounds ==========

    async def _auto_round(self) -> SyncResult:
        devices: list[DeviceDescriptor] = []
        if self._discovery is not None and self._discovery.available:
            await self._emit(SyncStage.DISCOVERING, 0, "Searching for devices...")
            devices = await self._discovery.discover_devices(self._discovery_timeout)
            await self._emit(
                SyncStage.DISCOVERING,
                5,
                f"Found {len(devices)} device(s)",
                device_count=len(devices),
            )

        for device in devices:
            try:
                result = await self._device_round(device)
            except SyncError as e:
                logger.info("Peer sync with %s failed: %s", device.id, e)
                continue
            if result.success:
                return result

        if self._cloud is not None:
            if self._cloud_disabled:
                return SyncResult(False, "No peer available and cloud sync is not supported")
            return await self._cloud_round(force_full=False)

        return SyncResult(
            False, "No devices found on local network and cloud sync not configured"
        )

    async def _device_round(self, device: DeviceDescriptor) -> SyncResult:
        tenant_id = self._context.tenant_id
        started = utcnow()
        since = await self._get_cursor()

        await self._emit(SyncStage.CONNECTING, 10, f"Connecting to {device.name}...")
        # Export before merging so records just received are not echoed back.
        local = await collect_changes(self._store, tenant_id, since=since)

        async with self._peer_client_factory(device) as client:
            await self._emit(SyncStage.SYNCING, 30, "Pulling changes from device...")
            remote = await client.pull(since)

            await self._emit(
                SyncStage.SYNCING, 50, "Merging data...", total_records=remote.total
            )
            merge_result = await self._merge.merge(tenant_id, remote)

            await self._emit(SyncStage.SYNCING, 70, "Pushing local changes...")
            if not local.is_empty():
                await client.push(tenant_id, local)

        await self._set_cursor(started)
        return SyncResult(
            True,
            "Sync completed successfully",
            synced_records=merge_result.merged,
            conflicts=merge_result.conflicts,
        )

    async def _cloud_round(self, force_full: bool) -> SyncResult:
        unavailable = self._cloud_unavailable_result()
        if unavailable is not None:
            return unavailable

        tenant_id = self._context.tenant_id
        started = utcnow()
        since = None if force_full else await self._get_cursor()

        await self._emit(SyncStage.CONNECTING, 10, "Connecting to cloud server...")
        async with self._cloud_errors():
            await self._emit(SyncStage.SYNCING, 30, "Downloading data from cloud...")
            remote = await self._cloud.pull(tenant_id, since)  # type: ignore[union-attr]

            await self._emit(
                SyncStage.SYNCING, 60, "Merging cloud data...", total_records=remote.total
            )
            merge_result = await self._merge.merge(tenant_id, remote)

            await self._emit(SyncStage.SYNCING, 80, "Uploading local changes to cloud...")
            await self._upload_pending(force_all=False)

        await self._set_cursor(started)
        return SyncResult(
            True,
            "Cloud sync completed successfully",
            synced_records=merge_result.merged,
            conflicts=merge_result.conflicts,
        )

    async def _upload_round(self, force_all: bool) -> SyncResult:
        unavailable = self._cloud_unavailable_result()
        if unavailable is not None:
            return unavailable

        await self._emit(SyncStage.CONNECTING, 10, "Connecting to cloud server...")
        async with self._cloud_errors():
            await self._emit(SyncStage.SYNCING, 50, "Uploading local changes to cloud...")
            outcome = await self._upload_pending(force_all=force_all)

        if outcome.records == 0:
            return SyncResult(True, "Nothing to upload")
        return SyncResult(
            True,
            f"Uploaded {outcome.records} records in {outcome.requests} request(s)",
            synced_records=outcome.records,
        )

    async def _download_round(self, force_full: bool) -> SyncResult:
        unavailable = self._cloud_unavailable_result()
        if unavailable is not None:
            return unavailable

        tenant_id = self._context.tenant_id
        started = utcnow()
        since = None if force_full else await self._get_cursor()

        await self._emit(SyncStage.CONNECTING, 10, "Connecting to cloud server...")
        async with self._cloud_errors():
            await self._emit(SyncStage.SYNCING, 40, "Downloading data from cloud...")
            remote = await self._cloud.pull(tenant_id, since)  # type: ignore[union-attr]

        await self._emit(SyncStage.SYNCING, 70, "Merging cloud data...", total_records=remote.total)
        merge_result = await self._merge.merge(tenant_id, remote)

        await self._set_cursor(started)
        return SyncResult(
            True,
            "Download completed successfully",
            synced_records=merge_result.merged,
            conflicts=merge_result.conflicts,
        )

    # ========== Cloud helpers ==========

    def _cloud_unavailable_result(self) -> SyncResult | None:
        if self._cloud is None:
            return SyncResult(False, "Cloud sync not configured")
        if self._cloud_disabled:
            return SyncResult(False, "Cloud sync is not supported by the server")
        return None

    @contextlib.asynccontextmanager
    async def _cloud_errors(self) -> AsyncIterator[None]:
        try:
            yield
        except SyncUnsupportedError as e:
            self._disable_cloud(e)
            raise

    def _disable_cloud(self, reason: Exception) -> None:
        if not self._cloud_disabled:
            logger.warning("Disabling cloud sync for this session: %s", reason)
        self._cloud_disabled = True

    async def _upload_pending(self, force_all: bool) -> PushOutcome:
        tenant_id = self._context.tenant_id
        envelope = await collect_changes(self._store, tenant_id, needs_upload_only=not force_all)
        if envelope.is_empty():
            return PushOutcome(requests=0, batched=False, records=0)

        outcome = await self._cloud.push(  # type: ignore[union-attr]
            tenant_id, envelope, on_ack=self._acknowledge
        )
        logger.info(
            "Uploaded %d records to cloud in %d request(s)%s",
            outcome.records,
            outcome.requests,
            " (batched)" if outcome.batched else "",
        )
        return outcome

    async def _acknowledge(self, batch: ChangedData, response: dict[str, Any]) -> None:
        """Mark exactly the records of one acknowledged request as uploaded."""
        tenant_id = self._context.tenant_id
        for kind in MERGE_ORDER:
            cloud_ids = cloud_ids_from(response, kind)
            for row in batch.get(kind):
                if row.get("id") is None:
                    continue
                await self._store.mark_uploaded(
                    tenant_id,
                    kind,
                    row["id"],
                    cloud_id=cloud_ids.get(str(row["id"])),
                    expected_updated_at=row.get("updated_at"),
                )
        await self._store.set_setting(tenant_id, LAST_UPLOAD_KEY, str(epoch_millis()))


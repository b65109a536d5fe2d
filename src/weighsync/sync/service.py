"""Caller-facing sync facade for one login session."""

from __future__ import annotations

import logging
from collections.abc import Callable

from weighsync.core.context import SyncContext
from weighsync.server.app import create_transfer_app
from weighsync.server.runner import ServerState, TransferServer
from weighsync.storage.base import LocalStore
from weighsync.sync.cloud_client import CloudSyncClient
from weighsync.sync.device import DeviceDescriptor
from weighsync.sync.discovery import PeerDiscovery
from weighsync.sync.fingerprint import MismatchDetector
from weighsync.sync.merge import MergeEngine
from weighsync.sync.progress import ProgressChannel, ProgressHandler
from weighsync.sync.protocol import MismatchReport, SyncResult
from weighsync.sync.scheduler import BackgroundScheduler
from weighsync.sync.sync_engine import SyncEngine
from weighsync.unified_config import UnifiedConfig

logger = logging.getLogger(__name__)


class SyncService:
    """
    Wires discovery, the transfer endpoint, the cloud client, the orchestrator
    and the scheduler together for one tenant.

    Usage:
        service = SyncService.from_config(context, store, config)
        await service.start_background_sync()
        unsubscribe = service.subscribe_progress(print)
        result = await service.perform_auto_sync()
        await service.stop_background_sync()
    """

    def __init__(
        self,
        context: SyncContext,
        store: LocalStore,
        *,
        engine: SyncEngine,
        discovery: PeerDiscovery | None = None,
        transfer_server: TransferServer | None = None,
        scheduler: BackgroundScheduler | None = None,
        cloud_client: CloudSyncClient | None = None,
    ) -> None:
        self._context = context
        self._store = store
        self._engine = engine
        self._discovery = discovery
        self._transfer_server = transfer_server
        self._scheduler = scheduler
        self._cloud_client = cloud_client
        self._started = False

    @classmethod
    def from_config(
        cls,
        context: SyncContext,
        store: LocalStore,
        config: UnifiedConfig,
    ) -> SyncService:
        """Build every component from configuration."""
        progress = ProgressChannel()
        merge_engine = MergeEngine(store)

        cloud_client: CloudSyncClient | None = None
        detector: MismatchDetector | None = None
        cloud_url = context.cloud_url if context.cloud_enabled else config.cloud.server_url
        if cloud_url:
            cloud_client = CloudSyncClient(
                cloud_url,
                timeout=config.cloud.pull_timeout,
                hash_timeout=config.cloud.hash_timeout,
                ping_timeout=config.cloud.ping_timeout,
                max_payload_bytes=config.cloud.max_payload_bytes,
                batch_size=config.cloud.batch_size,
            )
            detector = MismatchDetector(
                store,
                cloud_client,
                suppression_minutes=config.schedule.suppression_minutes,
            )

        engine: SyncEngine | None = None

        async def last_sync_time() -> str | None:
            return await engine.last_sync_time() if engine is not None else None

        discovery = PeerDiscovery(
            context,
            config.peer.transfer_port,
            discovery_port=config.peer.discovery_port,
            broadcast_address=config.peer.broadcast_address,
            bind_host=config.peer.bind_host,
            announce_interval=config.peer.announce_interval,
            last_sync_provider=last_sync_time,
        )

        engine = SyncEngine(
            context,
            store,
            progress=progress,
            discovery=discovery,
            cloud_client=cloud_client,
            merge_engine=merge_engine,
            detector=detector,
            discovery_timeout=config.peer.discovery_timeout,
        )

        transfer_server = TransferServer(
            create_transfer_app(context, store, discovery=discovery, merge_engine=merge_engine),
            host=config.peer.bind_host,
            port=config.peer.transfer_port,
            fallback_port=config.peer.fallback_port,
        )

        scheduler = BackgroundScheduler(
            engine,
            ping=cloud_client.ping if cloud_client is not None else None,
            upload_interval=config.schedule.upload_interval,
            realtime_interval=config.schedule.realtime_interval,
            network_interval=config.schedule.network_interval,
            mismatch_debounce=config.schedule.mismatch_debounce,
        )

        return cls(
            context,
            store,
            engine=engine,
            discovery=discovery,
            transfer_server=transfer_server,
            scheduler=scheduler,
            cloud_client=cloud_client,
        )

    @property
    def engine(self) -> SyncEngine:
        return self._engine

    @property
    def context(self) -> SyncContext:
        return self._context

    @property
    def transfer_state(self) -> ServerState | None:
        return self._transfer_server.state if self._transfer_server is not None else None

    @property
    def discovery_available(self) -> bool:
        return self._discovery is not None and self._discovery.available

    async def start_background_sync(self) -> None:
        """Start the transfer endpoint, discovery and timers; pull everything on first run.

        Bind failures of either socket are logged and leave the rest running.
        """
        if self._started:
            return
        self._started = True

        if self._transfer_server is not None:
            await self._transfer_server.start()
            if self._discovery is not None and self._transfer_server.port is not None:
                self._discovery.transfer_port = self._transfer_server.port

        if self._discovery is not None:
            await self._discovery.start()

        await self._engine.pull_if_empty()

        if self._scheduler is not None:
            self._scheduler.start()

    async def stop_background_sync(self) -> None:
        if self._scheduler is not None:
            await self._scheduler.stop()
        if self._discovery is not None:
            await self._discovery.stop()
        if self._transfer_server is not None:
            await self._transfer_server.stop()
        if self._cloud_client is not None:
            await self._cloud_client.close()
        self._started = False

    async def perform_auto_sync(self) -> SyncResult:
        return await self._engine.perform_auto_sync()

    async def sync_with_device(self, device: DeviceDescriptor) -> SyncResult:
        return await self._engine.sync_with_device(device)

    async def sync_with_cloud(self, force_full: bool = False) -> SyncResult:
        return await self._engine.sync_with_cloud(force_full)

    async def upload_only(self, force_all: bool = False) -> SyncResult:
        return await self._engine.upload_only(force_all)

    async def download_only(self, force_full: bool = False) -> SyncResult:
        return await self._engine.download_only(force_full)

    async def check_mismatch(self) -> MismatchReport:
        return await self._engine.check_mismatch()

    def subscribe_progress(self, handler: ProgressHandler) -> Callable[[], None]:
        """Register a progress handler; returns a callable that removes it."""
        return self._engine.progress.subscribe(handler)

    async def discover_devices(self, timeout: float = 3.0) -> list[DeviceDescriptor]:
        if self._discovery is None:
            return []
        started_here = False
        if not self._discovery.available:
            started_here = await self._discovery.start()
        try:
            return await self._discovery.discover_devices(timeout)
        finally:
            if started_here and not self._started:
                await self._discovery.stop()

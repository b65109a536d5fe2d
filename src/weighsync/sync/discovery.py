"""UDP broadcast discovery of same-tenant peers on the local network."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import socket
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from weighsync.core.context import SyncContext
from weighsync.sync.device import DeviceDescriptor, build_descriptor, make_device_id
from weighsync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

PRESENCE_KIND = "presence"
DEFAULT_DISCOVERY_PORT = 8766

LastSyncProvider = Callable[[], Awaitable[str | None]]


class _DiscoveryProtocol(asyncio.DatagramProtocol):
    def __init__(self, discovery: PeerDiscovery) -> None:
        self._discovery = discovery

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self._discovery.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.debug("Discovery socket error: %s", exc)


class PeerDiscovery:
    """
    Announces this device and keeps a registry of same-tenant peers.

    Every ``announce_interval`` seconds a presence datagram is broadcast on the
    discovery port; datagrams received on the same port from peers of the same
    tenant are upserted into the registry keyed by ``(ip, transferPort)``.
    """

    def __init__(
        self,
        context: SyncContext,
        transfer_port: int,
        *,
        discovery_port: int = DEFAULT_DISCOVERY_PORT,
        broadcast_address: str = "255.255.255.255",
        bind_host: str = "0.0.0.0",
        announce_interval: float = 5.0,
        stale_after: float = 30.0,
        last_sync_provider: LastSyncProvider | None = None,
    ) -> None:
        self._context = context
        self._transfer_port = transfer_port
        self._discovery_port = discovery_port
        self._broadcast_address = broadcast_address
        self._bind_host = bind_host
        self._announce_interval = announce_interval
        self._stale_after = timedelta(seconds=stale_after)
        self._last_sync_provider = last_sync_provider

        self._devices: dict[str, DeviceDescriptor] = {}
        self._transport: asyncio.DatagramTransport | None = None
        self._announce_task: asyncio.Task[None] | None = None

    @property
    def available(self) -> bool:
        return self._transport is not None

    @property
    def transfer_port(self) -> int:
        return self._transfer_port

    @transfer_port.setter
    def transfer_port(self, port: int) -> None:
        self._transfer_port = port

    @property
    def devices(self) -> list[DeviceDescriptor]:
        """Live registry, least recently seen first; stale peers are dropped."""
        cutoff = utcnow() - self._stale_after
        for device_id in [d.id for d in self._devices.values() if d.seen_at and d.seen_at < cutoff]:
            del self._devices[device_id]
        return sorted(self._devices.values(), key=lambda d: d.seen_at or cutoff)

    @property
    def device_count(self) -> int:
        return len(self.devices)

    async def start(self) -> bool:
        """Bind the discovery socket and start announcing.

        Returns:
            False if the port could not be bound; discovery then stays off
            while the rest of the engine keeps working.
        """
        if self._transport is not None:
            return True

        loop = asyncio.get_running_loop()
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind((self._bind_host, self._discovery_port))
            sock.setblocking(False)
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _DiscoveryProtocol(self), sock=sock
            )
        except OSError as e:
            sock.close()
            logger.warning(
                "Peer discovery unavailable, cannot bind UDP port %d: %s",
                self._discovery_port,
                e,
            )
            return False

        self._transport = transport
        self._announce_task = asyncio.create_task(self._announce_loop())
        logger.info("Peer discovery listening on UDP port %d", self._discovery_port)
        return True

    async def stop(self) -> None:
        if self._announce_task is not None:
            self._announce_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._announce_task
            self._announce_task = None
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    async def discover_devices(self, timeout: float = 3.0) -> list[DeviceDescriptor]:
        """Clear the registry, announce once and collect answers for ``timeout`` seconds."""
        if self._transport is None:
            return []
        self._devices.clear()
        await self.announce()
        await asyncio.sleep(timeout)
        return self.devices

    async def announce(self) -> None:
        if self._transport is None:
            return
        last_sync_time: str | None = None
        if self._last_sync_provider is not None:
            try:
                last_sync_time = await self._last_sync_provider()
            except Exception as e:
                logger.debug("Could not read last sync time for announcement: %s", e)
        try:
            self._transport.sendto(
                self.build_announcement(last_sync_time),
                (self._broadcast_address, self._discovery_port),
            )
        except OSError as e:
            logger.debug("Presence broadcast failed: %s", e)

    def build_announcement(self, last_sync_time: str | None = None) -> bytes:
        message: dict[str, Any] = {
            "kind": PRESENCE_KIND,
            "tenantId": self._context.tenant_id,
            "transferPort": self._transfer_port,
            "deviceName": self._context.device_name,
            "lastSyncTime": last_sync_time,
            "instanceId": self._context.instance_id,
        }
        return json.dumps(message).encode("utf-8")

    def handle_datagram(self, data: bytes, addr: tuple[str, int]) -> DeviceDescriptor | None:
        """Register the sender of a presence datagram if it belongs to our tenant.

        Returns:
            The stored descriptor, or None if the datagram was dropped
        """
        try:
            message = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.debug("Dropping unparsable datagram from %s: %s", addr[0], e)
            return None

        if not isinstance(message, dict) or message.get("kind") != PRESENCE_KIND:
            return None
        if message.get("instanceId") == self._context.instance_id:
            return None

        tenant_id = message.get("tenantId")
        port = message.get("transferPort")
        if not isinstance(tenant_id, int) or not isinstance(port, int) or not 0 < port < 65536:
            logger.debug("Dropping malformed presence datagram from %s", addr[0])
            return None
        if tenant_id != self._context.tenant_id:
            return None

        ip = addr[0]
        last_sync_time = message.get("lastSyncTime")
        device = build_descriptor(
            ip,
            port,
            tenant_id,
            name=message.get("deviceName") if isinstance(message.get("deviceName"), str) else None,
            last_sync_time=last_sync_time if isinstance(last_sync_time, str) else None,
        )
        is_new = make_device_id(ip, port) not in self._devices
        self._devices[device.id] = device
        if is_new:
            logger.info("Discovered peer %s (%s)", device.name, device.id)
        return device

    async def _announce_loop(self) -> None:
        while True:
            await self.announce()
            await asyncio.sleep(self._announce_interval)

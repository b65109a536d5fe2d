"""Device identity for LAN peer sync.

Peers are identified by where they can be reached, not by a persisted id:
the descriptor id is ``"{ip}:{transfer_port}"`` and is rebuilt on every
discovery cycle.
"""

from __future__ import annotations

import platform
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from weighsync.utils.timeutils import utcnow


@dataclass(frozen=True)
class DeviceDescriptor:
    """A same-tenant peer seen on the local network."""

    id: str
    name: str
    tenant_id: int
    ip: str
    port: int
    last_sync_time: str | None = None
    seen_at: datetime | None = None

    @property
    def base_url(self) -> str:
        return f"http://{self.ip}:{self.port}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "tenantId": self.tenant_id,
            "ip": self.ip,
            "port": self.port,
            "lastSyncTime": self.last_sync_time,
        }


def make_device_id(ip: str, port: int) -> str:
    """Return the descriptor id for a peer reachable at ``ip:port``."""
    return f"{ip}:{port}"


def get_device_name() -> str:
    """Return the machine hostname as the device name.

    Falls back to ``"Unknown Device"`` if the hostname cannot be determined.
    """
    name = platform.node()
    return name if name else "Unknown Device"


def build_descriptor(
    ip: str,
    port: int,
    tenant_id: int,
    name: str | None = None,
    last_sync_time: str | None = None,
) -> DeviceDescriptor:
    """Create a :class:`DeviceDescriptor` stamped with the current time."""
    return DeviceDescriptor(
        id=make_device_id(ip, port),
        name=name or "Unknown Device",
        tenant_id=tenant_id,
        ip=ip,
        port=port,
        last_sync_time=last_sync_time,
        seen_at=utcnow(),
    )

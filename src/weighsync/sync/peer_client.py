"""HTTP client for another device's transfer endpoint."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from weighsync.sync.device import DeviceDescriptor
from weighsync.sync.errors import ProtocolError
from weighsync.sync.http_client import JsonHttpClient
from weighsync.sync.protocol import ChangedData, MergeResult
from weighsync.utils.timeutils import EPOCH, format_timestamp

logger = logging.getLogger(__name__)


class PeerClient(JsonHttpClient):
    """Pull, push and status requests against one LAN peer."""

    def __init__(
        self,
        device: DeviceDescriptor,
        *,
        timeout: float = 30.0,
        status_timeout: float = 5.0,
    ) -> None:
        super().__init__(device.base_url, timeout=timeout)
        self._device = device
        self._status_timeout = status_timeout

    @property
    def device(self) -> DeviceDescriptor:
        return self._device

    async def pull(self, since: datetime | None = None) -> ChangedData:
        payload = await self._request(
            "GET", "/sync/pull", params={"since": format_timestamp(since or EPOCH)}
        )
        try:
            return ChangedData.from_dict(payload)
        except ValueError as e:
            raise ProtocolError(f"Malformed envelope from {self._device.id}: {e}") from e

    async def push(self, tenant_id: int, envelope: ChangedData) -> MergeResult:
        body = json.dumps(
            {"tenantId": tenant_id, "data": envelope.to_dict()}, default=str
        ).encode("utf-8")
        payload = await self._request("POST", "/sync/push", body=body)
        if not isinstance(payload, dict) or not payload.get("success"):
            raise ProtocolError(f"Peer {self._device.id} rejected push: {payload!r}")
        return MergeResult(
            merged=int(payload.get("merged") or 0),
            conflicts=int(payload.get("conflicts") or 0),
            deferred=int(payload.get("deferred") or 0),
            total=envelope.total,
        )

    async def status(self) -> dict[str, Any]:
        payload = await self._request("GET", "/sync/status", timeout=self._status_timeout)
        if not isinstance(payload, dict):
            raise ProtocolError(f"Malformed status from {self._device.id}")
        return payload

"""Tests for the LAN peer client."""

from __future__ import annotations

import json
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest

from conftest import TENANT, make_customer

from weighsync.core.entities import EntityKind
from weighsync.sync.device import build_descriptor
from weighsync.sync.errors import ProtocolError
from weighsync.sync.peer_client import PeerClient
from weighsync.sync.protocol import ChangedData


@pytest.fixture
def client() -> PeerClient:
    return PeerClient(build_descriptor("192.168.1.20", 8767, TENANT, name="scale-back"))


class TestPeerClient:
    def test_base_url_from_descriptor(self, client: PeerClient) -> None:
        assert client.base_url == "http://192.168.1.20:8767"
        assert client.device.id == "192.168.1.20:8767"

    async def test_pull(self, client: PeerClient) -> None:
        payload = {"customers": [make_customer(1)], "timestamp": "2026-03-01T10:00:00"}
        with patch.object(client, "_request", AsyncMock(return_value=payload)) as request:
            envelope = await client.pull(datetime(2026, 2, 1))

        assert envelope.get(EntityKind.CUSTOMER)[0]["id"] == 1
        request.assert_awaited_once_with(
            "GET", "/sync/pull", params={"since": "2026-02-01T00:00:00"}
        )

    async def test_pull_malformed(self, client: PeerClient) -> None:
        with patch.object(client, "_request", AsyncMock(return_value={"customers": 3})):
            with pytest.raises(ProtocolError, match="192.168.1.20:8767"):
                await client.pull()

    async def test_push(self, client: PeerClient) -> None:
        envelope = ChangedData(records={EntityKind.CUSTOMER: [make_customer(1)]})
        response = {"success": True, "merged": 1, "conflicts": 0, "deferred": 0}
        with patch.object(client, "_request", AsyncMock(return_value=response)) as request:
            result = await client.push(TENANT, envelope)

        assert result.merged == 1
        assert result.total == 1
        body = json.loads(request.call_args.kwargs["body"])
        assert body["tenantId"] == TENANT
        assert body["data"]["customers"][0]["id"] == 1

    async def test_push_rejected(self, client: PeerClient) -> None:
        with patch.object(
            client, "_request", AsyncMock(return_value={"success": False, "message": "Tenant mismatch"})
        ):
            with pytest.raises(ProtocolError, match="rejected"):
                await client.push(TENANT, ChangedData())

    async def test_status(self, client: PeerClient) -> None:
        status = {"tenantId": TENANT, "lastSyncTime": None, "deviceCount": 1}
        with patch.object(client, "_request", AsyncMock(return_value=status)) as request:
            assert await client.status() == status
        assert request.call_args.kwargs["timeout"] == 5.0

"""Tests for the cloud sync client and the shared HTTP plumbing."""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator
from datetime import datetime
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from conftest import TENANT, make_customer

from weighsync.core.entities import EntityKind
from weighsync.sync.cloud_client import CloudSyncClient, cloud_ids_from, decode_pull_response
from weighsync.sync.errors import (
    NetworkError,
    PayloadTooLargeError,
    ProtocolError,
    SyncUnsupportedError,
)
from weighsync.sync.http_client import JsonHttpClient
from weighsync.sync.protocol import ChangedData


def _customers(count: int) -> ChangedData:
    return ChangedData(
        records={EntityKind.CUSTOMER: [make_customer(i, name=f"C{i}") for i in range(1, count + 1)]}
    )


def _body_of(call: Any) -> dict[str, Any]:
    return json.loads(call.kwargs["body"])


# ─────────── decode_pull_response ───────────


class TestDecodePullResponse:
    def test_top_level_envelope(self) -> None:
        envelope = decode_pull_response({"customers": [{"id": 1}], "timestamp": None})
        assert envelope.total == 1

    def test_data_wrapper(self) -> None:
        envelope = decode_pull_response({"success": True, "data": {"metalTypes": [{"id": 1}]}})
        assert envelope.get(EntityKind.METAL_TYPE) == [{"id": 1}]

    def test_tables_wrapper(self) -> None:
        envelope = decode_pull_response(
            {"tables": {"weighing_sessions": [{"id": 4}], "biometric_data": []}}
        )
        assert envelope.get(EntityKind.WEIGHING_SESSION) == [{"id": 4}]

    def test_rejects_non_object(self) -> None:
        with pytest.raises(ProtocolError):
            decode_pull_response(["customers"])

    def test_rejects_malformed_kind(self) -> None:
        with pytest.raises(ProtocolError, match="Malformed"):
            decode_pull_response({"customers": "nope"})


# ─────────── CloudSyncClient ───────────


class TestCloudPull:
    async def test_pull_sends_tenant_and_cursor(self) -> None:
        client = CloudSyncClient("https://cloud.example.com/")
        with patch.object(
            client, "_request", AsyncMock(return_value={"customers": [make_customer(1)]})
        ) as request:
            envelope = await client.pull(TENANT, datetime(2026, 3, 1, 10))

        assert envelope.total == 1
        request.assert_awaited_once_with(
            "GET",
            "/sync/pull",
            params={"activationId": str(TENANT), "since": "2026-03-01T10:00:00"},
        )

    async def test_full_pull_starts_at_epoch(self) -> None:
        client = CloudSyncClient("https://cloud.example.com")
        with patch.object(client, "_request", AsyncMock(return_value={})) as request:
            await client.pull(TENANT)
        assert request.call_args.kwargs["params"]["since"] == "1970-01-01T00:00:00"


class TestCloudPush:
    async def test_empty_envelope_sends_nothing(self) -> None:
        client = CloudSyncClient("https://cloud.example.com")
        with patch.object(client, "_request", AsyncMock()) as request:
            outcome = await client.push(TENANT, ChangedData())
        assert outcome.requests == 0
        request.assert_not_awaited()

    async def test_small_envelope_single_request(self) -> None:
        client = CloudSyncClient("https://cloud.example.com")
        on_ack = AsyncMock()
        response = {"success": True, "merged": 3}
        with patch.object(client, "_request", AsyncMock(return_value=response)) as request:
            outcome = await client.push(TENANT, _customers(3), on_ack=on_ack)

        assert outcome.requests == 1
        assert outcome.batched is False
        assert outcome.merged == 3
        body = _body_of(request.call_args)
        assert body["activationId"] == TENANT
        assert len(body["data"]["customers"]) == 3
        on_ack.assert_awaited_once()

    async def test_oversized_envelope_is_batched(self) -> None:
        client = CloudSyncClient("https://cloud.example.com", max_payload_bytes=2048, batch_size=100)
        on_ack = AsyncMock()
        with patch.object(client, "_request", AsyncMock(return_value={"success": True})) as request:
            outcome = await client.push(TENANT, _customers(250), on_ack=on_ack)

        assert outcome.batched is True
        assert outcome.requests == 3
        assert outcome.records == 250
        sizes = [len(_body_of(call)["data"]["customers"]) for call in request.call_args_list]
        assert sizes == [100, 100, 50]
        assert on_ack.await_count == 3
        acked_ids = [
            [row["id"] for row in call.args[0].get(EntityKind.CUSTOMER)]
            for call in on_ack.call_args_list
        ]
        assert acked_ids[2] == list(range(201, 251))

    async def test_batches_are_per_kind(self) -> None:
        client = CloudSyncClient("https://cloud.example.com", max_payload_bytes=10)
        envelope = ChangedData(
            records={
                EntityKind.CUSTOMER: [make_customer(1)],
                EntityKind.METAL_TYPE: [{"id": 1, "symbol": "CU"}],
            }
        )
        with patch.object(client, "_request", AsyncMock(return_value={})) as request:
            outcome = await client.push(TENANT, envelope)

        assert outcome.requests == 2
        first, second = (_body_of(call)["data"] for call in request.call_args_list)
        assert first["customers"] and not first["metalTypes"]
        assert second["metalTypes"] and not second["customers"]

    async def test_413_retries_in_batches(self) -> None:
        client = CloudSyncClient("https://cloud.example.com", batch_size=2)
        request = AsyncMock(
            side_effect=[PayloadTooLargeError("too large", status_code=413), {}, {}]
        )
        with patch.object(client, "_request", request):
            outcome = await client.push(TENANT, _customers(3))

        assert request.await_count == 3
        assert outcome.batched is True
        assert outcome.requests == 2

    async def test_failed_batch_aborts_remaining(self) -> None:
        client = CloudSyncClient("https://cloud.example.com", max_payload_bytes=10, batch_size=1)
        on_ack = AsyncMock()
        request = AsyncMock(side_effect=[{}, NetworkError("reset"), {}])
        with patch.object(client, "_request", request), pytest.raises(NetworkError):
            await client.push(TENANT, _customers(3), on_ack=on_ack)

        assert request.await_count == 2
        assert on_ack.await_count == 1


class TestCloudHashAndPing:
    async def test_fetch_fingerprint(self) -> None:
        client = CloudSyncClient("https://cloud.example.com", hash_timeout=2)
        with patch.object(client, "_request", AsyncMock(return_value={"hash": "c1:abc"})) as req:
            assert await client.fetch_fingerprint(TENANT) == "c1:abc"
        assert req.call_args.kwargs["timeout"] == 2

    async def test_missing_fingerprint(self) -> None:
        client = CloudSyncClient("https://cloud.example.com")
        with patch.object(client, "_request", AsyncMock(return_value={"hash": None})):
            assert await client.fetch_fingerprint(TENANT) is None

    @pytest.mark.parametrize(("status", "expected"), [(200, True), (404, True), (503, False)])
    async def test_ping(self, status: int, expected: bool) -> None:
        client = CloudSyncClient("https://cloud.example.com")
        with patch.object(client, "_probe", AsyncMock(return_value=status)):
            assert await client.ping() is expected

    async def test_ping_unreachable(self) -> None:
        client = CloudSyncClient("https://cloud.example.com")
        with patch.object(client, "_probe", AsyncMock(return_value=None)):
            assert await client.ping() is False


class TestCloudIdsFrom:
    def test_extracts_kind_map(self) -> None:
        response = {"cloudIds": {"customers": {"1": 501, 2: 502}}}
        assert cloud_ids_from(response, EntityKind.CUSTOMER) == {"1": 501, "2": 502}

    def test_missing_or_malformed(self) -> None:
        assert cloud_ids_from({}, EntityKind.CUSTOMER) == {}
        assert cloud_ids_from({"cloudIds": []}, EntityKind.CUSTOMER) == {}
        assert cloud_ids_from({"cloudIds": {"customers": 5}}, EntityKind.CUSTOMER) == {}


# ─────────── JsonHttpClient status mapping ───────────


async def _handle_status(request: web.Request) -> web.Response:
    status = int(request.match_info["status"])
    return web.Response(status=status, text="nope")


async def _handle_json(request: web.Request) -> web.Response:
    return web.json_response({"echo": request.query.get("q")})


async def _handle_garbage(request: web.Request) -> web.Response:
    return web.Response(text="<html>")


async def _handle_empty(request: web.Request) -> web.Response:
    return web.Response(status=200)


@pytest_asyncio.fixture
async def http_server() -> AsyncGenerator[test_utils.TestServer, None]:
    app = web.Application()
    app.router.add_get("/status/{status}", _handle_status)
    app.router.add_get("/json", _handle_json)
    app.router.add_get("/garbage", _handle_garbage)
    app.router.add_post("/empty", _handle_empty)
    server = test_utils.TestServer(app)
    await server.start_server()
    yield server
    await server.close()


class TestJsonHttpClient:
    async def test_decodes_json(self, http_server: test_utils.TestServer) -> None:
        async with JsonHttpClient(str(http_server.make_url("/"))) as client:
            assert await client._request("GET", "/json", params={"q": "x"}) == {"echo": "x"}

    async def test_empty_body_is_empty_object(self, http_server: test_utils.TestServer) -> None:
        async with JsonHttpClient(str(http_server.make_url("/"))) as client:
            assert await client._request("POST", "/empty", body=b"{}") == {}

    @pytest.mark.parametrize(
        ("status", "error"),
        [
            (404, SyncUnsupportedError),
            (413, PayloadTooLargeError),
            (500, ProtocolError),
            (400, ProtocolError),
        ],
    )
    async def test_status_mapping(
        self, http_server: test_utils.TestServer, status: int, error: type[Exception]
    ) -> None:
        async with JsonHttpClient(str(http_server.make_url("/"))) as client:
            with pytest.raises(error) as exc_info:
                await client._request("GET", f"/status/{status}")
        assert exc_info.value.status_code == status

    async def test_non_json_body(self, http_server: test_utils.TestServer) -> None:
        async with JsonHttpClient(str(http_server.make_url("/"))) as client:
            with pytest.raises(ProtocolError, match="Unparsable"):
                await client._request("GET", "/garbage")

    async def test_probe_returns_status(self, http_server: test_utils.TestServer) -> None:
        async with JsonHttpClient(str(http_server.make_url("/"))) as client:
            assert await client._probe("/status/503") == 503

    async def test_connection_refused(self) -> None:
        async with JsonHttpClient("http://127.0.0.1:1", timeout=2) as client:
            with pytest.raises(NetworkError):
                await client._request("GET", "/sync/pull")
            assert await client._probe("", timeout=2) is None

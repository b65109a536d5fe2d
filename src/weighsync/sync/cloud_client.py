"""HTTP client for the cloud sync endpoints."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from weighsync.core.entities import KIND_SPECS, EntityKind
from weighsync.sync.errors import PayloadTooLargeError, ProtocolError
from weighsync.sync.http_client import JsonHttpClient
from weighsync.sync.protocol import ChangedData, PushOutcome
from weighsync.utils.timeutils import EPOCH, format_timestamp

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAYLOAD_BYTES = 512_000
DEFAULT_BATCH_SIZE = 100

AckCallback = Callable[[ChangedData, dict[str, Any]], Awaitable[None]]

_TABLE_TO_KIND = {spec.table: kind for kind, spec in KIND_SPECS.items()}


def decode_pull_response(payload: Any) -> ChangedData:
    """Parse a pull response into an envelope.

    Accepts the envelope at top level, wrapped in ``data``, or as a table
    dump under ``tables`` keyed by table name.
    """
    if not isinstance(payload, dict):
        raise ProtocolError("Pull response is not a JSON object")
    if isinstance(payload.get("data"), dict):
        payload = payload["data"]
    if isinstance(payload.get("tables"), dict):
        tables = payload["tables"]
        payload = {
            kind.value: tables.get(table, [])
            for table, kind in _TABLE_TO_KIND.items()
        } | {"timestamp": payload.get("timestamp")}
    try:
        return ChangedData.from_dict(payload)
    except ValueError as e:
        raise ProtocolError(f"Malformed pull response: {e}") from e


class CloudSyncClient(JsonHttpClient):
    """Pull, push and fingerprint requests against one cloud backup server."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        hash_timeout: float = 5.0,
        ping_timeout: float = 5.0,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        super().__init__(base_url, timeout=timeout)
        self._hash_timeout = hash_timeout
        self._ping_timeout = ping_timeout
        self._max_payload_bytes = max_payload_bytes
        self._batch_size = max(1, batch_size)

    async def pull(self, tenant_id: int, since: datetime | None = None) -> ChangedData:
        """Fetch the tenant's records changed after ``since`` (epoch when None)."""
        payload = await self._request(
            "GET",
            "/sync/pull",
            params={
                "activationId": str(tenant_id),
                "since": format_timestamp(since or EPOCH),
            },
        )
        envelope = decode_pull_response(payload)
        logger.debug("Pulled %d records from cloud for tenant %d", envelope.total, tenant_id)
        return envelope

    async def push(
        self,
        tenant_id: int,
        envelope: ChangedData,
        on_ack: AckCallback | None = None,
    ) -> PushOutcome:
        """Upload an envelope, splitting it into batches when it is too large.

        Batches are sent sequentially; the first failing batch raises and the
        rest are not sent. Batches acknowledged before the failure stay applied
        on the server, and ``on_ack`` has already been awaited for them.

        Raises:
            PayloadTooLargeError: A single batch was still rejected as too large
            SyncError: Any other failure
        """
        if envelope.is_empty():
            return PushOutcome(requests=0, batched=False, records=0)

        body = self._encode(tenant_id, envelope)
        if len(body) > self._max_payload_bytes:
            logger.info(
                "Push payload is %d bytes (limit %d), uploading in batches",
                len(body),
                self._max_payload_bytes,
            )
            return await self._push_batched(tenant_id, envelope, on_ack)

        try:
            response = await self._request("POST", "/sync/push", body=body)
        except PayloadTooLargeError:
            logger.info("Server rejected push as too large, retrying in batches")
            return await self._push_batched(tenant_id, envelope, on_ack)

        response = response if isinstance(response, dict) else {}
        if on_ack is not None:
            await on_ack(envelope, response)
        return PushOutcome(
            requests=1,
            batched=False,
            records=envelope.total,
            merged=int(response.get("merged") or 0),
            conflicts=int(response.get("conflicts") or 0),
        )

    async def _push_batched(
        self,
        tenant_id: int,
        envelope: ChangedData,
        on_ack: AckCallback | None,
    ) -> PushOutcome:
        requests = records = merged = conflicts = 0
        for kind in envelope.kinds_with_records():
            rows = envelope.get(kind)
            for start in range(0, len(rows), self._batch_size):
                batch = envelope.only(kind, rows[start : start + self._batch_size])
                response = await self._request(
                    "POST", "/sync/push", body=self._encode(tenant_id, batch)
                )
                response = response if isinstance(response, dict) else {}
                requests += 1
                records += batch.total
                merged += int(response.get("merged") or 0)
                conflicts += int(response.get("conflicts") or 0)
                if on_ack is not None:
                    await on_ack(batch, response)
                logger.debug(
                    "Pushed %s batch %d (%d records)", kind, requests, batch.total
                )
        return PushOutcome(
            requests=requests,
            batched=True,
            records=records,
            merged=merged,
            conflicts=conflicts,
        )

    async def fetch_fingerprint(self, tenant_id: int) -> str | None:
        """Return the cloud's content fingerprint, or None if it has none."""
        payload = await self._request(
            "GET",
            "/sync/hash",
            params={"activationId": str(tenant_id)},
            timeout=self._hash_timeout,
        )
        if not isinstance(payload, dict):
            raise ProtocolError("Hash response is not a JSON object")
        value = payload.get("hash")
        return str(value) if value else None

    async def ping(self) -> bool:
        """True when the server answers with a status below 500."""
        status = await self._probe("", timeout=self._ping_timeout)
        return status is not None and status < 500

    @staticmethod
    def _encode(tenant_id: int, envelope: ChangedData) -> bytes:
        return json.dumps(
            {"activationId": tenant_id, "data": envelope.to_dict()}, default=str
        ).encode("utf-8")


def cloud_ids_from(response: dict[str, Any], kind: EntityKind) -> dict[str, Any]:
    """Extract the ``{localId: cloudId}`` map for ``kind`` from a push response."""
    cloud_ids = response.get("cloudIds")
    if not isinstance(cloud_ids, dict):
        return {}
    mapping = cloud_ids.get(kind.value)
    if not isinstance(mapping, dict):
        return {}
    return {str(local_id): cloud_id for local_id, cloud_id in mapping.items()}

"""Last-write-wins merge of a changed-data envelope into the local store."""

from __future__ import annotations

import logging
from typing import Any

from weighsync.core.entities import (
    KIND_SPECS,
    MERGE_ORDER,
    EntityKind,
    KindSpec,
    Record,
    effective_time,
)
from weighsync.storage.base import LocalStore
from weighsync.sync.errors import ForeignRecordError, SchemaDriftError
from weighsync.sync.protocol import ChangedData, MergeResult
from weighsync.utils.timeutils import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

# Foreign-key columns rewritten when a parent was matched under a different local id.
REFERENCE_FIELDS: dict[str, EntityKind] = {
    "customer_id": EntityKind.CUSTOMER,
    "session_id": EntityKind.WEIGHING_SESSION,
}


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _normalize_timestamps(record: Record) -> None:
    for column in ("created_at", "updated_at"):
        parsed = parse_timestamp(record.get(column))
        if parsed is not None:
            record[column] = format_timestamp(parsed)


class MergeEngine:
    """Applies remote envelopes to a local store.

    Rules per record, parents before children:
    - records of another tenant are skipped and counted as conflicts
    - the local counterpart is found by business key first, then by id;
      biometric records are matched by customer only
    - children whose parent is not stored locally are deferred
    - a newer remote record overwrites mutable fields (coalesced fields keep
      the local value when the remote one is null); older or equal is a conflict
    """

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    async def merge(self, tenant_id: int, envelope: ChangedData) -> MergeResult:
        merged = conflicts = deferred = 0
        repaired = False
        id_map: dict[tuple[EntityKind, Any], Any] = {}

        for kind in MERGE_ORDER:
            spec = KIND_SPECS[kind]
            for remote in envelope.get(kind):
                try:
                    outcome = await self._merge_record(tenant_id, spec, remote, id_map)
                except SchemaDriftError as e:
                    logger.warning(
                        "Schema drift merging %s id=%s: %s", kind, remote.get("id"), e
                    )
                    if not repaired:
                        repaired = True
                        try:
                            await self._store.repair_schema()
                        except Exception:
                            logger.error("Schema repair failed", exc_info=True)
                    conflicts += 1
                    continue
                except ForeignRecordError as e:
                    logger.warning("Skipping %s id=%s: %s", kind, remote.get("id"), e)
                    conflicts += 1
                    continue
                except Exception:
                    logger.error(
                        "Failed to merge %s id=%s", kind, remote.get("id"), exc_info=True
                    )
                    conflicts += 1
                    continue

                if outcome == "merged":
                    merged += 1
                elif outcome == "deferred":
                    deferred += 1
                else:
                    conflicts += 1

        result = MergeResult(
            merged=merged, conflicts=conflicts, deferred=deferred, total=envelope.total
        )
        logger.info(
            "Merged envelope for tenant %d: merged=%d conflicts=%d deferred=%d total=%d",
            tenant_id,
            result.merged,
            result.conflicts,
            result.deferred,
            result.total,
        )
        return result

    async def _merge_record(
        self,
        tenant_id: int,
        spec: KindSpec,
        remote: Record,
        id_map: dict[tuple[EntityKind, Any], Any],
    ) -> str:
        """Merge one record. Returns ``merged``, ``conflict`` or ``deferred``."""
        remote_tenant = remote.get("activation_id")
        if remote_tenant is not None and remote_tenant != tenant_id:
            logger.warning(
                "Skipping %s id=%s of foreign tenant %s", spec.kind, remote.get("id"), remote_tenant
            )
            return "conflict"

        incoming = self._remap_references(spec, remote, id_map)

        if spec.parent is not None and spec.parent_field:
            parent_id = incoming.get(spec.parent_field)
            if parent_id is not None and (
                await self._store.get_record(tenant_id, spec.parent, parent_id) is None
            ):
                logger.debug(
                    "Deferring %s id=%s: parent %s id=%s not present",
                    spec.kind,
                    incoming.get("id"),
                    spec.parent,
                    parent_id,
                )
                return "deferred"

        local = await self._find_local(tenant_id, spec, incoming)

        if local is None:
            record = {k: v for k, v in incoming.items() if k in spec.columns}
            record.pop("is_synced", None)
            if not spec.match_by_id:
                record.pop("id", None)
            _normalize_timestamps(record)
            if not record.get("created_at"):
                record["created_at"] = record.get("updated_at") or format_timestamp(utcnow())
            local_id = await self._store.upsert(tenant_id, spec.kind, record, needs_upload=False)
            if incoming.get("id") is not None:
                id_map[(spec.kind, incoming["id"])] = local_id
            return "merged"

        if incoming.get("id") is not None:
            id_map[(spec.kind, incoming["id"])] = local["id"]

        remote_time = effective_time(incoming)
        local_time = effective_time(local)
        if remote_time is None or (local_time is not None and remote_time <= local_time):
            logger.debug(
                "Kept local %s id=%s (local=%s remote=%s)",
                spec.kind,
                local["id"],
                local_time,
                remote_time,
            )
            return "conflict"

        updated = dict(local)
        for field_name in spec.fields:
            if field_name not in incoming:
                continue
            value = incoming[field_name]
            if field_name in spec.coalesce_fields and value is None:
                continue
            updated[field_name] = value
        updated["updated_at"] = format_timestamp(remote_time)
        if local.get("cloud_id") is None:
            updated["cloud_id"] = incoming.get("cloud_id")

        await self._store.upsert(tenant_id, spec.kind, updated, needs_upload=False)
        return "merged"

    async def _find_local(self, tenant_id: int, spec: KindSpec, record: Record) -> Record | None:
        for key in spec.business_keys:
            if any(_is_blank(record.get(field_name)) for field_name in key):
                continue
            match = await self._store.find_by_fields(
                tenant_id, spec.kind, {field_name: record[field_name] for field_name in key}
            )
            if match is not None:
                return match
            # Only the first usable key decides; a customer with a number is
            # never matched on name and address.
            break

        if not spec.match_by_id:
            return None
        record_id = record.get("id")
        if record_id is None:
            return None
        return await self._store.get_record(tenant_id, spec.kind, record_id)

    def _remap_references(
        self, spec: KindSpec, record: Record, id_map: dict[tuple[EntityKind, Any], Any]
    ) -> Record:
        remapped = record
        for field_name, target in REFERENCE_FIELDS.items():
            if field_name not in spec.fields:
                continue
            key = (target, record.get(field_name))
            if key in id_map and id_map[key] != record.get(field_name):
                if remapped is record:
                    remapped = dict(record)
                remapped[field_name] = id_map[key]
        return remapped

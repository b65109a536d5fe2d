"""Syncable entity kinds and the per-kind metadata the sync engine relies on."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from weighsync.utils.timeutils import parse_timestamp

# Columns every syncable table carries besides its own fields.
SYNC_COLUMNS: tuple[str, ...] = (
    "id",
    "activation_id",
    "cloud_id",
    "created_at",
    "updated_at",
    "is_synced",
)

Record = dict[str, Any]


class EntityKind(StrEnum):
    """Syncable entity kinds. Values are the envelope keys on the wire."""

    CUSTOMER = "customers"
    METAL_TYPE = "metalTypes"
    VEHICLE = "vehicles"
    WEIGHING_SESSION = "weighingSessions"
    WEIGHING = "weighings"
    BIOMETRIC = "biometricData"


@dataclass(frozen=True)
class KindSpec:
    """Static description of one entity kind."""

    kind: EntityKind
    table: str
    fields: tuple[str, ...]
    coalesce_fields: tuple[str, ...] = ()
    parent: EntityKind | None = None
    parent_field: str | None = None
    # Alternative match keys tried in order; each is a tuple of fields that
    # must all be non-empty on the incoming record to be usable.
    business_keys: tuple[tuple[str, ...], ...] = ()
    # False when ids are only meaningful on the device that assigned them; such
    # records are matched by business key alone and inserted under a new local id.
    match_by_id: bool = True
    name_field: str | None = None
    amount_fields: tuple[str, ...] = ()

    @property
    def columns(self) -> tuple[str, ...]:
        return SYNC_COLUMNS + self.fields


KIND_SPECS: dict[EntityKind, KindSpec] = {
    EntityKind.CUSTOMER: KindSpec(
        kind=EntityKind.CUSTOMER,
        table="customers",
        fields=(
            "name",
            "phone",
            "address",
            "license_number",
            "license_photo_path",
            "customer_number",
        ),
        coalesce_fields=("license_photo_path",),
        business_keys=(("customer_number",), ("name", "address")),
        name_field="name",
    ),
    EntityKind.METAL_TYPE: KindSpec(
        kind=EntityKind.METAL_TYPE,
        table="metal_types",
        fields=("symbol", "name", "price_per_unit", "unit", "is_active"),
        business_keys=(("symbol",),),
        name_field="name",
        amount_fields=("price_per_unit",),
    ),
    EntityKind.VEHICLE: KindSpec(
        kind=EntityKind.VEHICLE,
        table="vehicles",
        fields=(
            "customer_id",
            "license_plate",
            "year",
            "color",
            "make",
            "model",
            "original_ref_no",
        ),
        name_field="license_plate",
    ),
    EntityKind.WEIGHING_SESSION: KindSpec(
        kind=EntityKind.WEIGHING_SESSION,
        table="weighing_sessions",
        fields=("customer_id", "session_time", "notes", "total_amount", "status"),
        amount_fields=("total_amount",),
    ),
    EntityKind.WEIGHING: KindSpec(
        kind=EntityKind.WEIGHING,
        table="weighings",
        fields=(
            "session_id",
            "waste_type_id",
            "weight",
            "unit_price",
            "total_amount",
            "product_photo_path",
            "weighing_time",
            "notes",
        ),
        coalesce_fields=("product_photo_path",),
        parent=EntityKind.WEIGHING_SESSION,
        parent_field="session_id",
        amount_fields=("weight", "total_amount"),
    ),
    EntityKind.BIOMETRIC: KindSpec(
        kind=EntityKind.BIOMETRIC,
        table="biometric_data",
        fields=(
            "customer_id",
            "face_image_path",
            "fingerprint_template",
            "fingerprint_image_path",
            "signature_image_path",
        ),
        coalesce_fields=(
            "face_image_path",
            "fingerprint_template",
            "fingerprint_image_path",
            "signature_image_path",
        ),
        parent=EntityKind.CUSTOMER,
        parent_field="customer_id",
        business_keys=(("customer_id",),),
        match_by_id=False,
    ),
}

# Parents before children so a single envelope can carry both.
MERGE_ORDER: tuple[EntityKind, ...] = (
    EntityKind.CUSTOMER,
    EntityKind.METAL_TYPE,
    EntityKind.VEHICLE,
    EntityKind.WEIGHING_SESSION,
    EntityKind.WEIGHING,
    EntityKind.BIOMETRIC,
)


def effective_time(record: Record) -> datetime | None:
    """Last-write-wins timestamp: ``updated_at`` falling back to ``created_at``."""
    return parse_timestamp(record.get("updated_at")) or parse_timestamp(record.get("created_at"))


def needs_upload(record: Record) -> bool:
    """True while a local mutation has not been acknowledged by a remote store."""
    return not bool(record.get("is_synced"))


@dataclass(frozen=True)
class KindAggregate:
    """Timestamp-independent content aggregates for one entity kind."""

    count: int = 0
    named: int = 0
    amount_total: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"count": self.count, "named": self.named, "amount_total": self.amount_total}


def aggregate_records(kind: EntityKind, records: list[Record]) -> KindAggregate:
    """Compute the content aggregates for ``records`` of one kind.

    Used by every store implementation so that the fingerprint only depends
    on record content, never on how a particular store computes sums.
    """
    spec = KIND_SPECS[kind]
    named = 0
    total = 0.0
    for record in records:
        if spec.name_field and record.get(spec.name_field) not in (None, ""):
            named += 1
        for field_name in spec.amount_fields:
            value = record.get(field_name)
            if value is None or value == "":
                continue
            try:
                total += float(value)
            except (TypeError, ValueError):
                continue
    return KindAggregate(count=len(records), named=named, amount_total=int(total))

"""Export of local changes as a changed-data envelope."""

from __future__ import annotations

import logging
from datetime import datetime

from weighsync.core.entities import MERGE_ORDER, EntityKind, Record
from weighsync.storage.base import LocalStore
from weighsync.sync.protocol import ChangedData
from weighsync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


async def collect_changes(
    store: LocalStore,
    tenant_id: int,
    since: datetime | None = None,
    needs_upload_only: bool = False,
) -> ChangedData:
    """Build an envelope of the tenant's records changed after ``since``.

    With ``needs_upload_only`` only records still pending acknowledgement are
    included. The capture time is taken before reading so that edits made
    while exporting are picked up by the next export.
    """
    captured_at = utcnow()
    records: dict[EntityKind, list[Record]] = {}
    for kind in MERGE_ORDER:
        rows = await store.list_changed(
            tenant_id, kind, since=since, needs_upload_only=needs_upload_only
        )
        # Never export another tenant's rows, whatever the store returned.
        records[kind] = [row for row in rows if row.get("activation_id") in (None, tenant_id)]

    envelope = ChangedData(records=records, timestamp=captured_at)
    logger.debug(
        "Collected %d changed records for tenant %d (since=%s, pending_only=%s)",
        envelope.total,
        tenant_id,
        since,
        needs_upload_only,
    )
    return envelope

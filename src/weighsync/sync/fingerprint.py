"""Content fingerprints and local-versus-cloud mismatch detection."""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable, Mapping

from weighsync.core.entities import MERGE_ORDER, EntityKind, KindAggregate
from weighsync.storage.base import LocalStore
from weighsync.sync.cloud_client import CloudSyncClient
from weighsync.sync.errors import SyncError
from weighsync.sync.protocol import MismatchReport
from weighsync.utils.timeutils import epoch_millis

logger = logging.getLogger(__name__)

FINGERPRINT_TAG = "c1:"
LAST_UPLOAD_KEY = "last_upload_time"


def compute_fingerprint(aggregates: Mapping[EntityKind, KindAggregate]) -> str:
    """Hash per-kind content aggregates into a tagged fingerprint.

    Only counts and sums enter the digest, so two devices holding the same
    records produce the same value regardless of timestamps or local ids.
    """
    payload = {
        kind.value: (aggregates.get(kind) or KindAggregate()).to_dict() for kind in MERGE_ORDER
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return FINGERPRINT_TAG + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class MismatchDetector:
    """Compares the local fingerprint with the one the cloud reports."""

    def __init__(
        self,
        store: LocalStore,
        client: CloudSyncClient | None,
        suppression_minutes: float = 30.0,
        clock: Callable[[], int] = epoch_millis,
    ) -> None:
        self._store = store
        self._client = client
        self._suppression_ms = int(suppression_minutes * 60 * 1000)
        self._clock = clock

    async def local_fingerprint(self, tenant_id: int) -> str:
        return compute_fingerprint(await self._store.get_aggregate_counts(tenant_id))

    async def check(self, tenant_id: int) -> MismatchReport:
        aggregates = await self._store.get_aggregate_counts(tenant_id)
        local_hash = compute_fingerprint(aggregates)
        local_count = sum(a.count for a in aggregates.values())

        cloud_hash: str | None = None
        if self._client is not None:
            try:
                cloud_hash = await self._client.fetch_fingerprint(tenant_id)
            except SyncError as e:
                logger.debug("Cloud fingerprint unavailable: %s", e)

        if cloud_hash is None:
            if local_count == 0:
                return MismatchReport(False, local_hash, None, reason="cloud unknown, local empty")
            return MismatchReport(True, local_hash, None, reason="cloud unknown, first sync")

        if cloud_hash == local_hash:
            return MismatchReport(False, local_hash, cloud_hash, reason="equal")

        # A tagged cloud hash is computed with this algorithm, so a difference is
        # real even right after an upload; only untagged hashes can lag behind.
        if not cloud_hash.startswith(FINGERPRINT_TAG) and await self._recently_uploaded(tenant_id):
            logger.debug("Suppressing mismatch after recent upload (untagged cloud hash)")
            return MismatchReport(
                False, local_hash, cloud_hash, suppressed=True, reason="recent upload"
            )

        return MismatchReport(True, local_hash, cloud_hash, reason="different")

    async def _recently_uploaded(self, tenant_id: int) -> bool:
        raw = await self._store.get_setting(tenant_id, LAST_UPLOAD_KEY)
        if not raw:
            return False
        try:
            last_upload = int(raw)
        except ValueError:
            logger.warning("Corrupt %s setting: %r", LAST_UPLOAD_KEY, raw)
            return False
        return self._clock() - last_upload < self._suppression_ms

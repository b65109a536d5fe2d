"""Error taxonomy for sync operations.

Merge conflicts are not errors; they are counted in :class:`MergeResult`.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for failures of a sync step."""


class NetworkError(SyncError):
    """Connection refused, reset or timed out.

    Never retried immediately; the next scheduled tick tries again.
    """


class ProtocolError(SyncError):
    """Unexpected status code or an unparsable response body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SyncUnsupportedError(ProtocolError):
    """The remote has no sync endpoint (HTTP 404); stop retrying against it."""


class PayloadTooLargeError(ProtocolError):
    """The remote rejected a request body as too large (HTTP 413)."""


class SchemaDriftError(Exception):
    """A column the sync engine needs is missing from the local schema."""

    def __init__(self, table: str, column: str | None = None, detail: str = "") -> None:
        message = f"Schema drift on {table}"
        if column:
            message += f".{column}"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.table = table
        self.column = column


class ForeignRecordError(Exception):
    """The record id is already taken by a record of another tenant."""

    def __init__(self, table: str, record_id: object, owner: object) -> None:
        super().__init__(f"{table} id={record_id} belongs to tenant {owner}")
        self.table = table
        self.record_id = record_id
        self.owner = owner

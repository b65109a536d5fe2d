"""Per-login sync context.

Replaces a process-wide "current activation" object: the context is built once
when an operator logs in and handed to every sync component explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import uuid4


def _default_device_name() -> str:
    from weighsync.sync.device import get_device_name

    return get_device_name()


@dataclass(frozen=True)
class SyncContext:
    """Immutable identity of the running installation for one login session."""

    tenant_id: int
    device_name: str = field(default_factory=_default_device_name)
    cloud_url: str | None = None
    # Distinguishes this process from peers on the same host; never persisted.
    instance_id: str = field(default_factory=lambda: uuid4().hex[:16])

    def __post_init__(self) -> None:
        if self.tenant_id <= 0:
            raise ValueError("tenant_id must be a positive activation id")

    @property
    def cloud_enabled(self) -> bool:
        return bool(self.cloud_url)

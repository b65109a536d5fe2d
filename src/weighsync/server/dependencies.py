"""Shared dependencies for transfer routes."""

from __future__ import annotations

from weighsync.core.context import SyncContext
from weighsync.storage.base import LocalStore
from weighsync.sync.discovery import PeerDiscovery
from weighsync.sync.merge import MergeEngine


async def get_store() -> LocalStore:
    """
    Dependency to get the local store.

    This is overridden by the application factory.
    """
    raise NotImplementedError("Store not configured")


async def get_context() -> SyncContext:
    """Dependency to get the session context. Overridden by the application factory."""
    raise NotImplementedError("Context not configured")


async def get_merge_engine() -> MergeEngine:
    raise NotImplementedError("Merge engine not configured")


async def get_discovery() -> PeerDiscovery | None:
    """Discovery is optional; without it the device count is zero."""
    return None

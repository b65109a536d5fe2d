"""FastAPI application factory for the peer transfer endpoint."""

from __future__ import annotations

from fastapi import FastAPI

from weighsync import __version__
from weighsync.core.context import SyncContext
from weighsync.server import dependencies
from weighsync.server.models import HealthResponse
from weighsync.server.routes import transfer_router
from weighsync.storage.base import LocalStore
from weighsync.sync.discovery import PeerDiscovery
from weighsync.sync.merge import MergeEngine


def create_transfer_app(
    context: SyncContext,
    store: LocalStore,
    *,
    discovery: PeerDiscovery | None = None,
    merge_engine: MergeEngine | None = None,
) -> FastAPI:
    """
    Create the transfer application for one login session.

    Args:
        context: Session context; pushes for another tenant are refused
        store: Local store serving pulls and receiving merges
        discovery: Peer registry reported by ``/sync/status``
        merge_engine: Engine applying pushed envelopes (default: one over ``store``)

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="weighsync transfer",
        description="Peer-to-peer sync endpoint",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )

    engine = merge_engine or MergeEngine(store)
    app.state.context = context
    app.state.store = store
    app.state.discovery = discovery
    app.state.merge_engine = engine

    async def get_store() -> LocalStore:
        return app.state.store

    async def get_context() -> SyncContext:
        return app.state.context

    async def get_merge_engine() -> MergeEngine:
        return app.state.merge_engine

    async def get_discovery() -> PeerDiscovery | None:
        return app.state.discovery

    app.dependency_overrides[dependencies.get_store] = get_store
    app.dependency_overrides[dependencies.get_context] = get_context
    app.dependency_overrides[dependencies.get_merge_engine] = get_merge_engine
    app.dependency_overrides[dependencies.get_discovery] = get_discovery

    app.include_router(transfer_router)

    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        return HealthResponse(status="healthy", version=__version__)

    return app

"""Shared CLI helpers for configuration, storage, and output formatting."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Coroutine
from typing import Any, TypeVar

import typer

from weighsync.core.context import SyncContext
from weighsync.storage.sqlite_store import SQLiteStore
from weighsync.sync.service import SyncService
from weighsync.unified_config import UnifiedConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Stores and services opened during a CLI command, closed before the event
# loop shuts down so aiosqlite's worker thread does not outlive it.
_active_resources: list[Any] = []


def get_config() -> UnifiedConfig:
    """Get unified configuration."""
    return UnifiedConfig.load()


def require_context(config: UnifiedConfig) -> SyncContext:
    """Build the session context, exiting if the installation is not activated."""
    if config.tenant_id <= 0:
        typer.secho(
            "No activation configured. Set one with: weighsync config set-tenant <id>",
            fg=typer.colors.RED,
        )
        raise typer.Exit(1)
    return SyncContext(
        tenant_id=config.tenant_id,
        device_name=config.device_name,
        cloud_url=config.cloud.server_url or None,
    )


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async CLI command, closing opened stores before the loop ends."""

    async def _with_cleanup() -> T:
        try:
            return await coro
        finally:
            for resource in reversed(_active_resources):
                try:
                    if isinstance(resource, SyncService):
                        await resource.stop_background_sync()
                    else:
                        await resource.close()
                except Exception:
                    logger.debug("Failed to close resource during cleanup", exc_info=True)
            _active_resources.clear()
            await asyncio.sleep(0)

    return asyncio.run(_with_cleanup())


async def open_store(config: UnifiedConfig) -> SQLiteStore:
    store = SQLiteStore(config.database_path)
    await store.initialize()
    _active_resources.append(store)
    return store


async def open_service(config: UnifiedConfig) -> SyncService:
    """Open the local store and wire a sync service for the configured tenant."""
    context = require_context(config)
    store = await open_store(config)
    service = SyncService.from_config(context, store, config)
    _active_resources.append(service)
    return service


def print_progress(event: Any) -> None:
    """Progress handler that echoes each event on one line."""
    typer.secho(f"  [{event.progress:3d}%] {event.message}", fg=typer.colors.BRIGHT_BLACK)


def output_result(data: dict[str, Any], as_json: bool = False) -> None:
    """Output result in appropriate format."""
    if as_json:
        typer.echo(json.dumps(data, indent=2, default=str))
        return

    if "error" in data:
        typer.secho(f"Error: {data['error']}", fg=typer.colors.RED)
    elif "success" in data:
        if data.get("skipped"):
            typer.secho(data["message"], fg=typer.colors.YELLOW)
        elif data["success"]:
            typer.secho(data["message"], fg=typer.colors.GREEN)
        else:
            typer.secho(data["message"], fg=typer.colors.RED)

        meta_parts = []
        if data.get("syncedRecords"):
            meta_parts.append(f"records: {data['syncedRecords']}")
        if data.get("conflicts"):
            meta_parts.append(f"conflicts: {data['conflicts']}")
        if meta_parts:
            typer.secho(f"  [{', '.join(meta_parts)}]", fg=typer.colors.BRIGHT_BLACK)
    elif "message" in data:
        typer.secho(data["message"], fg=typer.colors.GREEN)
    else:
        for key, value in data.items():
            typer.echo(f"{key}: {value}")

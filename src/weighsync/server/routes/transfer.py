"""Peer transfer routes: pull, push and status."""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from weighsync.core.context import SyncContext
from weighsync.server.dependencies import (
    get_context,
    get_discovery,
    get_merge_engine,
    get_store,
)
from weighsync.server.models import ErrorResponse, PushRequest, PushResponse, StatusResponse
from weighsync.storage.base import LocalStore
from weighsync.sync.changes import collect_changes
from weighsync.sync.discovery import PeerDiscovery
from weighsync.sync.merge import MergeEngine
from weighsync.sync.protocol import ChangedData
from weighsync.utils.timeutils import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post(
    "/push",
    response_model=PushResponse,
    summary="Merge an envelope pushed by a peer",
    responses={403: {"model": ErrorResponse, "description": "Envelope belongs to another tenant"}},
)
async def push(
    request: PushRequest,
    context: Annotated[SyncContext, Depends(get_context)],
    engine: Annotated[MergeEngine, Depends(get_merge_engine)],
) -> Any:
    if request.tenant_id != context.tenant_id:
        logger.warning("Rejected push for foreign tenant %d", request.tenant_id)
        return JSONResponse(
            status_code=403,
            content=ErrorResponse(message="Tenant mismatch").model_dump(),
        )

    try:
        envelope = ChangedData.from_dict(request.data)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    result = await engine.merge(context.tenant_id, envelope)
    return PushResponse(
        success=True,
        merged=result.merged,
        conflicts=result.conflicts,
        deferred=result.deferred,
    )


@router.get(
    "/pull",
    summary="Records changed after a timestamp",
)
async def pull(
    context: Annotated[SyncContext, Depends(get_context)],
    store: Annotated[LocalStore, Depends(get_store)],
    since: Annotated[str | None, Query(description="ISO-8601 lower bound (exclusive)")] = None,
) -> dict[str, Any]:
    since_dt = None
    if since:
        since_dt = parse_timestamp(since)
        if since_dt is None:
            raise HTTPException(status_code=422, detail=f"Invalid 'since' timestamp: {since}")

    envelope = await collect_changes(store, context.tenant_id, since=since_dt)
    return envelope.to_dict()


@router.get(
    "/status",
    response_model=StatusResponse,
    response_model_by_alias=True,
    summary="Tenant and freshness of this device",
)
async def status(
    context: Annotated[SyncContext, Depends(get_context)],
    store: Annotated[LocalStore, Depends(get_store)],
    discovery: Annotated[PeerDiscovery | None, Depends(get_discovery)],
) -> StatusResponse:
    latest = await store.latest_change_time(context.tenant_id)
    return StatusResponse(
        tenant_id=context.tenant_id,
        last_sync_time=format_timestamp(latest) if latest else None,
        device_count=discovery.device_count if discovery is not None else 0,
    )

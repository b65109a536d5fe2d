"""Pydantic models for the peer transfer API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ============ Request Models ============


class PushRequest(BaseModel):
    """Changed-data envelope pushed by a peer."""

    model_config = ConfigDict(populate_by_name=True)

    tenant_id: int = Field(..., alias="tenantId", gt=0, description="Tenant of the envelope")
    data: dict[str, Any] = Field(..., description="Per-kind record lists plus timestamp")


# ============ Response Models ============


class PushResponse(BaseModel):
    """Merge counters for an accepted push."""

    success: bool = True
    merged: int
    conflicts: int
    deferred: int = 0


class StatusResponse(BaseModel):
    """Cheap diagnostic view of this device."""

    model_config = ConfigDict(populate_by_name=True)

    tenant_id: int = Field(..., alias="tenantId")
    last_sync_time: str | None = Field(None, alias="lastSyncTime")
    device_count: int = Field(0, alias="deviceCount")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str


class ErrorResponse(BaseModel):
    success: bool = False
    message: str

"""Pydantic models for orchestrated fetch requests and responses."""
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class StaleReason(str, Enum):
    """Which cascade tier served a non-live response."""

    SNAPSHOT_EXACT_FAST = "snapshot_exact_fast"
    SNAPSHOT_DEFAULT_WINDOW_FAST = "snapshot_default_window_fast"
    SNAPSHOT_LATEST_POINTER_FAST = "snapshot_latest_pointer_fast"
    SNAPSHOT_LATEST_FAST = "snapshot_latest_fast"
    LIVE_ERROR_EPHEMERAL = "live_error_ephemeral"
    LIVE_ERROR_EXACT = "live_error_exact"
    LIVE_ERROR_LATEST = "live_error_latest"


class FetchRequest(BaseModel):
    """One logical query against an endpoint profile."""

    store_id: str = Field(..., description="Tenant store identifier")
    endpoint: str = Field(..., description="Logical query family, e.g. 'ads' or 'insights'")
    scope_id: str = Field(..., description="Entity or aggregate the data describes")
    params: dict[str, Any] = Field(
        default_factory=dict,
        description="Distinguishing query parameters (date window, breakdowns)",
    )
    mode: str = Field("fast", description="fast|basic|audit")
    prefer_cache: bool = Field(False, description="Serve any snapshot before going live")
    strict_date: bool = Field(False, description="Never substitute a broader date window")

    @property
    def variant_params(self) -> dict[str, Any]:
        return {**self.params, "mode": self.mode}


class FetchResult(BaseModel):
    """Payload plus freshness metadata."""

    data: Any = None
    cached: bool = False
    stale: bool = False
    stale_reason: Optional[StaleReason] = None
    snapshot_at: Optional[datetime] = None
    fallback_mode: Optional[str] = None

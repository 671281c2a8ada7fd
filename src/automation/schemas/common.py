from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Severity(str, Enum):
    """Severity levels for alert rules and alerts."""

    low = "low"
    medium = "medium"
    high = "high"


class EntityScope(str, Enum):
    """Entity granularity a rule applies to."""

    account = "account"
    campaign = "campaign"
    ad_group = "ad_group"
    ad = "ad"


class HealthResponse(BaseModel):
    """Response model for health endpoints."""

    status: str = Field(..., description="High-level health status string (e.g., 'ok').")
    message: str = Field(..., description="Human-readable status message.")
    timestamp: datetime = Field(..., description="UTC timestamp at time of response.")


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    detail: str = Field(..., description="Human-readable error details.")
    code: Optional[str] = Field(default=None, description="Optional machine-readable error code.")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional metadata for debugging.")


# PUBLIC_INTERFACE
def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from storage."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class BulkItemResult(BaseModel):
    """Per-item outcome of a bulk operation."""

    id: str = Field(..., description="Id of the item the operation targeted.")
    status: str = Field(..., description="success | error")
    message: Optional[str] = Field(default=None, description="Reason when status is error.")
    code: Optional[str] = Field(default=None, description="Machine-readable error code when status is error.")


class BulkSummary(BaseModel):
    """Counts for a bulk operation; success + errors == total."""

    total: int = Field(..., ge=0)
    success: int = Field(..., ge=0)
    errors: int = Field(..., ge=0)


class BulkResponse(BaseModel):
    """Envelope for bulk operations processed item by item."""

    results: List[BulkItemResult] = Field(..., description="One entry per requested id, in request order.")
    summary: BulkSummary

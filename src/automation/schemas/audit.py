from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class AuditLogOut(BaseModel):
    """One append-only audit entry."""

    id: str = Field(..., description="Audit entry id (Mongo ObjectId string).")
    user_id: Optional[str] = Field(default=None, description="Acting user; null for system triggers.")
    account_id: Optional[str] = Field(default=None, description="Account the mutated entity belongs to.")
    entity_type: str = Field(..., description="rule | alert_rule | alert | campaign | ad_group | ad | account.")
    entity_id: str = Field(..., description="Id of the mutated entity.")
    action: str = Field(..., description="What happened (create, update, delete, clone, resolve, execute_rule, ...).")
    before: Optional[Any] = Field(default=None, description="Snapshot before the mutation.")
    after: Optional[Any] = Field(default=None, description="Snapshot after the mutation.")
    created_at: datetime = Field(..., description="UTC timestamp when the entry was written.")


class AuditLogListResponse(BaseModel):
    """Envelope for listing audit entries."""

    items: List[AuditLogOut] = Field(..., description="Audit entries, newest first.")
    total: int = Field(..., ge=0, description="Total number of matching entries.")


class AuditLogsQuery(BaseModel):
    """Filter/pagination model for listing audit entries."""

    account_id: Optional[str] = Field(default=None)
    entity_type: Optional[str] = Field(default=None)
    entity_id: Optional[str] = Field(default=None)
    action: Optional[str] = Field(default=None)
    limit: int = Field(100, ge=1, le=500)
    offset: int = Field(0, ge=0, le=100000)

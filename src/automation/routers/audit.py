from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Query, Request

from src.automation.schemas.audit import AuditLogListResponse, AuditLogsQuery
from src.automation.services import audit_logger
from src.automation.state import get_state

router = APIRouter(prefix="/api/audit-logs", tags=["Audit"])


@router.get(
    "",
    response_model=AuditLogListResponse,
    summary="List audit log entries",
    description="Read-only view of the append-only audit trail, newest first.",
    operation_id="list_audit_logs",
)
def list_audit_logs(
    request: Request,
    account_id: Optional[str] = Query(default=None),
    entity_type: Optional[str] = Query(default=None),
    entity_id: Optional[str] = Query(default=None),
    action: Optional[str] = Query(default=None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0, le=100000),
) -> AuditLogListResponse:
    """List audit entries with filters and pagination."""
    filters = AuditLogsQuery(
        account_id=account_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        limit=limit,
        offset=offset,
    )
    items, total = audit_logger.list_entries(get_state(request.app), filters)
    return AuditLogListResponse(items=items, total=total)

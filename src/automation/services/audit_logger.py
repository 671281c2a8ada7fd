"""
Append-only audit trail.

Entries are only ever inserted; this module deliberately exposes no update or delete.
Callers inside a MongoManager.transaction() pass the session so the entry commits with
the mutation it describes.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId

from src.automation.schemas.audit import AuditLogOut, AuditLogsQuery
from src.automation.schemas.common import as_utc, utc_now

logger = logging.getLogger(__name__)


def snapshot(value: Any) -> Any:
    """Copy a document into an audit-safe shape (ObjectIds as strings, `_id` exposed as `id`)."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for k, v in value.items():
            out["id" if k == "_id" else k] = snapshot(v)
        return out
    if isinstance(value, (list, tuple)):
        return [snapshot(v) for v in value]
    return value


# PUBLIC_INTERFACE
def record(
    state,
    user_id: Optional[str],
    account_id: Optional[str],
    entity_type: str,
    entity_id: str,
    action: str,
    before: Optional[Any] = None,
    after: Optional[Any] = None,
    *,
    session=None,
    now: Optional[datetime] = None,
) -> str:
    """Append one audit entry and return its id."""
    doc = {
        "userId": user_id,
        "accountId": account_id,
        "entityType": entity_type,
        "entityId": str(entity_id),
        "action": action,
        "before": snapshot(before) if before is not None else None,
        "after": snapshot(after) if after is not None else None,
        "createdAt": now or utc_now(),
    }
    res = state.mongo.collections().audit_logs.insert_one(doc, session=session)
    logger.debug("Audit %s %s/%s by user=%s", action, entity_type, entity_id, user_id)
    return str(res.inserted_id)


def _doc_to_out(doc: dict) -> AuditLogOut:
    return AuditLogOut(
        id=str(doc.get("_id")),
        user_id=doc.get("userId"),
        account_id=doc.get("accountId"),
        entity_type=doc["entityType"],
        entity_id=doc["entityId"],
        action=doc["action"],
        before=doc.get("before"),
        after=doc.get("after"),
        created_at=as_utc(doc["createdAt"]),
    )


# PUBLIC_INTERFACE
def list_entries(state, filters: AuditLogsQuery) -> Tuple[List[AuditLogOut], int]:
    """List audit entries newest first. Returns (items, total_matching)."""
    query: Dict[str, Any] = {}
    if filters.account_id:
        query["accountId"] = filters.account_id
    if filters.entity_type:
        query["entityType"] = filters.entity_type
    if filters.entity_id:
        query["entityId"] = filters.entity_id
    if filters.action:
        query["action"] = filters.action

    cols = state.mongo.collections()
    total = int(cols.audit_logs.count_documents(query))
    docs = list(
        cols.audit_logs.find(query)
        .sort("createdAt", -1)
        .skip(int(filters.offset))
        .limit(int(filters.limit))
    )
    return [_doc_to_out(d) for d in docs], total

from __future__ import annotations

import logging
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId

from src.automation.schemas.alerts import (
    AlertOut,
    AlertRuleCreate,
    AlertRuleOut,
    AlertRuleTestResponse,
    AlertRuleTestResult,
    AlertRuleTestSummary,
    AlertRuleUpdate,
    AlertsQuery,
    AlertStatsResponse,
    AlertStatsRow,
    AlertStatsSummary,
    AlertTrendPoint,
    BulkResolveRequest,
)
from src.automation.schemas.common import BulkItemResult, BulkResponse, BulkSummary, as_utc, utc_now
from src.automation.services import audit_logger
from src.automation.services.alert_monitor import evaluate_alert_rule
from src.automation.services.errors import AutomationError, ConflictError, NotFoundError

logger = logging.getLogger(__name__)


def _oid(value: str, what: str) -> ObjectId:
    try:
        return ObjectId(value)
    except Exception:
        raise NotFoundError(f"{what} not found", meta={"id": value})


def _rule_doc_to_out(doc: dict, alert_count: Optional[int] = None) -> AlertRuleOut:
    return AlertRuleOut(
        id=str(doc["_id"]),
        account_id=doc.get("accountId"),
        name=doc["name"],
        alert_type=doc["alertType"],
        entity_type=doc["entityType"],
        condition=doc["condition"],
        severity=doc.get("severity", "medium"),
        notification_channels=doc.get("notificationChannels") or [],
        status=doc["status"],
        alert_count=alert_count,
        created_at=as_utc(doc["createdAt"]),
        updated_at=as_utc(doc["updatedAt"]),
    )


def _alert_doc_to_out(doc: dict, rule_name: Optional[str] = None) -> AlertOut:
    return AlertOut(
        id=str(doc["_id"]),
        rule_id=doc["ruleId"],
        rule_name=rule_name,
        account_id=doc.get("accountId"),
        alert_type=doc["alertType"],
        entity_type=doc["entityType"],
        entity_id=doc["entityId"],
        entity_name=doc.get("entityName"),
        message=doc.get("message", ""),
        severity=doc["severity"],
        status=doc["status"],
        metrics=doc.get("metrics") or {},
        triggered_at=as_utc(doc["triggeredAt"]),
        resolved_at=as_utc(doc.get("resolvedAt")),
        resolution_note=doc.get("resolutionNote"),
        resolved_by=doc.get("resolvedBy"),
    )


def _load_alert_rule(state, rule_id: str, *, session=None) -> dict:
    doc = state.mongo.collections().alert_rules.find_one({"_id": _oid(rule_id, "alert rule")}, session=session)
    if doc is None:
        raise NotFoundError("alert rule not found", meta={"rule_id": rule_id})
    return doc


# ---- Alert rules ----


# PUBLIC_INTERFACE
def list_alert_rules(
    state, *, account_id: Optional[str] = None, status: Optional[str] = None, limit: int = 50, offset: int = 0
) -> Tuple[List[AlertRuleOut], int]:
    """List alert rules newest first, each with the number of alerts it has raised."""
    q: Dict[str, Any] = {}
    if account_id:
        q["accountId"] = account_id
    if status:
        q["status"] = status

    cols = state.mongo.collections()
    total = int(cols.alert_rules.count_documents(q))
    docs = list(cols.alert_rules.find(q).sort([("createdAt", -1), ("_id", -1)]).skip(int(offset)).limit(int(limit)))
    items = [_rule_doc_to_out(d, alert_count=int(cols.alerts.count_documents({"ruleId": str(d["_id"])}))) for d in docs]
    return items, total


# PUBLIC_INTERFACE
def create_alert_rule(state, payload: AlertRuleCreate, *, user_id: Optional[str] = None) -> AlertRuleOut:
    """Create an alert rule and its `create` audit entry."""
    now = utc_now()
    doc = {
        "accountId": payload.account_id,
        "name": payload.name.strip(),
        "alertType": payload.alert_type,
        "entityType": payload.entity_type.value,
        "condition": payload.condition.model_dump(exclude_none=True),
        "severity": payload.severity.value,
        "notificationChannels": [c.model_dump() for c in payload.notification_channels],
        "status": payload.status,
        "createdBy": user_id,
        "createdAt": now,
        "updatedAt": now,
    }
    cols = state.mongo.collections()
    with state.mongo.transaction() as session:
        res = cols.alert_rules.insert_one(doc, session=session)
        doc["_id"] = res.inserted_id
        audit_logger.record(
            state, user_id, payload.account_id, "alert_rule", str(res.inserted_id), "create", after=doc, session=session
        )
    return _rule_doc_to_out(doc)


# PUBLIC_INTERFACE
def get_alert_rule(state, rule_id: str) -> AlertRuleOut:
    doc = _load_alert_rule(state, rule_id)
    count = int(state.mongo.collections().alerts.count_documents({"ruleId": str(doc["_id"])}))
    return _rule_doc_to_out(doc, alert_count=count)


def _apply_alert_rule_update(existing: dict, payload: AlertRuleUpdate, now) -> dict:
    updated = dict(existing)

    if payload.name is not None:
        updated["name"] = payload.name.strip()
    if payload.condition is not None:
        updated["condition"] = payload.condition.model_dump(exclude_none=True)
    if payload.severity is not None:
        # Already-open alerts keep the severity they were raised with.
        updated["severity"] = payload.severity.value
    if payload.notification_channels is not None:
        updated["notificationChannels"] = [c.model_dump() for c in payload.notification_channels]
    if payload.status is not None:
        updated["status"] = payload.status

    updated["updatedAt"] = now
    return updated


# PUBLIC_INTERFACE
def update_alert_rule(state, rule_id: str, payload: AlertRuleUpdate, *, user_id: Optional[str] = None) -> AlertRuleOut:
    """Partial update of an alert rule, audited with before/after."""
    now = utc_now()
    cols = state.mongo.collections()
    with state.mongo.transaction() as session:
        existing = _load_alert_rule(state, rule_id, session=session)
        updated = _apply_alert_rule_update(existing, payload, now)
        cols.alert_rules.replace_one({"_id": existing["_id"]}, updated, session=session)
        audit_logger.record(
            state,
            user_id,
            existing.get("accountId"),
            "alert_rule",
            rule_id,
            "update",
            before=existing,
            after=updated,
            session=session,
            now=now,
        )
    return _rule_doc_to_out(updated)


# PUBLIC_INTERFACE
def delete_alert_rule(state, rule_id: str, *, user_id: Optional[str] = None) -> None:
    """Delete an alert rule; alerts it already raised are kept."""
    cols = state.mongo.collections()
    with state.mongo.transaction() as session:
        existing = _load_alert_rule(state, rule_id, session=session)
        cols.alert_rules.delete_one({"_id": existing["_id"]}, session=session)
        audit_logger.record(
            state, user_id, existing.get("accountId"), "alert_rule", rule_id, "delete", before=existing, session=session
        )


# PUBLIC_INTERFACE
def test_alert_rule(state, rule_id: str) -> AlertRuleTestResponse:
    """Evaluate an alert rule over a sample of its entities without opening any alert."""
    doc = _load_alert_rule(state, rule_id)
    entities = state.entity_registry.list_entities(
        doc["entityType"], doc.get("accountId"), state.config.dry_run_sample_limit
    )
    results: List[AlertRuleTestResult] = []
    for entity in entities:
        result, snapshot = evaluate_alert_rule(state, doc, entity)
        results.append(
            AlertRuleTestResult(
                entity_id=entity["id"],
                entity_name=entity.get("name"),
                entity_type=doc["entityType"],
                would_trigger=result.would_trigger,
                matched_predicates=result.matched_predicates,
                skipped_predicates=result.skipped_predicates,
                current_metrics=snapshot.as_dict(),
                alert_type=doc["alertType"],
            )
        )
    return AlertRuleTestResponse(
        rule=_rule_doc_to_out(doc),
        test_results=results,
        summary=AlertRuleTestSummary(
            entities_tested=len(results), alerts_triggered=sum(1 for r in results if r.would_trigger)
        ),
    )


# ---- Alerts ----


# PUBLIC_INTERFACE
def list_alerts(state, filters: AlertsQuery) -> Tuple[List[AlertOut], int]:
    """List alerts with filters and pagination (most recently triggered first)."""
    q: Dict[str, Any] = {}
    if filters.account_id:
        q["accountId"] = filters.account_id
    if filters.rule_id:
        q["ruleId"] = filters.rule_id
    if filters.status:
        q["status"] = filters.status
    if filters.severity:
        q["severity"] = filters.severity.value

    cols = state.mongo.collections()
    total = int(cols.alerts.count_documents(q))
    docs = list(
        cols.alerts.find(q).sort([("triggeredAt", -1), ("_id", -1)]).skip(int(filters.offset)).limit(int(filters.limit))
    )
    return [_alert_doc_to_out(d) for d in docs], total


# PUBLIC_INTERFACE
def get_alert(state, alert_id: str) -> AlertOut:
    cols = state.mongo.collections()
    doc = cols.alerts.find_one({"_id": _oid(alert_id, "alert")})
    if doc is None:
        raise NotFoundError("alert not found", meta={"alert_id": alert_id})
    rule_name = None
    try:
        rule = cols.alert_rules.find_one({"_id": ObjectId(doc["ruleId"])}, projection={"name": 1})
        rule_name = (rule or {}).get("name")
    except Exception:
        rule_name = None
    return _alert_doc_to_out(doc, rule_name=rule_name)


# PUBLIC_INTERFACE
def resolve_alert(
    state, alert_id: str, resolution_note: Optional[str] = None, *, user_id: Optional[str] = None
) -> AlertOut:
    """
    open -> resolved. NotFoundError for an unknown id, ConflictError when already resolved.

    The transition is a conditional update on status=open, so two concurrent resolves
    produce exactly one success.
    """
    oid = _oid(alert_id, "alert")
    now = utc_now()
    cols = state.mongo.collections()
    with state.mongo.transaction() as session:
        existing = cols.alerts.find_one({"_id": oid}, session=session)
        if existing is None:
            raise NotFoundError("alert not found", meta={"alert_id": alert_id})
        if existing.get("status") != "open":
            raise ConflictError("alert already resolved", meta={"alert_id": alert_id})

        changes = {
            "status": "resolved",
            "resolvedAt": now,
            "resolutionNote": resolution_note,
            "resolvedBy": user_id,
            "updatedAt": now,
        }
        res = cols.alerts.update_one({"_id": oid, "status": "open"}, {"$set": changes}, session=session)
        if res.modified_count == 0:
            raise ConflictError("alert already resolved", meta={"alert_id": alert_id})
        audit_logger.record(
            state,
            user_id,
            existing.get("accountId"),
            "alert",
            alert_id,
            "resolve",
            before={"status": existing.get("status")},
            after={"status": "resolved", "resolution_note": resolution_note, "resolved_by": user_id},
            session=session,
            now=now,
        )
    return _alert_doc_to_out({**existing, **changes})


# PUBLIC_INTERFACE
def bulk_resolve(state, payload: BulkResolveRequest, *, user_id: Optional[str] = None) -> BulkResponse:
    """Resolve each id independently; the per-id outcomes always add up to the number requested."""
    results: List[BulkItemResult] = []
    for alert_id in payload.alert_ids:
        try:
            resolve_alert(state, alert_id, payload.resolution_note, user_id=user_id)
            results.append(BulkItemResult(id=alert_id, status="success"))
        except AutomationError as exc:
            results.append(BulkItemResult(id=alert_id, status="error", message=exc.detail, code=exc.code))
    success = sum(1 for r in results if r.status == "success")
    return BulkResponse(results=results, summary=BulkSummary(total=len(results), success=success, errors=len(results) - success))


# PUBLIC_INTERFACE
def alert_stats(state, account_id: str, days: int = 30, *, now=None) -> AlertStatsResponse:
    """Counts per (alert_type, severity) with resolved counts, plus a per-day trend, over the last N days."""
    now = now or utc_now()
    start = now - timedelta(days=int(days))
    docs = list(
        state.mongo.collections().alerts.find(
            {"accountId": account_id, "triggeredAt": {"$gte": start}},
            projection={"alertType": 1, "severity": 1, "status": 1, "triggeredAt": 1},
        )
    )

    counts: Counter = Counter()
    resolved: Counter = Counter()
    per_day: Counter = Counter()
    for d in docs:
        key = (d["alertType"], d["severity"])
        counts[key] += 1
        if d.get("status") == "resolved":
            resolved[key] += 1
        per_day[as_utc(d["triggeredAt"]).date().isoformat()] += 1

    rows = [
        AlertStatsRow(alert_type=k[0], severity=k[1], count=n, resolved_count=resolved[k])
        for k, n in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    ]
    return AlertStatsResponse(
        account_id=account_id,
        period_days=int(days),
        statistics=rows,
        trend=[AlertTrendPoint(date=day, alert_count=n) for day, n in sorted(per_day.items())],
        summary=AlertStatsSummary(total_alerts=len(docs), resolved_alerts=sum(resolved.values())),
    )

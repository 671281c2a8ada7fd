from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from src.automation.schemas.common import BulkItemResult, BulkResponse, BulkSummary, as_utc, utc_now
from src.automation.schemas.conditions import dump_actions
from src.automation.schemas.rules import (
    EntityOutcome,
    JobOut,
    RuleBulkRequest,
    RuleCloneRequest,
    RuleCreate,
    RuleOut,
    RuleTestResponse,
    RuleUpdate,
)
from src.automation.services import audit_logger, execution_engine
from src.automation.services.errors import AutomationError, NotFoundError
from src.automation.services.scheduler import compute_next_run, validate_schedule

logger = logging.getLogger(__name__)

_BULK_STATUS = {"pause": "paused", "enable": "active", "archive": "archived"}


def _doc_to_out(doc: dict, execution_count: Optional[int] = None) -> RuleOut:
    return RuleOut(
        id=str(doc["_id"]),
        account_id=doc.get("accountId"),
        name=doc["name"],
        scope=doc["scope"],
        condition=doc.get("condition") or {},
        actions=doc.get("actions") or [],
        schedule=doc.get("schedule"),
        status=doc["status"],
        is_template=doc.get("accountId") is None,
        last_run_at=as_utc(doc.get("lastRunAt")),
        next_run_at=as_utc(doc.get("nextRunAt")),
        execution_count=execution_count,
        created_at=as_utc(doc["createdAt"]),
        updated_at=as_utc(doc["updatedAt"]),
    )


def _doc_to_job_out(doc: dict) -> JobOut:
    return JobOut(
        id=str(doc["_id"]),
        rule_id=doc["ruleId"],
        account_id=doc.get("accountId"),
        entity_ids=list(doc.get("entityIds") or []),
        trigger=doc["trigger"],
        user_id=doc.get("userId"),
        status=doc["status"],
        error_message=doc.get("errorMessage"),
        entity_results=[EntityOutcome.model_validate(r) for r in doc.get("entityResults") or []],
        scheduled_at=as_utc(doc.get("scheduledAt")),
        started_at=as_utc(doc.get("startedAt")),
        completed_at=as_utc(doc.get("completedAt")),
        created_at=as_utc(doc["createdAt"]),
    )


def _next_run(schedule: Optional[str], now) -> Optional[Any]:
    return compute_next_run(schedule, now) if schedule else None


# PUBLIC_INTERFACE
def list_rules(
    state,
    *,
    account_id: Optional[str] = None,
    status: Optional[str] = None,
    scope: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[RuleOut], int]:
    """List rules; an account filter also returns global templates. Templates sort first, then by name."""
    q: Dict[str, Any] = {}
    if account_id:
        q["$or"] = [{"accountId": account_id}, {"accountId": None}]
    if status:
        q["status"] = status
    if scope:
        q["scope"] = scope

    cols = state.mongo.collections()
    total = int(cols.rules.count_documents(q))
    docs = list(
        cols.rules.find(q).sort([("isTemplate", -1), ("name", 1), ("_id", 1)]).skip(int(offset)).limit(int(limit))
    )
    return [_doc_to_out(d) for d in docs], total


# PUBLIC_INTERFACE
def list_templates(state) -> List[RuleOut]:
    """Global rules (no account) that can be cloned into an account."""
    docs = state.mongo.collections().rules.find({"accountId": None}).sort("name", 1)
    return [_doc_to_out(d) for d in docs]


# PUBLIC_INTERFACE
def create_rule(state, payload: RuleCreate, *, user_id: Optional[str] = None) -> RuleOut:
    """Insert a rule (next_run_at computed from its schedule) and its `create` audit entry."""
    schedule = validate_schedule(payload.schedule)
    now = utc_now()
    doc = {
        "accountId": payload.account_id,
        "isTemplate": payload.account_id is None,
        "name": payload.name.strip(),
        "scope": payload.scope.value,
        "condition": payload.condition.model_dump(exclude_none=True),
        "actions": dump_actions(payload.actions),
        "schedule": schedule,
        "status": payload.status,
        "lastRunAt": None,
        "nextRunAt": _next_run(schedule, now),
        "createdBy": user_id,
        "createdAt": now,
        "updatedAt": now,
    }
    cols = state.mongo.collections()
    with state.mongo.transaction() as session:
        res = cols.rules.insert_one(doc, session=session)
        doc["_id"] = res.inserted_id
        audit_logger.record(
            state, user_id, payload.account_id, "rule", str(res.inserted_id), "create", after=doc, session=session, now=now
        )
    logger.info("Created rule=%s account=%s", doc["_id"], payload.account_id)
    return _doc_to_out(doc)


# PUBLIC_INTERFACE
def get_rule(state, rule_id: str) -> RuleOut:
    """Fetch a rule with its execution_count (number of jobs ever created for it)."""
    doc = execution_engine.load_rule(state, rule_id)
    return _doc_to_out(doc, execution_count=state.job_queue.count_for_rule(str(doc["_id"])))


def _apply_rule_update(existing: dict, payload: RuleUpdate, now) -> dict:
    updated = dict(existing)

    if payload.name is not None:
        updated["name"] = payload.name.strip()
    if payload.condition is not None:
        updated["condition"] = payload.condition.model_dump(exclude_none=True)
    if payload.actions is not None:
        updated["actions"] = dump_actions(payload.actions)
    if payload.status is not None:
        updated["status"] = payload.status

    # NOTE: schedule explicitly set to None clears it.
    if payload.schedule is not None or "schedule" in payload.model_fields_set:
        updated["schedule"] = validate_schedule(payload.schedule)

    updated["nextRunAt"] = _next_run(updated.get("schedule"), now)
    updated["updatedAt"] = now
    return updated


# PUBLIC_INTERFACE
def update_rule(state, rule_id: str, payload: RuleUpdate, *, user_id: Optional[str] = None) -> RuleOut:
    """Partial update; next_run_at is recomputed whenever a schedule is present. Audited with before/after."""
    now = utc_now()
    cols = state.mongo.collections()
    with state.mongo.transaction() as session:
        existing = execution_engine.load_rule(state, rule_id, session=session)
        updated = _apply_rule_update(existing, payload, now)
        cols.rules.replace_one({"_id": existing["_id"]}, updated, session=session)
        audit_logger.record(
            state,
            user_id,
            existing.get("accountId"),
            "rule",
            rule_id,
            "update",
            before=existing,
            after=updated,
            session=session,
            now=now,
        )
    return _doc_to_out(updated)


# PUBLIC_INTERFACE
def delete_rule(state, rule_id: str, *, user_id: Optional[str] = None) -> None:
    """Delete a rule. Its job history is kept; an in-flight job fails when the worker cannot load the rule."""
    cols = state.mongo.collections()
    with state.mongo.transaction() as session:
        existing = execution_engine.load_rule(state, rule_id, session=session)
        cols.rules.delete_one({"_id": existing["_id"]}, session=session)
        audit_logger.record(
            state, user_id, existing.get("accountId"), "rule", rule_id, "delete", before=existing, session=session
        )
    logger.info("Deleted rule=%s", rule_id)


# PUBLIC_INTERFACE
def clone_rule(state, template_id: str, payload: RuleCloneRequest, *, user_id: Optional[str] = None) -> RuleOut:
    """Copy a template (or any rule) into an account as a new active rule."""
    now = utc_now()
    cols = state.mongo.collections()
    with state.mongo.transaction() as session:
        template = execution_engine.load_rule(state, template_id, session=session)
        doc = {
            "accountId": payload.account_id,
            "isTemplate": False,
            "name": payload.name.strip(),
            "scope": template["scope"],
            "condition": dict(template.get("condition") or {}),
            "actions": list(template.get("actions") or []),
            "schedule": template.get("schedule"),
            "status": "active",
            "lastRunAt": None,
            "nextRunAt": _next_run(template.get("schedule"), now),
            "createdBy": user_id,
            "createdAt": now,
            "updatedAt": now,
        }
        res = cols.rules.insert_one(doc, session=session)
        doc["_id"] = res.inserted_id
        audit_logger.record(
            state,
            user_id,
            payload.account_id,
            "rule",
            str(res.inserted_id),
            "clone",
            after={**doc, "cloned_from": template_id},
            session=session,
            now=now,
        )
    return _doc_to_out(doc)


def _bulk_one(state, rule_id: str, operation: str, user_id: Optional[str]) -> None:
    if operation == "delete":
        delete_rule(state, rule_id, user_id=user_id)
        return
    now = utc_now()
    cols = state.mongo.collections()
    with state.mongo.transaction() as session:
        existing = execution_engine.load_rule(state, rule_id, session=session)
        changes: Dict[str, Any] = {"status": _BULK_STATUS[operation], "updatedAt": now}
        if operation == "enable":
            changes["nextRunAt"] = _next_run(existing.get("schedule"), now)
        cols.rules.update_one({"_id": existing["_id"]}, {"$set": changes}, session=session)
        audit_logger.record(
            state,
            user_id,
            existing.get("accountId"),
            "rule",
            rule_id,
            operation,
            before=existing,
            after={**existing, **changes},
            session=session,
            now=now,
        )


# PUBLIC_INTERFACE
def bulk_update(state, payload: RuleBulkRequest, *, user_id: Optional[str] = None) -> BulkResponse:
    """Apply pause/enable/archive/delete to each id independently; one failure never rolls back the others."""
    results: List[BulkItemResult] = []
    for rule_id in payload.rule_ids:
        try:
            _bulk_one(state, rule_id, payload.operation, user_id)
            results.append(BulkItemResult(id=rule_id, status="success"))
        except AutomationError as exc:
            results.append(BulkItemResult(id=rule_id, status="error", message=exc.detail, code=exc.code))
    success = sum(1 for r in results if r.status == "success")
    return BulkResponse(results=results, summary=BulkSummary(total=len(results), success=success, errors=len(results) - success))


# PUBLIC_INTERFACE
def test_rule(state, rule_id: str, entity_ids: Optional[List[str]] = None) -> RuleTestResponse:
    """Dry-run a stored rule against explicit or sampled entities."""
    doc = execution_engine.load_rule(state, rule_id)
    results, summary = execution_engine.dry_run(state, doc, entity_ids)
    return RuleTestResponse(rule=_doc_to_out(doc), test_results=results, summary=summary)


# PUBLIC_INTERFACE
def rule_history(state, rule_id: str, *, limit: int = 20, offset: int = 0) -> Tuple[List[JobOut], int]:
    """Execution history (jobs) for a rule, newest first."""
    doc = execution_engine.load_rule(state, rule_id)
    docs, total = state.job_queue.history(str(doc["_id"]), limit=limit, offset=offset)
    return [_doc_to_job_out(d) for d in docs], total


# PUBLIC_INTERFACE
def get_job(state, job_id: str) -> JobOut:
    doc = state.job_queue.get(job_id)
    if doc is None:
        raise NotFoundError("job not found", meta={"job_id": job_id})
    return _doc_to_job_out(doc)


"""
Rule execution: side-effect-free dry runs and queued real executions.

Real execution is split in two halves. ``enqueue_rule`` (manual trigger or scheduler tick)
records one pending job and stamps the rule's last_run_at. The job worker later drains the
queue with ``process_job``: per entity it re-evaluates the condition, applies the actions in
declared order and writes one audit entry. One entity failing never stops the others.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import OperationFailure

from src.automation.schemas.common import utc_now
from src.automation.schemas.conditions import ActionSpec, RuleCondition, dump_actions, parse_actions
from src.automation.schemas.rules import DryRunSummary, EntityTestResult, RuleExecuteRequest, RuleExecuteResponse
from src.automation.services import audit_logger
from src.automation.services.condition_evaluator import MetricsSnapshot, evaluate
from src.automation.services.errors import AutomationError, ConflictError, NotFoundError
from src.automation.services.scheduler import reschedule_after_run
from src.automation.services.work_queue import TRIGGER_MANUAL, TRIGGER_SCHEDULED, WorkItem, is_write_conflict

logger = logging.getLogger(__name__)

OUTCOME_APPLIED = "applied"
OUTCOME_NOT_TRIGGERED = "not_triggered"
OUTCOME_FAILED = "failed"


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking pymongo calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


def _rule_oid(rule_id: str) -> ObjectId:
    try:
        return ObjectId(rule_id)
    except Exception:
        raise NotFoundError("rule not found", meta={"rule_id": rule_id})


# PUBLIC_INTERFACE
def load_rule(state, rule_id: str, *, session=None) -> dict:
    """Fetch a stored rule document or raise NotFoundError."""
    doc = state.mongo.collections().rules.find_one({"_id": _rule_oid(rule_id)}, session=session)
    if doc is None:
        raise NotFoundError("rule not found", meta={"rule_id": rule_id})
    return doc


def _rule_condition(rule_doc: dict) -> RuleCondition:
    return RuleCondition.model_validate(rule_doc.get("condition") or {})


def resolve_targets(state, rule_doc: dict, entity_ids: Optional[List[str]]) -> List[Dict[str, Any]]:
    """Explicit ids (looked up for names), or a bounded sample of the rule's scope."""
    scope = rule_doc["scope"]
    if entity_ids:
        targets: List[Dict[str, Any]] = []
        for entity_id in entity_ids:
            entity = state.entity_registry.get_entity(scope, entity_id)
            targets.append(entity or {"id": entity_id, "name": None, "entity_type": scope})
        return targets
    return state.entity_registry.list_entities(scope, rule_doc.get("accountId"), state.config.dry_run_sample_limit)


def _snapshot_for(state, scope: str, entity_id: str, condition: RuleCondition) -> MetricsSnapshot:
    snapshot = state.metrics_provider.get_metrics(scope, entity_id, window_days=condition.window_days)
    return snapshot if snapshot is not None else MetricsSnapshot()


# PUBLIC_INTERFACE
def dry_run(
    state, rule_doc: dict, entity_ids: Optional[List[str]] = None
) -> Tuple[List[EntityTestResult], DryRunSummary]:
    """
    Evaluate a rule against explicit or sampled entities and report what would happen.

    Reads only: no job, no audit entry, no alert, and the rule's last_run_at is untouched,
    so any number of dry runs may run concurrently.
    """
    condition = _rule_condition(rule_doc)
    actions = parse_actions(rule_doc.get("actions"))
    simulated = dump_actions(actions)
    scope = rule_doc["scope"]

    results: List[EntityTestResult] = []
    for entity in resolve_targets(state, rule_doc, entity_ids):
        snapshot = _snapshot_for(state, scope, entity["id"], condition)
        result = evaluate(condition, snapshot)
        results.append(
            EntityTestResult(
                entity_id=entity["id"],
                entity_name=entity.get("name"),
                entity_type=entity.get("entity_type") or scope,
                would_trigger=result.would_trigger,
                matched_predicates=result.matched_predicates,
                skipped_predicates=result.skipped_predicates,
                simulated_actions=list(simulated) if result.would_trigger else [],
                current_metrics=snapshot.as_dict(),
            )
        )

    affected = [r for r in results if r.would_trigger]
    summary = DryRunSummary(
        entities_tested=len(results),
        entities_affected=len(affected),
        total_actions=sum(len(r.simulated_actions) for r in affected),
    )
    return results, summary


# PUBLIC_INTERFACE
def enqueue_rule(
    state,
    rule_id: str,
    *,
    trigger: str,
    now: Optional[datetime] = None,
    entity_ids: Optional[List[str]] = None,
    user_id: Optional[str] = None,
) -> dict:
    """
    Create the pending job for a real execution and stamp last_run_at.

    The rule read, the in-flight check and the job insert happen in one transactional
    boundary; a second trigger while a job is pending or running raises ConflictError,
    including when a concurrent transaction wins the write conflict.
    next_run_at is never touched here.
    """
    now = now or utc_now()
    cols = state.mongo.collections()
    try:
        with state.mongo.transaction() as session:
            rule = load_rule(state, rule_id, session=session)
            if rule.get("status") == "archived":
                raise ConflictError("archived rules cannot be executed", meta={"rule_id": rule_id})
            if rule.get("accountId") is None:
                raise ConflictError("template rules must be cloned into an account first", meta={"rule_id": rule_id})

            item = WorkItem(
                rule_id=str(rule["_id"]),
                account_id=rule.get("accountId"),
                trigger=trigger,
                entity_ids=list(entity_ids or []),
                user_id=user_id,
            )
            job = state.job_queue.enqueue(item, now=now, session=session)
            cols.rules.update_one({"_id": rule["_id"]}, {"$set": {"lastRunAt": now}}, session=session)
    except OperationFailure as exc:
        if not is_write_conflict(exc):
            raise
        raise ConflictError("rule already has an execution in flight", meta={"rule_id": rule_id}) from exc
    return job


# PUBLIC_INTERFACE
def execute_rule(
    state, rule_id: str, payload: RuleExecuteRequest, *, user_id: Optional[str] = None
) -> RuleExecuteResponse:
    """Manual trigger: return simulated results for a dry run, otherwise queue a job."""
    if payload.dry_run:
        rule = load_rule(state, rule_id)
        results, summary = dry_run(state, rule, payload.entity_ids)
        return RuleExecuteResponse(
            dry_run=True,
            rule_id=rule_id,
            results=results,
            summary=summary,
            message="Dry run completed. No changes were made.",
        )

    job = enqueue_rule(state, rule_id, trigger=TRIGGER_MANUAL, entity_ids=payload.entity_ids, user_id=user_id)
    return RuleExecuteResponse(
        dry_run=False,
        rule_id=rule_id,
        job_id=str(job["_id"]),
        message="Rule execution queued. Check the rule history for results.",
    )


def _apply_actions(
    state, scope: str, entity_id: str, actions: List[ActionSpec]
) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """Apply actions in order; stop at the first failure and keep what already succeeded."""
    applied: List[Dict[str, Any]] = []
    for action in actions:
        try:
            outcome = state.action_executor.apply_action(scope, entity_id, action)
        except AutomationError as exc:
            return applied, f"{action.type}: {exc.detail}"
        except Exception as exc:
            logger.exception("Action %s crashed on %s/%s", action.type, scope, entity_id)
            return applied, f"{action.type}: {exc}"
        applied.append(outcome.as_dict())
    return applied, None


def _execute_entity(
    state, job: dict, rule: dict, condition: RuleCondition, actions: List[ActionSpec], entity: Dict[str, Any], now
) -> Dict[str, Any]:
    scope = rule["scope"]
    entity_id = entity["id"]
    try:
        result = evaluate(condition, _snapshot_for(state, scope, entity_id, condition))
    except AutomationError as exc:
        return {"entity_id": entity_id, "status": OUTCOME_FAILED, "would_trigger": None, "error": exc.detail}

    if not result.would_trigger:
        return {"entity_id": entity_id, "status": OUTCOME_NOT_TRIGGERED, "would_trigger": False}

    before = state.entity_registry.get_entity(scope, entity_id)
    applied, error = _apply_actions(state, scope, entity_id, actions)
    after = state.entity_registry.get_entity(scope, entity_id)

    audit_logger.record(
        state,
        job.get("userId"),
        job.get("accountId"),
        scope,
        entity_id,
        "execute_rule",
        before={"entity": before},
        after={
            "entity": after,
            "rule_id": job["ruleId"],
            "job_id": str(job["_id"]),
            "actions_applied": applied,
            "error": error,
        },
        now=now,
    )
    return {
        "entity_id": entity_id,
        "status": OUTCOME_FAILED if error else OUTCOME_APPLIED,
        "would_trigger": True,
        "actions_applied": applied,
        "error": error,
    }


# PUBLIC_INTERFACE
def process_job(state, job: dict, *, now: Optional[datetime] = None) -> dict:
    """
    Run one claimed (running) job to its terminal state and return the final job document.

    The job is failed when the rule cannot be loaded or any entity failed; per-entity outcomes
    are kept in entityResults so a retry can target only the failed entities. Actions already
    applied to an entity are not rolled back when a later one fails.
    """
    rule_id = job["ruleId"]
    entity_results: List[Dict[str, Any]] = []
    error_message: Optional[str] = None

    try:
        rule = load_rule(state, rule_id)
        condition = _rule_condition(rule)
        actions = parse_actions(rule.get("actions"))
        targets = resolve_targets(state, rule, job.get("entityIds"))
    except (AutomationError, PydanticValidationError) as exc:
        error_message = getattr(exc, "detail", None) or str(exc)
        logger.warning("Job %s for rule=%s could not start: %s", job["_id"], rule_id, error_message)
    else:
        for entity in targets:
            try:
                entity_results.append(_execute_entity(state, job, rule, condition, actions, entity, now))
            except Exception as exc:
                logger.exception("Job %s failed on entity=%s", job["_id"], entity.get("id"))
                entity_results.append(
                    {"entity_id": entity.get("id"), "status": OUTCOME_FAILED, "would_trigger": None, "error": str(exc)}
                )
        failures = [r for r in entity_results if r["status"] == OUTCOME_FAILED]
        if failures:
            error_message = f"{len(failures)} of {len(entity_results)} entities failed"

    completed_at = now or utc_now()
    state.job_queue.complete(
        job["_id"],
        failed=error_message is not None,
        entity_results=entity_results,
        error_message=error_message,
        now=completed_at,
    )
    logger.info(
        "Job %s rule=%s finished status=%s entities=%s",
        job["_id"],
        rule_id,
        "failed" if error_message else "completed",
        len(entity_results),
    )

    if job.get("trigger") == TRIGGER_SCHEDULED:
        reschedule_after_run(state, rule_id, completed_at)
    return state.job_queue.get(str(job["_id"])) or job


# PUBLIC_INTERFACE
def run_pending_jobs(state, *, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[str]:
    """Drain up to ``limit`` pending jobs (oldest first). Returns the ids processed."""
    limit = int(limit or state.config.job_worker_batch_size)
    processed: List[str] = []
    for _ in range(limit):
        job = state.job_queue.dequeue(now=now or utc_now())
        if job is None:
            break
        try:
            process_job(state, job, now=now)
        except Exception:
            logger.exception("Job %s crashed; marking failed", job["_id"])
            state.job_queue.complete(
                job["_id"], failed=True, entity_results=[], error_message="internal error", now=now or utc_now()
            )
        processed.append(str(job["_id"]))
    return processed


# PUBLIC_INTERFACE
async def job_worker_loop(state, shutdown_event: asyncio.Event) -> None:
    """Background loop draining the job queue on an interval."""
    interval = max(1, int(state.config.job_worker_interval_sec))
    logger.info("Job worker started (interval=%ss batch=%s)", interval, state.config.job_worker_batch_size)

    while not shutdown_event.is_set():
        tick_started = datetime.now(timezone.utc)
        try:
            await _run_in_thread(run_pending_jobs, state)
        except Exception:
            logger.exception("Job worker iteration failed")

        elapsed = (datetime.now(timezone.utc) - tick_started).total_seconds()
        sleep_for = max(0.1, interval - elapsed)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=sleep_for)
        except asyncio.TimeoutError:
            pass

    logger.info("Job worker stopped")

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError

from src.automation.schemas.common import utc_now
from src.automation.schemas.conditions import AlertCondition
from src.automation.services import audit_logger
from src.automation.services.condition_evaluator import EvaluationResult, MetricsSnapshot, evaluate
from src.automation.services.notifications import NotificationMessage
from src.automation.state import AppState

logger = logging.getLogger(__name__)


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking pymongo calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


def _fmt(v: Optional[float]) -> str:
    if v is None:
        return "n/a"
    return f"{v:.4g}"


# PUBLIC_INTERFACE
def evaluate_alert_rule(
    state: AppState, rule: dict, entity: Dict[str, Any]
) -> Tuple[EvaluationResult, MetricsSnapshot]:
    """Evaluate one alert rule against one entity's snapshot (pure apart from the metrics read)."""
    condition = AlertCondition.model_validate(rule.get("condition") or {})
    snapshot = state.metrics_provider.get_metrics(
        rule["entityType"], entity["id"], window_hours=condition.window_hours
    )
    snapshot = snapshot if snapshot is not None else MetricsSnapshot()
    return evaluate(condition, snapshot), snapshot


def _alert_message(rule: dict, entity: Dict[str, Any], result: EvaluationResult) -> str:
    cond = rule.get("condition") or {}
    outcome = result.outcomes[0] if result.outcomes else None
    observed = _fmt(outcome.observed if outcome else None)
    limit = _fmt(outcome.limit if outcome else None)
    label = entity.get("name") or entity["id"]
    return f"{rule['name']}: {cond.get('metric')}={observed} {cond.get('comparison')} {limit} on {label}"


def _notify(state: AppState, rule: dict, alert: dict) -> None:
    message = NotificationMessage(
        subject=f"[{str(alert['severity']).upper()}] {rule['name']}",
        text=alert["message"],
        payload={
            "alert_id": str(alert["_id"]),
            "rule_id": alert["ruleId"],
            "account_id": alert.get("accountId"),
            "alert_type": alert["alertType"],
            "entity_type": alert["entityType"],
            "entity_id": alert["entityId"],
            "severity": alert["severity"],
        },
    )
    for channel in rule.get("notificationChannels") or []:
        state.notifier.notify(channel, message)


def _open_alert(
    state: AppState, rule: dict, entity: Dict[str, Any], result: EvaluationResult, snapshot: MetricsSnapshot, now
) -> Optional[dict]:
    cols = state.mongo.collections()
    rule_id = str(rule["_id"])

    # At most one open alert per (rule, entity); the partial unique index backs this up across processes.
    if cols.alerts.find_one({"ruleId": rule_id, "entityId": entity["id"], "status": "open"}):
        return None

    doc = {
        "ruleId": rule_id,
        "accountId": rule.get("accountId"),
        "alertType": rule["alertType"],
        "entityType": rule["entityType"],
        "entityId": entity["id"],
        "entityName": entity.get("name"),
        "message": _alert_message(rule, entity, result),
        "severity": rule["severity"],
        "status": "open",
        "metrics": snapshot.as_dict(),
        "triggeredAt": now,
        "resolvedAt": None,
        "resolutionNote": None,
        "resolvedBy": None,
        "createdAt": now,
        "updatedAt": now,
    }
    try:
        with state.mongo.transaction() as session:
            res = cols.alerts.insert_one(doc, session=session)
            doc["_id"] = res.inserted_id
            audit_logger.record(
                state,
                None,
                rule.get("accountId"),
                "alert",
                str(res.inserted_id),
                "create",
                after=doc,
                session=session,
                now=now,
            )
    except DuplicateKeyError:
        return None

    logger.info("Opened alert=%s rule=%s entity=%s severity=%s", doc["_id"], rule_id, entity["id"], doc["severity"])
    _notify(state, rule, doc)
    return doc


# PUBLIC_INTERFACE
def monitoring_pass(state: AppState, now: Optional[datetime] = None) -> List[str]:
    """
    Evaluate every active alert rule over its entities and open alerts where the condition holds.

    Returns the ids of alerts opened by this pass. Pairs that already have an open alert are
    left alone; nothing is auto-resolved.
    """
    now = now or utc_now()
    cols = state.mongo.collections()
    rules = list(cols.alert_rules.find({"status": "active", "accountId": {"$ne": None}}))

    opened: List[str] = []
    for rule in rules:
        rule_id = str(rule["_id"])
        try:
            entities = state.entity_registry.list_entities(
                rule["entityType"], rule["accountId"], state.config.alert_monitor_entity_limit
            )
        except Exception:
            logger.exception("Alert monitor could not list entities for rule=%s", rule_id)
            continue

        for entity in entities:
            try:
                result, snapshot = evaluate_alert_rule(state, rule, entity)
                if not result.would_trigger:
                    continue
                alert = _open_alert(state, rule, entity, result, snapshot, now)
                if alert is not None:
                    opened.append(str(alert["_id"]))
            except PydanticValidationError:
                logger.warning("Alert rule=%s has an invalid stored condition; skipped", rule_id)
                break
            except Exception:
                logger.exception("Alert evaluation failed for rule=%s entity=%s", rule_id, entity.get("id"))
    return opened


# PUBLIC_INTERFACE
async def alert_monitor_loop(state: AppState, shutdown_event: asyncio.Event) -> None:
    """
    Background loop running monitoring passes on an interval.

    - Reads active, account-owned alert rules
    - Evaluates each against up to ALERT_MONITOR_ENTITY_LIMIT entities of its entity type
    - Opens one alert per (rule, entity) and notifies the rule's channels
    """
    interval = max(1, int(state.config.alert_monitor_interval_sec))
    logger.info("Alert monitor started (interval=%ss)", interval)

    while not shutdown_event.is_set():
        tick_started = datetime.now(timezone.utc)
        try:
            await _run_in_thread(monitoring_pass, state)
        except Exception:
            logger.exception("Alert monitor pass failed")

        elapsed = (datetime.now(timezone.utc) - tick_started).total_seconds()
        sleep_for = max(0.1, interval - elapsed)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=sleep_for)
        except asyncio.TimeoutError:
            pass

    logger.info("Alert monitor stopped")

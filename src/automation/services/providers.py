"""
Collaborators the engine consumes: metrics snapshots, entity listing, and action application.

Each is a Protocol so deployments can plug in the real advertising-platform clients.
The Mongo-backed defaults read the platform-synced ``entities`` / ``entity_metrics``
collections and apply actions to the local entity mirror.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from src.automation.db.mongo import MongoManager
from src.automation.schemas.conditions import ActionSpec
from src.automation.services.condition_evaluator import MetricsSnapshot
from src.automation.services.errors import ExternalError

logger = logging.getLogger(__name__)

# Stored field name -> metric name used by conditions.
_METRIC_FIELDS: Dict[str, str] = {
    "spend": "spend",
    "conversions": "conversions",
    "cpa": "cpa",
    "roas": "roas",
    "ctr": "ctr",
    "impressions": "impressions",
    "clicks": "clicks",
    "impressionShareLostBudget": "impression_share_lost_budget",
}


@dataclass(frozen=True)
class ActionOutcome:
    """Result of applying one action to one entity."""

    action: str
    changes: Dict[str, Any] = field(default_factory=dict)
    detail: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"action": self.action, "changes": dict(self.changes), "detail": self.detail}


@runtime_checkable
class MetricsProvider(Protocol):
    def get_metrics(
        self,
        entity_type: str,
        entity_id: str,
        *,
        window_days: Optional[int] = None,
        window_hours: Optional[int] = None,
    ) -> Optional[MetricsSnapshot]: ...


@runtime_checkable
class EntityRegistry(Protocol):
    def list_entities(self, scope: str, account_id: Optional[str], limit: int) -> List[Dict[str, Any]]: ...

    def get_entity(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]: ...


@runtime_checkable
class ActionExecutor(Protocol):
    def apply_action(self, entity_type: str, entity_id: str, action: ActionSpec) -> ActionOutcome: ...


def _snapshot_from_doc(doc: dict) -> MetricsSnapshot:
    values = {name: doc.get(stored) for stored, name in _METRIC_FIELDS.items() if doc.get(stored) is not None}
    daily = []
    for day in doc.get("daily") or []:
        daily.append({name: day.get(stored) for stored, name in _METRIC_FIELDS.items() if stored in day})
    return MetricsSnapshot(
        values=values,
        targets=dict(doc.get("targets") or {}),
        baselines={k: dict(v or {}) for k, v in (doc.get("baselines") or {}).items()},
        daily=tuple(daily),
    )


def _entity_out(doc: dict) -> Dict[str, Any]:
    return {
        "id": doc["entityId"],
        "name": doc.get("name"),
        "entity_type": doc["entityType"],
        "account_id": doc.get("accountId"),
        "status": doc.get("status"),
        "daily_budget": doc.get("dailyBudget"),
        "bid_modifier": doc.get("bidModifier"),
        "labels": list(doc.get("labels") or []),
    }


class MongoMetricsProvider:
    """Reads the latest stored snapshot for an entity; may be stale relative to the platform."""

    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    def get_metrics(
        self,
        entity_type: str,
        entity_id: str,
        *,
        window_days: Optional[int] = None,
        window_hours: Optional[int] = None,
    ) -> Optional[MetricsSnapshot]:
        if window_days is None and window_hours is not None:
            window_days = max(1, -(-int(window_hours) // 24))
        cols = self._mongo.collections()
        base = {"entityType": entity_type, "entityId": entity_id}
        try:
            doc = None
            if window_days is not None:
                doc = cols.entity_metrics.find_one({**base, "windowDays": int(window_days)}, sort=[("asOf", DESCENDING)])
            if doc is None:
                doc = cols.entity_metrics.find_one(base, sort=[("asOf", DESCENDING)])
        except PyMongoError as exc:
            raise ExternalError(f"metrics lookup failed for {entity_type}/{entity_id}") from exc
        return _snapshot_from_doc(doc) if doc else None


class MongoEntityRegistry:
    """Lists entities synced from the advertising platform."""

    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    def list_entities(self, scope: str, account_id: Optional[str], limit: int) -> List[Dict[str, Any]]:
        cols = self._mongo.collections()
        q: Dict[str, Any] = {"entityType": scope}
        if account_id is not None:
            q["accountId"] = account_id
        try:
            docs = list(cols.entities.find(q).sort("entityId", 1).limit(max(1, int(limit))))
        except PyMongoError as exc:
            raise ExternalError(f"entity listing failed for scope={scope}") from exc
        return [_entity_out(d) for d in docs]

    def get_entity(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        cols = self._mongo.collections()
        try:
            doc = cols.entities.find_one({"entityType": entity_type, "entityId": entity_id})
        except PyMongoError as exc:
            raise ExternalError(f"entity lookup failed for {entity_type}/{entity_id}") from exc
        return _entity_out(doc) if doc else None


class MongoActionExecutor:
    """Applies actions to the local entity mirror; a platform sync pushes them out."""

    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    def _update(self, entity_type: str, entity_id: str, update: dict) -> dict:
        cols = self._mongo.collections()
        doc = cols.entities.find_one_and_update(
            {"entityType": entity_type, "entityId": entity_id},
            update,
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise ExternalError(f"entity {entity_type}/{entity_id} not found on platform")
        return doc

    def _load(self, entity_type: str, entity_id: str) -> dict:
        doc = self._mongo.collections().entities.find_one({"entityType": entity_type, "entityId": entity_id})
        if doc is None:
            raise ExternalError(f"entity {entity_type}/{entity_id} not found on platform")
        return doc

    def apply_action(self, entity_type: str, entity_id: str, action: ActionSpec) -> ActionOutcome:
        try:
            return self._apply(entity_type, entity_id, action)
        except PyMongoError as exc:
            raise ExternalError(f"{action.type} failed for {entity_type}/{entity_id}") from exc
        except (TypeError, ValueError) as exc:
            raise ExternalError(f"{action.type} failed for {entity_type}/{entity_id}: {exc}") from exc

    def _apply(self, entity_type: str, entity_id: str, action: ActionSpec) -> ActionOutcome:
        kind = action.type

        if kind in ("pause", "enable"):
            status = "paused" if kind == "pause" else "enabled"
            self._update(entity_type, entity_id, {"$set": {"status": status}})
            return ActionOutcome(kind, {"status": status})

        if kind in ("increase_budget_pct", "decrease_budget_pct"):
            current = self._load(entity_type, entity_id).get("dailyBudget")
            if current is None:
                raise ExternalError(f"entity {entity_type}/{entity_id} has no daily budget")
            sign = 1 if kind == "increase_budget_pct" else -1
            budget = round(float(current) * (1 + sign * float(action.value) / 100.0), 2)
            self._update(entity_type, entity_id, {"$set": {"dailyBudget": budget}})
            return ActionOutcome(kind, {"daily_budget": budget})

        if kind == "bid_adjust_pct":
            current = self._load(entity_type, entity_id).get("bidModifier") or 1.0
            modifier = round(float(current) * (1 + float(action.value) / 100.0), 4)
            self._update(entity_type, entity_id, {"$set": {"bidModifier": modifier}})
            return ActionOutcome(kind, {"bid_modifier": modifier})

        if kind == "label":
            self._update(entity_type, entity_id, {"$addToSet": {"labels": action.value}})
            return ActionOutcome(kind, {"label": action.value})

        if kind == "duplicate":
            source = self._load(entity_type, entity_id)
            copy = {k: v for k, v in source.items() if k != "_id"}
            copy["entityId"] = f"{entity_id}-copy-{ObjectId()}"
            copy["name"] = f"{source.get('name') or entity_id} {action.value or '(copy)'}"
            copy["status"] = "paused"
            self._mongo.collections().entities.insert_one(copy)
            return ActionOutcome(kind, {"duplicate_id": copy["entityId"]})

        if kind == "notify":
            logger.info("Rule notification for %s/%s: %s", entity_type, entity_id, action.message or "")
            return ActionOutcome(kind, detail=action.message)

        raise ExternalError(f"unsupported action type {kind}")

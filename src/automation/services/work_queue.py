"""
Typed work queue for rule executions.

Both the scheduler and the manual-trigger path go through ``JobQueue.enqueue``, which is
the single place the "at most one in-flight job per rule" invariant is enforced:

- a unique partial index on ``jobs.ruleId`` where ``inFlight`` is true (cross-process), and
- an in-process lock around the check-and-insert.

With transactions enabled a concurrent trigger can lose a write conflict instead of
hitting the index; that is reported as the same ConflictError.

``inFlight`` is set while a job is pending/running and unset when it reaches a terminal state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from threading import RLock
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, OperationFailure

from src.automation.db.mongo import MongoManager
from src.automation.services.errors import ConflictError

logger = logging.getLogger(__name__)

JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

TRIGGER_MANUAL = "manual"
TRIGGER_SCHEDULED = "scheduled"

_WRITE_CONFLICT = 112


# PUBLIC_INTERFACE
def is_write_conflict(exc: OperationFailure) -> bool:
    """True when a concurrent transaction touched the same document or index key first."""
    return exc.code == _WRITE_CONFLICT or exc.has_error_label("TransientTransactionError")


@dataclass(frozen=True)
class WorkItem:
    """One requested real execution of a rule."""

    rule_id: str
    account_id: Optional[str]
    trigger: str
    entity_ids: List[str] = field(default_factory=list)
    user_id: Optional[str] = None


class JobQueue:
    """Mongo-backed job queue keyed by rule id."""

    def __init__(self, mongo: MongoManager):
        self._mongo = mongo
        self._lock = RLock()

    def _jobs(self):
        return self._mongo.collections().jobs

    # PUBLIC_INTERFACE
    def enqueue(self, item: WorkItem, *, now: datetime, session=None) -> dict:
        """Insert a pending job for the item's rule; ConflictError if one is already in flight."""
        jobs = self._jobs()
        with self._lock:
            existing = jobs.find_one({"ruleId": item.rule_id, "inFlight": True}, session=session)
            if existing:
                raise ConflictError(
                    "rule already has an execution in flight",
                    meta={"rule_id": item.rule_id, "job_id": str(existing["_id"]), "status": existing.get("status")},
                )
            doc = {
                "ruleId": item.rule_id,
                "accountId": item.account_id,
                "jobType": "execute_rule",
                "entityIds": list(item.entity_ids),
                "trigger": item.trigger,
                "userId": item.user_id,
                "status": JOB_PENDING,
                "inFlight": True,
                "errorMessage": None,
                "entityResults": [],
                "scheduledAt": now,
                "startedAt": None,
                "completedAt": None,
                "createdAt": now,
            }
            try:
                res = jobs.insert_one(doc, session=session)
            except DuplicateKeyError:
                raise ConflictError("rule already has an execution in flight", meta={"rule_id": item.rule_id})
            except OperationFailure as exc:
                if not is_write_conflict(exc):
                    raise
                raise ConflictError(
                    "rule already has an execution in flight", meta={"rule_id": item.rule_id}
                ) from exc
            doc["_id"] = res.inserted_id
        logger.info("Enqueued job=%s rule=%s trigger=%s", doc["_id"], item.rule_id, item.trigger)
        return doc

    # PUBLIC_INTERFACE
    def dequeue(self, *, now: datetime) -> Optional[dict]:
        """Claim the oldest pending job (pending -> running) or return None."""
        with self._lock:
            return self._jobs().find_one_and_update(
                {"status": JOB_PENDING},
                {"$set": {"status": JOB_RUNNING, "startedAt": now}},
                sort=[("scheduledAt", 1), ("_id", 1)],
                return_document=ReturnDocument.AFTER,
            )

    # PUBLIC_INTERFACE
    def complete(
        self,
        job_id: Any,
        *,
        failed: bool,
        entity_results: List[Dict[str, Any]],
        error_message: Optional[str],
        now: datetime,
    ) -> None:
        """Move a running job to its terminal state and release the rule."""
        self._jobs().update_one(
            {"_id": job_id},
            {
                "$set": {
                    "status": JOB_FAILED if failed else JOB_COMPLETED,
                    "entityResults": entity_results,
                    "errorMessage": error_message,
                    "completedAt": now,
                },
                "$unset": {"inFlight": ""},
            },
        )

    def in_flight(self, rule_id: str) -> Optional[dict]:
        return self._jobs().find_one({"ruleId": rule_id, "inFlight": True})

    def get(self, job_id: str) -> Optional[dict]:
        try:
            oid = ObjectId(job_id)
        except Exception:
            return None
        return self._jobs().find_one({"_id": oid})

    def count_for_rule(self, rule_id: str) -> int:
        return int(self._jobs().count_documents({"ruleId": rule_id}))

    def history(self, rule_id: str, *, limit: int = 20, offset: int = 0) -> Tuple[List[dict], int]:
        """Jobs for a rule, newest first. Returns (docs, total)."""
        jobs = self._jobs()
        q = {"ruleId": rule_id}
        total = int(jobs.count_documents(q))
        docs = list(jobs.find(q).sort([("createdAt", -1), ("_id", -1)]).skip(int(offset)).limit(int(limit)))
        return docs, total

    def running_jobs(self) -> List[dict]:
        return list(self._jobs().find({"status": JOB_RUNNING}))

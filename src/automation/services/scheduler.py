from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

from bson import ObjectId
from croniter import croniter

from src.automation.schemas.common import utc_now
from src.automation.services.errors import ConflictError, NotFoundError, ValidationError
from src.automation.services.work_queue import TRIGGER_SCHEDULED

logger = logging.getLogger(__name__)


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking pymongo calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


# PUBLIC_INTERFACE
def validate_schedule(schedule: Optional[str]) -> Optional[str]:
    """Normalize and validate a cron schedule; None/blank means 'no schedule'."""
    if schedule is None:
        return None
    expr = schedule.strip()
    if not expr:
        return None
    if not croniter.is_valid(expr):
        raise ValidationError(f"invalid schedule expression: {schedule!r}", meta={"field": "schedule"})
    return expr


# PUBLIC_INTERFACE
def compute_next_run(schedule: str, now: datetime) -> datetime:
    """
    Return the first fire time strictly after ``now`` (UTC).

    Pure: the result depends only on (schedule, now). Naive datetimes are read as UTC.
    """
    expr = validate_schedule(schedule)
    if expr is None:
        raise ValidationError("schedule is required to compute the next run", meta={"field": "schedule"})
    base = now if now.tzinfo is not None else now.replace(tzinfo=timezone.utc)
    nxt = croniter(expr, base.astimezone(timezone.utc)).get_next(datetime)
    return nxt.astimezone(timezone.utc)


# PUBLIC_INTERFACE
def due_rules(state, now: datetime) -> List[str]:
    """Ids of active, account-owned rules whose next_run_at is at or before ``now``."""
    cols = state.mongo.collections()
    docs = cols.rules.find(
        {"status": "active", "accountId": {"$ne": None}, "nextRunAt": {"$ne": None, "$lte": now}},
        projection={"_id": 1},
    ).sort("nextRunAt", 1)
    return [str(d["_id"]) for d in docs]


def reschedule_after_run(state, rule_id: str, completed_at: datetime) -> Optional[datetime]:
    """Recompute next_run_at from the completion time; missed runs collapse into one catch-up."""
    cols = state.mongo.collections()
    doc = cols.rules.find_one({"_id": ObjectId(rule_id)})
    if not doc or not doc.get("schedule"):
        return None
    next_run = compute_next_run(doc["schedule"], completed_at)
    cols.rules.update_one({"_id": doc["_id"]}, {"$set": {"nextRunAt": next_run}})
    return next_run


# PUBLIC_INTERFACE
def scheduler_tick(state, now: Optional[datetime] = None) -> List[str]:
    """Enqueue a scheduled job for every due rule. Returns the ids of the jobs created."""
    from src.automation.services import execution_engine

    now = now or utc_now()
    created: List[str] = []
    for rule_id in due_rules(state, now):
        try:
            job = execution_engine.enqueue_rule(state, rule_id, trigger=TRIGGER_SCHEDULED, now=now)
            created.append(str(job["_id"]))
        except ConflictError:
            # Previous run still in flight; it reschedules the rule when it completes.
            logger.debug("Scheduler skipped rule=%s (execution in flight)", rule_id)
        except NotFoundError:
            logger.debug("Scheduler skipped rule=%s (deleted)", rule_id)
        except Exception:
            logger.exception("Scheduler failed to enqueue rule=%s", rule_id)
    return created


# PUBLIC_INTERFACE
async def scheduler_loop(state, shutdown_event: asyncio.Event) -> None:
    """
    Background loop that enqueues scheduled rule executions.

    Each tick selects active rules with next_run_at <= now and enqueues one job per rule
    through the shared work queue, so a manual trigger racing the tick gets a conflict.
    """
    interval = max(1, int(state.config.scheduler_tick_interval_sec))
    logger.info("Rule scheduler started (interval=%ss)", interval)

    while not shutdown_event.is_set():
        tick_started = datetime.now(timezone.utc)
        try:
            await _run_in_thread(scheduler_tick, state, utc_now())
        except Exception:
            logger.exception("Rule scheduler tick failed")

        elapsed = (datetime.now(timezone.utc) - tick_started).total_seconds()
        sleep_for = max(0.1, interval - elapsed)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=sleep_for)
        except asyncio.TimeoutError:
            pass

    logger.info("Rule scheduler stopped")

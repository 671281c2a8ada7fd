from __future__ import annotations

from datetime import datetime, timezone

import pytest
from bson import ObjectId

from src.automation.schemas.rules import RuleCreate
from src.automation.services import rules_service
from src.automation.services.errors import ValidationError
from src.automation.services.execution_engine import run_pending_jobs
from src.automation.services.scheduler import compute_next_run, due_rules, scheduler_tick, validate_schedule


def _at(hour: int, minute: int = 0, day: int = 5) -> datetime:
    return datetime(2026, 1, day, hour, minute, tzinfo=timezone.utc)


def _scheduled_rule(state, *, schedule: str = "0 * * * *", account_id="acct-1", status="active") -> str:
    payload = RuleCreate(
        name="Hourly pause",
        scope="campaign",
        account_id=account_id,
        status=status,
        condition={"conversions_lt": 1},
        actions=[{"type": "pause"}],
        schedule=schedule,
    )
    return rules_service.create_rule(state, payload).id


def _set_next_run(mongo_db, rule_id: str, when: datetime) -> None:
    mongo_db["rules"].update_one({"_id": ObjectId(rule_id)}, {"$set": {"nextRunAt": when}})


def test_compute_next_run_is_strictly_after_now():
    assert compute_next_run("0 * * * *", _at(10, 15)) == _at(11)
    assert compute_next_run("0 * * * *", _at(11)) == _at(12)
    assert compute_next_run("@daily", _at(10, 15)) == _at(0, day=6)


def test_compute_next_run_is_pure_and_reads_naive_as_utc():
    now = _at(10, 15)
    assert compute_next_run("*/15 * * * *", now) == compute_next_run("*/15 * * * *", now)
    assert compute_next_run("*/15 * * * *", now.replace(tzinfo=None)) == _at(10, 30)


def test_validate_schedule():
    assert validate_schedule(None) is None
    assert validate_schedule("   ") is None
    assert validate_schedule(" 0 6 * * 1 ") == "0 6 * * 1"
    with pytest.raises(ValidationError):
        validate_schedule("every tuesday")


def test_due_rules_only_selects_active_account_rules(state, mongo_db):
    due = _scheduled_rule(state)
    paused = _scheduled_rule(state, status="paused")
    template = _scheduled_rule(state, account_id=None)
    later = _scheduled_rule(state)

    for rule_id in (due, paused, template):
        _set_next_run(mongo_db, rule_id, _at(9))
    _set_next_run(mongo_db, later, _at(12))

    assert due_rules(state, _at(10)) == [due]


def test_tick_enqueues_once_and_stamps_last_run(state, mongo_db):
    rule_id = _scheduled_rule(state)
    _set_next_run(mongo_db, rule_id, _at(10))

    created = scheduler_tick(state, _at(10))
    assert len(created) == 1

    job = mongo_db["jobs"].find_one({"_id": ObjectId(created[0])})
    assert job["trigger"] == "scheduled"
    assert job["status"] == "pending"

    rule = mongo_db["rules"].find_one({"_id": ObjectId(rule_id)})
    assert rule["lastRunAt"] == _at(10)
    # Enqueue never advances the schedule.
    assert rule["nextRunAt"] == _at(10)

    # Still due, but the previous execution is in flight: skipped, not duplicated.
    assert scheduler_tick(state, _at(10, 1)) == []
    assert mongo_db["jobs"].count_documents({"ruleId": rule_id}) == 1


def test_next_run_is_recomputed_from_completion(state, mongo_db, seed_entity):
    seed_entity("c1", metrics={"conversions": 0, "spend": 10})
    rule_id = _scheduled_rule(state)
    _set_next_run(mongo_db, rule_id, _at(8))

    # The tick ran late; the missed 09:00 and 10:00 slots collapse into this one run.
    scheduler_tick(state, _at(10, 20))
    run_pending_jobs(state, now=_at(10, 40))

    rule = mongo_db["rules"].find_one({"_id": ObjectId(rule_id)})
    assert rule["lastRunAt"] == _at(10, 20)
    assert rule["nextRunAt"] == _at(11)
    assert mongo_db["jobs"].count_documents({"ruleId": rule_id}) == 1


def test_manual_run_does_not_touch_next_run(state, mongo_db, seed_entity):
    from src.automation.schemas.rules import RuleExecuteRequest
    from src.automation.services.execution_engine import execute_rule

    seed_entity("c1", metrics={"conversions": 0})
    rule_id = _scheduled_rule(state)
    _set_next_run(mongo_db, rule_id, _at(23))

    execute_rule(state, rule_id, RuleExecuteRequest())
    run_pending_jobs(state, now=_at(10))

    rule = mongo_db["rules"].find_one({"_id": ObjectId(rule_id)})
    assert rule["lastRunAt"] is not None
    assert rule["nextRunAt"] == _at(23)

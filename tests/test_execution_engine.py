from __future__ import annotations

import threading
from contextlib import contextmanager

import httpx
import pytest
from bson import ObjectId
from pymongo.errors import OperationFailure

from src.automation.schemas.common import utc_now
from src.automation.schemas.rules import RuleCreate
from src.automation.services import rules_service
from src.automation.services.execution_engine import enqueue_rule, run_pending_jobs
from src.automation.services.errors import ConflictError


def _create(state, *, condition, actions, scope="campaign") -> str:
    payload = RuleCreate(
        name="Engine test rule",
        account_id="acct-1",
        scope=scope,
        condition=condition,
        actions=actions,
    )
    return rules_service.create_rule(state, payload, user_id="user-1").id


def _entity(mongo_db, entity_id: str) -> dict:
    return mongo_db["entities"].find_one({"entityId": entity_id})


@pytest.fixture
def zero_conversion_campaigns(seed_entity):
    seed_entity("c1", metrics={"conversions": 0, "spend": 120})
    seed_entity("c2", metrics={"conversions": 2, "spend": 120})


@pytest.mark.anyio
async def test_dry_run_reports_without_side_effects(
    async_client: httpx.AsyncClient, state, mongo_db, zero_conversion_campaigns
):
    rule_id = _create(state, condition={"conversions_lt": 1}, actions=[{"type": "pause"}])
    audit_before = mongo_db["audit_logs"].count_documents({})

    res = await async_client.post(f"/api/rules/{rule_id}/test", json={"entity_ids": ["c1", "c2"]})
    assert res.status_code == 200, res.text
    body = res.json()

    by_id = {r["entity_id"]: r for r in body["test_results"]}
    assert by_id["c1"]["would_trigger"] is True
    assert by_id["c1"]["simulated_actions"] == [{"type": "pause"}]
    assert by_id["c1"]["current_metrics"]["conversions"] == 0
    assert by_id["c2"]["would_trigger"] is False
    assert by_id["c2"]["simulated_actions"] == []
    assert body["summary"] == {"entities_tested": 2, "entities_affected": 1, "total_actions": 1}

    # Same again through the execute endpoint with dry_run.
    res = await async_client.post(f"/api/rules/{rule_id}/execute", json={"dry_run": True})
    assert res.status_code == 200
    executed = res.json()
    assert executed["dry_run"] is True
    assert executed["job_id"] is None
    assert executed["message"] == "Dry run completed. No changes were made."
    assert executed["summary"]["entities_affected"] == 1

    assert _entity(mongo_db, "c1")["status"] == "enabled"
    assert mongo_db["jobs"].count_documents({}) == 0
    assert mongo_db["audit_logs"].count_documents({}) == audit_before
    assert mongo_db["rules"].find_one({"_id": ObjectId(rule_id)})["lastRunAt"] is None


@pytest.mark.anyio
async def test_dry_run_samples_scope_when_no_ids_given(async_client: httpx.AsyncClient, state, seed_entity):
    seed_entity("c1", metrics={"conversions": 0})
    seed_entity("c2", metrics={"conversions": 0}, account_id="acct-2")
    seed_entity("a1", entity_type="ad", metrics={"conversions": 0})
    rule_id = _create(state, condition={"conversions_lt": 1}, actions=[{"type": "pause"}])

    res = await async_client.post(f"/api/rules/{rule_id}/test")
    assert res.status_code == 200
    assert [r["entity_id"] for r in res.json()["test_results"]] == ["c1"]


@pytest.mark.anyio
async def test_execute_queues_job_and_worker_applies_actions(
    async_client: httpx.AsyncClient, state, mongo_db, zero_conversion_campaigns
):
    rule_id = _create(state, condition={"conversions_lt": 1}, actions=[{"type": "pause"}])

    res = await async_client.post(f"/api/rules/{rule_id}/execute", json={}, headers={"X-User-Id": "user-9"})
    assert res.status_code == 200, res.text
    queued = res.json()
    assert queued["dry_run"] is False
    job_id = queued["job_id"]

    rule = mongo_db["rules"].find_one({"_id": ObjectId(rule_id)})
    assert rule["lastRunAt"] is not None
    assert rule["nextRunAt"] is None

    # A second trigger while the first is pending is rejected.
    res = await async_client.post(f"/api/rules/{rule_id}/execute", json={})
    assert res.status_code == 409
    assert res.json()["meta"]["job_id"] == job_id

    assert run_pending_jobs(state) == [job_id]

    assert _entity(mongo_db, "c1")["status"] == "paused"
    assert _entity(mongo_db, "c2")["status"] == "enabled"

    res = await async_client.get(f"/api/jobs/{job_id}")
    assert res.status_code == 200
    job = res.json()
    assert job["status"] == "completed"
    assert job["trigger"] == "manual"
    assert job["user_id"] == "user-9"
    outcomes = {r["entity_id"]: r for r in job["entity_results"]}
    assert outcomes["c1"]["status"] == "applied"
    assert outcomes["c1"]["actions_applied"] == [{"action": "pause", "changes": {"status": "paused"}, "detail": None}]
    assert outcomes["c2"]["status"] == "not_triggered"

    # One audit entry per triggered entity.
    entries = list(mongo_db["audit_logs"].find({"action": "execute_rule"}))
    assert [e["entityId"] for e in entries] == ["c1"]
    assert entries[0]["userId"] == "user-9"
    assert entries[0]["before"]["entity"]["status"] == "enabled"
    assert entries[0]["after"]["entity"]["status"] == "paused"
    assert entries[0]["after"]["job_id"] == job_id

    # Released: the rule can be triggered again.
    res = await async_client.post(f"/api/rules/{rule_id}/execute", json={})
    assert res.status_code == 200

    res = await async_client.get(f"/api/jobs/{ObjectId()}")
    assert res.status_code == 404


def test_actions_apply_in_declared_order(state, mongo_db, seed_entity):
    seed_entity("c1", daily_budget=100.0, metrics={"conversions": 5, "cpa": 40}, targets={"cpa": 50})
    rule_id = _create(
        state,
        condition={"cpa_lte_target": True},
        actions=[
            {"type": "label", "value": "scaling"},
            {"type": "increase_budget_pct", "value": 20},
            {"type": "bid_adjust_pct", "value": -10},
        ],
    )
    job = enqueue_rule(state, rule_id, trigger="manual")
    run_pending_jobs(state)

    done = mongo_db["jobs"].find_one({"_id": job["_id"]})
    applied = done["entityResults"][0]["actions_applied"]
    assert [a["action"] for a in applied] == ["label", "increase_budget_pct", "bid_adjust_pct"]

    entity = _entity(mongo_db, "c1")
    assert entity["labels"] == ["scaling"]
    assert entity["dailyBudget"] == 120.0
    assert entity["bidModifier"] == pytest.approx(0.9)


def test_entity_failure_is_isolated_and_not_rolled_back(state, mongo_db, seed_entity):
    seed_entity("c1", daily_budget=None, metrics={"conversions": 0})
    seed_entity("c2", daily_budget=50.0, metrics={"conversions": 0})
    rule_id = _create(
        state,
        condition={"conversions_lt": 1},
        actions=[{"type": "label", "value": "no-conv"}, {"type": "decrease_budget_pct", "value": 50}],
    )
    job = enqueue_rule(state, rule_id, trigger="manual")
    run_pending_jobs(state)

    done = mongo_db["jobs"].find_one({"_id": job["_id"]})
    assert done["status"] == "failed"
    assert done["errorMessage"] == "1 of 2 entities failed"
    assert "inFlight" not in done

    outcomes = {r["entity_id"]: r for r in done["entityResults"]}
    assert outcomes["c1"]["status"] == "failed"
    assert "no daily budget" in outcomes["c1"]["error"]
    # The label landed before the budget change failed and stays applied.
    assert [a["action"] for a in outcomes["c1"]["actions_applied"]] == ["label"]
    assert _entity(mongo_db, "c1")["labels"] == ["no-conv"]

    assert outcomes["c2"]["status"] == "applied"
    assert _entity(mongo_db, "c2")["dailyBudget"] == 25.0

    # Failed entities are audited too, with the error.
    failed_entry = mongo_db["audit_logs"].find_one({"action": "execute_rule", "entityId": "c1"})
    assert failed_entry["after"]["error"].startswith("decrease_budget_pct")


def test_malformed_budget_keeps_prior_actions_and_audit(state, mongo_db, seed_entity):
    seed_entity("c1", daily_budget="abc", metrics={"conversions": 0})
    rule_id = _create(
        state,
        condition={"conversions_lt": 1},
        actions=[{"type": "label", "value": "x"}, {"type": "increase_budget_pct", "value": 10}],
    )
    job = enqueue_rule(state, rule_id, trigger="manual")
    run_pending_jobs(state)

    outcome = mongo_db["jobs"].find_one({"_id": job["_id"]})["entityResults"][0]
    assert outcome["status"] == "failed"
    assert outcome["would_trigger"] is True
    assert [a["action"] for a in outcome["actions_applied"]] == ["label"]
    assert outcome["error"].startswith("increase_budget_pct")
    assert _entity(mongo_db, "c1")["labels"] == ["x"]

    entries = list(mongo_db["audit_logs"].find({"action": "execute_rule", "entityId": "c1"}))
    assert len(entries) == 1
    assert [a["action"] for a in entries[0]["after"]["actions_applied"]] == ["label"]
    assert entries[0]["after"]["error"] == outcome["error"]


class _CrashingExecutor:
    """Applies labels through the real executor, crashes on anything else."""

    def __init__(self, inner):
        self._inner = inner

    def apply_action(self, entity_type, entity_id, action):
        if action.type == "label":
            return self._inner.apply_action(entity_type, entity_id, action)
        raise RuntimeError("platform exploded")


def test_unexpected_executor_error_is_still_audited(state, mongo_db, seed_entity, monkeypatch):
    seed_entity("c1", metrics={"conversions": 0})
    monkeypatch.setattr(state, "action_executor", _CrashingExecutor(state.action_executor))
    rule_id = _create(
        state,
        condition={"conversions_lt": 1},
        actions=[{"type": "label", "value": "seen"}, {"type": "pause"}],
    )
    job = enqueue_rule(state, rule_id, trigger="manual")
    run_pending_jobs(state)

    outcome = mongo_db["jobs"].find_one({"_id": job["_id"]})["entityResults"][0]
    assert outcome["status"] == "failed"
    assert outcome["error"] == "pause: platform exploded"
    assert [a["action"] for a in outcome["actions_applied"]] == ["label"]
    assert _entity(mongo_db, "c1")["status"] == "enabled"
    assert mongo_db["audit_logs"].count_documents({"action": "execute_rule", "entityId": "c1"}) == 1


def test_job_fails_when_rule_is_gone(state, mongo_db, seed_entity):
    seed_entity("c1", metrics={"conversions": 0})
    rule_id = _create(state, condition={"conversions_lt": 1}, actions=[{"type": "pause"}])
    job = enqueue_rule(state, rule_id, trigger="manual")
    rules_service.delete_rule(state, rule_id)

    run_pending_jobs(state)

    done = mongo_db["jobs"].find_one({"_id": job["_id"]})
    assert done["status"] == "failed"
    assert done["errorMessage"] == "rule not found"
    assert done["entityResults"] == []
    assert _entity(mongo_db, "c1")["status"] == "enabled"


def test_enqueue_conflicts_while_in_flight(state):
    rule_id = _create(state, condition={}, actions=[{"type": "notify", "message": "hello"}])
    enqueue_rule(state, rule_id, trigger="manual")

    with pytest.raises(ConflictError):
        enqueue_rule(state, rule_id, trigger="scheduled")

    # Claimed (running) jobs still block a new trigger.
    assert state.job_queue.dequeue(now=utc_now()) is not None
    with pytest.raises(ConflictError):
        enqueue_rule(state, rule_id, trigger="manual")


def test_empty_condition_applies_to_every_sampled_entity(state, mongo_db, seed_entity):
    seed_entity("c1", metrics={"spend": 1})
    seed_entity("c2")
    rule_id = _create(state, condition={}, actions=[{"type": "label", "value": "all"}])

    enqueue_rule(state, rule_id, trigger="manual")
    run_pending_jobs(state)

    assert _entity(mongo_db, "c1")["labels"] == ["all"]
    assert _entity(mongo_db, "c2")["labels"] == ["all"]


def test_concurrent_triggers_queue_exactly_one_job(state, mongo_db):
    rule_id = _create(state, condition={}, actions=[{"type": "notify", "message": "hello"}])
    workers = 8
    barrier = threading.Barrier(workers)
    outcomes = []
    guard = threading.Lock()

    def trigger():
        barrier.wait()
        try:
            enqueue_rule(state, rule_id, trigger="manual")
            result = "ok"
        except ConflictError:
            result = "conflict"
        with guard:
            outcomes.append(result)

    threads = [threading.Thread(target=trigger) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert sorted(outcomes) == ["conflict"] * (workers - 1) + ["ok"]
    assert mongo_db["jobs"].count_documents({"ruleId": rule_id}) == 1


class _ConflictingJobs:
    """Jobs collection whose insert loses to a concurrent transaction."""

    def __init__(self, error: OperationFailure):
        self._error = error

    def find_one(self, *args, **kwargs):
        return None

    def insert_one(self, *args, **kwargs):
        raise self._error


def test_insert_write_conflict_is_reported_as_conflict(state, monkeypatch):
    rule_id = _create(state, condition={}, actions=[{"type": "pause"}])
    write_conflict = OperationFailure("WriteConflict", code=112)
    monkeypatch.setattr(state.job_queue, "_jobs", lambda: _ConflictingJobs(write_conflict))

    with pytest.raises(ConflictError) as excinfo:
        enqueue_rule(state, rule_id, trigger="manual")
    assert excinfo.value.meta["rule_id"] == rule_id

    # Other server errors are not mistaken for a conflict.
    monkeypatch.setattr(state.job_queue, "_jobs", lambda: _ConflictingJobs(OperationFailure("BadValue", code=2)))
    with pytest.raises(OperationFailure):
        enqueue_rule(state, rule_id, trigger="manual")


@pytest.mark.anyio
async def test_commit_conflict_returns_409(async_client: httpx.AsyncClient, state, mongo_db, monkeypatch):
    rule_id = _create(state, condition={}, actions=[{"type": "pause"}])

    @contextmanager
    def losing_transaction():
        yield None
        raise OperationFailure(
            "Transaction aborted", code=251, details={"errorLabels": ["TransientTransactionError"]}
        )

    monkeypatch.setattr(state.mongo, "transaction", losing_transaction)

    res = await async_client.post(f"/api/rules/{rule_id}/execute", json={})
    assert res.status_code == 409
    assert res.json()["code"] == "conflict"

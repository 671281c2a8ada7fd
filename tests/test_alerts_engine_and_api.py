from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest
from bson import ObjectId

from src.automation.services.alert_monitor import monitoring_pass
from src.automation.services.templates import seed_templates


def _alert_rule_payload(**overrides):
    payload = {
        "name": "CPA too high",
        "account_id": "acct-1",
        "alert_type": "cpa_high",
        "entity_type": "campaign",
        "condition": {"metric": "cpa", "comparison": "gt", "threshold": 50, "window_hours": 24},
        "severity": "high",
        "notification_channels": [{"type": "webhook", "config": {"url": "http://hooks.test/alerts"}}],
    }
    payload.update(overrides)
    return payload


async def _create_alert_rule(client: httpx.AsyncClient, **overrides) -> dict:
    res = await client.post("/api/alerts/rules", json=_alert_rule_payload(**overrides))
    assert res.status_code == 201, res.text
    return res.json()


@pytest.fixture
def cpa_campaigns(seed_entity):
    seed_entity("c1", name="Brand", metrics={"cpa": 75.0, "spend": 300})
    seed_entity("c2", name="Generic", metrics={"cpa": 40.0, "spend": 200})


@pytest.mark.anyio
async def test_alert_rule_crud(async_client: httpx.AsyncClient, mongo_db):
    rule = await _create_alert_rule(async_client)
    rule_id = rule["id"]
    assert rule["status"] == "active"
    assert rule["severity"] == "high"

    res = await async_client.get("/api/alerts/rules", params={"account_id": "acct-1"})
    assert res.status_code == 200
    assert res.json()["total"] == 1
    assert res.json()["items"][0]["alert_count"] == 0

    res = await async_client.put(f"/api/alerts/rules/{rule_id}", json={"status": "paused", "name": "CPA watch"})
    assert res.status_code == 200
    assert res.json()["status"] == "paused"
    assert res.json()["name"] == "CPA watch"

    res = await async_client.post(
        "/api/alerts/rules",
        json=_alert_rule_payload(condition={"metric": "cpa", "comparison": "gt", "threshold_pct": 10}),
    )
    assert res.status_code == 422

    res = await async_client.delete(f"/api/alerts/rules/{rule_id}")
    assert res.status_code == 204
    assert (await async_client.get(f"/api/alerts/rules/{rule_id}")).status_code == 404

    actions = [d["action"] for d in mongo_db["audit_logs"].find({"entityType": "alert_rule"}).sort([("_id", 1)])]
    assert actions == ["create", "update", "delete"]


@pytest.mark.anyio
async def test_monitoring_opens_one_alert_and_notifies(async_client: httpx.AsyncClient, state, mongo_db, cpa_campaigns):
    rule = await _create_alert_rule(async_client)

    opened = monitoring_pass(state)
    assert len(opened) == 1

    res = await async_client.get("/api/alerts", params={"account_id": "acct-1", "status": "open"})
    body = res.json()
    assert body["total"] == 1
    alert = body["items"][0]
    assert alert["entity_id"] == "c1"
    assert alert["entity_name"] == "Brand"
    assert alert["severity"] == "high"
    assert alert["alert_type"] == "cpa_high"
    assert alert["metrics"]["cpa"] == 75.0
    assert "cpa=75" in alert["message"]

    sent = state.notifier.sent
    assert len(sent) == 1
    channel, message = sent[0]
    assert channel["type"] == "webhook"
    assert message.subject == "[HIGH] CPA too high"
    assert message.payload["alert_id"] == alert["id"]
    assert message.payload["entity_id"] == "c1"

    # The pair already has an open alert: later passes stay quiet.
    assert monitoring_pass(state) == []
    assert mongo_db["alerts"].count_documents({"ruleId": rule["id"]}) == 1
    assert len(state.notifier.sent) == 1

    created = mongo_db["audit_logs"].find_one({"entityType": "alert", "entityId": alert["id"]})
    assert created["action"] == "create"
    assert created["userId"] is None

    res = await async_client.get(f"/api/alerts/{alert['id']}")
    assert res.status_code == 200
    assert res.json()["rule_name"] == "CPA too high"

    res = await async_client.get("/api/alerts/rules")
    assert res.json()["items"][0]["alert_count"] == 1


@pytest.mark.anyio
async def test_severity_is_copied_at_trigger_time(async_client: httpx.AsyncClient, state, cpa_campaigns):
    rule = await _create_alert_rule(async_client)
    monitoring_pass(state)

    res = await async_client.put(f"/api/alerts/rules/{rule['id']}", json={"severity": "low"})
    assert res.status_code == 200

    alerts = (await async_client.get("/api/alerts")).json()["items"]
    assert [a["severity"] for a in alerts] == ["high"]


@pytest.mark.anyio
async def test_resolve_alert_and_conflict_on_second_resolve(async_client: httpx.AsyncClient, state, cpa_campaigns):
    await _create_alert_rule(async_client)
    alert_id = monitoring_pass(state)[0]

    res = await async_client.post(
        f"/api/alerts/{alert_id}/resolve", json={"resolution_note": "Bids lowered"}, headers={"X-User-Id": "user-3"}
    )
    assert res.status_code == 200, res.text
    resolved = res.json()
    assert resolved["status"] == "resolved"
    assert resolved["resolution_note"] == "Bids lowered"
    assert resolved["resolved_by"] == "user-3"
    assert resolved["resolved_at"] is not None

    res = await async_client.post(f"/api/alerts/{alert_id}/resolve")
    assert res.status_code == 409
    assert res.json()["code"] == "conflict"

    res = await async_client.post(f"/api/alerts/{ObjectId()}/resolve")
    assert res.status_code == 404
    res = await async_client.get("/api/alerts/not-an-id")
    assert res.status_code == 404

    # Once resolved, a still-breaching entity raises a fresh alert.
    reopened = monitoring_pass(state)
    assert len(reopened) == 1
    assert reopened[0] != alert_id

    entries = (await async_client.get("/api/audit-logs", params={"entity_id": alert_id, "action": "resolve"})).json()
    assert entries["total"] == 1
    assert entries["items"][0]["after"]["resolution_note"] == "Bids lowered"


@pytest.mark.anyio
async def test_bulk_resolve_reports_each_id(async_client: httpx.AsyncClient, state, seed_entity):
    for entity_id in ("c1", "c2", "c3"):
        seed_entity(entity_id, metrics={"cpa": 90.0})
    await _create_alert_rule(async_client, notification_channels=[])
    ids = sorted(monitoring_pass(state))
    assert len(ids) == 3

    res = await async_client.post(f"/api/alerts/{ids[0]}/resolve", json={})
    assert res.status_code == 200

    missing = str(ObjectId())
    res = await async_client.post(
        "/api/alerts/bulk-resolve", json={"alert_ids": [*ids, missing], "resolution_note": "Weekly cleanup"}
    )
    assert res.status_code == 200
    body = res.json()
    assert body["summary"] == {"total": 4, "success": 2, "errors": 2}
    codes = {r["id"]: r.get("code") for r in body["results"]}
    assert codes[ids[0]] == "conflict"
    assert codes[missing] == "not_found"

    res = await async_client.get("/api/alerts", params={"status": "open"})
    assert res.json()["total"] == 0


@pytest.mark.anyio
async def test_alert_rule_test_endpoint_creates_nothing(
    async_client: httpx.AsyncClient, state, mongo_db, cpa_campaigns
):
    rule = await _create_alert_rule(async_client)

    res = await async_client.post(f"/api/alerts/rules/{rule['id']}/test")
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["summary"] == {"entities_tested": 2, "alerts_triggered": 1}
    triggered = [r["entity_id"] for r in body["test_results"] if r["would_trigger"]]
    assert triggered == ["c1"]

    assert mongo_db["alerts"].count_documents({}) == 0
    assert state.notifier.sent == []


def test_paused_and_template_alert_rules_are_not_evaluated(state, mongo_db, seed_entity):
    seed_entity("c1", metrics={"conversions": 0, "spend": 500}, baselines={"7_day_avg": {"spend": 10}})
    # Built-in templates (spend spike, zero conversions) would match c1 if they were evaluated.
    seed_templates(state)

    from src.automation.schemas.alerts import AlertRuleCreate
    from src.automation.services import alerts_service

    zero_conversions = {"metric": "conversions", "comparison": "eq", "threshold": 0}
    payload = AlertRuleCreate.model_validate(_alert_rule_payload(status="paused", condition=zero_conversions))
    alerts_service.create_alert_rule(state, payload)

    assert monitoring_pass(state) == []
    assert mongo_db["alerts"].count_documents({}) == 0


def test_alert_stats_groups_and_trends(state, mongo_db):
    from src.automation.services.alerts_service import alert_stats

    now = datetime(2026, 3, 10, 12, tzinfo=timezone.utc)
    rows = [
        ("cpa_high", "high", "open", now - timedelta(days=1)),
        ("cpa_high", "high", "resolved", now - timedelta(days=1)),
        ("cpa_high", "high", "resolved", now - timedelta(days=2)),
        ("spend_spike", "medium", "open", now - timedelta(days=2)),
        ("spend_spike", "medium", "open", now - timedelta(days=40)),
    ]
    for alert_type, severity, status, triggered in rows:
        mongo_db["alerts"].insert_one(
            {
                "ruleId": str(ObjectId()),
                "accountId": "acct-1",
                "alertType": alert_type,
                "entityType": "campaign",
                "entityId": str(ObjectId()),
                "severity": severity,
                "status": status,
                "triggeredAt": triggered,
            }
        )

    stats = alert_stats(state, "acct-1", days=30, now=now)
    assert stats.summary.total_alerts == 4
    assert stats.summary.resolved_alerts == 2
    assert [(r.alert_type, r.severity.value, r.count, r.resolved_count) for r in stats.statistics] == [
        ("cpa_high", "high", 3, 2),
        ("spend_spike", "medium", 1, 0),
    ]
    assert [(p.date, p.alert_count) for p in stats.trend] == [("2026-03-08", 2), ("2026-03-09", 2)]

    assert alert_stats(state, "acct-2", days=30, now=now).summary.total_alerts == 0


@pytest.mark.anyio
async def test_alert_stats_endpoint(async_client: httpx.AsyncClient, state, cpa_campaigns):
    await _create_alert_rule(async_client)
    monitoring_pass(state)

    res = await async_client.get("/api/alerts/stats/acct-1", params={"days": 7})
    assert res.status_code == 200
    body = res.json()
    assert body["period_days"] == 7
    assert body["summary"] == {"total_alerts": 1, "resolved_alerts": 0}

    res = await async_client.get("/api/alerts/stats/acct-1", params={"days": 0})
    assert res.status_code == 422

"""Built-in global templates (rules and alert rules with no account), seeded idempotently at startup."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from src.automation.schemas.common import utc_now
from src.automation.schemas.conditions import AlertCondition, RuleCondition, dump_actions, parse_actions

logger = logging.getLogger(__name__)

RULE_TEMPLATES: List[Dict[str, Any]] = [
    {
        "name": "Auto-pause High CPA Campaigns",
        "scope": "campaign",
        "condition": {"window_days": 7, "cpa_gt_target_pct": 100},
        "actions": [{"type": "pause", "message": "High CPA detected"}],
    },
    {
        "name": "Increase Budget for On-Target Campaigns",
        "scope": "campaign",
        "condition": {"window_days": 3, "cpa_lte_target": True, "impression_share_lost_budget_gt": 10},
        "actions": [{"type": "increase_budget_pct", "value": 20}],
    },
    {
        "name": "Pause Ads Without Conversions",
        "scope": "ad",
        "condition": {"window_days": 7, "conversions_lt": 1, "spend_gt": 50},
        "actions": [{"type": "pause"}, {"type": "label", "value": "auto-paused"}],
    },
]

ALERT_RULE_TEMPLATES: List[Dict[str, Any]] = [
    {
        "name": "Spend Spike Detection",
        "alertType": "spend_spike",
        "entityType": "campaign",
        "condition": {"metric": "spend", "comparison": "gt", "baseline": "7_day_avg", "threshold_pct": 150, "window_hours": 24},
        "severity": "high",
    },
    {
        "name": "Zero Conversions Alert",
        "alertType": "zero_conversions",
        "entityType": "campaign",
        "condition": {"metric": "conversions", "comparison": "eq", "threshold": 0, "window_hours": 48},
        "severity": "medium",
    },
    {
        "name": "CPA Drift Warning",
        "alertType": "cpa_drift",
        "entityType": "campaign",
        "condition": {"metric": "cpa", "comparison": "gt", "baseline": "30_day_avg", "threshold_pct": 50, "window_hours": 168},
        "severity": "medium",
    },
]


# PUBLIC_INTERFACE
def seed_templates(state) -> int:
    """Insert any missing built-in template (matched by name among global entries). Returns the number inserted."""
    cols = state.mongo.collections()
    now = utc_now()
    inserted = 0

    for tpl in RULE_TEMPLATES:
        # Validate through the same models the API uses so a bad template fails loudly at startup.
        condition = RuleCondition.model_validate(tpl["condition"]).model_dump(exclude_none=True)
        actions = dump_actions(parse_actions(tpl["actions"]))
        res = cols.rules.update_one(
            {"accountId": None, "name": tpl["name"]},
            {
                "$setOnInsert": {
                    "isTemplate": True,
                    "scope": tpl["scope"],
                    "condition": condition,
                    "actions": actions,
                    "schedule": None,
                    "status": "active",
                    "lastRunAt": None,
                    "nextRunAt": None,
                    "createdBy": None,
                    "createdAt": now,
                    "updatedAt": now,
                }
            },
            upsert=True,
        )
        inserted += 1 if res.upserted_id is not None else 0

    for tpl in ALERT_RULE_TEMPLATES:
        condition = AlertCondition.model_validate(tpl["condition"]).model_dump(exclude_none=True)
        res = cols.alert_rules.update_one(
            {"accountId": None, "name": tpl["name"]},
            {
                "$setOnInsert": {
                    "alertType": tpl["alertType"],
                    "entityType": tpl["entityType"],
                    "condition": condition,
                    "severity": tpl["severity"],
                    "notificationChannels": [],
                    "status": "template",
                    "createdBy": None,
                    "createdAt": now,
                    "updatedAt": now,
                }
            },
            upsert=True,
        )
        inserted += 1 if res.upserted_id is not None else 0

    if inserted:
        logger.info("Seeded %s built-in templates", inserted)
    return inserted

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from src.automation.schemas.common import EntityScope, Severity
from src.automation.schemas.conditions import AlertCondition

AlertRuleStatus = Literal["active", "paused", "template"]
AlertStatus = Literal["open", "resolved"]
ChannelType = Literal["email", "slack", "webhook"]


class NotificationChannel(BaseModel):
    """Where a triggered alert is delivered."""

    type: ChannelType = Field(..., description="Channel kind.")
    enabled: bool = Field(True, description="Disabled channels are skipped.")
    config: Dict[str, Any] = Field(
        default_factory=dict,
        description="email: {to}; slack: {webhook_url}; webhook: {url, headers?}.",
    )


class AlertRuleBase(BaseModel):
    """Common fields for an alert rule."""

    name: str = Field(..., min_length=1, max_length=255, description="Human-friendly rule name.")
    alert_type: str = Field(
        ..., min_length=1, max_length=64, description="Alert category (spend_spike, zero_conversions, cpa_drift, ...)."
    )
    entity_type: EntityScope = Field(..., description="Entity granularity the rule watches.")
    condition: AlertCondition = Field(..., description="Alert-dialect condition.")
    severity: Severity = Field(Severity.medium, description="Severity copied onto alerts when triggered.")
    notification_channels: List[NotificationChannel] = Field(
        default_factory=list, description="Channels notified when an alert opens."
    )


class AlertRuleCreate(AlertRuleBase):
    """Request model for creating an alert rule."""

    account_id: str = Field(..., min_length=1, description="Owning account.")
    status: Literal["active", "paused"] = Field("active", description="Initial status.")


class AlertRuleUpdate(BaseModel):
    """Request model for partial update of an alert rule."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    condition: Optional[AlertCondition] = Field(default=None)
    severity: Optional[Severity] = Field(default=None)
    notification_channels: Optional[List[NotificationChannel]] = Field(default=None)
    status: Optional[Literal["active", "paused"]] = Field(default=None)


class AlertRuleOut(AlertRuleBase):
    """Response model for an alert rule."""

    id: str = Field(..., description="Alert rule id (Mongo ObjectId string).")
    account_id: Optional[str] = Field(default=None, description="Owning account; null for built-in templates.")
    status: AlertRuleStatus
    alert_count: Optional[int] = Field(default=None, description="Alerts ever raised by this rule (listing only).")
    created_at: datetime
    updated_at: datetime


class AlertRuleListResponse(BaseModel):
    """Envelope for listing alert rules."""

    items: List[AlertRuleOut] = Field(..., description="Alert rules, newest first.")
    total: int = Field(..., ge=0, description="Total count of matching rules.")


class AlertOut(BaseModel):
    """A triggered alert instance."""

    id: str = Field(..., description="Alert id (Mongo ObjectId string).")
    rule_id: str
    rule_name: Optional[str] = Field(default=None, description="Name of the rule (detail view only).")
    account_id: Optional[str] = None
    alert_type: str
    entity_type: str
    entity_id: str
    entity_name: Optional[str] = None
    message: str
    severity: Severity = Field(..., description="Copied from the rule when the alert opened; never changes.")
    status: AlertStatus
    metrics: Dict[str, Any] = Field(default_factory=dict, description="Snapshot values that triggered the alert.")
    triggered_at: datetime
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None
    resolved_by: Optional[str] = None


class AlertListResponse(BaseModel):
    """Envelope for listing alerts."""

    items: List[AlertOut] = Field(..., description="Alerts, most recently triggered first.")
    total: int = Field(..., ge=0)


class AlertsQuery(BaseModel):
    """Filter/pagination model for listing alerts (used by router query params)."""

    account_id: Optional[str] = Field(default=None)
    rule_id: Optional[str] = Field(default=None)
    status: Optional[AlertStatus] = Field(default=None)
    severity: Optional[Severity] = Field(default=None)
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0, le=100000)


class AlertResolveRequest(BaseModel):
    resolution_note: Optional[str] = Field(default=None, max_length=2000)


class BulkResolveRequest(BaseModel):
    """Resolve many alerts; every id is committed independently."""

    alert_ids: List[str] = Field(..., min_length=1, max_length=500)
    resolution_note: Optional[str] = Field(default=None, max_length=2000)


class AlertRuleTestResult(BaseModel):
    """Evaluation of an alert rule against one entity (no alert is created)."""

    entity_id: str
    entity_name: Optional[str] = None
    entity_type: str
    would_trigger: bool
    matched_predicates: List[str] = Field(default_factory=list)
    skipped_predicates: List[str] = Field(default_factory=list)
    current_metrics: Dict[str, Any] = Field(default_factory=dict)
    alert_type: str


class AlertRuleTestSummary(BaseModel):
    entities_tested: int = Field(..., ge=0)
    alerts_triggered: int = Field(..., ge=0)


class AlertRuleTestResponse(BaseModel):
    rule: AlertRuleOut
    test_results: List[AlertRuleTestResult]
    summary: AlertRuleTestSummary


class AlertStatsRow(BaseModel):
    alert_type: str
    severity: Severity
    count: int = Field(..., ge=0)
    resolved_count: int = Field(..., ge=0)


class AlertTrendPoint(BaseModel):
    date: str = Field(..., description="UTC day (YYYY-MM-DD).")
    alert_count: int = Field(..., ge=0)


class AlertStatsSummary(BaseModel):
    total_alerts: int = Field(..., ge=0)
    resolved_alerts: int = Field(..., ge=0)


class AlertStatsResponse(BaseModel):
    """Alert statistics for one account over the last ``period_days`` days."""

    account_id: str
    period_days: int
    statistics: List[AlertStatsRow] = Field(..., description="Counts per (alert_type, severity), largest first.")
    trend: List[AlertTrendPoint] = Field(..., description="Alerts triggered per day, oldest first.")
    summary: AlertStatsSummary

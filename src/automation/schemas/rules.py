from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from src.automation.schemas.common import EntityScope
from src.automation.schemas.conditions import ActionSpec, RuleCondition

RuleStatus = Literal["active", "paused", "archived"]
JobStatus = Literal["pending", "running", "completed", "failed"]
JobTrigger = Literal["manual", "scheduled"]
BulkRuleOperation = Literal["pause", "enable", "archive", "delete"]


class RuleBase(BaseModel):
    """Common fields for an automation rule."""

    name: str = Field(..., min_length=1, max_length=255, description="Human-friendly rule name.")
    scope: EntityScope = Field(..., description="Entity granularity the rule applies to.")
    condition: RuleCondition = Field(
        default_factory=RuleCondition, description="Rule-dialect predicates; all present predicates must hold."
    )
    actions: List[ActionSpec] = Field(default_factory=list, description="Actions applied in declared order.")
    schedule: Optional[str] = Field(
        default=None, description="Cron expression (or @hourly/@daily/...) for scheduled runs; null for manual only."
    )


class RuleCreate(RuleBase):
    """Request model for creating a rule."""

    account_id: Optional[str] = Field(default=None, description="Owning account; null makes a global template.")
    status: Literal["active", "paused"] = Field("active", description="Initial status.")


class RuleUpdate(BaseModel):
    """Request model for partial update; explicitly setting schedule to null clears it."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    condition: Optional[RuleCondition] = Field(default=None)
    actions: Optional[List[ActionSpec]] = Field(default=None)
    schedule: Optional[str] = Field(default=None)
    status: Optional[RuleStatus] = Field(default=None)


class RuleOut(RuleBase):
    """Response model for a rule."""

    id: str = Field(..., description="Rule id (Mongo ObjectId string).")
    account_id: Optional[str] = Field(default=None)
    status: RuleStatus
    is_template: bool = Field(False, description="True for global rules (no account) usable as clone sources.")
    last_run_at: Optional[datetime] = Field(default=None, description="Last attempted execution (enqueue time).")
    next_run_at: Optional[datetime] = Field(default=None, description="Next scheduled run.")
    execution_count: Optional[int] = Field(default=None, description="Number of jobs created for this rule.")
    created_at: datetime
    updated_at: datetime


class RuleListResponse(BaseModel):
    """Envelope for listing rules."""

    items: List[RuleOut] = Field(..., description="Rules (templates first, then by name).")
    total: int = Field(..., ge=0, description="Total count of matching rules.")


class RuleTestRequest(BaseModel):
    """Dry-run request; without entity_ids a bounded sample of the rule's scope is used."""

    entity_ids: Optional[List[str]] = Field(default=None, max_length=500)


class RuleExecuteRequest(BaseModel):
    """Manual execution request."""

    dry_run: bool = Field(False, description="Simulate only; nothing is mutated or queued.")
    entity_ids: Optional[List[str]] = Field(default=None, max_length=500)


class EntityTestResult(BaseModel):
    """Dry-run outcome for one entity."""

    entity_id: str
    entity_name: Optional[str] = None
    entity_type: str
    would_trigger: bool
    matched_predicates: List[str] = Field(default_factory=list)
    skipped_predicates: List[str] = Field(default_factory=list)
    simulated_actions: List[Dict[str, Any]] = Field(default_factory=list)
    current_metrics: Dict[str, Any] = Field(default_factory=dict)


class DryRunSummary(BaseModel):
    entities_tested: int = Field(..., ge=0)
    entities_affected: int = Field(..., ge=0)
    total_actions: int = Field(..., ge=0)


class RuleTestResponse(BaseModel):
    """Response for POST /api/rules/{id}/test."""

    rule: RuleOut
    test_results: List[EntityTestResult]
    summary: DryRunSummary


class RuleExecuteResponse(BaseModel):
    """Response for POST /api/rules/{id}/execute (dry-run results or the queued job id)."""

    dry_run: bool
    rule_id: str
    job_id: Optional[str] = None
    results: Optional[List[EntityTestResult]] = None
    summary: Optional[DryRunSummary] = None
    message: str


class EntityOutcome(BaseModel):
    """Per-entity outcome recorded on a job."""

    entity_id: str
    status: Literal["applied", "not_triggered", "failed"]
    would_trigger: Optional[bool] = None
    actions_applied: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None


class JobOut(BaseModel):
    """A queued real execution of a rule."""

    id: str
    rule_id: str
    account_id: Optional[str] = None
    entity_ids: List[str] = Field(default_factory=list, description="Explicit targets; empty means scope sample.")
    trigger: JobTrigger
    user_id: Optional[str] = None
    status: JobStatus
    error_message: Optional[str] = None
    entity_results: List[EntityOutcome] = Field(default_factory=list)
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime


class JobListResponse(BaseModel):
    """Envelope for a rule's execution history."""

    items: List[JobOut]
    total: int = Field(..., ge=0)


class RuleCloneRequest(BaseModel):
    """Clone a template (or any rule) into an account."""

    account_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=255)


class RuleBulkRequest(BaseModel):
    """Bulk status change / delete; every id is committed independently."""

    rule_ids: List[str] = Field(..., min_length=1, max_length=500)
    operation: BulkRuleOperation

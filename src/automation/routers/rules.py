from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Path, Query, Request, status

from src.automation.schemas.common import BulkResponse, EntityScope, ErrorResponse
from src.automation.schemas.rules import (
    JobListResponse,
    RuleBulkRequest,
    RuleCloneRequest,
    RuleCreate,
    RuleExecuteRequest,
    RuleExecuteResponse,
    RuleListResponse,
    RuleOut,
    RuleStatus,
    RuleTestRequest,
    RuleTestResponse,
    RuleUpdate,
)
from src.automation.services import execution_engine, rules_service
from src.automation.state import get_state, request_user_id

router = APIRouter(prefix="/api/rules", tags=["Rules"])


@router.get(
    "",
    response_model=RuleListResponse,
    summary="List automation rules",
    description="List rules. Filtering by account also returns global templates; templates are listed first.",
    operation_id="list_rules",
)
def list_rules(
    request: Request,
    account_id: Optional[str] = Query(default=None),
    status_filter: Optional[RuleStatus] = Query(default=None, alias="status"),
    scope: Optional[EntityScope] = Query(default=None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0, le=100000),
) -> RuleListResponse:
    """List automation rules."""
    items, total = rules_service.list_rules(
        get_state(request.app),
        account_id=account_id,
        status=status_filter,
        scope=scope.value if scope else None,
        limit=limit,
        offset=offset,
    )
    return RuleListResponse(items=items, total=total)


@router.post(
    "",
    response_model=RuleOut,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
    summary="Create automation rule",
    description="Create a rule. A schedule (cron expression) sets next_run_at.",
    operation_id="create_rule",
)
def create_rule(request: Request, payload: RuleCreate) -> RuleOut:
    """Create an automation rule."""
    return rules_service.create_rule(get_state(request.app), payload, user_id=request_user_id(request))


@router.get(
    "/templates",
    response_model=RuleListResponse,
    summary="List rule templates",
    description="Global rules with no account, usable as clone sources.",
    operation_id="list_rule_templates",
)
def list_templates(request: Request) -> RuleListResponse:
    """List built-in and user-defined global templates."""
    items = rules_service.list_templates(get_state(request.app))
    return RuleListResponse(items=items, total=len(items))


@router.post(
    "/bulk",
    response_model=BulkResponse,
    summary="Bulk rule operation",
    description="Pause, enable, archive or delete many rules; each id succeeds or fails on its own.",
    operation_id="bulk_rules",
)
def bulk_rules(request: Request, payload: RuleBulkRequest) -> BulkResponse:
    """Apply one operation to many rules."""
    return rules_service.bulk_update(get_state(request.app), payload, user_id=request_user_id(request))


@router.post(
    "/clone/{template_id}",
    response_model=RuleOut,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}},
    summary="Clone rule from template",
    description="Create an account rule from a template (or any rule).",
    operation_id="clone_rule",
)
def clone_rule(
    request: Request,
    payload: RuleCloneRequest,
    template_id: str = Path(..., description="Source rule id."),
) -> RuleOut:
    """Clone a rule into an account."""
    return rules_service.clone_rule(get_state(request.app), template_id, payload, user_id=request_user_id(request))


@router.get(
    "/{rule_id}",
    response_model=RuleOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get automation rule",
    description="Fetch a rule with its execution count.",
    operation_id="get_rule",
)
def get_rule(request: Request, rule_id: str = Path(..., description="Rule id (Mongo ObjectId string).")) -> RuleOut:
    """Get a rule by id."""
    return rules_service.get_rule(get_state(request.app), rule_id)


@router.put(
    "/{rule_id}",
    response_model=RuleOut,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Update automation rule",
    description="Partial update. next_run_at is recomputed whenever the rule has a schedule.",
    operation_id="update_rule",
)
def update_rule(
    request: Request,
    payload: RuleUpdate,
    rule_id: str = Path(..., description="Rule id (Mongo ObjectId string)."),
) -> RuleOut:
    """Update a rule."""
    return rules_service.update_rule(get_state(request.app), rule_id, payload, user_id=request_user_id(request))


@router.delete(
    "/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Delete automation rule",
    description="Delete a rule by id. Job history is kept.",
    operation_id="delete_rule",
)
def delete_rule(request: Request, rule_id: str = Path(..., description="Rule id (Mongo ObjectId string).")) -> None:
    """Delete a rule."""
    rules_service.delete_rule(get_state(request.app), rule_id, user_id=request_user_id(request))
    return None


@router.post(
    "/{rule_id}/test",
    response_model=RuleTestResponse,
    responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    summary="Dry-run rule",
    description="Evaluate the rule against explicit entity ids or a sample of its scope. Nothing is changed.",
    operation_id="test_rule",
)
def test_rule(
    request: Request,
    payload: Optional[RuleTestRequest] = None,
    rule_id: str = Path(..., description="Rule id (Mongo ObjectId string)."),
) -> RuleTestResponse:
    """Dry-run a rule."""
    payload = payload or RuleTestRequest()
    return rules_service.test_rule(get_state(request.app), rule_id, payload.entity_ids)


@router.post(
    "/{rule_id}/execute",
    response_model=RuleExecuteResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Execute rule",
    description=(
        "Manual trigger. With dry_run the simulated results are returned; otherwise a job is queued and its id "
        "returned. A rule with a job already pending or running is rejected with 409."
    ),
    operation_id="execute_rule",
)
def execute_rule(
    request: Request,
    payload: Optional[RuleExecuteRequest] = None,
    rule_id: str = Path(..., description="Rule id (Mongo ObjectId string)."),
) -> RuleExecuteResponse:
    """Execute a rule (dry-run or queued)."""
    payload = payload or RuleExecuteRequest()
    return execution_engine.execute_rule(get_state(request.app), rule_id, payload, user_id=request_user_id(request))


@router.get(
    "/{rule_id}/history",
    response_model=JobListResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Rule execution history",
    description="Jobs created for the rule, newest first, with per-entity outcomes.",
    operation_id="rule_history",
)
def rule_history(
    request: Request,
    rule_id: str = Path(..., description="Rule id (Mongo ObjectId string)."),
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0, le=100000),
) -> JobListResponse:
    """List a rule's executions."""
    items, total = rules_service.rule_history(get_state(request.app), rule_id, limit=limit, offset=offset)
    return JobListResponse(items=items, total=total)

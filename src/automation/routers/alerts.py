from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Path, Query, Request, status

from src.automation.schemas.alerts import (
    AlertListResponse,
    AlertOut,
    AlertResolveRequest,
    AlertRuleCreate,
    AlertRuleListResponse,
    AlertRuleOut,
    AlertRuleStatus,
    AlertRuleTestResponse,
    AlertRuleUpdate,
    AlertsQuery,
    AlertStatsResponse,
    AlertStatus,
    BulkResolveRequest,
)
from src.automation.schemas.common import BulkResponse, ErrorResponse, Severity
from src.automation.services import alerts_service
from src.automation.state import get_state, request_user_id

router = APIRouter(prefix="/api/alerts", tags=["Alerts"])


@router.get(
    "",
    response_model=AlertListResponse,
    summary="List alerts",
    description="List triggered alerts filtered by account, rule, status and severity; most recent first.",
    operation_id="list_alerts",
)
def list_alerts(
    request: Request,
    account_id: Optional[str] = Query(default=None),
    rule_id: Optional[str] = Query(default=None),
    status_filter: Optional[AlertStatus] = Query(default=None, alias="status"),
    severity: Optional[Severity] = Query(default=None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0, le=100000),
) -> AlertListResponse:
    """List alerts with filters and pagination."""
    filters = AlertsQuery(
        account_id=account_id,
        rule_id=rule_id,
        status=status_filter,
        severity=severity,
        limit=limit,
        offset=offset,
    )
    items, total = alerts_service.list_alerts(get_state(request.app), filters)
    return AlertListResponse(items=items, total=total)


@router.get(
    "/rules",
    response_model=AlertRuleListResponse,
    summary="List alert rules",
    description="List alert rules with the number of alerts each has raised.",
    operation_id="list_alert_rules",
)
def list_rules(
    request: Request,
    account_id: Optional[str] = Query(default=None),
    status_filter: Optional[AlertRuleStatus] = Query(default=None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0, le=100000),
) -> AlertRuleListResponse:
    """List alert rules."""
    items, total = alerts_service.list_alert_rules(
        get_state(request.app), account_id=account_id, status=status_filter, limit=limit, offset=offset
    )
    return AlertRuleListResponse(items=items, total=total)


@router.post(
    "/rules",
    response_model=AlertRuleOut,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
    summary="Create alert rule",
    description="Create a new alert rule definition.",
    operation_id="create_alert_rule",
)
def create_rule(request: Request, payload: AlertRuleCreate) -> AlertRuleOut:
    """Create an alert rule."""
    return alerts_service.create_alert_rule(get_state(request.app), payload, user_id=request_user_id(request))


@router.get(
    "/rules/{rule_id}",
    response_model=AlertRuleOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get alert rule",
    description="Fetch a single alert rule by id.",
    operation_id="get_alert_rule",
)
def get_rule(
    request: Request,
    rule_id: str = Path(..., description="Alert rule id (Mongo ObjectId string)."),
) -> AlertRuleOut:
    """Get an alert rule by id."""
    return alerts_service.get_alert_rule(get_state(request.app), rule_id)


@router.put(
    "/rules/{rule_id}",
    response_model=AlertRuleOut,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Update alert rule",
    description="Partial update of an alert rule. Severity changes do not touch alerts already raised.",
    operation_id="update_alert_rule",
)
def update_rule(
    request: Request,
    payload: AlertRuleUpdate,
    rule_id: str = Path(..., description="Alert rule id (Mongo ObjectId string)."),
) -> AlertRuleOut:
    """Update an alert rule."""
    return alerts_service.update_alert_rule(
        get_state(request.app), rule_id, payload, user_id=request_user_id(request)
    )


@router.delete(
    "/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Delete alert rule",
    description="Delete an alert rule by id.",
    operation_id="delete_alert_rule",
)
def delete_rule(
    request: Request,
    rule_id: str = Path(..., description="Alert rule id (Mongo ObjectId string)."),
) -> None:
    """Delete an alert rule."""
    alerts_service.delete_alert_rule(get_state(request.app), rule_id, user_id=request_user_id(request))
    return None


@router.post(
    "/rules/{rule_id}/test",
    response_model=AlertRuleTestResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Test alert rule",
    description="Evaluate the rule over a sample of entities without opening alerts.",
    operation_id="test_alert_rule",
)
def test_rule(
    request: Request,
    rule_id: str = Path(..., description="Alert rule id (Mongo ObjectId string)."),
) -> AlertRuleTestResponse:
    """Dry-evaluate an alert rule."""
    return alerts_service.test_alert_rule(get_state(request.app), rule_id)


@router.post(
    "/bulk-resolve",
    response_model=BulkResponse,
    summary="Bulk resolve alerts",
    description="Resolve many alerts; each id succeeds or fails on its own and the response lists every id.",
    operation_id="bulk_resolve_alerts",
)
def bulk_resolve(request: Request, payload: BulkResolveRequest) -> BulkResponse:
    """Resolve several alerts."""
    return alerts_service.bulk_resolve(get_state(request.app), payload, user_id=request_user_id(request))


@router.get(
    "/stats/{account_id}",
    response_model=AlertStatsResponse,
    summary="Alert statistics",
    description="Counts by alert type and severity, resolved counts and a daily trend over the last N days.",
    operation_id="alert_stats",
)
def alert_stats(
    request: Request,
    account_id: str = Path(..., description="Account id."),
    days: int = Query(30, ge=1, le=365),
) -> AlertStatsResponse:
    """Alert statistics for an account."""
    return alerts_service.alert_stats(get_state(request.app), account_id, days)


@router.get(
    "/{alert_id}",
    response_model=AlertOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get alert",
    description="Fetch one alert with the name of the rule that raised it.",
    operation_id="get_alert",
)
def get_alert(request: Request, alert_id: str = Path(..., description="Alert id (Mongo ObjectId string).")) -> AlertOut:
    """Get an alert by id."""
    return alerts_service.get_alert(get_state(request.app), alert_id)


@router.post(
    "/{alert_id}/resolve",
    response_model=AlertOut,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Resolve alert",
    description="Move an open alert to resolved. Resolving an already-resolved alert returns 409.",
    operation_id="resolve_alert",
)
def resolve_alert(
    request: Request,
    payload: Optional[AlertResolveRequest] = None,
    alert_id: str = Path(..., description="Alert id (Mongo ObjectId string)."),
) -> AlertOut:
    """Resolve an alert."""
    payload = payload or AlertResolveRequest()
    return alerts_service.resolve_alert(
        get_state(request.app), alert_id, payload.resolution_note, user_id=request_user_id(request)
    )

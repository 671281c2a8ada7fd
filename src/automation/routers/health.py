from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from src.automation.config import sanitize_mongo_uri
from src.automation.schemas.common import HealthResponse, as_utc, utc_now
from src.automation.services.work_queue import JOB_PENDING
from src.automation.state import get_state

router = APIRouter(tags=["Health"])


class MongoConnectivityResponse(BaseModel):
    """Response model for backend↔Mongo connectivity diagnostics."""

    ok: bool = Field(..., description="Whether the backend can successfully ping MongoDB.")
    mongo_uri_sanitized: str = Field(..., description="MongoDB URI with credentials masked.")
    mongo_db_name: str = Field(..., description="Database holding rules, jobs, alerts and the audit trail.")
    transactions_enabled: bool = Field(..., description="Whether mutations and audit entries share a transaction.")
    timestamp: str = Field(..., description="UTC timestamp when the check was performed (ISO string).")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional debug metadata.")


class RunningJobInfo(BaseModel):
    job_id: str
    rule_id: str
    trigger: str
    age_seconds: float = Field(..., description="Seconds since the worker claimed the job.")


class EngineDiagnosticsResponse(BaseModel):
    """Background loop and queue diagnostics (no secrets)."""

    background_loops_enabled: bool
    scheduler_running: bool
    worker_running: bool
    alert_monitor_running: bool
    scheduler_tick_interval_sec: int
    job_worker_interval_sec: int
    alert_monitor_interval_sec: int
    pending_jobs: int = Field(..., ge=0)
    running_jobs: List[RunningJobInfo] = Field(
        default_factory=list, description="Running jobs never time out; their age is reported here."
    )
    open_alerts: int = Field(..., ge=0)
    timestamp: str = Field(..., description="UTC timestamp when the diagnostics were produced (ISO string).")


def _task_alive(task: Any) -> bool:
    return task is not None and not task.done()


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Health check",
    description="Basic service liveness check used by deployment and the frontend.",
    operation_id="health_check",
)
def health_check() -> HealthResponse:
    """Return service liveness status."""
    return HealthResponse(status="ok", message="Healthy", timestamp=utc_now())


@router.get(
    "/api/health/mongo",
    response_model=MongoConnectivityResponse,
    summary="Mongo connectivity check",
    description="Pings the backend's configured MongoDB. Credentials are masked.",
    operation_id="mongo_connectivity_check",
)
def mongo_connectivity_check(request: Request) -> MongoConnectivityResponse:
    """Connectivity check endpoint to validate backend↔Mongo."""
    state = get_state(request.app)
    ok = state.mongo.ping()

    return MongoConnectivityResponse(
        ok=ok,
        mongo_uri_sanitized=sanitize_mongo_uri(state.config.mongo_uri),
        mongo_db_name=state.config.mongo_db_name,
        transactions_enabled=state.config.mongo_transactions_enabled,
        timestamp=utc_now().isoformat(),
        meta={},
    )


@router.get(
    "/api/health/engine",
    response_model=EngineDiagnosticsResponse,
    summary="Automation engine diagnostics",
    description="Reports whether the scheduler, job worker and alert monitor are running, plus queue depth.",
    operation_id="engine_diagnostics",
)
def engine_diagnostics(request: Request) -> EngineDiagnosticsResponse:
    """Return background loop status and job queue diagnostics."""
    state = get_state(request.app)
    cfg = state.config
    cols = state.mongo.collections()
    now = utc_now()

    running: List[RunningJobInfo] = []
    for job in state.job_queue.running_jobs():
        started = as_utc(job.get("startedAt")) or now
        running.append(
            RunningJobInfo(
                job_id=str(job["_id"]),
                rule_id=job["ruleId"],
                trigger=job.get("trigger", "manual"),
                age_seconds=max(0.0, (now - started).total_seconds()),
            )
        )

    return EngineDiagnosticsResponse(
        background_loops_enabled=bool(cfg.background_loops_enabled),
        scheduler_running=_task_alive(state.scheduler_task),
        worker_running=_task_alive(state.worker_task),
        alert_monitor_running=_task_alive(state.alerts_task),
        scheduler_tick_interval_sec=int(cfg.scheduler_tick_interval_sec),
        job_worker_interval_sec=int(cfg.job_worker_interval_sec),
        alert_monitor_interval_sec=int(cfg.alert_monitor_interval_sec),
        pending_jobs=int(cols.jobs.count_documents({"status": JOB_PENDING})),
        running_jobs=running,
        open_alerts=int(cols.alerts.count_documents({"status": "open"})),
        timestamp=now.isoformat(),
    )

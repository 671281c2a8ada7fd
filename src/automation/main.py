from __future__ import annotations

import asyncio
import logging
import os
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.automation.config import load_config
from src.automation.routers import alerts, audit, health, jobs, rules
from src.automation.schemas.common import ErrorResponse
from src.automation.services.alert_monitor import alert_monitor_loop
from src.automation.services.errors import AutomationError
from src.automation.services.execution_engine import job_worker_loop
from src.automation.services.scheduler import scheduler_loop
from src.automation.services.templates import seed_templates
from src.automation.state import build_state, get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Service health, Mongo connectivity and engine diagnostics."},
    {"name": "Rules", "description": "Automation rules: CRUD, dry-run, execution, history, templates."},
    {"name": "Jobs", "description": "Queued rule executions and their per-entity outcomes."},
    {"name": "Alerts", "description": "Alert rules and the alerts they raise."},
    {"name": "Audit", "description": "Append-only audit trail of every mutation."},
]

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Ads Automation & Alerting API",
    description=(
        "Backend for condition-driven ad automation. Rules are evaluated against entity performance "
        "snapshots and either simulated (dry run) or queued for asynchronous execution; alert rules "
        "raise alerts and notify channels. Every mutation is written to an append-only audit trail."
    ),
    version="0.1.0",
    openapi_tags=openapi_tags,
)

# Initialize typed app state (config + Mongo manager + collaborators)
init_state(app, build_state(load_config()))


@app.exception_handler(AutomationError)
async def _automation_error_handler(request: Request, exc: AutomationError) -> JSONResponse:
    """Render service errors in the standard ErrorResponse envelope."""
    body = ErrorResponse(detail=exc.detail, code=exc.code, meta=exc.meta)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


@app.on_event("startup")
async def _on_startup() -> None:
    """Startup hook: connect to Mongo, ensure indexes and templates, and start background loops."""
    state = get_state(app)

    # Connect + verify early so misconfigured Mongo doesn't silently break background tasks.
    state.mongo.connect_app()
    if not state.mongo.ping():
        raise RuntimeError("Mongo connectivity check failed during startup. Verify BACKEND_MONGO_URI.")

    state.mongo.init_indexes()
    seed_templates(state)

    if not state.config.background_loops_enabled:
        logger.info("Background loops disabled (BACKGROUND_LOOPS_ENABLED=false)")
        return

    app.state._scheduler_shutdown = asyncio.Event()
    state.scheduler_task = asyncio.create_task(scheduler_loop(state, app.state._scheduler_shutdown))

    app.state._worker_shutdown = asyncio.Event()
    state.worker_task = asyncio.create_task(job_worker_loop(state, app.state._worker_shutdown))

    app.state._alerts_shutdown = asyncio.Event()
    state.alerts_task = asyncio.create_task(alert_monitor_loop(state, app.state._alerts_shutdown))


async def _stop(event_attr: str, task, label: str) -> None:
    shutdown = getattr(app.state, event_attr, None)
    if shutdown is not None:
        shutdown.set()
    if task is not None:
        try:
            await asyncio.wait_for(task, timeout=5.0)
        except Exception:
            logger.exception("Error stopping %s task", label)


@app.on_event("shutdown")
async def _on_shutdown() -> None:
    """Shutdown hook: stop scheduler/worker/alert monitor and close Mongo connections."""
    state = get_state(app)

    await _stop("_scheduler_shutdown", state.scheduler_task, "scheduler")
    await _stop("_worker_shutdown", state.worker_task, "job worker")
    await _stop("_alerts_shutdown", state.alerts_task, "alert monitor")

    state.mongo.close()


def _env_frontend_url() -> str | None:
    return os.getenv("FRONTEND_URL") or os.getenv("REACT_APP_FRONTEND_URL")


def _env_cors_extra_origins() -> List[str]:
    # Comma-separated list for preview deployments, etc.
    raw = os.getenv("CORS_ALLOW_ORIGINS") or ""
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    return parts


# CORS: allow local frontend by default, plus explicit frontend URL and optional extra origins.
allowed_origins: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
frontend_url = _env_frontend_url()
if frontend_url:
    allowed_origins.append(frontend_url)
allowed_origins.extend(_env_cors_extra_origins())

# De-dupe while preserving order
_seen = set()
allowed_origins = [o for o in allowed_origins if not (o in _seen or _seen.add(o))]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(rules.router)
app.include_router(jobs.router)
app.include_router(alerts.router)
app.include_router(audit.router)

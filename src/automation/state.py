from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from fastapi import FastAPI, Request

from src.automation.config import BackendConfig
from src.automation.db.mongo import MongoManager
from src.automation.services.notifications import Notifier
from src.automation.services.providers import (
    ActionExecutor,
    EntityRegistry,
    MetricsProvider,
    MongoActionExecutor,
    MongoEntityRegistry,
    MongoMetricsProvider,
)
from src.automation.services.work_queue import JobQueue


@dataclass
class AppState:
    """Typed app.state container for shared singletons."""

    config: BackendConfig
    mongo: MongoManager
    metrics_provider: MetricsProvider
    entity_registry: EntityRegistry
    action_executor: ActionExecutor
    notifier: Notifier
    job_queue: JobQueue = field(init=False)
    scheduler_task: Optional[object] = None  # asyncio.Task, but kept loose to avoid import cycles
    worker_task: Optional[object] = None  # asyncio.Task for the job worker loop
    alerts_task: Optional[object] = None  # asyncio.Task for the alert monitor loop

    def __post_init__(self) -> None:
        self.job_queue = JobQueue(self.mongo)


# PUBLIC_INTERFACE
def build_state(config: BackendConfig, mongo: Optional[MongoManager] = None) -> AppState:
    """Wire the default Mongo-backed collaborators around a MongoManager."""
    mongo = mongo or MongoManager(
        config.mongo_uri,
        config.mongo_db_name,
        transactions_enabled=config.mongo_transactions_enabled,
    )
    return AppState(
        config=config,
        mongo=mongo,
        metrics_provider=MongoMetricsProvider(mongo),
        entity_registry=MongoEntityRegistry(mongo),
        action_executor=MongoActionExecutor(mongo),
        notifier=Notifier.from_config(config),
    )


# PUBLIC_INTERFACE
def init_state(app: FastAPI, state: AppState) -> None:
    """Attach the AppState to a FastAPI app."""
    app.state.state = state


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]


# PUBLIC_INTERFACE
def request_user_id(request: Request) -> Optional[str]:
    """Acting user from the X-User-Id header (authentication happens upstream); None for anonymous."""
    raw = request.headers.get("x-user-id")
    return raw.strip() if raw and raw.strip() else None

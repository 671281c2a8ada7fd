from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import httpx
import mongomock
import pytest

# main.py loads config at import time; these must be in place before it is imported.
os.environ.setdefault("BACKEND_MONGO_URI", "mongodb://localhost:27017")
os.environ.setdefault("BACKEND_MONGO_DB", "adsautomation_test")
os.environ["BACKGROUND_LOOPS_ENABLED"] = "false"

from src.automation.config import load_config  # noqa: E402
from src.automation.db.mongo import MongoManager  # noqa: E402
from src.automation.services.notifications import NotificationMessage  # noqa: E402
from src.automation.state import AppState, build_state, init_state  # noqa: E402


def _use_real_mongo() -> bool:
    """Run against BACKEND_MONGO_URI instead of mongomock (TEST_USE_REAL_MONGO=1)."""
    return os.getenv("TEST_USE_REAL_MONGO", "").strip() == "1"


class RecordingNotifier:
    """Notifier stand-in that records every delivery instead of sending it."""

    def __init__(self) -> None:
        self.sent: List[Tuple[Mapping[str, Any], NotificationMessage]] = []

    def notify(self, channel_config: Mapping[str, Any], message: NotificationMessage) -> bool:
        self.sent.append((channel_config, message))
        return True


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def mongo_manager() -> Iterator[MongoManager]:
    """
    MongoManager bound to a fresh database.

    Uses an in-memory mongomock client by default so the suite needs no running server;
    the unique partial indexes the engine relies on are created the same way as at startup.
    """
    cfg = load_config()
    if _use_real_mongo():
        manager = MongoManager(cfg.mongo_uri, cfg.mongo_db_name)
    else:
        manager = MongoManager(cfg.mongo_uri, cfg.mongo_db_name, client_factory=mongomock.MongoClient)
    manager.init_indexes()
    try:
        yield manager
    finally:
        if _use_real_mongo():
            manager.app_db().client.drop_database(cfg.mongo_db_name)
        manager.close()


@pytest.fixture
def state(mongo_manager: MongoManager) -> AppState:
    """AppState wired to the test database with a recording notifier."""
    app_state = build_state(load_config(), mongo=mongo_manager)
    app_state.notifier = RecordingNotifier()  # type: ignore[assignment]
    return app_state


@pytest.fixture
def mongo_db(state: AppState):
    """Database handle for direct inspection and seeding."""
    return state.mongo.app_db()


@pytest.fixture
def app(state: AppState):
    """
    FastAPI app fixture bound to the test AppState.

    httpx ASGITransport does not run startup events, so background loops never start;
    tests drive the scheduler, job worker and alert monitor by calling them directly.
    """
    from src.automation.main import app as fastapi_app

    init_state(fastapi_app, state)
    return fastapi_app


@pytest.fixture
async def async_client(app) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client bound to the FastAPI ASGI app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def seed_entity(mongo_db) -> Callable[..., str]:
    """
    Helper fixture inserting one platform entity and its metrics snapshot.

    ``metrics`` uses the stored field names (spend, conversions, cpa, roas, ctr,
    impressionShareLostBudget). Returns the entity id.
    """

    def _seed(
        entity_id: str,
        *,
        entity_type: str = "campaign",
        account_id: str = "acct-1",
        name: Optional[str] = None,
        status: str = "enabled",
        daily_budget: Optional[float] = 100.0,
        metrics: Optional[Dict[str, Any]] = None,
        targets: Optional[Dict[str, Any]] = None,
        baselines: Optional[Dict[str, Dict[str, Any]]] = None,
        daily: Optional[List[Dict[str, Any]]] = None,
        window_days: int = 7,
    ) -> str:
        mongo_db["entities"].insert_one(
            {
                "entityType": entity_type,
                "entityId": entity_id,
                "accountId": account_id,
                "name": name or f"Entity {entity_id}",
                "status": status,
                "dailyBudget": daily_budget,
                "bidModifier": 1.0,
                "labels": [],
            }
        )
        if metrics is not None:
            mongo_db["entity_metrics"].insert_one(
                {
                    "entityType": entity_type,
                    "entityId": entity_id,
                    "windowDays": window_days,
                    "asOf": datetime(2026, 1, 1, tzinfo=timezone.utc),
                    **metrics,
                    "targets": targets or {},
                    "baselines": baselines or {},
                    "daily": daily or [],
                }
            )
        return entity_id

    return _seed

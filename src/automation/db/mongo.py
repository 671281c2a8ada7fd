from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from threading import RLock
from typing import Any, Callable, Iterator, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.client_session import ClientSession
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


DEFAULT_DB_NAME = "adsautomation"

ClientFactory = Callable[..., Any]


@dataclass(frozen=True)
class MongoCollections:
    """Convenience wrapper for app collections."""

    rules: Collection
    alert_rules: Collection
    alerts: Collection
    jobs: Collection
    audit_logs: Collection

    # Owned by the wider platform; read (and mutated by the local action executor).
    entities: Collection
    entity_metrics: Collection


class MongoManager:
    """
    MongoDB connection manager.

    - Maintains one MongoClient for the app's own storage DB.
    - Optionally wraps writes in a transaction when the deployment runs a replica set.
    """

    def __init__(
        self,
        app_mongo_uri: str,
        db_name: str = DEFAULT_DB_NAME,
        *,
        transactions_enabled: bool = False,
        client_factory: Optional[ClientFactory] = None,
    ):
        self._app_mongo_uri = app_mongo_uri
        self._db_name = db_name
        self._transactions_enabled = transactions_enabled
        self._client_factory: ClientFactory = client_factory or MongoClient
        self._app_client: Optional[Any] = None
        self._lock = RLock()

    def connect_app(self) -> None:
        """Initialize app Mongo client if needed."""
        with self._lock:
            if self._app_client is not None:
                return
            # tz_aware so datetimes read back compare cleanly with utc_now().
            self._app_client = self._client_factory(self._app_mongo_uri, tz_aware=True)

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """Ping the configured MongoDB to validate connectivity."""
        try:
            if self._app_client is None:
                self.connect_app()
            assert self._app_client is not None
            self._app_client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False
        except Exception:
            logger.exception("Mongo ping failed (unexpected)")
            return False

    def close(self) -> None:
        """Close the app Mongo client."""
        with self._lock:
            if self._app_client is not None:
                try:
                    self._app_client.close()
                except Exception:
                    logger.exception("Error closing app MongoClient")
                self._app_client = None

    def app_db(self) -> Database:
        """Return the application database handle."""
        if self._app_client is None:
            self.connect_app()
        assert self._app_client is not None
        return self._app_client[self._db_name]

    def collections(self) -> MongoCollections:
        """Return app collections."""
        db = self.app_db()
        return MongoCollections(
            rules=db["rules"],
            alert_rules=db["alert_rules"],
            alerts=db["alerts"],
            jobs=db["jobs"],
            audit_logs=db["audit_logs"],
            entities=db["entities"],
            entity_metrics=db["entity_metrics"],
        )

    @contextmanager
    def transaction(self) -> Iterator[Optional[ClientSession]]:
        """
        Yield a session bound to a transaction, or None when transactions are disabled.

        Callers pass the yielded value as ``session=`` to every write so a mutation and its
        audit entry commit together on replica-set deployments.
        """
        if not self._transactions_enabled:
            yield None
            return
        if self._app_client is None:
            self.connect_app()
        assert self._app_client is not None
        with self._app_client.start_session() as session:
            with session.start_transaction():
                yield session

    def init_indexes(self) -> None:
        """Create required indexes (idempotent)."""
        cols = self.collections()

        # ---- Rules ----
        cols.rules.create_index([("accountId", ASCENDING), ("name", ASCENDING)], name="idx_rules_account_name")
        cols.rules.create_index([("status", ASCENDING), ("nextRunAt", ASCENDING)], name="idx_rules_status_next_run")
        cols.rules.create_index([("scope", ASCENDING)], name="idx_rules_scope")

        # ---- Jobs ----
        # At most one pending/running job per rule: inFlight is only present on non-terminal jobs.
        cols.jobs.create_index(
            [("ruleId", ASCENDING)],
            unique=True,
            partialFilterExpression={"inFlight": True},
            name="uniq_jobs_rule_in_flight",
        )
        cols.jobs.create_index([("status", ASCENDING), ("scheduledAt", ASCENDING)], name="idx_jobs_status_scheduled")
        cols.jobs.create_index([("ruleId", ASCENDING), ("createdAt", DESCENDING)], name="idx_jobs_rule_createdAt_desc")

        # ---- Alert rules ----
        cols.alert_rules.create_index([("accountId", ASCENDING)], name="idx_alert_rules_account")
        cols.alert_rules.create_index([("status", ASCENDING)], name="idx_alert_rules_status")
        cols.alert_rules.create_index([("createdAt", DESCENDING)], name="idx_alert_rules_createdAt_desc")

        # ---- Alerts ----
        cols.alerts.create_index(
            [("ruleId", ASCENDING), ("entityId", ASCENDING)],
            unique=True,
            partialFilterExpression={"status": "open"},
            name="uniq_alerts_rule_entity_open",
        )
        cols.alerts.create_index([("accountId", ASCENDING), ("triggeredAt", DESCENDING)], name="idx_alerts_account_triggered")
        cols.alerts.create_index([("status", ASCENDING)], name="idx_alerts_status")

        # ---- Audit logs ----
        cols.audit_logs.create_index([("accountId", ASCENDING), ("createdAt", DESCENDING)], name="idx_audit_account_createdAt")
        cols.audit_logs.create_index([("entityType", ASCENDING), ("entityId", ASCENDING)], name="idx_audit_entity")

        # ---- External entity data ----
        cols.entities.create_index(
            [("entityType", ASCENDING), ("entityId", ASCENDING)], unique=True, name="uniq_entities_type_id"
        )
        cols.entities.create_index([("entityType", ASCENDING), ("accountId", ASCENDING)], name="idx_entities_type_account")
        cols.entity_metrics.create_index(
            [("entityType", ASCENDING), ("entityId", ASCENDING), ("windowDays", ASCENDING)],
            name="idx_entity_metrics_entity_window",
        )

from __future__ import annotations

from typing import Any, Dict, Optional


class AutomationError(Exception):
    """Base class for errors surfaced by the automation services."""

    status_code = 400
    code = "automation_error"

    def __init__(self, detail: str, *, meta: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.meta = meta or {}


class ValidationError(AutomationError):
    """Malformed condition, action or schedule, or an otherwise invalid request."""

    status_code = 400
    code = "validation_error"


class NotFoundError(AutomationError):
    """Rule, alert rule, alert or job does not exist."""

    status_code = 404
    code = "not_found"


class ConflictError(AutomationError):
    """State conflict: alert already resolved, job already in flight, rule archived."""

    status_code = 409
    code = "conflict"


class ExternalError(AutomationError):
    """Metrics provider, entity registry, action executor or notification channel failed."""

    status_code = 502
    code = "external_error"

"""Business-logic layer (MongoDB-backed rules, jobs, alerts and audit trail).

Automation engine services live in:
- rules_service.py (rule CRUD, templates, clone, bulk, history)
- execution_engine.py (dry runs, enqueue, job worker loop)
- scheduler.py (cron next-run computation and scheduler loop)
- alerts_service.py (alert rule CRUD, alert feed, resolve, stats)
- alert_monitor.py (background alert rule evaluation loop)
"""

# Import side-effects are intentionally avoided here; modules are imported by routers/services as needed.

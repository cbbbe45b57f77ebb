"""
Lockbox Audit Log — one row per security-relevant secret operation.

Actions:
  - read, create, update, delete: single-secret operations
  - export, run, import: bulk operations on an environment

Rows carry project/environment ids, the key name and success/failure. The
secret value is never passed in, so it can never be written.

Usage:
    from lockbox.audit.logger import log_action, query_log, stats
    log_action(store, AuditAction.READ, project_id=p.id,
               environment_id=env.id, secret_key="DB_URL")
"""

from __future__ import annotations

import logging

from lockbox.models import AuditAction, AuditEntry
from lockbox.store import SQLiteStore

logger = logging.getLogger(__name__)


def log_action(
    store: SQLiteStore,
    action: AuditAction,
    *,
    project_id: str | None = None,
    environment_id: str | None = None,
    secret_key: str | None = None,
    success: bool = True,
    error: str | None = None,
) -> AuditEntry | None:
    """Record one audit row.

    Returns the entry on success, None on failure.
    Failures are logged and never raised.
    """
    try:
        return store.log_audit(
            action,
            project_id=project_id,
            environment_id=environment_id,
            secret_key=secret_key,
            success=success,
            error_message=error,
        )
    except Exception as e:
        logger.warning("Audit log_action failed: %s", e)
        return None


def query_log(
    store: SQLiteStore, limit: int = 50, action: AuditAction | str | None = None
) -> list[AuditEntry]:
    """Newest entries first, optionally filtered by action."""
    try:
        return store.list_audit(limit=limit, action=AuditAction(action) if action else None)
    except Exception as e:
        logger.warning("Audit query_log failed: %s", e)
        return []


def stats(store: SQLiteStore) -> dict:
    """Totals by action and the newest timestamp."""
    try:
        by_action = store.count_audit_by_action()
        newest = store.list_audit(limit=1)
        return {
            "total_events": sum(by_action.values()),
            "latest": newest[0].timestamp.isoformat() if newest else None,
            "by_action": by_action,
        }
    except Exception as e:
        logger.warning("Audit stats failed: %s", e)
        return {"total_events": 0, "error": str(e)}

"""Audit trail and insights.

Audit entries record every state change the control plane makes; they can
only be appended. Insights are observations for the user (stalls, error
patterns) whose content is fixed once written; only their resolution flag
moves.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from devfleet.core.models import (
    AuditAction,
    AuditEntry,
    Insight,
    InsightSeverity,
    InsightType,
    utc_now,
)
from devfleet.core.state import Database

logger = logging.getLogger(__name__)


class InsightNotFoundError(LookupError):
    """No insight with the given id."""

    pass


class AuditLog:
    """Append-only audit trail."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self._clock = clock

    def record(
        self,
        action: AuditAction,
        *,
        orchestrator_id: str | None = None,
        task_id: str | None = None,
        session_id: str | None = None,
        delegation_id: str | None = None,
        details: dict[str, Any] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> AuditEntry:
        """Append an entry. Pass ``conn`` to write inside a caller's transaction."""
        entry = AuditEntry(
            orchestrator_id=orchestrator_id,
            action=action,
            task_id=task_id,
            session_id=session_id,
            delegation_id=delegation_id,
            details=details or {},
            created_at=self._clock(),
        )
        entry.id = self.db.append_audit(entry, conn=conn)
        logger.debug(f"audit {action.value} task={task_id} delegation={delegation_id}")
        return entry

    def list(
        self,
        *,
        task_id: str | None = None,
        delegation_id: str | None = None,
        action: AuditAction | None = None,
        orchestrator_id: str | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        return self.db.list_audit(
            task_id=task_id,
            delegation_id=delegation_id,
            action=action,
            orchestrator_id=orchestrator_id,
            limit=limit,
        )


class InsightLog:
    """Insights surfaced to the user."""

    def __init__(
        self,
        db: Database,
        audit: AuditLog,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.audit = audit
        self._clock = clock

    def record(
        self,
        orchestrator_id: str,
        insight_type: InsightType,
        message: str,
        *,
        severity: InsightSeverity = InsightSeverity.INFO,
        task_id: str | None = None,
        session_id: str | None = None,
        delegation_id: str | None = None,
        context: dict[str, Any] | None = None,
        suggested_actions: list[dict[str, Any]] | None = None,
    ) -> Insight | None:
        """Record an insight and its audit entry in one transaction.

        Returns None when an unresolved stall insight already exists for the
        delegation; nothing is written in that case.
        """
        insight = Insight(
            id=f"ins-{uuid.uuid4().hex[:12]}",
            orchestrator_id=orchestrator_id,
            task_id=task_id,
            session_id=session_id,
            delegation_id=delegation_id,
            type=insight_type,
            severity=severity,
            message=message,
            context=context or {},
            suggested_actions=suggested_actions or [],
            created_at=self._clock(),
        )
        with self.db.transaction() as conn:
            if not self.db.insert_insight(insight, conn=conn):
                return None
            self.audit.record(
                AuditAction.INSIGHT_GENERATED,
                orchestrator_id=orchestrator_id,
                task_id=task_id,
                session_id=session_id,
                delegation_id=delegation_id,
                details={
                    "insight_id": insight.id,
                    "type": insight_type.value,
                    "severity": severity.value,
                },
                conn=conn,
            )
        logger.info(f"Insight {insight.id} ({insight_type.value}/{severity.value}): {message}")
        return insight

    def get(self, insight_id: str) -> Insight:
        insight = self.db.get_insight(insight_id)
        if insight is None:
            raise InsightNotFoundError(f"Insight not found: {insight_id}")
        return insight

    def resolve(self, insight_id: str, reason: str = "resolved by user") -> Insight:
        """Mark an insight resolved. Resolving twice is a no-op."""
        insight = self.get(insight_id)
        with self.db.transaction() as conn:
            if self.db.resolve_insight(insight_id, at=self._clock(), conn=conn):
                self.audit.record(
                    AuditAction.INSIGHT_RESOLVED,
                    orchestrator_id=insight.orchestrator_id,
                    task_id=insight.task_id,
                    delegation_id=insight.delegation_id,
                    details={"insight_id": insight_id, "reason": reason},
                    conn=conn,
                )
        return self.get(insight_id)

    def list(
        self,
        *,
        resolved: bool | None = None,
        orchestrator_id: str | None = None,
        delegation_id: str | None = None,
        insight_type: InsightType | None = None,
    ) -> list[Insight]:
        return self.db.list_insights(
            resolved=resolved,
            orchestrator_id=orchestrator_id,
            delegation_id=delegation_id,
            insight_type=insight_type,
        )

    def unresolved_for(
        self, delegation_id: str, insight_type: InsightType = InsightType.STALL_DETECTED
    ) -> Insight | None:
        found = self.list(resolved=False, delegation_id=delegation_id, insight_type=insight_type)
        return found[0] if found else None

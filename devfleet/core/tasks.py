"""Task queue for orchestrators.

Tasks move ``queued -> planning -> executing -> monitoring`` and end in
``completed``, ``failed`` or ``cancelled``. Every move is a compare-and-set
on the status column and writes an audit entry in the same transaction.
Terminal tasks never change again; they can still be annotated in the audit
trail, or cloned into a fresh task with ``requeue``.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from devfleet.core.audit import AuditLog
from devfleet.core.models import (
    TASK_TRANSITIONS,
    AuditAction,
    Task,
    TaskError,
    TaskStatus,
    TaskType,
    utc_now,
)
from devfleet.core.state import Database, StaleStateError

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 10_000


class TaskValidationError(ValueError):
    """Task input is invalid (empty or oversized description, bad type or confidence)."""

    pass


class TaskNotFoundError(LookupError):
    """No task with the given id."""

    pass


class TaskNotEditableError(Exception):
    """Task description can only change while the task is queued."""

    pass


class InvalidTransitionError(Exception):
    """Requested status change is not allowed from the current status."""

    pass


# Checked in order; the first type with a keyword hit wins ties.
_TYPE_KEYWORDS: list[tuple[TaskType, tuple[str, ...]]] = [
    (TaskType.BUG, ("fix", "bug", "broken", "crash", "error", "regression", "fails")),
    (TaskType.TEST, ("test", "tests", "coverage", "pytest", "unit test", "e2e")),
    (TaskType.DOC, ("doc", "docs", "readme", "documentation", "docstring", "changelog")),
    (TaskType.REFACTOR, ("refactor", "clean up", "cleanup", "rename", "simplify", "extract")),
    (TaskType.REVIEW, ("review", "audit", "inspect")),
    (TaskType.RESEARCH, ("investigate", "research", "explore", "spike", "compare", "evaluate")),
    (TaskType.MAINTENANCE, ("upgrade", "bump", "dependency", "dependencies", "migrate", "update")),
    (TaskType.FEATURE, ("add", "implement", "create", "build", "support", "new")),
]

# Provider preference per task type, strongest first.
RECOMMENDED_AGENTS: dict[TaskType, list[str]] = {
    TaskType.FEATURE: ["claude", "codex", "gemini"],
    TaskType.BUG: ["claude", "codex"],
    TaskType.REFACTOR: ["claude", "codex"],
    TaskType.TEST: ["codex", "claude"],
    TaskType.DOC: ["gemini", "claude"],
    TaskType.RESEARCH: ["gemini", "claude"],
    TaskType.REVIEW: ["claude", "gemini"],
    TaskType.MAINTENANCE: ["codex", "claude"],
}


def classify_task(description: str) -> tuple[TaskType, float]:
    """Guess a task type from free text.

    Returns the type and a confidence in 0..1. Text without any keyword is a
    feature with low confidence.
    """
    text = description.lower()
    words = set(re.findall(r"[a-z0-9]+", text))
    scores: dict[TaskType, int] = {}
    for task_type, keywords in _TYPE_KEYWORDS:
        hits = sum(1 for k in keywords if (k in text if " " in k else k in words))
        if hits:
            scores[task_type] = hits
    if not scores:
        return TaskType.FEATURE, 0.3
    best = max(scores, key=lambda t: scores[t])
    total = sum(scores.values())
    confidence = 0.5 + 0.5 * (scores[best] / total)
    return best, round(min(confidence, 0.95), 2)


def recommended_agents(task_type: TaskType) -> list[str]:
    return list(RECOMMENDED_AGENTS.get(task_type, ["claude"]))


class TaskQueue:
    """Creates tasks and drives their state machine."""

    def __init__(
        self,
        db: Database,
        audit: AuditLog,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.audit = audit
        self._clock = clock

    # --- Creation & queries ---

    def create(
        self,
        orchestrator_id: str,
        description: str,
        task_type: TaskType | str | None = None,
        confidence: float | None = None,
        folder_scope: str | None = None,
        external_issue_ref: str | None = None,
    ) -> Task:
        """Create a queued task.

        Raises:
            TaskValidationError: On empty/oversized description, unknown type,
                or a confidence that is not a number within 0..1.
        """
        text = _validate_description(description)
        if task_type is None:
            task_type, guessed = classify_task(text)
            confidence = guessed if confidence is None else confidence
        else:
            try:
                task_type = TaskType(task_type)
            except ValueError:
                raise TaskValidationError(f"Unknown task type: {task_type}") from None
        if confidence is None:
            confidence = 1.0
        if isinstance(confidence, bool):
            raise TaskValidationError(f"Confidence must be a number, got {confidence}")
        try:
            value = float(confidence)
        except (TypeError, ValueError):
            raise TaskValidationError(f"Confidence must be a number, got {confidence!r}") from None
        if not 0.0 <= value <= 1.0:
            raise TaskValidationError(f"Confidence must be within 0..1, got {confidence}")

        now = self._clock()
        task = Task(
            id=f"task-{uuid.uuid4().hex[:12]}",
            orchestrator_id=orchestrator_id,
            folder_scope=folder_scope,
            description=text,
            type=task_type,
            confidence=value,
            external_issue_ref=external_issue_ref,
            created_at=now,
            updated_at=now,
        )
        with self.db.transaction() as conn:
            self.db.insert_task(task, conn=conn)
            self.audit.record(
                AuditAction.TASK_CREATED,
                orchestrator_id=orchestrator_id,
                task_id=task.id,
                details={"type": task.type.value, "confidence": task.confidence},
                conn=conn,
            )
        logger.info(f"Queued {task.type.value} task {task.id}")
        return task

    def get(self, task_id: str, conn: sqlite3.Connection | None = None) -> Task:
        task = self.db.get_task(task_id, conn=conn)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    def list(
        self,
        orchestrator_id: str | None = None,
        status: TaskStatus | None = None,
        folder_scope: str | None = None,
    ) -> list[Task]:
        return self.db.list_tasks(
            orchestrator_id=orchestrator_id, status=status, folder_scope=folder_scope
        )

    def next_queued(self, orchestrator_id: str | None = None) -> Task | None:
        """Oldest queued task."""
        queued = self.list(orchestrator_id=orchestrator_id, status=TaskStatus.QUEUED)
        return queued[0] if queued else None

    # --- Edits ---

    def edit_description(self, task_id: str, description: str) -> Task:
        """Replace the description of a queued task.

        Raises:
            TaskNotEditableError: If the task is past ``queued``.
        """
        text = _validate_description(description)
        with self.db.transaction() as conn:
            task = self.get(task_id, conn=conn)
            if not self.db.cas_task(
                task_id,
                TaskStatus.QUEUED,
                conn=conn,
                description=text,
                updated_at=self._clock(),
            ):
                raise TaskNotEditableError(
                    f"Task {task_id} is {task.status.value}; only queued tasks can be edited"
                )
            self.audit.record(
                AuditAction.TASK_EDITED,
                orchestrator_id=task.orchestrator_id,
                task_id=task_id,
                details={"previous": task.description},
                conn=conn,
            )
        return self.get(task_id)

    def link_issue(self, task_id: str, issue_ref: str) -> Task:
        with self.db.transaction() as conn:
            task = self.get(task_id, conn=conn)
            if task.status.is_terminal:
                raise InvalidTransitionError(f"Task {task_id} is {task.status.value}")
            self.db.cas_task(
                task_id,
                task.status,
                conn=conn,
                external_issue_ref=issue_ref,
                updated_at=self._clock(),
            )
            self.audit.record(
                AuditAction.ISSUE_LINKED,
                orchestrator_id=task.orchestrator_id,
                task_id=task_id,
                details={"issue": issue_ref},
                conn=conn,
            )
        return self.get(task_id)

    def annotate(self, task_id: str, note: str, **details: Any) -> None:
        """Attach a note in the audit trail. Allowed in any status."""
        task = self.get(task_id)
        self.audit.record(
            AuditAction.TASK_ANNOTATED,
            orchestrator_id=task.orchestrator_id,
            task_id=task_id,
            details={"note": note, **details},
        )

    # --- Transitions ---

    def transition(
        self,
        task_id: str,
        target: TaskStatus,
        conn: sqlite3.Connection | None = None,
        reason: str | None = None,
        **fields: Any,
    ) -> Task:
        """Move a task to ``target`` if the state machine allows it.

        Raises:
            InvalidTransitionError: If ``target`` is not reachable from the current status.
            StaleStateError: If the status changed between read and write.
        """
        if conn is None:
            with self.db.transaction() as own:
                self._transition(own, task_id, target, reason, fields)
        else:
            self._transition(conn, task_id, target, reason, fields)
        return self.get(task_id, conn=conn)

    def _transition(
        self,
        conn: sqlite3.Connection,
        task_id: str,
        target: TaskStatus,
        reason: str | None,
        fields: dict[str, Any],
    ) -> None:
        task = self.get(task_id, conn=conn)
        if target not in TASK_TRANSITIONS[task.status]:
            raise InvalidTransitionError(
                f"Task {task_id}: {task.status.value} -> {target.value} not allowed"
            )
        now = self._clock()
        values: dict[str, Any] = {"status": target, "updated_at": now, **fields}
        if target.is_terminal:
            values["completed_at"] = now
        if not self.db.cas_task(task_id, task.status, conn=conn, **values):
            raise StaleStateError(f"Task {task_id} is no longer {task.status.value}")
        details: dict[str, Any] = {"from": task.status.value, "to": target.value}
        if reason:
            details["reason"] = reason
        self.audit.record(
            AuditAction.TASK_STATUS_CHANGED,
            orchestrator_id=task.orchestrator_id,
            task_id=task_id,
            delegation_id=fields.get("delegation_id") or task.delegation_id,
            details=details,
            conn=conn,
        )
        logger.debug(f"Task {task_id}: {task.status.value} -> {target.value}")

    def start_planning(self, task_id: str, conn: sqlite3.Connection | None = None) -> Task:
        return self.transition(task_id, TaskStatus.PLANNING, conn=conn)

    def start_execution(
        self,
        task_id: str,
        agent: str,
        delegation_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> Task:
        return self.transition(
            task_id,
            TaskStatus.EXECUTING,
            conn=conn,
            assigned_agent=agent,
            delegation_id=delegation_id,
        )

    def start_monitoring(self, task_id: str, conn: sqlite3.Connection | None = None) -> Task:
        return self.transition(task_id, TaskStatus.MONITORING, conn=conn)

    def complete(
        self, task_id: str, summary: str, conn: sqlite3.Connection | None = None
    ) -> Task:
        return self.transition(task_id, TaskStatus.COMPLETED, conn=conn, result_summary=summary)

    def fail(self, task_id: str, error: TaskError, conn: sqlite3.Connection | None = None) -> Task:
        return self.transition(
            task_id, TaskStatus.FAILED, conn=conn, reason=error.message, error_info=error
        )

    def cancel(
        self, task_id: str, reason: str = "cancelled", conn: sqlite3.Connection | None = None
    ) -> Task:
        """Cancel the task record only; see DelegationEngine.cancel_task for sessions."""
        return self.transition(task_id, TaskStatus.CANCELLED, conn=conn, reason=reason)

    def requeue(self, task_id: str) -> Task:
        """Clone a failed or cancelled task into a new queued task."""
        original = self.get(task_id)
        if original.status not in (TaskStatus.FAILED, TaskStatus.CANCELLED):
            raise InvalidTransitionError(
                f"Only failed or cancelled tasks can be requeued; {task_id} is {original.status.value}"
            )
        clone = self.create(
            original.orchestrator_id,
            original.description,
            task_type=original.type,
            confidence=original.confidence,
            folder_scope=original.folder_scope,
            external_issue_ref=original.external_issue_ref,
        )
        self.audit.record(
            AuditAction.TASK_REQUEUED,
            orchestrator_id=original.orchestrator_id,
            task_id=clone.id,
            details={"requeued_from": task_id},
        )
        return clone


def _validate_description(description: str) -> str:
    text = (description or "").strip()
    if not text:
        raise TaskValidationError("Task description must not be empty")
    if len(text) > MAX_DESCRIPTION_LENGTH:
        raise TaskValidationError(
            f"Task description is {len(text)} characters; the limit is {MAX_DESCRIPTION_LENGTH}"
        )
    return text

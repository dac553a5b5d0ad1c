"""Stall detection for running delegations.

Runs as its own polling loop, independent of the health monitor. Each cycle
looks at every running/monitoring delegation:

- finished sessions are finalized;
- a session silent for longer than its orchestrator's stall threshold gets
  exactly one open ``stall_detected`` insight;
- with auto intervention on, the agent is re-prompted (up to
  ``max_reprompts`` times) and then its task is cancelled;
- once output resumes, the open stall insight is resolved.

A silent session is judged at most once per its orchestrator's monitoring
interval; catching up with finished sessions and resolving recovered stalls
happen on every cycle.

Cancellations stop processes and can take seconds, so they run on a small
executor instead of the polling thread.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime

from devfleet.core.audit import AuditLog, InsightLog
from devfleet.core.config import Limits
from devfleet.core.delegation import DelegationEngine
from devfleet.core.models import (
    AuditAction,
    Delegation,
    DelegationStatus,
    ErrorCategory,
    Insight,
    InsightSeverity,
    InsightType,
    OrchestratorStatus,
    Task,
    utc_now,
)
from devfleet.core.process import ProcessSupervisor
from devfleet.core.state import Database
from devfleet.core.worker import PollingWorker

logger = logging.getLogger(__name__)

REPROMPT_TEXT = (
    "No output from you for a while. Continue with the task, or if you are "
    "done, finish with the ```json summary block."
)

# (minimum minutes stalled, severity), most severe first
SEVERITY_THRESHOLDS: list[tuple[int, InsightSeverity]] = [
    (60, InsightSeverity.CRITICAL),
    (30, InsightSeverity.ERROR),
    (15, InsightSeverity.WARNING),
]


def stall_severity(idle_seconds: float) -> InsightSeverity:
    minutes = idle_seconds / 60
    for threshold, severity in SEVERITY_THRESHOLDS:
        if minutes >= threshold:
            return severity
    return InsightSeverity.INFO


def _suggested_actions(severity: InsightSeverity) -> list[dict[str, str]]:
    actions = [
        {"action": "view_output", "label": "Inspect the session output"},
        {"action": "reprompt", "label": "Send the agent a nudge"},
    ]
    if severity in (InsightSeverity.ERROR, InsightSeverity.CRITICAL):
        actions.append({"action": "cancel", "label": "Cancel the task and requeue it"})
    return actions


class StallDetector:
    """Watches running delegations for silence."""

    def __init__(
        self,
        db: Database,
        engine: DelegationEngine,
        supervisor: ProcessSupervisor,
        insights: InsightLog,
        audit: AuditLog,
        limits: Limits | None = None,
        executor: Executor | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.engine = engine
        self.supervisor = supervisor
        self.insights = insights
        self.audit = audit
        self.limits = limits or Limits()
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="devfleet-intervention"
        )
        self._owns_executor = executor is None
        self._clock = clock
        self._pending_cancels: set[str] = set()
        self._pending_lock = threading.Lock()
        # delegation id -> when its silence was last judged
        self._last_judged: dict[str, datetime] = {}
        self._worker = PollingWorker("stall-detector", self.run_cycle, self.limits.stall_interval)

    def start(self) -> None:
        self._worker.start()

    def stop(self) -> None:
        self._worker.stop()
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    @property
    def running(self) -> bool:
        return self._worker.running

    def run_cycle(self) -> int:
        """Check every running/monitoring delegation once. Returns how many were checked."""
        delegations = self.db.list_delegations(
            statuses=[DelegationStatus.RUNNING, DelegationStatus.MONITORING]
        )
        for delegation in delegations:
            try:
                self.check_delegation(delegation)
            except Exception as e:
                logger.error(f"Stall check failed for {delegation.id}: {e}", exc_info=True)
        active = {d.id for d in delegations}
        for delegation_id in list(self._last_judged):
            if delegation_id not in active:
                del self._last_judged[delegation_id]
        return len(delegations)

    def check_delegation(self, delegation: Delegation) -> None:
        delegation = self.engine.reconcile(delegation.id)
        open_insight = self.insights.unresolved_for(delegation.id)
        if delegation.status not in (DelegationStatus.RUNNING, DelegationStatus.MONITORING):
            if open_insight is not None:
                self.insights.resolve(open_insight.id, reason="delegation finished")
            return

        task = self.db.get_task(delegation.task_id)
        if task is None:
            return
        orchestrator = self.db.get_orchestrator(task.orchestrator_id)
        if orchestrator is not None and orchestrator.status == OrchestratorStatus.PAUSED:
            return
        threshold = (
            orchestrator.stall_threshold_sec
            if orchestrator is not None
            else self.limits.default_stall_threshold
        )
        auto_intervention = orchestrator.auto_intervention if orchestrator is not None else False
        interval = (
            orchestrator.monitoring_interval_sec
            if orchestrator is not None
            else self.limits.default_monitoring_interval
        )

        now = self._clock()
        last_activity = self._last_activity(delegation)
        idle = (now - last_activity).total_seconds()

        if idle < threshold:
            if open_insight is not None:
                self.insights.resolve(open_insight.id, reason="output resumed")
                logger.info(f"Delegation {delegation.id} recovered from stall")
            return

        if not self._judgement_due(delegation.id, interval, now):
            return

        if open_insight is not None:
            if auto_intervention and self._intervention_due(delegation, open_insight, now, threshold):
                self._intervene(delegation, task, open_insight, idle)
            return

        severity = stall_severity(idle)
        insight = self.insights.record(
            task.orchestrator_id,
            InsightType.STALL_DETECTED,
            f"Agent session {delegation.session_id} has produced no output for {int(idle)}s",
            severity=severity,
            task_id=task.id,
            session_id=delegation.session_id,
            delegation_id=delegation.id,
            context={
                "idle_seconds": int(idle),
                "threshold_seconds": threshold,
                "last_activity_at": last_activity.isoformat(),
                "delegation_status": delegation.status.value,
                "provider": delegation.agent_provider,
            },
            suggested_actions=_suggested_actions(severity),
        )
        if insight is None:
            return
        self.audit.record(
            AuditAction.STALL_DETECTED,
            orchestrator_id=task.orchestrator_id,
            task_id=task.id,
            session_id=delegation.session_id,
            delegation_id=delegation.id,
            details={"insight_id": insight.id, "idle_seconds": int(idle), "severity": severity.value},
        )
        if auto_intervention:
            self._intervene(delegation, task, insight, idle)
        else:
            logger.warning(f"Delegation {delegation.id} stalled; left for manual handling")

    def _judgement_due(self, delegation_id: str, interval: int, now: datetime) -> bool:
        last = self._last_judged.get(delegation_id)
        if last is not None and (now - last).total_seconds() < interval:
            return False
        self._last_judged[delegation_id] = now
        return True

    def _last_activity(self, delegation: Delegation) -> datetime:
        """Latest of: creation, entering running, last output."""
        candidates = [delegation.created_at]
        for entry in delegation.execution_log:
            if entry.metadata.get("to") == DelegationStatus.RUNNING.value:
                candidates.append(entry.timestamp)
        if delegation.session_id is not None:
            last_output = self.supervisor.last_output_at(delegation.session_id)
            if last_output is not None:
                candidates.append(last_output)
        return max(candidates)

    def _intervention_due(
        self, delegation: Delegation, insight: Insight, now: datetime, threshold: int
    ) -> bool:
        """Another threshold has passed since the last intervention on this stall."""
        last = insight.created_at
        for entry in delegation.execution_log:
            if entry.metadata.get("intervention") and entry.timestamp > last:
                last = entry.timestamp
        return (now - last).total_seconds() >= threshold

    def _intervene(self, delegation: Delegation, task: Task, insight: Insight, idle: float) -> None:
        if self.engine.reprompt_count(delegation) < self.limits.max_reprompts:
            if self.engine.reprompt(delegation.id, REPROMPT_TEXT):
                self.audit.record(
                    AuditAction.INTERVENTION,
                    orchestrator_id=task.orchestrator_id,
                    task_id=task.id,
                    session_id=delegation.session_id,
                    delegation_id=delegation.id,
                    details={"action": "reprompt", "insight_id": insight.id},
                )
                return
        self._schedule_cancel(delegation, task, insight, idle)

    def _schedule_cancel(self, delegation: Delegation, task: Task, insight: Insight, idle: float) -> None:
        with self._pending_lock:
            if task.id in self._pending_cancels:
                return
            self._pending_cancels.add(task.id)
        self.audit.record(
            AuditAction.INTERVENTION,
            orchestrator_id=task.orchestrator_id,
            task_id=task.id,
            session_id=delegation.session_id,
            delegation_id=delegation.id,
            details={"action": "cancel", "insight_id": insight.id},
        )
        future = self._executor.submit(
            self.engine.cancel_task,
            task.id,
            f"stalled for {int(idle)}s",
            ErrorCategory.STALL_TIMEOUT,
        )
        future.add_done_callback(lambda f, task_id=task.id: self._cancel_done(task_id, f))

    def _cancel_done(self, task_id: str, future: Future) -> None:
        with self._pending_lock:
            self._pending_cancels.discard(task_id)
        error = future.exception()
        if error is not None:
            logger.error(f"Cancelling stalled task {task_id} failed: {error}")

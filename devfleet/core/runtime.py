"""Wiring of the control plane.

``ControlPlane`` builds every component on one database and owns the two
background loops (health monitor, stall detector). The CLI commands that
need live supervision (``delegate``, ``monitor``, ``health``) run one.

USAGE:
    with ControlPlane(load_config()) as plane:
        task = plane.tasks.create(plane.orchestrator.id, "Fix the login bug")
        plane.engine.delegate(task.id)
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from datetime import datetime

from devfleet.core.audit import AuditLog, InsightLog
from devfleet.core.collaborators import (
    EnvironmentSecrets,
    IssueSource,
    KnowledgeSource,
    PreferenceSource,
    SecretsSource,
)
from devfleet.core.config import FleetConfig
from devfleet.core.delegation import DelegationEngine
from devfleet.core.fleet import DETACHED_EXIT_REASON
from devfleet.core.health import HealthMonitor, Probe, probe_http
from devfleet.core.models import (
    ErrorCategory,
    Orchestrator,
    ProcessKind,
    ProcessStatus,
    utc_now,
)
from devfleet.core.orchestrators import OrchestratorRegistry
from devfleet.core.ports import PortRegistry
from devfleet.core.process import ProcessError, ProcessSupervisor, is_alive
from devfleet.core.providers import ProviderRegistry
from devfleet.core.stall import StallDetector
from devfleet.core.state import Database
from devfleet.core.tasks import InvalidTransitionError, TaskQueue

logger = logging.getLogger(__name__)

ORPHAN_REASON = "owning devfleet process exited"


class ControlPlane:
    """All control-plane components for one project and user."""

    def __init__(
        self,
        config: FleetConfig,
        *,
        preferences: PreferenceSource | None = None,
        secrets: SecretsSource | None = None,
        knowledge: KnowledgeSource | None = None,
        issues: IssueSource | None = None,
        providers: ProviderRegistry | None = None,
        probe: Probe = probe_http,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        limits = config.limits
        self.db = Database(config.db_path)
        self.audit = AuditLog(self.db, clock=clock)
        self.insights = InsightLog(self.db, self.audit, clock=clock)
        self.ports = PortRegistry(
            self.db,
            config.socket_dir,
            user_id=config.user_id,
            max_suggestion_attempts=limits.port_suggestion_attempts,
        )
        self.orchestrators = OrchestratorRegistry(
            self.db,
            self.audit,
            default_interval=limits.default_monitoring_interval,
            default_stall_threshold=limits.default_stall_threshold,
            clock=clock,
        )
        self.tasks = TaskQueue(self.db, self.audit, clock=clock)
        self.providers = providers or ProviderRegistry.from_config(config.providers)
        self.supervisor = ProcessSupervisor(self.db, limits, audit=self.audit, clock=clock)
        if secrets is None:
            secrets = EnvironmentSecrets(
                dict(os.environ),
                {
                    name: self.providers.get(name).credential_env
                    for name in self.providers.names()
                },
            )
        self.engine = DelegationEngine(
            self.db,
            self.tasks,
            self.supervisor,
            self.audit,
            self.providers,
            preferences=preferences,
            secrets=secrets,
            knowledge=knowledge,
            issues=issues,
            transcript_dir=config.transcript_dir,
            clock=clock,
        )
        self.health = HealthMonitor(self.db, self.supervisor, limits, probe=probe, clock=clock)
        self.stall = StallDetector(
            self.db, self.engine, self.supervisor, self.insights, self.audit, limits, clock=clock
        )
        self._started = False

    @property
    def orchestrator(self) -> Orchestrator:
        """The user's master orchestrator, created on first use."""
        return self.orchestrators.ensure_master(self.config.user_id)

    def start(self, loops: bool = True) -> None:
        """Recover orphaned records, then start the background loops."""
        self.recover()
        if loops:
            self.health.start()
            self.stall.start()
        self._started = True
        logger.info(f"Control plane started ({self.config.db_path})")

    def stop(self) -> None:
        """Stop the loops and every process this instance started."""
        self.health.stop()
        self.stall.stop()
        self.supervisor.shutdown()
        self._started = False
        logger.info("Control plane stopped")

    def __enter__(self) -> ControlPlane:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    def recover(self) -> int:
        """Settle records left behind by devfleet processes that have exited.

        Live records are only touched when their owner is gone. A vanished
        dev server is marked crashed; fleet services run detached and have no
        owner, so only the liveness of their own PID counts. An orphaned agent
        session is stopped, cancelling its task first if it had one. Returns
        how many records were settled.
        """
        settled = 0
        live = [ProcessStatus.STARTING, ProcessStatus.RUNNING]
        for record in self.db.list_processes(statuses=live):
            if self.supervisor.is_managed(record.id):
                continue
            if record.supervisor_pid is not None and is_alive(record.supervisor_pid):
                continue
            if record.kind == ProcessKind.AGENT_SESSION:
                delegations = self.db.list_delegations(session_id=record.id)
                active = [d for d in delegations if not d.status.is_terminal]
                for delegation in active:
                    try:
                        self.engine.cancel_task(
                            delegation.task_id,
                            reason=f"agent session {record.id}: {ORPHAN_REASON}",
                            category=ErrorCategory.CRASH_DURING_RUN,
                        )
                    except InvalidTransitionError as e:
                        logger.info(f"Orphaned delegation {delegation.id} already settled: {e}")
                if not active:
                    try:
                        self.supervisor.stop(record.id)
                    except ProcessError as e:
                        logger.warning(f"Could not stop orphaned session {record.id}: {e}")
                settled += 1
            elif not is_alive(record.pid):
                reason = DETACHED_EXIT_REASON if record.supervisor_pid is None else ORPHAN_REASON
                self.supervisor.mark_crashed(
                    record.id, reason, category=ErrorCategory.CRASH_DURING_RUN
                )
                settled += 1
        if settled:
            logger.info(f"Recovered {settled} orphaned process record(s)")
        return settled

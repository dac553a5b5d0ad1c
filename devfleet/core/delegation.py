"""Delegation engine: binds tasks to agent sessions.

A delegation moves ``spawning -> injecting_context -> running -> monitoring``
and ends ``completed`` or ``failed``:

- spawning: reuse the given session, else an idle interactive session of the
  provider, else start a one-shot session through the process supervisor;
- injecting_context: write the task context to
  ``<workdir>/.devfleet/context.md`` and deliver the prompt;
- running: the agent process is alive with its prompt;
- monitoring: the session produced its first output after injection;
- finalization: when the session exits (or an interactive session prints its
  summary), the last ```json block decides the outcome; without one the
  exit code does.

Each task has at most one non-terminal delegation (enforced by the
database). Task and delegation statuses always move together inside one
transaction.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from devfleet.core.audit import AuditLog
from devfleet.core.collaborators import (
    IssueSource,
    KnowledgeSource,
    PreferenceSource,
    SecretsSource,
)
from devfleet.core.models import (
    DELEGATION_TRANSITIONS,
    AuditAction,
    Delegation,
    DelegationResult,
    DelegationStatus,
    ErrorCategory,
    LogEntry,
    LogLevel,
    ProcessKind,
    ProcessStatus,
    SupervisedProcess,
    Task,
    TaskError,
    TaskStatus,
    utc_now,
)
from devfleet.core.parser import SUMMARY_INSTRUCTIONS, find_agent_summary
from devfleet.core.process import ProcessError, ProcessSpec, ProcessSupervisor
from devfleet.core.providers import AgentProvider, CommandSpec, ProviderRegistry
from devfleet.core.state import Database, StaleStateError
from devfleet.core.tasks import InvalidTransitionError, TaskQueue, recommended_agents

logger = logging.getLogger(__name__)

CONTEXT_RELATIVE_PATH = Path(".devfleet/context.md")
CONTEXT_FILE_ENV = "DEVFLEET_CONTEXT_FILE"
REPROMPT_MARKER = "reprompt"


class DelegationError(Exception):
    """Base exception for delegation failures raised to callers."""

    pass


class ActiveDelegationError(DelegationError):
    """The task already has a non-terminal delegation."""

    pass


class DelegationNotFoundError(DelegationError, LookupError):
    """No delegation with the given id."""

    pass


class SessionUnavailableError(DelegationError):
    """No usable agent session could be acquired."""

    pass


class DelegationEngine:
    """Drives delegations from spawn to finalization."""

    def __init__(
        self,
        db: Database,
        tasks: TaskQueue,
        supervisor: ProcessSupervisor,
        audit: AuditLog,
        providers: ProviderRegistry | None = None,
        *,
        preferences: PreferenceSource | None = None,
        secrets: SecretsSource | None = None,
        knowledge: KnowledgeSource | None = None,
        issues: IssueSource | None = None,
        transcript_dir: Path | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.tasks = tasks
        self.supervisor = supervisor
        self.audit = audit
        self.providers = providers or ProviderRegistry()
        self.preferences = preferences
        self.secrets = secrets
        self.knowledge = knowledge
        self.issues = issues
        self.transcript_dir = transcript_dir
        self._clock = clock

        # output position of the session when the prompt was delivered
        self._positions: dict[str, int] = {}
        self._by_session: dict[str, str] = {}
        self._output_seen: set[str] = set()
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

        supervisor.add_output_listener(self._on_output)
        supervisor.add_exit_listener(self._on_exit)

    def _lock(self, delegation_id: str) -> threading.RLock:
        with self._locks_guard:
            return self._locks.setdefault(delegation_id, threading.RLock())

    # --- Queries ---

    def get(self, delegation_id: str) -> Delegation:
        delegation = self.db.get_delegation(delegation_id)
        if delegation is None:
            raise DelegationNotFoundError(f"Delegation not found: {delegation_id}")
        return delegation

    def list(
        self,
        task_id: str | None = None,
        statuses: list[DelegationStatus] | None = None,
    ) -> list[Delegation]:
        return self.db.list_delegations(task_id=task_id, statuses=statuses)

    def active_for_task(self, task_id: str) -> Delegation | None:
        return self.db.active_delegation(task_id)

    # --- Delegate ---

    def delegate(
        self,
        task_id: str,
        provider: str | None = None,
        session_id: str | None = None,
        workdir: Path | None = None,
    ) -> Delegation:
        """Hand a task to an agent session.

        Raises:
            ActiveDelegationError: If the task already has an active delegation.
            InvalidTransitionError: If the task is past planning.
            UnknownProviderError: If the provider is not registered.
        """
        task = self.tasks.get(task_id)
        provider_name = provider or task.assigned_agent or recommended_agents(task.type)[0]
        agent = self.providers.get(provider_name)
        workdir = Path(workdir or Path.cwd()).resolve()

        now = self._clock()
        delegation = Delegation(
            id=f"dlg-{uuid.uuid4().hex[:12]}",
            task_id=task_id,
            agent_provider=provider_name,
            created_at=now,
            updated_at=now,
        )
        lock = self._lock(delegation.id)
        with lock:
            try:
                self._create(delegation, provider_name)
                task = self.tasks.get(task_id)
                prompt = self.compose_context(task)
                context_path = workdir / CONTEXT_RELATIVE_PATH

                # spawning
                try:
                    session, reused, command = self._acquire_session(
                        delegation, agent, task, workdir, prompt, context_path, session_id
                    )
                except (DelegationError, ProcessError, OSError) as e:
                    logger.error(f"Delegation {delegation.id}: no session: {e}")
                    self._fail(delegation.id, "SPAWN_FAILED", str(e), ErrorCategory.STARTUP_FAILURE)
                    return self.get(delegation.id)
                self.db.update_delegation(delegation.id, session_id=session.id, updated_at=self._clock())
                self.append_log(
                    delegation.id,
                    f"{'Reusing' if reused else 'Spawned'} session {session.id}",
                    session_id=session.id,
                    pid=session.pid,
                )

                # injecting_context
                if not self._advance(delegation.id, DelegationStatus.INJECTING_CONTEXT):
                    return self._abandon(delegation.id, session, reused)
                try:
                    context_path.parent.mkdir(parents=True, exist_ok=True)
                    context_path.write_text(prompt)
                except OSError as e:
                    self._fail(
                        delegation.id, "CONTEXT_WRITE_FAILED", str(e), ErrorCategory.DELEGATION_FAILURE
                    )
                    return self._abandon(delegation.id, session, reused)
                self._positions[delegation.id] = (
                    self.supervisor.output_position(session.id) if reused else 0
                )
                if reused or command.prompt_via_stdin:
                    if not self.supervisor.write_input(session.id, prompt, close=not reused):
                        self._fail(
                            delegation.id,
                            "CONTEXT_DELIVERY_FAILED",
                            f"Session {session.id} does not accept input",
                            ErrorCategory.DELEGATION_FAILURE,
                        )
                        return self._abandon(delegation.id, session, reused)
                else:
                    # prompt went in argv; nothing will ever be written
                    self.supervisor.close_input(session.id)
                self.db.update_delegation(delegation.id, injected_context=prompt)
                self.append_log(delegation.id, "Context injected", context_file=str(context_path))

                # running
                if not self._advance(delegation.id, DelegationStatus.RUNNING):
                    return self._abandon(delegation.id, session, reused)
                self._by_session[session.id] = delegation.id
                return self.reconcile(delegation.id)
            finally:
                if delegation.id not in list(self._by_session.values()):
                    # never reached running, or already finalized
                    with self._locks_guard:
                        self._locks.pop(delegation.id, None)

    def _create(self, delegation: Delegation, provider_name: str) -> None:
        task_id = delegation.task_id
        with self.db.transaction() as conn:
            task = self.tasks.get(task_id, conn=conn)
            active = self.db.active_delegation(task_id, conn=conn)
            if active is not None:
                raise ActiveDelegationError(
                    f"Task {task_id} already has active delegation {active.id} ({active.status.value})"
                )
            if task.status not in (TaskStatus.QUEUED, TaskStatus.PLANNING):
                raise InvalidTransitionError(
                    f"Task {task_id} is {task.status.value}; only queued or planning tasks can be delegated"
                )
            if task.status == TaskStatus.QUEUED:
                self.tasks.start_planning(task_id, conn=conn)
            try:
                self.db.insert_delegation(delegation, conn=conn)
            except sqlite3.IntegrityError as e:
                raise ActiveDelegationError(f"Task {task_id} already has an active delegation") from e
            self.db.append_delegation_log(
                delegation.id,
                LogEntry(
                    timestamp=self._clock(),
                    message=f"Delegation created for provider {provider_name}",
                ),
                conn=conn,
            )
            self.audit.record(
                AuditAction.DELEGATION_CREATED,
                orchestrator_id=task.orchestrator_id,
                task_id=task_id,
                delegation_id=delegation.id,
                details={"provider": provider_name},
                conn=conn,
            )
            self.tasks.start_execution(task_id, provider_name, delegation.id, conn=conn)
        logger.info(f"Delegation {delegation.id} created for task {task_id} ({provider_name})")

    def _acquire_session(
        self,
        delegation: Delegation,
        agent: AgentProvider,
        task: Task,
        workdir: Path,
        prompt: str,
        context_path: Path,
        session_id: str | None,
    ) -> tuple[SupervisedProcess, bool, CommandSpec]:
        """Return (session, reused, command)."""
        if session_id is not None:
            session = self.supervisor.get(session_id)
            if (
                session.kind != ProcessKind.AGENT_SESSION
                or not session.status.is_live
                or not self.supervisor.is_managed(session_id)
            ):
                raise SessionUnavailableError(f"Session {session_id} is not a live agent session")
            return session, True, agent.interactive_spec()

        idle = self.supervisor.find_idle_session(agent.name)
        if idle is not None:
            return idle, True, agent.interactive_spec()

        command = agent.command_spec(prompt)
        env: dict[str, str] = {}
        if self.preferences is not None:
            env.update(self.preferences.resolve_environment(task.folder_scope))
        if self.secrets is not None:
            env.update(self.secrets.get_secrets(task.folder_scope, agent.name))
        env.update(command.env)
        env[CONTEXT_FILE_ENV] = str(context_path)
        env["DEVFLEET_TASK_ID"] = task.id
        env["DEVFLEET_DELEGATION_ID"] = delegation.id

        session = self.supervisor.start(
            ProcessSpec(
                kind=ProcessKind.AGENT_SESSION,
                command=command.argv,
                cwd=workdir,
                env=env,
                agent_provider=agent.name,
            )
        )
        if session.pid is None:
            health = self.db.get_health(session.id)
            reason = health.crash_reason if health and health.crash_reason else "spawn failed"
            raise SessionUnavailableError(reason)
        return session, False, command

    def open_session(
        self, provider: str, workdir: Path | None = None, folder_id: str | None = None
    ) -> SupervisedProcess:
        """Start a long-lived interactive session that later delegations can reuse.

        Raises:
            UnknownProviderError: If the provider is not registered.
            SessionUnavailableError: If the session could not be spawned.
        """
        agent = self.providers.get(provider)
        command = agent.interactive_spec()
        env: dict[str, str] = {}
        if self.preferences is not None:
            env.update(self.preferences.resolve_environment(folder_id))
        if self.secrets is not None:
            env.update(self.secrets.get_secrets(folder_id, agent.name))
        env.update(command.env)
        session = self.supervisor.start(
            ProcessSpec(
                kind=ProcessKind.AGENT_SESSION,
                command=command.argv,
                cwd=Path(workdir or Path.cwd()).resolve(),
                env=env,
                agent_provider=agent.name,
                interactive=True,
            )
        )
        if session.pid is None or session.status == ProcessStatus.CRASHED:
            health = self.db.get_health(session.id)
            reason = health.crash_reason if health and health.crash_reason else "spawn failed"
            raise SessionUnavailableError(f"Could not open {provider} session: {reason}")
        return session

    def _abandon(self, delegation_id: str, session: SupervisedProcess, reused: bool) -> Delegation:
        """The delegation moved under us (cancelled); release what we started."""
        if not reused:
            current = self.db.get_process(session.id)
            if current is not None and current.status != ProcessStatus.STOPPED:
                self.supervisor.stop(session.id)
            self._release_one_shot(session.id)
        return self.get(delegation_id)

    # --- Context ---

    def compose_context(self, task: Task) -> str:
        """Markdown prompt for the agent: task, knowledge, linked issue, summary format."""
        parts = [f"# Task {task.id} ({task.type.value})", "", task.description, ""]
        knowledge = self.knowledge.knowledge_for(task.folder_scope) if self.knowledge else []
        if knowledge:
            parts.append("## Project knowledge")
            parts.append("")
            parts.extend(f"- {item}" for item in knowledge)
            parts.append("")
        if task.external_issue_ref and self.issues is not None:
            issue = self.issues.issue_context(task.external_issue_ref)
            if issue:
                parts.append(f"## Linked issue {task.external_issue_ref}")
                parts.append("")
                parts.append(issue.strip())
                parts.append("")
        parts.append(SUMMARY_INSTRUCTIONS)
        return "\n".join(parts)

    # --- Transitions ---

    def _move(
        self,
        conn: sqlite3.Connection,
        delegation: Delegation,
        target: DelegationStatus,
        message: str | None = None,
        level: LogLevel = LogLevel.INFO,
        **fields: Any,
    ) -> None:
        if target not in DELEGATION_TRANSITIONS[delegation.status]:
            raise InvalidTransitionError(
                f"Delegation {delegation.id}: {delegation.status.value} -> {target.value} not allowed"
            )
        now = self._clock()
        values: dict[str, Any] = {"status": target, "updated_at": now, **fields}
        if target.is_terminal:
            values["completed_at"] = now
        if not self.db.cas_delegation(delegation.id, delegation.status, conn=conn, **values):
            raise StaleStateError(
                f"Delegation {delegation.id} is no longer {delegation.status.value}"
            )
        self.db.append_delegation_log(
            delegation.id,
            LogEntry(
                timestamp=now,
                level=level,
                message=message or f"{delegation.status.value} -> {target.value}",
                metadata={"from": delegation.status.value, "to": target.value},
            ),
            conn=conn,
        )
        task = self.tasks.get(delegation.task_id, conn=conn)
        self.audit.record(
            AuditAction.DELEGATION_STATUS_CHANGED,
            orchestrator_id=task.orchestrator_id,
            task_id=delegation.task_id,
            session_id=delegation.session_id,
            delegation_id=delegation.id,
            details={"from": delegation.status.value, "to": target.value},
            conn=conn,
        )

    def _advance(self, delegation_id: str, target: DelegationStatus) -> bool:
        """Non-terminal step; False if the delegation was moved by someone else."""
        try:
            with self.db.transaction() as conn:
                current = self.db.get_delegation(delegation_id, conn=conn)
                if current is None:
                    return False
                self._move(conn, current, target)
        except (StaleStateError, InvalidTransitionError) as e:
            logger.info(f"Delegation {delegation_id} not advanced to {target.value}: {e}")
            return False
        return True

    def _fail(
        self,
        delegation_id: str,
        code: str,
        message: str,
        category: ErrorCategory,
        exit_code: int | None = None,
    ) -> None:
        error = TaskError(
            code=code, message=message, category=category, exit_code=exit_code, recoverable=True
        )
        try:
            with self.db.transaction() as conn:
                current = self.db.get_delegation(delegation_id, conn=conn)
                if current is None or current.status.is_terminal:
                    return
                self._move(
                    conn, current, DelegationStatus.FAILED, message=message, level=LogLevel.ERROR, error=error
                )
                task = self.tasks.get(current.task_id, conn=conn)
                if not task.status.is_terminal:
                    self.tasks.fail(current.task_id, error, conn=conn)
        except StaleStateError as e:
            logger.info(f"Delegation {delegation_id} already moved: {e}")

    def _begin_monitoring(self, delegation_id: str) -> None:
        with self._lock(delegation_id):
            try:
                with self.db.transaction() as conn:
                    current = self.db.get_delegation(delegation_id, conn=conn)
                    if current is None or current.status != DelegationStatus.RUNNING:
                        return
                    self._move(
                        conn, current, DelegationStatus.MONITORING, message="Agent started producing output"
                    )
                    task = self.tasks.get(current.task_id, conn=conn)
                    if task.status == TaskStatus.EXECUTING:
                        self.tasks.start_monitoring(current.task_id, conn=conn)
            except StaleStateError as e:
                logger.info(f"Delegation {delegation_id} not moved to monitoring: {e}")

    # --- Observation ---

    def _on_output(self, process_id: str, line: str) -> None:
        delegation_id = self._by_session.get(process_id)
        if delegation_id is None or delegation_id in self._output_seen:
            return
        self._output_seen.add(delegation_id)
        self._begin_monitoring(delegation_id)

    def _on_exit(self, record: SupervisedProcess) -> None:
        delegation_id = self._by_session.get(record.id)
        if delegation_id is None:
            return
        self.finalize(delegation_id, exit_code=record.exit_code)

    def reconcile(self, delegation_id: str) -> Delegation:
        """Catch up with the session: start monitoring, or finalize if it is done."""
        with self._lock(delegation_id):
            delegation = self.get(delegation_id)
            if delegation.status not in (DelegationStatus.RUNNING, DelegationStatus.MONITORING):
                return delegation
            session_id = delegation.session_id
            if session_id is None:
                return delegation
            position = self._positions.get(delegation_id, 0)
            if (
                delegation.status == DelegationStatus.RUNNING
                and self.supervisor.output_position(session_id) > position
            ):
                self._output_seen.add(delegation_id)
                self._begin_monitoring(delegation_id)
            if self.supervisor.has_exited(session_id):
                return self.finalize(delegation_id)
            session = self.db.get_process(session_id)
            if session is not None and session.interactive:
                output = "\n".join(self.supervisor.output_since(session_id, position))
                if find_agent_summary(output) is not None:
                    return self.finalize(delegation_id)
            return self.get(delegation_id)

    def finalize(self, delegation_id: str, exit_code: int | None = None) -> Delegation:
        """Close a running/monitoring delegation from the session's output."""
        with self._lock(delegation_id):
            delegation = self.get(delegation_id)
            if delegation.status not in (DelegationStatus.RUNNING, DelegationStatus.MONITORING):
                return delegation
            session_id = delegation.session_id or ""
            lines = self.supervisor.output_since(session_id, self._positions.get(delegation_id, 0))
            output = "\n".join(lines)
            if exit_code is None:
                session = self.db.get_process(session_id)
                exit_code = session.exit_code if session else None
            summary = find_agent_summary(output)
            if summary is not None:
                success = summary.status == "success"
            else:
                success = exit_code == 0
            now = self._clock()
            duration = (now - delegation.created_at).total_seconds()
            transcript = self._write_transcript(delegation_id, output)

            if summary is not None and summary.summary:
                text = summary.summary
            elif exit_code is None:
                text = "Agent session ended without a summary"
            else:
                text = f"Agent exited with code {exit_code}"
            result = DelegationResult(
                success=success,
                summary=text,
                exit_code=exit_code,
                files_modified=summary.files_modified if summary else [],
                duration_seconds=duration,
            )
            try:
                with self.db.transaction() as conn:
                    current = self.db.get_delegation(delegation_id, conn=conn)
                    if current is None or current.status.is_terminal:
                        return self.get(delegation_id)
                    if success:
                        self._move(
                            conn,
                            current,
                            DelegationStatus.COMPLETED,
                            message=text,
                            result=result,
                            transcript_ref=transcript,
                        )
                        self.tasks.complete(current.task_id, text, conn=conn)
                    else:
                        error = TaskError(
                            code="AGENT_FAILED",
                            message=text,
                            category=ErrorCategory.DELEGATION_FAILURE,
                            exit_code=exit_code,
                            recoverable=True,
                        )
                        self._move(
                            conn,
                            current,
                            DelegationStatus.FAILED,
                            message=text,
                            level=LogLevel.ERROR,
                            result=result,
                            error=error,
                            transcript_ref=transcript,
                        )
                        self.tasks.fail(current.task_id, error, conn=conn)
            except StaleStateError as e:
                logger.info(f"Delegation {delegation_id} finalized elsewhere: {e}")
            self._forget(delegation_id, session_id)
            self._release_one_shot(session_id)
            outcome = self.get(delegation_id)
            logger.info(f"Delegation {delegation_id} {outcome.status.value}: {text}")
            return outcome

    def _forget(self, delegation_id: str, session_id: str) -> None:
        if self._by_session.get(session_id) == delegation_id:
            del self._by_session[session_id]
        self._positions.pop(delegation_id, None)
        self._output_seen.discard(delegation_id)
        with self._locks_guard:
            self._locks.pop(delegation_id, None)

    def _release_one_shot(self, session_id: str) -> None:
        """A one-shot session serves a single delegation; drop it once it exited."""
        session = self.db.get_process(session_id) if session_id else None
        if session is None or session.interactive:
            return
        if not self.supervisor.release(session_id):
            logger.debug(f"Session {session_id} still running; not released")

    def _write_transcript(self, delegation_id: str, output: str) -> str | None:
        if self.transcript_dir is None:
            return None
        path = Path(self.transcript_dir) / f"{delegation_id}.log"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(output)
        except OSError as e:
            logger.warning(f"Could not write transcript for {delegation_id}: {e}")
            return None
        return str(path)

    # --- Cancellation & intervention ---

    def cancel_task(
        self,
        task_id: str,
        reason: str = "cancelled by user",
        category: ErrorCategory = ErrorCategory.CANCELLED,
    ) -> Task:
        """Cancel a task, fail its active delegation, then stop the session.

        Task and delegation change in one transaction; the session is stopped
        afterwards (SIGTERM, then SIGKILL).
        """
        with self.db.transaction() as conn:
            task = self.tasks.get(task_id, conn=conn)
            if task.status == TaskStatus.CANCELLED:
                return task
            if task.status.is_terminal:
                raise InvalidTransitionError(
                    f"Task {task_id} is already {task.status.value}"
                )
            active = self.db.active_delegation(task_id, conn=conn)
            if active is not None:
                error = TaskError(code=category.value.upper(), message=reason, category=category)
                self._move(
                    conn, active, DelegationStatus.FAILED, message=reason, level=LogLevel.WARN, error=error
                )
            self.tasks.cancel(task_id, reason=reason, conn=conn)

        if active is not None:
            self._forget(active.id, active.session_id or "")
            if active.session_id is not None:
                try:
                    self.supervisor.stop(active.session_id)
                except ProcessError as e:
                    logger.warning(f"Could not stop session {active.session_id}: {e}")
                else:
                    self._release_one_shot(active.session_id)
        logger.info(f"Task {task_id} cancelled: {reason}")
        return self.tasks.get(task_id)

    def append_log(
        self,
        delegation_id: str,
        message: str,
        level: LogLevel = LogLevel.INFO,
        **metadata: Any,
    ) -> None:
        self.db.append_delegation_log(
            delegation_id, LogEntry(timestamp=self._clock(), level=level, message=message, metadata=metadata)
        )

    def reprompt(self, delegation_id: str, text: str) -> bool:
        """Nudge the session through stdin. Returns False if it cannot take input."""
        delegation = self.get(delegation_id)
        if delegation.session_id is None or delegation.status.is_terminal:
            return False
        delivered = self.supervisor.write_input(delegation.session_id, text)
        self.append_log(
            delegation_id,
            "Re-prompted stalled agent" if delivered else "Re-prompt could not be delivered",
            level=LogLevel.WARN,
            intervention=REPROMPT_MARKER,
            delivered=delivered,
        )
        return delivered

    def reprompt_count(self, delegation: Delegation) -> int:
        return sum(
            1
            for entry in delegation.execution_log
            if entry.metadata.get("intervention") == REPROMPT_MARKER
        )

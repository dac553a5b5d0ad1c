"""Data models for the devfleet control plane.

Uses Pydantic for every persisted record. State machines are expressed as
transition tables next to the status enums they govern.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class ErrorCategory(str, Enum):
    """Categories of failures recorded on processes, tasks and delegations."""

    CONFLICT = "conflict"
    STARTUP_FAILURE = "startup_failure"
    CRASH_DURING_RUN = "crash_during_run"
    DELEGATION_FAILURE = "delegation_failure"
    STALL_TIMEOUT = "stall_timeout"
    CANCELLED = "cancelled"


# --- Process supervision ---


class ProcessKind(str, Enum):
    """What a supervised process is."""

    DEV_SERVER = "dev-server"
    AGENT_SESSION = "agent-session"


class ProcessStatus(str, Enum):
    """Lifecycle of a supervised process."""

    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"
    STOPPED = "stopped"

    @property
    def is_live(self) -> bool:
        return self in (ProcessStatus.STARTING, ProcessStatus.RUNNING)


class SupervisedProcess(BaseModel):
    """An externally spawned long-running process."""

    id: str
    kind: ProcessKind
    bind_port: int | None = None
    bind_socket: str | None = None
    pid: int | None = None
    status: ProcessStatus = ProcessStatus.STARTING
    command: list[str] = Field(default_factory=list)
    cwd: str = "."
    agent_provider: str | None = None
    interactive: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    startup_deadline: datetime | None = None
    exit_code: int | None = None
    stopped_at: datetime | None = None
    # PID of the devfleet process that spawned and owns it
    supervisor_pid: int | None = None

    @property
    def bind_target(self) -> int | str | None:
        """Port number, socket path, or None for unbound agent sessions."""
        if self.bind_port is not None:
            return self.bind_port
        return self.bind_socket


class HealthRecord(BaseModel):
    """Latest health state of a supervised process."""

    process_id: str
    is_healthy: bool = False
    consecutive_failures: int = 0
    last_checked_at: datetime | None = None
    crashed_at: datetime | None = None
    crash_reason: str | None = None
    crash_category: ErrorCategory | None = None
    cpu_percent: float | None = None
    memory_mb: float | None = None


# --- Tasks ---


class TaskType(str, Enum):
    """Kind of work a task represents."""

    FEATURE = "feature"
    BUG = "bug"
    REFACTOR = "refactor"
    TEST = "test"
    DOC = "doc"
    RESEARCH = "research"
    REVIEW = "review"
    MAINTENANCE = "maintenance"


class TaskStatus(str, Enum):
    """Status of a task in an orchestrator's queue."""

    QUEUED = "queued"
    PLANNING = "planning"
    EXECUTING = "executing"
    MONITORING = "monitoring"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.PLANNING, TaskStatus.CANCELLED}),
    TaskStatus.PLANNING: frozenset(
        {TaskStatus.EXECUTING, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.EXECUTING: frozenset(
        {
            TaskStatus.MONITORING,
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        }
    ),
    TaskStatus.MONITORING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class TaskError(BaseModel):
    """Failure details attached to a task or delegation."""

    code: str
    message: str
    category: ErrorCategory
    exit_code: int | None = None
    recoverable: bool = False


class Task(BaseModel):
    """A unit of work owned by an orchestrator."""

    id: str
    orchestrator_id: str
    folder_scope: str | None = None
    description: str
    type: TaskType = TaskType.FEATURE
    status: TaskStatus = TaskStatus.QUEUED
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    assigned_agent: str | None = None
    delegation_id: str | None = None
    external_issue_ref: str | None = None
    result_summary: str | None = None
    error_info: TaskError | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None


# --- Delegations ---


class DelegationStatus(str, Enum):
    """Execution state of a delegation."""

    SPAWNING = "spawning"
    INJECTING_CONTEXT = "injecting_context"
    RUNNING = "running"
    MONITORING = "monitoring"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DelegationStatus.COMPLETED, DelegationStatus.FAILED)


DELEGATION_TRANSITIONS: dict[DelegationStatus, frozenset[DelegationStatus]] = {
    DelegationStatus.SPAWNING: frozenset(
        {DelegationStatus.INJECTING_CONTEXT, DelegationStatus.FAILED}
    ),
    DelegationStatus.INJECTING_CONTEXT: frozenset(
        {DelegationStatus.RUNNING, DelegationStatus.FAILED}
    ),
    DelegationStatus.RUNNING: frozenset(
        {DelegationStatus.MONITORING, DelegationStatus.COMPLETED, DelegationStatus.FAILED}
    ),
    DelegationStatus.MONITORING: frozenset(
        {DelegationStatus.COMPLETED, DelegationStatus.FAILED}
    ),
    DelegationStatus.COMPLETED: frozenset(),
    DelegationStatus.FAILED: frozenset(),
}

ACTIVE_DELEGATION_STATUSES = tuple(s for s in DelegationStatus if not s.is_terminal)


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    DEBUG = "debug"


class LogEntry(BaseModel):
    """One entry of a delegation's execution log."""

    timestamp: datetime = Field(default_factory=utc_now)
    level: LogLevel = LogLevel.INFO
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class DelegationResult(BaseModel):
    """Outcome of a finished delegation."""

    success: bool
    summary: str
    exit_code: int | None = None
    files_modified: list[str] = Field(default_factory=list)
    duration_seconds: float | None = None


class Delegation(BaseModel):
    """Binding of a task to an agent session."""

    id: str
    task_id: str
    session_id: str | None = None
    status: DelegationStatus = DelegationStatus.SPAWNING
    agent_provider: str
    injected_context: str | None = None
    execution_log: list[LogEntry] = Field(default_factory=list)
    result: DelegationResult | None = None
    error: TaskError | None = None
    transcript_ref: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None


class AgentSummary(BaseModel):
    """Structured summary an agent prints at the end of its run."""

    status: str = Field(pattern=r"^(success|failure)$")
    summary: str = ""
    files_modified: list[str] = Field(default_factory=list)


# --- Orchestrators ---


class OrchestratorScope(str, Enum):
    MASTER = "master"
    FOLDER = "folder"


class OrchestratorStatus(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    ACTING = "acting"
    PAUSED = "paused"


class Orchestrator(BaseModel):
    """An autonomous agent owning a task queue."""

    id: str
    user_id: str
    scope: OrchestratorScope
    folder_id: str | None = None
    status: OrchestratorStatus = OrchestratorStatus.IDLE
    monitoring_interval_sec: int = 30
    stall_threshold_sec: int = 300
    auto_intervention: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


# --- Audit & insights ---


class InsightType(str, Enum):
    STALL_DETECTED = "stall_detected"
    ERROR_PATTERN = "error_pattern"
    PERFORMANCE = "performance"
    SUGGESTION = "suggestion"


class InsightSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Insight(BaseModel):
    """An observation surfaced to the user. Content never changes."""

    id: str
    orchestrator_id: str
    task_id: str | None = None
    session_id: str | None = None
    delegation_id: str | None = None
    type: InsightType
    severity: InsightSeverity = InsightSeverity.INFO
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    suggested_actions: list[dict[str, Any]] = Field(default_factory=list)
    resolved: bool = False
    resolved_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)


class AuditAction(str, Enum):
    """Actions recorded in the audit log."""

    TASK_CREATED = "task_created"
    TASK_STATUS_CHANGED = "task_status_changed"
    TASK_EDITED = "task_edited"
    TASK_ANNOTATED = "task_annotated"
    TASK_REQUEUED = "task_requeued"
    ISSUE_LINKED = "issue_linked"
    DELEGATION_CREATED = "delegation_created"
    DELEGATION_STATUS_CHANGED = "delegation_status_changed"
    STALL_DETECTED = "stall_detected"
    INTERVENTION = "intervention"
    INSIGHT_GENERATED = "insight_generated"
    INSIGHT_RESOLVED = "insight_resolved"
    PROCESS_STARTED = "process_started"
    PROCESS_STOPPED = "process_stopped"
    PROCESS_CRASHED = "process_crashed"
    ORCHESTRATOR_CREATED = "orchestrator_created"
    ORCHESTRATOR_UPDATED = "orchestrator_updated"


class AuditEntry(BaseModel):
    """Immutable record of something that happened."""

    id: int | None = None
    orchestrator_id: str | None = None
    action: AuditAction
    task_id: str | None = None
    session_id: str | None = None
    delegation_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


# --- Ports ---


class PortReservation(BaseModel):
    """A port claimed by a scope for one environment variable."""

    user_id: str
    scope: str
    variable_name: str
    port: int
    created_at: datetime = Field(default_factory=utc_now)

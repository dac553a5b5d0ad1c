"""SQLite state management for the control plane.

Every record lives in one database. Status columns are the shared state
between the polling loops and the CLI; all status changes go through
compare-and-set updates (``UPDATE ... WHERE id = ? AND status = ?``) so a
writer acting on a stale read loses instead of overwriting.

The audit table is append-only and insight content is immutable; both rules
are enforced by triggers rather than by convention.
"""

import json
import sqlite3
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from devfleet.core.models import (
    ACTIVE_DELEGATION_STATUSES,
    AuditAction,
    AuditEntry,
    Delegation,
    DelegationResult,
    DelegationStatus,
    ErrorCategory,
    HealthRecord,
    Insight,
    InsightSeverity,
    InsightType,
    LogEntry,
    Orchestrator,
    OrchestratorScope,
    OrchestratorStatus,
    PortReservation,
    ProcessKind,
    ProcessStatus,
    SupervisedProcess,
    Task,
    TaskError,
    TaskStatus,
    TaskType,
    utc_now,
)


class StaleStateError(Exception):
    """A compare-and-set update found the record in a different state."""

    pass


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, enums, paths and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


def _to_column(value: Any) -> Any:
    """Convert a Python value into something sqlite3 can bind."""
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (BaseModel, list, dict)):
        return _safe_json_dumps(value)
    if isinstance(value, Path):
        return str(value)
    return value


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _json(value: str | None, default: Any = None) -> Any:
    return json.loads(value) if value else default


class Database:
    """SQLite database holding processes, tasks, delegations and the audit trail."""

    SCHEMA = """
    -- Supervised processes (dev servers and agent sessions)
    CREATE TABLE IF NOT EXISTS processes (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        bind_port INTEGER,
        bind_socket TEXT,
        pid INTEGER,
        status TEXT NOT NULL,
        command JSON,
        cwd TEXT,
        agent_provider TEXT,
        interactive INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL,
        startup_deadline TIMESTAMP,
        exit_code INTEGER,
        stopped_at TIMESTAMP,
        supervisor_pid INTEGER
    );

    CREATE TABLE IF NOT EXISTS health_records (
        process_id TEXT PRIMARY KEY REFERENCES processes(id) ON DELETE CASCADE,
        is_healthy INTEGER NOT NULL DEFAULT 0,
        consecutive_failures INTEGER NOT NULL DEFAULT 0,
        last_checked_at TIMESTAMP,
        crashed_at TIMESTAMP,
        crash_reason TEXT,
        crash_category TEXT,
        cpu_percent REAL,
        memory_mb REAL
    );

    CREATE TABLE IF NOT EXISTS orchestrators (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        scope TEXT NOT NULL,
        folder_id TEXT,
        status TEXT NOT NULL,
        monitoring_interval_sec INTEGER NOT NULL,
        stall_threshold_sec INTEGER NOT NULL,
        auto_intervention INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        orchestrator_id TEXT NOT NULL,
        folder_scope TEXT,
        description TEXT NOT NULL,
        type TEXT NOT NULL,
        status TEXT NOT NULL,
        confidence REAL NOT NULL,
        assigned_agent TEXT,
        delegation_id TEXT,
        external_issue_ref TEXT,
        result_summary TEXT,
        error_info JSON,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS delegations (
        id TEXT PRIMARY KEY,
        task_id TEXT NOT NULL REFERENCES tasks(id),
        session_id TEXT,
        status TEXT NOT NULL,
        agent_provider TEXT NOT NULL,
        injected_context TEXT,
        execution_log JSON NOT NULL DEFAULT '[]',
        result JSON,
        error JSON,
        transcript_ref TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS insights (
        id TEXT PRIMARY KEY,
        orchestrator_id TEXT NOT NULL,
        task_id TEXT,
        session_id TEXT,
        delegation_id TEXT,
        type TEXT NOT NULL,
        severity TEXT NOT NULL,
        message TEXT NOT NULL,
        context JSON,
        suggested_actions JSON,
        resolved INTEGER NOT NULL DEFAULT 0,
        resolved_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL
    );

    CREATE TABLE IF NOT EXISTS audit_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        orchestrator_id TEXT,
        action TEXT NOT NULL,
        task_id TEXT,
        session_id TEXT,
        delegation_id TEXT,
        details JSON,
        created_at TIMESTAMP NOT NULL
    );

    CREATE TABLE IF NOT EXISTS port_reservations (
        user_id TEXT NOT NULL,
        scope TEXT NOT NULL,
        variable_name TEXT NOT NULL,
        port INTEGER NOT NULL,
        created_at TIMESTAMP NOT NULL,
        PRIMARY KEY (user_id, scope, variable_name)
    );

    -- At most one non-terminal delegation per task
    CREATE UNIQUE INDEX IF NOT EXISTS idx_delegations_one_active
        ON delegations(task_id) WHERE status NOT IN ('completed', 'failed');
    -- One master orchestrator per user, one per (user, folder)
    CREATE UNIQUE INDEX IF NOT EXISTS idx_orchestrators_master
        ON orchestrators(user_id) WHERE scope = 'master';
    CREATE UNIQUE INDEX IF NOT EXISTS idx_orchestrators_folder
        ON orchestrators(user_id, folder_id) WHERE scope = 'folder';
    -- One unresolved stall insight per delegation
    CREATE UNIQUE INDEX IF NOT EXISTS idx_insights_open_stall
        ON insights(delegation_id) WHERE type = 'stall_detected' AND resolved = 0;

    CREATE INDEX IF NOT EXISTS idx_processes_status ON processes(kind, status);
    CREATE INDEX IF NOT EXISTS idx_tasks_orchestrator ON tasks(orchestrator_id, status);
    CREATE INDEX IF NOT EXISTS idx_delegations_status ON delegations(status);
    CREATE INDEX IF NOT EXISTS idx_audit_task ON audit_entries(task_id);
    CREATE INDEX IF NOT EXISTS idx_ports_user_port ON port_reservations(user_id, port);

    CREATE TRIGGER IF NOT EXISTS audit_entries_no_update
    BEFORE UPDATE ON audit_entries
    BEGIN
        SELECT RAISE(ABORT, 'audit entries are append-only');
    END;

    CREATE TRIGGER IF NOT EXISTS audit_entries_no_delete
    BEFORE DELETE ON audit_entries
    BEGIN
        SELECT RAISE(ABORT, 'audit entries are append-only');
    END;

    CREATE TRIGGER IF NOT EXISTS insights_content_immutable
    BEFORE UPDATE OF id, orchestrator_id, task_id, session_id, delegation_id,
        type, severity, message, context, suggested_actions, created_at
    ON insights
    BEGIN
        SELECT RAISE(ABORT, 'insight content is immutable');
    END;

    CREATE TRIGGER IF NOT EXISTS insights_no_delete
    BEFORE DELETE ON insights
    BEGIN
        SELECT RAISE(ABORT, 'insights cannot be deleted');
    END;
    """

    def __init__(self, db_path: str | Path = ".devfleet/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            # WAL lets the CLI read while the monitor loops write
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self, immediate: bool = False) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked". With
        ``immediate`` the write lock is taken up front so a read followed by
        a write in the same block cannot interleave with another writer.
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Explicit write transaction for multi-record atomic operations."""
        with self._connect(immediate=True) as conn:
            yield conn

    @contextmanager
    def _use(self, conn: sqlite3.Connection | None) -> Generator[sqlite3.Connection, None, None]:
        """Reuse a caller's transaction, or open a short one."""
        if conn is not None:
            yield conn
            return
        with self._connect() as own:
            yield own

    def _cas_update(
        self,
        conn: sqlite3.Connection,
        table: str,
        record_id: str,
        expected: Iterable[Enum] | None,
        fields: dict[str, Any],
        key: str = "id",
    ) -> bool:
        """Update ``fields`` only when the row's status is one of ``expected``.

        Returns False when no row matched (missing record or lost race).
        """
        if not fields:
            raise ValueError("nothing to update")
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params: list[Any] = [_to_column(v) for v in fields.values()]
        sql = f"UPDATE {table} SET {assignments} WHERE {key} = ?"
        params.append(record_id)
        if expected is not None:
            statuses = [s.value for s in expected]
            sql += f" AND status IN ({', '.join('?' * len(statuses))})"
            params.extend(statuses)
        cursor = conn.execute(sql, params)
        return cursor.rowcount > 0

    # --- Processes ---

    def insert_process(
        self, record: SupervisedProcess, conn: sqlite3.Connection | None = None
    ) -> None:
        """Insert a process together with its health record."""
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO processes (id, kind, bind_port, bind_socket, pid, status,
                    command, cwd, agent_provider, interactive, created_at,
                    startup_deadline, exit_code, stopped_at, supervisor_pid)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.kind.value,
                    record.bind_port,
                    record.bind_socket,
                    record.pid,
                    record.status.value,
                    _safe_json_dumps(record.command),
                    record.cwd,
                    record.agent_provider,
                    int(record.interactive),
                    record.created_at.isoformat(),
                    _to_column(record.startup_deadline),
                    record.exit_code,
                    _to_column(record.stopped_at),
                    record.supervisor_pid,
                ),
            )
            c.execute("INSERT INTO health_records (process_id) VALUES (?)", (record.id,))

    def get_process(
        self, process_id: str, conn: sqlite3.Connection | None = None
    ) -> SupervisedProcess | None:
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM processes WHERE id = ?", (process_id,)).fetchone()
            return self._row_to_process(row) if row else None

    def list_processes(
        self,
        kind: ProcessKind | None = None,
        statuses: Iterable[ProcessStatus] | None = None,
    ) -> list[SupervisedProcess]:
        sql = "SELECT * FROM processes WHERE 1 = 1"
        params: list[Any] = []
        if kind is not None:
            sql += " AND kind = ?"
            params.append(kind.value)
        if statuses is not None:
            values = [s.value for s in statuses]
            sql += f" AND status IN ({', '.join('?' * len(values))})"
            params.extend(values)
        sql += " ORDER BY created_at"
        with self._connect() as conn:
            return [self._row_to_process(r) for r in conn.execute(sql, params).fetchall()]

    def update_process(
        self,
        process_id: str,
        expected: Iterable[ProcessStatus] | None = None,
        conn: sqlite3.Connection | None = None,
        **fields: Any,
    ) -> bool:
        """Update a process row; with ``expected`` this is a compare-and-set."""
        with self._use(conn) as c:
            return self._cas_update(c, "processes", process_id, expected, fields)

    def delete_process(self, process_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM processes WHERE id = ?", (process_id,))

    def _row_to_process(self, row: sqlite3.Row) -> SupervisedProcess:
        return SupervisedProcess(
            id=row["id"],
            kind=ProcessKind(row["kind"]),
            bind_port=row["bind_port"],
            bind_socket=row["bind_socket"],
            pid=row["pid"],
            status=ProcessStatus(row["status"]),
            command=_json(row["command"], []),
            cwd=row["cwd"] or ".",
            agent_provider=row["agent_provider"],
            interactive=bool(row["interactive"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            startup_deadline=_dt(row["startup_deadline"]),
            exit_code=row["exit_code"],
            stopped_at=_dt(row["stopped_at"]),
            supervisor_pid=row["supervisor_pid"],
        )

    # --- Health ---

    def get_health(self, process_id: str) -> HealthRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM health_records WHERE process_id = ?", (process_id,)
            ).fetchone()
        if not row:
            return None
        return HealthRecord(
            process_id=row["process_id"],
            is_healthy=bool(row["is_healthy"]),
            consecutive_failures=row["consecutive_failures"],
            last_checked_at=_dt(row["last_checked_at"]),
            crashed_at=_dt(row["crashed_at"]),
            crash_reason=row["crash_reason"],
            crash_category=ErrorCategory(row["crash_category"]) if row["crash_category"] else None,
            cpu_percent=row["cpu_percent"],
            memory_mb=row["memory_mb"],
        )

    def delete_health(self, process_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM health_records WHERE process_id = ?", (process_id,))

    def update_health(
        self, process_id: str, conn: sqlite3.Connection | None = None, **fields: Any
    ) -> None:
        with self._use(conn) as c:
            self._cas_update(c, "health_records", process_id, None, fields, key="process_id")

    def record_crash(
        self,
        process_id: str,
        reason: str,
        category: ErrorCategory,
        at: datetime,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Record a crash on the health record, keeping the first crash time."""
        with self._use(conn) as c:
            c.execute(
                """
                UPDATE health_records
                SET is_healthy = 0,
                    crashed_at = COALESCE(crashed_at, ?),
                    crash_reason = ?,
                    crash_category = ?
                WHERE process_id = ?
                """,
                (at.isoformat(), reason, category.value, process_id),
            )

    # --- Orchestrators ---

    def insert_orchestrator(self, orch: Orchestrator, conn: sqlite3.Connection | None = None) -> None:
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO orchestrators (id, user_id, scope, folder_id, status,
                    monitoring_interval_sec, stall_threshold_sec, auto_intervention,
                    created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    orch.id,
                    orch.user_id,
                    orch.scope.value,
                    orch.folder_id,
                    orch.status.value,
                    orch.monitoring_interval_sec,
                    orch.stall_threshold_sec,
                    int(orch.auto_intervention),
                    orch.created_at.isoformat(),
                    orch.updated_at.isoformat(),
                ),
            )

    def get_orchestrator(self, orchestrator_id: str) -> Orchestrator | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM orchestrators WHERE id = ?", (orchestrator_id,)
            ).fetchone()
            return self._row_to_orchestrator(row) if row else None

    def find_orchestrator(
        self, user_id: str, scope: OrchestratorScope, folder_id: str | None = None
    ) -> Orchestrator | None:
        with self._connect() as conn:
            if scope == OrchestratorScope.MASTER:
                row = conn.execute(
                    "SELECT * FROM orchestrators WHERE user_id = ? AND scope = 'master'",
                    (user_id,),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM orchestrators WHERE user_id = ? AND scope = 'folder' "
                    "AND folder_id = ?",
                    (user_id, folder_id),
                ).fetchone()
            return self._row_to_orchestrator(row) if row else None

    def list_orchestrators(self, user_id: str | None = None) -> list[Orchestrator]:
        with self._connect() as conn:
            if user_id is None:
                rows = conn.execute("SELECT * FROM orchestrators ORDER BY created_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM orchestrators WHERE user_id = ? ORDER BY created_at",
                    (user_id,),
                ).fetchall()
            return [self._row_to_orchestrator(r) for r in rows]

    def update_orchestrator(
        self, orchestrator_id: str, conn: sqlite3.Connection | None = None, **fields: Any
    ) -> bool:
        with self._use(conn) as c:
            return self._cas_update(c, "orchestrators", orchestrator_id, None, fields)

    def _row_to_orchestrator(self, row: sqlite3.Row) -> Orchestrator:
        return Orchestrator(
            id=row["id"],
            user_id=row["user_id"],
            scope=OrchestratorScope(row["scope"]),
            folder_id=row["folder_id"],
            status=OrchestratorStatus(row["status"]),
            monitoring_interval_sec=row["monitoring_interval_sec"],
            stall_threshold_sec=row["stall_threshold_sec"],
            auto_intervention=bool(row["auto_intervention"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # --- Tasks ---

    def insert_task(self, task: Task, conn: sqlite3.Connection | None = None) -> None:
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO tasks (id, orchestrator_id, folder_scope, description, type,
                    status, confidence, assigned_agent, delegation_id, external_issue_ref,
                    result_summary, error_info, created_at, updated_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.orchestrator_id,
                    task.folder_scope,
                    task.description,
                    task.type.value,
                    task.status.value,
                    task.confidence,
                    task.assigned_agent,
                    task.delegation_id,
                    task.external_issue_ref,
                    task.result_summary,
                    _to_column(task.error_info),
                    task.created_at.isoformat(),
                    task.updated_at.isoformat(),
                    _to_column(task.completed_at),
                ),
            )

    def get_task(self, task_id: str, conn: sqlite3.Connection | None = None) -> Task | None:
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
            return self._row_to_task(row) if row else None

    def list_tasks(
        self,
        orchestrator_id: str | None = None,
        status: TaskStatus | None = None,
        folder_scope: str | None = None,
    ) -> list[Task]:
        sql = "SELECT * FROM tasks WHERE 1 = 1"
        params: list[Any] = []
        if orchestrator_id is not None:
            sql += " AND orchestrator_id = ?"
            params.append(orchestrator_id)
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        if folder_scope is not None:
            sql += " AND folder_scope = ?"
            params.append(folder_scope)
        sql += " ORDER BY created_at, rowid"
        with self._connect() as conn:
            return [self._row_to_task(r) for r in conn.execute(sql, params).fetchall()]

    def cas_task(
        self,
        task_id: str,
        expected: TaskStatus,
        conn: sqlite3.Connection | None = None,
        **fields: Any,
    ) -> bool:
        """Compare-and-set update of a task; returns False if the status moved."""
        with self._use(conn) as c:
            return self._cas_update(c, "tasks", task_id, [expected], fields)

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        error = _json(row["error_info"])
        return Task(
            id=row["id"],
            orchestrator_id=row["orchestrator_id"],
            folder_scope=row["folder_scope"],
            description=row["description"],
            type=TaskType(row["type"]),
            status=TaskStatus(row["status"]),
            confidence=row["confidence"],
            assigned_agent=row["assigned_agent"],
            delegation_id=row["delegation_id"],
            external_issue_ref=row["external_issue_ref"],
            result_summary=row["result_summary"],
            error_info=TaskError.model_validate(error) if error else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    # --- Delegations ---

    def insert_delegation(
        self, delegation: Delegation, conn: sqlite3.Connection | None = None
    ) -> None:
        """Insert a delegation.

        Raises sqlite3.IntegrityError if the task already has a non-terminal
        delegation.
        """
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO delegations (id, task_id, session_id, status, agent_provider,
                    injected_context, execution_log, result, error, transcript_ref,
                    created_at, updated_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    delegation.id,
                    delegation.task_id,
                    delegation.session_id,
                    delegation.status.value,
                    delegation.agent_provider,
                    delegation.injected_context,
                    _safe_json_dumps(delegation.execution_log),
                    _to_column(delegation.result),
                    _to_column(delegation.error),
                    delegation.transcript_ref,
                    delegation.created_at.isoformat(),
                    delegation.updated_at.isoformat(),
                    _to_column(delegation.completed_at),
                ),
            )

    def get_delegation(
        self, delegation_id: str, conn: sqlite3.Connection | None = None
    ) -> Delegation | None:
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM delegations WHERE id = ?", (delegation_id,)).fetchone()
            return self._row_to_delegation(row) if row else None

    def active_delegation(
        self, task_id: str, conn: sqlite3.Connection | None = None
    ) -> Delegation | None:
        """The task's non-terminal delegation, if any."""
        values = [s.value for s in ACTIVE_DELEGATION_STATUSES]
        with self._use(conn) as c:
            row = c.execute(
                f"SELECT * FROM delegations WHERE task_id = ? "
                f"AND status IN ({', '.join('?' * len(values))})",
                (task_id, *values),
            ).fetchone()
            return self._row_to_delegation(row) if row else None

    def list_delegations(
        self,
        task_id: str | None = None,
        statuses: Iterable[DelegationStatus] | None = None,
        session_id: str | None = None,
    ) -> list[Delegation]:
        sql = "SELECT * FROM delegations WHERE 1 = 1"
        params: list[Any] = []
        if task_id is not None:
            sql += " AND task_id = ?"
            params.append(task_id)
        if session_id is not None:
            sql += " AND session_id = ?"
            params.append(session_id)
        if statuses is not None:
            values = [s.value for s in statuses]
            sql += f" AND status IN ({', '.join('?' * len(values))})"
            params.extend(values)
        sql += " ORDER BY created_at, rowid"
        with self._connect() as conn:
            return [self._row_to_delegation(r) for r in conn.execute(sql, params).fetchall()]

    def cas_delegation(
        self,
        delegation_id: str,
        expected: DelegationStatus | Iterable[DelegationStatus],
        conn: sqlite3.Connection | None = None,
        **fields: Any,
    ) -> bool:
        """Compare-and-set update of a delegation; returns False if the status moved."""
        if isinstance(expected, DelegationStatus):
            expected = [expected]
        with self._use(conn) as c:
            return self._cas_update(c, "delegations", delegation_id, expected, fields)

    def update_delegation(
        self, delegation_id: str, conn: sqlite3.Connection | None = None, **fields: Any
    ) -> bool:
        with self._use(conn) as c:
            return self._cas_update(c, "delegations", delegation_id, None, fields)

    def append_delegation_log(
        self, delegation_id: str, entry: LogEntry, conn: sqlite3.Connection | None = None
    ) -> None:
        """Append one entry to a delegation's execution log."""
        if conn is None:
            with self.transaction() as own:
                self._append_log(own, delegation_id, entry)
        else:
            self._append_log(conn, delegation_id, entry)

    def _append_log(self, conn: sqlite3.Connection, delegation_id: str, entry: LogEntry) -> None:
        row = conn.execute(
            "SELECT execution_log FROM delegations WHERE id = ?", (delegation_id,)
        ).fetchone()
        if row is None:
            return
        log = _json(row["execution_log"], [])
        log.append(entry.model_dump(mode="json"))
        conn.execute(
            "UPDATE delegations SET execution_log = ? WHERE id = ?",
            (_safe_json_dumps(log), delegation_id),
        )

    def _row_to_delegation(self, row: sqlite3.Row) -> Delegation:
        result = _json(row["result"])
        error = _json(row["error"])
        return Delegation(
            id=row["id"],
            task_id=row["task_id"],
            session_id=row["session_id"],
            status=DelegationStatus(row["status"]),
            agent_provider=row["agent_provider"],
            injected_context=row["injected_context"],
            execution_log=[LogEntry.model_validate(e) for e in _json(row["execution_log"], [])],
            result=DelegationResult.model_validate(result) if result else None,
            error=TaskError.model_validate(error) if error else None,
            transcript_ref=row["transcript_ref"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    # --- Audit ---

    def append_audit(self, entry: AuditEntry, conn: sqlite3.Connection | None = None) -> int:
        """Append an audit entry and return its id."""
        with self._use(conn) as c:
            cursor = c.execute(
                """
                INSERT INTO audit_entries (orchestrator_id, action, task_id, session_id,
                    delegation_id, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.orchestrator_id,
                    entry.action.value,
                    entry.task_id,
                    entry.session_id,
                    entry.delegation_id,
                    _safe_json_dumps(entry.details),
                    entry.created_at.isoformat(),
                ),
            )
            return cursor.lastrowid  # type: ignore[return-value]

    def list_audit(
        self,
        task_id: str | None = None,
        delegation_id: str | None = None,
        action: AuditAction | None = None,
        orchestrator_id: str | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        sql = "SELECT * FROM audit_entries WHERE 1 = 1"
        params: list[Any] = []
        for column, value in (
            ("task_id", task_id),
            ("delegation_id", delegation_id),
            ("orchestrator_id", orchestrator_id),
        ):
            if value is not None:
                sql += f" AND {column} = ?"
                params.append(value)
        if action is not None:
            sql += " AND action = ?"
            params.append(action.value)
        if limit is not None:
            # newest `limit` entries, still returned oldest first
            sql = f"SELECT * FROM ({sql} ORDER BY id DESC LIMIT ?) ORDER BY id"
            params.append(limit)
        else:
            sql += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            AuditEntry(
                id=row["id"],
                orchestrator_id=row["orchestrator_id"],
                action=AuditAction(row["action"]),
                task_id=row["task_id"],
                session_id=row["session_id"],
                delegation_id=row["delegation_id"],
                details=_json(row["details"], {}),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    # --- Insights ---

    def insert_insight(self, insight: Insight, conn: sqlite3.Connection | None = None) -> bool:
        """Insert an insight.

        Returns False if an unresolved stall insight already exists for the
        same delegation.
        """
        with self._use(conn) as c:
            try:
                c.execute(
                    """
                    INSERT INTO insights (id, orchestrator_id, task_id, session_id,
                        delegation_id, type, severity, message, context,
                        suggested_actions, resolved, resolved_at, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        insight.id,
                        insight.orchestrator_id,
                        insight.task_id,
                        insight.session_id,
                        insight.delegation_id,
                        insight.type.value,
                        insight.severity.value,
                        insight.message,
                        _safe_json_dumps(insight.context),
                        _safe_json_dumps(insight.suggested_actions),
                        int(insight.resolved),
                        _to_column(insight.resolved_at),
                        insight.created_at.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                if "insights.delegation_id" in str(e):
                    return False
                raise
            return True

    def get_insight(self, insight_id: str) -> Insight | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM insights WHERE id = ?", (insight_id,)).fetchone()
            return self._row_to_insight(row) if row else None

    def list_insights(
        self,
        resolved: bool | None = None,
        orchestrator_id: str | None = None,
        delegation_id: str | None = None,
        insight_type: InsightType | None = None,
    ) -> list[Insight]:
        sql = "SELECT * FROM insights WHERE 1 = 1"
        params: list[Any] = []
        if resolved is not None:
            sql += " AND resolved = ?"
            params.append(int(resolved))
        if orchestrator_id is not None:
            sql += " AND orchestrator_id = ?"
            params.append(orchestrator_id)
        if delegation_id is not None:
            sql += " AND delegation_id = ?"
            params.append(delegation_id)
        if insight_type is not None:
            sql += " AND type = ?"
            params.append(insight_type.value)
        sql += " ORDER BY created_at, rowid"
        with self._connect() as conn:
            return [self._row_to_insight(r) for r in conn.execute(sql, params).fetchall()]

    def resolve_insight(
        self, insight_id: str, at: datetime | None = None, conn: sqlite3.Connection | None = None
    ) -> bool:
        """Mark an insight resolved. Returns False if it was already resolved."""
        with self._use(conn) as c:
            cursor = c.execute(
                "UPDATE insights SET resolved = 1, resolved_at = ? WHERE id = ? AND resolved = 0",
                ((at or utc_now()).isoformat(), insight_id),
            )
            return cursor.rowcount > 0

    def _row_to_insight(self, row: sqlite3.Row) -> Insight:
        return Insight(
            id=row["id"],
            orchestrator_id=row["orchestrator_id"],
            task_id=row["task_id"],
            session_id=row["session_id"],
            delegation_id=row["delegation_id"],
            type=InsightType(row["type"]),
            severity=InsightSeverity(row["severity"]),
            message=row["message"],
            context=_json(row["context"], {}),
            suggested_actions=_json(row["suggested_actions"], []),
            resolved=bool(row["resolved"]),
            resolved_at=_dt(row["resolved_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # --- Port reservations ---

    def list_port_reservations(
        self,
        user_id: str,
        scope: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[PortReservation]:
        sql = "SELECT * FROM port_reservations WHERE user_id = ?"
        params: list[Any] = [user_id]
        if scope is not None:
            sql += " AND scope = ?"
            params.append(scope)
        sql += " ORDER BY scope, variable_name"
        with self._use(conn) as c:
            rows = c.execute(sql, params).fetchall()
        return [
            PortReservation(
                user_id=row["user_id"],
                scope=row["scope"],
                variable_name=row["variable_name"],
                port=row["port"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def upsert_port_reservation(
        self, reservation: PortReservation, conn: sqlite3.Connection | None = None
    ) -> None:
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO port_reservations (user_id, scope, variable_name, port, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (user_id, scope, variable_name)
                DO UPDATE SET port = excluded.port, created_at = excluded.created_at
                """,
                (
                    reservation.user_id,
                    reservation.scope,
                    reservation.variable_name,
                    reservation.port,
                    reservation.created_at.isoformat(),
                ),
            )

    def delete_port_reservations(
        self, user_id: str, scope: str, conn: sqlite3.Connection | None = None
    ) -> int:
        with self._use(conn) as c:
            cursor = c.execute(
                "DELETE FROM port_reservations WHERE user_id = ? AND scope = ?",
                (user_id, scope),
            )
            return cursor.rowcount

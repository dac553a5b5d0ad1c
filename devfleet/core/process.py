"""Process supervision for dev servers and agent sessions.

Processes are spawned directly (never through a shell) with a sanitized
environment. The PID from ``Popen`` is the only OS handle kept: stopping a
process signals that PID and nothing else.

Each managed child gets two reader threads (stdout, stderr) feeding a bounded
line buffer, and an exit watcher that records the exit code and notifies
listeners. Every wait is bounded.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import IO

import psutil

from devfleet.core.audit import AuditLog
from devfleet.core.config import Limits
from devfleet.core.models import (
    ACTIVE_DELEGATION_STATUSES,
    AuditAction,
    ErrorCategory,
    ProcessKind,
    ProcessStatus,
    SupervisedProcess,
    utc_now,
)
from devfleet.core.state import Database

logger = logging.getLogger(__name__)

# Loader hooks that must never leak from the parent into a child.
DANGEROUS_ENV_VARS = frozenset(
    {"LD_PRELOAD", "LD_LIBRARY_PATH", "DYLD_INSERT_LIBRARIES", "DYLD_LIBRARY_PATH"}
)

_LIVE = (ProcessStatus.STARTING, ProcessStatus.RUNNING)
_POLL_INTERVAL = 0.05


class ProcessError(Exception):
    """Base exception for process supervision."""

    pass


class ProcessNotFoundError(ProcessError):
    """No supervised process with the given id."""

    pass


def sanitized_environment(
    overlay: Mapping[str, str] | None = None, base: Mapping[str, str] | None = None
) -> dict[str, str]:
    """Parent environment minus loader hooks, with ``overlay`` applied on top."""
    env = {k: v for k, v in (os.environ if base is None else base).items()}
    for name in DANGEROUS_ENV_VARS:
        env.pop(name, None)
    for key, value in (overlay or {}).items():
        if key in DANGEROUS_ENV_VARS:
            logger.warning(f"Refusing to pass {key} to a child process")
            continue
        env[key] = str(value)
    return env


def is_alive(pid: int | None) -> bool:
    """True if ``pid`` is a running (non-zombie) process."""
    if pid is None or pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # exists, owned by someone else
        return True


def _has_exited(pid: int, popen: subprocess.Popen | None) -> bool:
    if popen is not None:
        return popen.poll() is not None
    return not is_alive(pid)


def wait_for_exit(pid: int, timeout: float, popen: subprocess.Popen | None = None) -> bool:
    """Poll until ``pid`` is gone or ``timeout`` elapses. Returns True if gone."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if _has_exited(pid, popen):
            return True
        time.sleep(_POLL_INTERVAL)
    return _has_exited(pid, popen)


def terminate_pid(
    pid: int,
    graceful_timeout: float,
    kill_timeout: float,
    popen: subprocess.Popen | None = None,
) -> bool:
    """SIGTERM, wait, then SIGKILL, wait. Returns True once the PID is gone."""
    if _has_exited(pid, popen):
        return True
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return True
    except PermissionError as e:
        raise ProcessError(f"Not allowed to signal PID {pid}: {e}") from e
    if wait_for_exit(pid, graceful_timeout, popen):
        return True
    logger.warning(f"PID {pid} still alive {graceful_timeout}s after SIGTERM; sending SIGKILL")
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        return True
    return wait_for_exit(pid, kill_timeout, popen)


class LogBuffer:
    """Thread-safe ring buffer of output lines.

    ``total_lines`` counts every line ever appended, so callers can remember
    a position and later read only what arrived after it.
    """

    def __init__(self, max_lines: int = 10000):
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._lock = threading.Lock()
        self.total_lines = 0
        self.first_output_at: datetime | None = None
        self.last_output_at: datetime | None = None

    def append(self, line: str, at: datetime) -> None:
        with self._lock:
            self._lines.append(line)
            self.total_lines += 1
            if self.first_output_at is None:
                self.first_output_at = at
            self.last_output_at = at

    def recent(self, count: int = 50) -> list[str]:
        with self._lock:
            return list(self._lines)[-count:] if count > 0 else []

    def since(self, position: int) -> list[str]:
        """Lines appended after ``position`` that are still buffered."""
        with self._lock:
            first_index = self.total_lines - len(self._lines)
            skip = max(0, position - first_index)
            return list(self._lines)[skip:]


@dataclass
class ProcessSpec:
    """What to start."""

    kind: ProcessKind
    command: list[str]
    cwd: Path
    port: int | None = None
    socket_path: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    agent_provider: str | None = None
    interactive: bool = False
    startup_timeout: float | None = None


@dataclass
class _Managed:
    popen: subprocess.Popen
    process_id: str
    kind: ProcessKind
    buffer: LogBuffer
    stop_requested: threading.Event = field(default_factory=threading.Event)
    stdin_lock: threading.Lock = field(default_factory=threading.Lock)
    readers: list[threading.Thread] = field(default_factory=list)
    watcher: threading.Thread | None = None
    # set once the exit code is recorded and the output fully drained
    exit_handled: threading.Event = field(default_factory=threading.Event)


OutputListener = Callable[[str, str], None]
ExitListener = Callable[[SupervisedProcess], None]


class ProcessSupervisor:
    """Starts, stops and tracks supervised processes."""

    def __init__(
        self,
        db: Database,
        limits: Limits | None = None,
        audit: AuditLog | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.limits = limits or Limits()
        self.audit = audit
        self._clock = clock
        self._managed: dict[str, _Managed] = {}
        self._lock = threading.RLock()
        self._output_listeners: list[OutputListener] = []
        self._exit_listeners: list[ExitListener] = []
        self._closed = threading.Event()

    # --- Listeners ---

    def add_output_listener(self, listener: OutputListener) -> None:
        """Call ``listener(process_id, line)`` for every captured line."""
        self._output_listeners.append(listener)

    def add_exit_listener(self, listener: ExitListener) -> None:
        """Call ``listener(record)`` after a managed child exits."""
        self._exit_listeners.append(listener)

    # --- Lifecycle ---

    def start(self, spec: ProcessSpec) -> SupervisedProcess:
        """Spawn a process and start supervising it.

        Spawn failures are recorded on the returned record (status crashed)
        rather than raised.
        """
        now = self._clock()
        startup_timeout = spec.startup_timeout or self.limits.startup_timeout
        record = SupervisedProcess(
            id=f"proc-{uuid.uuid4().hex[:12]}",
            kind=spec.kind,
            bind_port=spec.port,
            bind_socket=spec.socket_path,
            command=list(spec.command),
            cwd=str(spec.cwd),
            agent_provider=spec.agent_provider,
            interactive=spec.interactive,
            created_at=now,
            supervisor_pid=os.getpid(),
            startup_deadline=now + timedelta(seconds=startup_timeout)
            if spec.kind == ProcessKind.DEV_SERVER
            else None,
        )
        self.db.insert_process(record)

        overlay = dict(spec.env)
        if spec.port is not None:
            overlay["PORT"] = str(spec.port)
        if spec.socket_path is not None:
            overlay["SOCKET_PATH"] = spec.socket_path
        env = sanitized_environment(overlay)

        try:
            popen = subprocess.Popen(
                spec.command,
                cwd=spec.cwd,
                env=env,
                stdin=subprocess.PIPE if spec.kind == ProcessKind.AGENT_SESSION else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to spawn {spec.command[:1]}: {e}")
            self.mark_crashed(
                record.id, f"spawn failed: {e}", category=ErrorCategory.STARTUP_FAILURE
            )
            return self.get(record.id)

        self.db.update_process(record.id, pid=popen.pid)
        managed = _Managed(
            popen=popen,
            process_id=record.id,
            kind=spec.kind,
            buffer=LogBuffer(self.limits.log_buffer_lines),
        )
        with self._lock:
            self._managed[record.id] = managed
        for stream in (popen.stdout, popen.stderr):
            reader = threading.Thread(
                target=self._pump,
                args=(managed, stream),
                name=f"devfleet-output-{record.id}",
                daemon=True,
            )
            reader.start()
            managed.readers.append(reader)
        managed.watcher = threading.Thread(
            target=self._watch, args=(managed,), name=f"devfleet-exit-{record.id}", daemon=True
        )
        managed.watcher.start()

        if not self._confirm_spawn(popen):
            logger.error(f"Process {record.id} (PID {popen.pid}) not alive after spawn")
            self.mark_crashed(
                record.id,
                "spawn did not yield a live PID",
                category=ErrorCategory.STARTUP_FAILURE,
            )
        elif self.audit is not None:
            self.audit.record(
                AuditAction.PROCESS_STARTED,
                session_id=record.id,
                details={"pid": popen.pid, "kind": spec.kind.value, "command": spec.command},
            )
        logger.info(f"Started {spec.kind.value} {record.id} (PID {popen.pid})")
        return self.get(record.id)

    def _confirm_spawn(self, popen: subprocess.Popen) -> bool:
        """Wait (bounded) until the child's PID is alive or it already exited."""
        deadline = time.monotonic() + self.limits.spawn_confirm_timeout
        while True:
            if popen.poll() is not None or is_alive(popen.pid):
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(_POLL_INTERVAL)

    def _pump(self, managed: _Managed, stream: IO[str] | None) -> None:
        if stream is None:
            return
        try:
            for line in iter(stream.readline, ""):
                self._on_line(managed, line.rstrip("\r\n"))
        except (OSError, ValueError) as e:
            logger.debug(f"Output stream of {managed.process_id} closed: {e}")
        finally:
            stream.close()

    def _on_line(self, managed: _Managed, line: str) -> None:
        first = managed.buffer.total_lines == 0
        managed.buffer.append(line, self._clock())
        if first and managed.kind == ProcessKind.AGENT_SESSION:
            self.mark_running(managed.process_id)
        for listener in list(self._output_listeners):
            try:
                listener(managed.process_id, line)
            except Exception as e:
                logger.error(f"Output listener failed for {managed.process_id}: {e}", exc_info=True)

    def _watch(self, managed: _Managed) -> None:
        while True:
            try:
                code = managed.popen.wait(timeout=0.5)
                break
            except subprocess.TimeoutExpired:
                if self._closed.is_set():
                    return
        # let the readers drain so listeners see the final output
        for reader in managed.readers:
            reader.join(timeout=2.0)
        self._handle_exit(managed, code)

    def _handle_exit(self, managed: _Managed, code: int) -> None:
        process_id = managed.process_id
        record = self.db.get_process(process_id)
        if record is None:
            managed.exit_handled.set()
            return
        if managed.stop_requested.is_set() or record.status == ProcessStatus.STOPPED:
            self.db.update_process(process_id, exit_code=code)
        elif managed.kind == ProcessKind.AGENT_SESSION and code == 0:
            # a one-shot agent finishing its work
            self.db.update_process(
                process_id,
                expected=_LIVE,
                status=ProcessStatus.STOPPED,
                exit_code=code,
                stopped_at=self._clock(),
            )
            logger.info(f"Agent session {process_id} exited cleanly")
        else:
            self.db.update_process(process_id, exit_code=code)
            category = (
                ErrorCategory.STARTUP_FAILURE
                if record.status == ProcessStatus.STARTING and managed.kind == ProcessKind.DEV_SERVER
                else ErrorCategory.CRASH_DURING_RUN
            )
            self.mark_crashed(process_id, f"exited with code {code}", category=category)
        managed.exit_handled.set()

        record = self.db.get_process(process_id)
        if record is None:
            return
        for listener in list(self._exit_listeners):
            try:
                listener(record)
            except Exception as e:
                logger.error(f"Exit listener failed for {process_id}: {e}", exc_info=True)

    def mark_running(self, process_id: str) -> bool:
        """starting -> running. Returns False if the process was not starting."""
        changed = self.db.update_process(
            process_id, expected=[ProcessStatus.STARTING], status=ProcessStatus.RUNNING
        )
        if changed:
            logger.info(f"Process {process_id} is running")
        return changed

    def mark_crashed(
        self,
        process_id: str,
        reason: str,
        category: ErrorCategory = ErrorCategory.CRASH_DURING_RUN,
    ) -> bool:
        """starting/running -> crashed, at most once per process."""
        now = self._clock()
        with self.db.transaction() as conn:
            changed = self.db.update_process(
                process_id, expected=_LIVE, conn=conn, status=ProcessStatus.CRASHED
            )
            if not changed:
                return False
            self.db.record_crash(process_id, reason, category, now, conn=conn)
            if self.audit is not None:
                self.audit.record(
                    AuditAction.PROCESS_CRASHED,
                    session_id=process_id,
                    details={"reason": reason, "category": category.value},
                    conn=conn,
                )
        logger.warning(f"Process {process_id} crashed: {reason}")
        return True

    def stop(
        self,
        process_id: str,
        graceful_timeout: float | None = None,
        kill_timeout: float | None = None,
    ) -> SupervisedProcess:
        """Stop a process: SIGTERM, bounded wait, SIGKILL, bounded wait.

        Stopping an already stopped process is a no-op.
        """
        record = self.get(process_id)
        graceful = self.limits.graceful_stop_timeout if graceful_timeout is None else graceful_timeout
        forced = self.limits.kill_timeout if kill_timeout is None else kill_timeout
        with self._lock:
            managed = self._managed.get(process_id)
        if managed is not None:
            managed.stop_requested.set()

        changed = self.db.update_process(
            process_id,
            expected=[ProcessStatus.STARTING, ProcessStatus.RUNNING, ProcessStatus.CRASHED],
            status=ProcessStatus.STOPPED,
            stopped_at=self._clock(),
        )

        if record.pid is not None:
            if managed is not None:
                gone = terminate_pid(record.pid, graceful, forced, popen=managed.popen)
            elif record.exit_code is None and is_alive(record.pid):
                gone = terminate_pid(record.pid, graceful, forced)
            else:
                gone = True
            if not gone:
                logger.error(f"PID {record.pid} of {process_id} survived SIGKILL")

        if managed is not None:
            self._close_stdin(managed)
            if managed.watcher is not None and managed.watcher is not threading.current_thread():
                managed.watcher.join(timeout=forced + 1.0)

        if changed:
            logger.info(f"Stopped {process_id}")
            if self.audit is not None:
                self.audit.record(
                    AuditAction.PROCESS_STOPPED,
                    session_id=process_id,
                    details={"pid": record.pid},
                )
        return self.get(process_id)

    def remove(self, process_id: str) -> None:
        """Stop if needed and forget a process, including its health record."""
        record = self.get(process_id)
        if record.status != ProcessStatus.STOPPED:
            self.stop(process_id)
        with self._lock:
            self._managed.pop(process_id, None)
        self.db.delete_process(process_id)

    def release(self, process_id: str) -> bool:
        """Tear down an exited child: drop its output buffer and health record.

        The process row stays as history. Returns False (and keeps
        everything) while the child has not exited yet.
        """
        with self._lock:
            managed = self._managed.get(process_id)
            if managed is not None:
                if not managed.exit_handled.is_set():
                    return False
                del self._managed[process_id]
        self.db.delete_health(process_id)
        logger.debug(f"Released {process_id}")
        return True

    def shutdown(self) -> None:
        """Stop every process this supervisor spawned."""
        with self._lock:
            managed = list(self._managed.values())
        for item in managed:
            record = self.db.get_process(item.process_id)
            if record is not None and record.status != ProcessStatus.STOPPED:
                self.stop(item.process_id)
        self._closed.set()
        with self._lock:
            self._managed.clear()

    # --- I/O ---

    def write_input(self, process_id: str, text: str, close: bool = False) -> bool:
        """Write to a managed child's stdin. Returns False if it cannot accept input."""
        with self._lock:
            managed = self._managed.get(process_id)
        if managed is None or managed.popen.stdin is None:
            return False
        with managed.stdin_lock:
            stdin = managed.popen.stdin
            if stdin.closed:
                return False
            try:
                stdin.write(text if text.endswith("\n") else text + "\n")
                stdin.flush()
                if close:
                    stdin.close()
            except (BrokenPipeError, OSError, ValueError) as e:
                logger.warning(f"Cannot write to {process_id}: {e}")
                return False
        return True

    def close_input(self, process_id: str) -> None:
        """Close a managed child's stdin so it sees end of input."""
        with self._lock:
            managed = self._managed.get(process_id)
        if managed is not None:
            self._close_stdin(managed)

    def _close_stdin(self, managed: _Managed) -> None:
        stdin = managed.popen.stdin
        if stdin is None:
            return
        with managed.stdin_lock:
            if stdin.closed:
                return
            try:
                stdin.close()
            except (BrokenPipeError, OSError) as e:
                logger.debug(f"Closing stdin of {managed.process_id}: {e}")

    def _buffer(self, process_id: str) -> LogBuffer | None:
        with self._lock:
            managed = self._managed.get(process_id)
        return managed.buffer if managed else None

    def recent_output(self, process_id: str, lines: int = 50) -> list[str]:
        buffer = self._buffer(process_id)
        return buffer.recent(lines) if buffer else []

    def output_since(self, process_id: str, position: int = 0) -> list[str]:
        buffer = self._buffer(process_id)
        return buffer.since(position) if buffer else []

    def output_position(self, process_id: str) -> int:
        buffer = self._buffer(process_id)
        return buffer.total_lines if buffer else 0

    def last_output_at(self, process_id: str) -> datetime | None:
        buffer = self._buffer(process_id)
        return buffer.last_output_at if buffer else None

    def is_managed(self, process_id: str) -> bool:
        with self._lock:
            return process_id in self._managed

    def has_exited(self, process_id: str) -> bool:
        """True once the child is gone (managed or not)."""
        with self._lock:
            managed = self._managed.get(process_id)
        if managed is not None:
            return managed.exit_handled.is_set()
        record = self.db.get_process(process_id)
        return record is None or not is_alive(record.pid)

    # --- Queries ---

    def get(self, process_id: str) -> SupervisedProcess:
        record = self.db.get_process(process_id)
        if record is None:
            raise ProcessNotFoundError(f"Process not found: {process_id}")
        return record

    def list(
        self,
        kind: ProcessKind | None = None,
        statuses: list[ProcessStatus] | None = None,
    ) -> list[SupervisedProcess]:
        return self.db.list_processes(kind=kind, statuses=statuses)

    def find_idle_session(self, provider: str) -> SupervisedProcess | None:
        """A live interactive agent session for ``provider`` with no active delegation."""
        for record in self.list(kind=ProcessKind.AGENT_SESSION, statuses=list(_LIVE)):
            if record.agent_provider != provider or not record.interactive:
                continue
            if not self.is_managed(record.id) or self.has_exited(record.id):
                continue
            busy = self.db.list_delegations(
                session_id=record.id, statuses=ACTIVE_DELEGATION_STATUSES
            )
            if not busy:
                return record
        return None

"""Fleet control: start, stop, restart and status of a profile's services.

Services are detached from the CLI (own session, output to a log file) so
they outlive the command that started them. What is running is recorded in
marker files under ``<runtime_dir>/server``:

- ``<service>.pid``: PID of each running service
- ``profile``: name of the running profile

Markers are written atomically (temp file + rename) and markers whose PID is
dead are treated as stale and cleared. All mutations hold a file lock, so two
CLI invocations never interleave.

Each service also gets a dev-server process row (with its health record) so
the health monitor probes it. The row has no ``supervisor_pid``: a detached
service is judged by the liveness of its own PID.
"""

from __future__ import annotations

import contextlib
import logging
import os
import subprocess
import tempfile
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

from devfleet.core.audit import AuditLog
from devfleet.core.config import FleetConfig, ProfileConfig, ServiceConfig
from devfleet.core.models import (
    AuditAction,
    ErrorCategory,
    ProcessKind,
    ProcessStatus,
    SupervisedProcess,
    utc_now,
)
from devfleet.core.ports import is_port_listening, socket_answers
from devfleet.core.process import is_alive, sanitized_environment, terminate_pid
from devfleet.core.state import Database

logger = logging.getLogger(__name__)

PROFILE_MARKER = "profile"
LOCK_FILENAME = ".fleet.lock"
DETACHED_EXIT_REASON = "service exited while unsupervised"

_SERVICE_STATUSES = [ProcessStatus.STARTING, ProcessStatus.RUNNING, ProcessStatus.CRASHED]


class FleetError(Exception):
    """Fleet operation could not be carried out."""

    pass


class FleetLockTimeout(FleetError):
    """Another devfleet command holds the fleet lock."""

    pass


class FleetLock:
    """Exclusive inter-process lock around fleet mutations."""

    def __init__(self, server_dir: Path, timeout: float):
        self.server_dir = server_dir
        self.timeout = timeout
        self._filelock: FileLock | None = None

    def __enter__(self) -> FleetLock:
        self.server_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self.server_dir / LOCK_FILENAME
        if lock_path.is_symlink():
            raise FleetError(f"{lock_path} is a symlink; refusing to lock through it")
        self._filelock = FileLock(str(lock_path), timeout=self.timeout)
        try:
            self._filelock.acquire()
        except FileLockTimeout as e:
            raise FleetLockTimeout(
                f"Another devfleet command is running (lock held for more than {self.timeout}s)"
            ) from e
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._filelock is not None:
            self._filelock.release()
        return False


def atomic_write(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise


@dataclass
class ServiceStatus:
    name: str
    pid: int | None
    alive: bool
    target: str | None = None
    # status of the service's process row, when it has one
    process_status: ProcessStatus | None = None


@dataclass
class FleetStatus:
    profile: str | None
    services: list[ServiceStatus] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return any(s.alive for s in self.services)


class FleetController:
    """Starts and stops the services of a profile."""

    def __init__(
        self,
        config: FleetConfig,
        port_check: Callable[[int], bool] = is_port_listening,
        db: Database | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.limits = config.limits
        self.server_dir = config.server_dir
        self.db = db or Database(config.db_path)
        self.audit = AuditLog(self.db, clock=clock)
        self._port_check = port_check
        self._clock = clock

    # --- Process records ---

    def _record_for(self, pid: int | None) -> SupervisedProcess | None:
        """Newest unsettled dev-server row for a detached service PID."""
        if pid is None:
            return None
        matches = [
            record
            for record in self.db.list_processes(kind=ProcessKind.DEV_SERVER, statuses=_SERVICE_STATUSES)
            if record.pid == pid and record.supervisor_pid is None
        ]
        return max(matches, key=lambda r: r.created_at) if matches else None

    def _mark_crashed(self, record: SupervisedProcess, reason: str, exit_code: int | None = None) -> None:
        category = (
            ErrorCategory.STARTUP_FAILURE
            if record.status == ProcessStatus.STARTING
            else ErrorCategory.CRASH_DURING_RUN
        )
        with self.db.transaction() as conn:
            changed = self.db.update_process(
                record.id,
                expected=[ProcessStatus.STARTING, ProcessStatus.RUNNING],
                conn=conn,
                status=ProcessStatus.CRASHED,
                exit_code=exit_code,
            )
            if not changed:
                return
            self.db.record_crash(record.id, reason, category, self._clock(), conn=conn)
            self.audit.record(
                AuditAction.PROCESS_CRASHED,
                session_id=record.id,
                details={"reason": reason, "category": category.value},
                conn=conn,
            )
        logger.warning(f"Service process {record.id} crashed: {reason}")

    def _mark_stopped(self, record: SupervisedProcess) -> None:
        changed = self.db.update_process(
            record.id,
            expected=_SERVICE_STATUSES,
            status=ProcessStatus.STOPPED,
            stopped_at=self._clock(),
        )
        if changed:
            self.audit.record(
                AuditAction.PROCESS_STOPPED, session_id=record.id, details={"pid": record.pid}
            )

    # --- Markers ---

    def _pid_file(self, service: str) -> Path:
        return self.server_dir / f"{service}.pid"

    @property
    def _profile_file(self) -> Path:
        return self.server_dir / PROFILE_MARKER

    def _read_pid(self, path: Path) -> int | None:
        try:
            return int(path.read_text().strip())
        except (OSError, ValueError):
            return None

    def _read_profile(self) -> str | None:
        try:
            return self._profile_file.read_text().strip() or None
        except OSError:
            return None

    def _pid_files(self) -> list[Path]:
        if not self.server_dir.exists():
            return []
        return sorted(self.server_dir.glob("*.pid"))

    def _lock(self) -> FleetLock:
        return FleetLock(self.server_dir, self.limits.lock_timeout)

    def clear_stale(self) -> list[str]:
        """Remove markers whose process is gone. Returns the cleared service names."""
        cleared = []
        for path in self._pid_files():
            pid = self._read_pid(path)
            if pid is None or not is_alive(pid):
                record = self._record_for(pid)
                if record is not None:
                    self._mark_crashed(record, DETACHED_EXIT_REASON)
                path.unlink(missing_ok=True)
                cleared.append(path.stem)
                logger.info(f"Cleared stale PID file for {path.stem}")
        if not self._pid_files() and self._profile_file.exists():
            self._profile_file.unlink(missing_ok=True)
        return cleared

    def _target(self, service: ServiceConfig) -> str | None:
        if service.port is not None:
            return f"port {service.port}"
        if service.socket is not None:
            return str(self._socket_path(service))
        return None

    def _socket_path(self, service: ServiceConfig) -> Path:
        return self.config.socket_dir / (service.socket or f"{service.name}.sock")

    # --- Status ---

    def status(self) -> FleetStatus:
        """Current fleet state. Read only; stale markers show as not alive."""
        profile_name = self._read_profile()
        configured: dict[str, ServiceConfig] = {}
        if profile_name in self.config.profiles:
            configured = {s.name: s for s in self.config.profiles[profile_name].services}
        services = []
        for path in self._pid_files():
            pid = self._read_pid(path)
            service = configured.get(path.stem)
            record = self._record_for(pid)
            services.append(
                ServiceStatus(
                    name=path.stem,
                    pid=pid,
                    alive=is_alive(pid),
                    target=self._target(service) if service else None,
                    process_status=record.status if record else None,
                )
            )
        if not any(s.alive for s in services):
            profile_name = None
        return FleetStatus(profile=profile_name, services=services)

    def refresh(self) -> FleetStatus:
        """Clear stale markers, then report.

        While another command holds the lock the markers are left alone and
        the read-only view is returned.
        """
        try:
            with FleetLock(self.server_dir, min(1.0, self.limits.lock_timeout)):
                self.clear_stale()
        except FleetLockTimeout:
            logger.info("Fleet lock busy; reporting without clearing stale markers")
        return self.status()

    # --- Start / stop ---

    def start(self, profile_name: str | None = None) -> FleetStatus:
        """Start a profile. Starting the profile that already runs is a no-op.

        Raises:
            FleetError: If another profile is running or a port/socket is taken.
            FleetLockTimeout: If another devfleet command holds the lock.
        """
        profile = self.config.profile(profile_name or self.config.default_profile)
        with self._lock():
            return self._start_locked(profile)

    def stop(self) -> list[str]:
        """Stop every running service. Returns the names that were stopped."""
        with self._lock():
            return self._stop_locked()

    def restart(self, profile_name: str | None = None) -> FleetStatus:
        """Stop whatever runs, then start ``profile_name`` (default: the current one)."""
        with self._lock():
            name = profile_name or self._read_profile() or self.config.default_profile
            profile = self.config.profile(name)
            self._stop_locked()
            return self._start_locked(profile)

    def _start_locked(self, profile: ProfileConfig) -> FleetStatus:
        self.clear_stale()
        current = self._read_profile()
        if self._pid_files():
            if current == profile.name:
                logger.info(f"Profile {profile.name} already running")
                return self.status()
            raise FleetError(f"Profile '{current}' is running; use restart to switch to '{profile.name}'")

        for service in profile.services:
            self._preflight(service)

        atomic_write(self._profile_file, profile.name + "\n")
        started: list[str] = []
        try:
            for service in profile.services:
                pid = self._spawn(profile, service)
                atomic_write(self._pid_file(service.name), f"{pid}\n")
                started.append(service.name)
                logger.info(f"Started {service.name} (PID {pid})")
        except (OSError, FleetError) as e:
            logger.error(f"Starting profile {profile.name} failed: {e}; rolling back {started}")
            self._stop_locked()
            if isinstance(e, FleetError):
                raise
            raise FleetError(f"Could not start {profile.name}: {e}") from e
        return self.status()

    def _preflight(self, service: ServiceConfig) -> None:
        if service.port is not None and self._port_check(service.port):
            raise FleetError(f"Port {service.port} for {service.name} is already in use")
        if service.socket is not None:
            path = self._socket_path(service)
            if path.exists():
                if socket_answers(path):
                    raise FleetError(f"Socket {path} for {service.name} is in use")
                path.unlink()
                logger.info(f"Removed stale socket {path}")

    def _spawn(self, profile: ProfileConfig, service: ServiceConfig) -> int:
        overlay: dict[str, str] = {
            "DEVFLEET_PROFILE": profile.name,
            "DEVFLEET_HOME": str(self.config.runtime_dir),
        }
        if service.port is not None:
            overlay["PORT"] = str(service.port)
        if service.socket is not None:
            path = self._socket_path(service)
            path.parent.mkdir(parents=True, exist_ok=True)
            overlay["SOCKET_PATH"] = str(path)
        if profile.auth_url:
            overlay["AUTH_URL"] = profile.auth_url
            overlay["NEXTAUTH_URL"] = profile.auth_url
        overlay.update(service.env)

        self.config.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.config.log_dir / f"{service.name}.log"
        cwd = Path(service.cwd) if service.cwd else self.config.project_dir
        if not cwd.is_absolute():
            cwd = self.config.project_dir / cwd
        with open(log_path, "ab") as log:
            popen = subprocess.Popen(
                service.command,
                cwd=cwd,
                env=sanitized_environment(overlay),
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )

        now = self._clock()
        record = SupervisedProcess(
            id=f"proc-{uuid.uuid4().hex[:12]}",
            kind=ProcessKind.DEV_SERVER,
            bind_port=service.port,
            bind_socket=overlay.get("SOCKET_PATH"),
            pid=popen.pid,
            command=list(service.command),
            cwd=str(cwd),
            created_at=now,
            startup_deadline=now + timedelta(seconds=self.limits.startup_timeout),
        )
        self.db.insert_process(record)

        deadline = time.monotonic() + self.limits.spawn_confirm_timeout
        while not is_alive(popen.pid):
            code = popen.poll()
            if code is not None:
                self._mark_crashed(record, f"exited with code {code}", exit_code=code)
                raise FleetError(f"{service.name} exited with code {code}; see {log_path}")
            if time.monotonic() >= deadline:
                self._mark_crashed(record, "spawn did not yield a live PID")
                raise FleetError(f"{service.name} did not start; see {log_path}")
            time.sleep(0.05)
        self.audit.record(
            AuditAction.PROCESS_STARTED,
            session_id=record.id,
            details={"pid": popen.pid, "kind": ProcessKind.DEV_SERVER.value, "service": service.name},
        )
        return popen.pid

    def _stop_locked(self) -> list[str]:
        profile_name = self._read_profile()
        stopped = []
        for path in self._pid_files():
            pid = self._read_pid(path)
            record = self._record_for(pid)
            if pid is not None and is_alive(pid):
                if not terminate_pid(pid, self.limits.graceful_stop_timeout, self.limits.kill_timeout):
                    raise FleetError(f"{path.stem} (PID {pid}) survived SIGKILL")
                logger.info(f"Stopped {path.stem} (PID {pid})")
            if record is not None:
                self._mark_stopped(record)
            path.unlink(missing_ok=True)
            stopped.append(path.stem)

        profile = self.config.profiles.get(profile_name) if profile_name else None
        if profile is not None:
            for service in profile.services:
                if service.port is not None:
                    self._wait_port_free(service.port)
                if service.socket is not None:
                    path = self._socket_path(service)
                    if path.exists() and not socket_answers(path):
                        path.unlink(missing_ok=True)
        self._profile_file.unlink(missing_ok=True)
        return stopped

    def _wait_port_free(self, port: int) -> bool:
        deadline = time.monotonic() + self.limits.port_free_timeout
        while self._port_check(port):
            if time.monotonic() >= deadline:
                logger.warning(f"Port {port} still in use {self.limits.port_free_timeout}s after stop")
                return False
            time.sleep(0.1)
        return True

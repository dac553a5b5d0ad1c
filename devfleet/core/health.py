"""Health monitoring for dev servers.

One loop probes every starting/running dev server each cycle with an HTTP
HEAD request. Any response below 500 counts as healthy: a 404 still proves
the server is up. Crash classification:

- a server still starting past its deadline crashes with
  "Startup timeout exceeded", whatever the probes say;
- a running server crashes after ``failure_threshold`` consecutive failed
  probes.

CPU and memory are sampled alongside, best effort.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import httpx
import psutil

from devfleet.core.config import Limits
from devfleet.core.models import (
    ErrorCategory,
    ProcessKind,
    ProcessStatus,
    SupervisedProcess,
    utc_now,
)
from devfleet.core.process import ProcessSupervisor
from devfleet.core.state import Database
from devfleet.core.worker import PollingWorker

logger = logging.getLogger(__name__)

STARTUP_TIMEOUT_REASON = "Startup timeout exceeded"


@dataclass(frozen=True)
class ProbeResult:
    healthy: bool
    status_code: int | None = None
    error: str | None = None


Probe = Callable[..., ProbeResult]


def probe_http(
    port: int | None = None,
    socket_path: str | None = None,
    timeout: float = 5.0,
    host: str = "127.0.0.1",
) -> ProbeResult:
    """HEAD / on a TCP port or a Unix socket."""
    transport = httpx.HTTPTransport(uds=socket_path) if socket_path else None
    url = f"http://{host}:{port}/" if port is not None else "http://localhost/"
    try:
        with httpx.Client(transport=transport, timeout=timeout) as client:
            response = client.head(url)
    except httpx.ConnectError:
        return ProbeResult(
            healthy=False,
            error="Connection refused - server may still be starting or has crashed",
        )
    except httpx.TimeoutException:
        return ProbeResult(healthy=False, error=f"Health check timed out after {timeout}s")
    except httpx.HTTPError as e:
        return ProbeResult(healthy=False, error=f"Health check failed: {e}")
    if response.status_code < 500:
        return ProbeResult(healthy=True, status_code=response.status_code)
    return ProbeResult(
        healthy=False,
        status_code=response.status_code,
        error=f"Server returned {response.status_code}",
    )


class MetricsSampler:
    """CPU/memory sampling by PID.

    psutil reports CPU relative to the previous call on the same Process
    object, so objects are cached per PID.
    """

    def __init__(self) -> None:
        self._processes: dict[int, psutil.Process] = {}

    def sample(self, pid: int | None) -> tuple[float | None, float | None]:
        if pid is None:
            return None, None
        try:
            proc = self._processes.get(pid)
            if proc is None:
                proc = psutil.Process(pid)
                self._processes[pid] = proc
            with proc.oneshot():
                cpu = proc.cpu_percent(interval=None)
                memory_mb = proc.memory_info().rss / (1024 * 1024)
            return cpu, round(memory_mb, 1)
        except psutil.Error as e:
            self._processes.pop(pid, None)
            logger.debug(f"Metrics unavailable for PID {pid}: {e}")
            return None, None

    @property
    def cached_pids(self) -> set[int]:
        return set(self._processes)

    def retain(self, pids: set[int]) -> None:
        """Forget cached processes not in ``pids``."""
        for pid in list(self._processes):
            if pid not in pids:
                del self._processes[pid]


class HealthMonitor:
    """Polls dev servers and classifies crashes."""

    def __init__(
        self,
        db: Database,
        supervisor: ProcessSupervisor,
        limits: Limits | None = None,
        probe: Probe = probe_http,
        metrics: MetricsSampler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.supervisor = supervisor
        self.limits = limits or Limits()
        self._probe = probe
        self._metrics = metrics or MetricsSampler()
        self._clock = clock
        self._worker = PollingWorker("health-monitor", self.run_cycle, self.limits.health_interval)

    def start(self) -> None:
        self._worker.start()

    def stop(self) -> None:
        self._worker.stop()

    @property
    def running(self) -> bool:
        return self._worker.running

    def run_cycle(self) -> int:
        """Check every starting/running dev server once. Returns how many were checked."""
        records = self.db.list_processes(
            kind=ProcessKind.DEV_SERVER,
            statuses=[ProcessStatus.STARTING, ProcessStatus.RUNNING],
        )
        for record in records:
            try:
                self.check_process(record)
            except Exception as e:
                logger.error(f"Health check failed for {record.id}: {e}", exc_info=True)
        self._metrics.retain({r.pid for r in records if r.pid is not None})
        return len(records)

    def check_process(self, record: SupervisedProcess) -> None:
        now = self._clock()
        if (
            record.status == ProcessStatus.STARTING
            and record.startup_deadline is not None
            and now >= record.startup_deadline
        ):
            self.supervisor.mark_crashed(
                record.id, STARTUP_TIMEOUT_REASON, category=ErrorCategory.STARTUP_FAILURE
            )
            return

        result = self._probe(
            port=record.bind_port,
            socket_path=record.bind_socket,
            timeout=self.limits.probe_timeout,
        )
        cpu, memory_mb = self._metrics.sample(record.pid)
        health = self.db.get_health(record.id)
        previous_failures = health.consecutive_failures if health else 0
        failures = 0 if result.healthy else previous_failures + 1
        self.db.update_health(
            record.id,
            is_healthy=result.healthy,
            consecutive_failures=failures,
            last_checked_at=now,
            cpu_percent=cpu,
            memory_mb=memory_mb,
        )

        if result.healthy:
            if record.status == ProcessStatus.STARTING:
                self.supervisor.mark_running(record.id)
            return

        logger.debug(f"Probe {failures} failed for {record.id}: {result.error}")
        if record.status == ProcessStatus.RUNNING and failures >= self.limits.failure_threshold:
            self.supervisor.mark_crashed(
                record.id,
                result.error or "Health check failed",
                category=ErrorCategory.CRASH_DURING_RUN,
            )

# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the devfleet test suite.

This module provides foundational fixtures used across all test modules:
- Temporary databases and runtime directories
- A controllable clock for time-based policies
- Child process scripts run with the current interpreter
- Fake agent providers and in-memory collaborators

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import sys
import textwrap
import threading
import time
from collections.abc import Callable, Generator
from concurrent.futures import Executor, Future
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from devfleet.core.audit import AuditLog, InsightLog
from devfleet.core.config import FleetConfig, Limits, ProfileConfig, ProviderConfig, ServiceConfig
from devfleet.core.delegation import DelegationEngine
from devfleet.core.models import Orchestrator
from devfleet.core.orchestrators import OrchestratorRegistry
from devfleet.core.process import ProcessSupervisor
from devfleet.core.providers import ConfiguredProvider, ProviderRegistry
from devfleet.core.state import Database
from devfleet.core.tasks import TaskQueue


# =============================================================================
# Clock and Executor Fixtures
# =============================================================================


class FakeClock:
    """Callable clock that only moves when told to. Thread-safe."""

    def __init__(self, start: datetime):
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self._now += timedelta(seconds=seconds)
            return self._now


class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def inline_executor() -> InlineExecutor:
    return InlineExecutor()


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    """Poll a predicate until it holds or the timeout passes.

    Example:
        assert wait_until(lambda: supervisor.has_exited(proc.id))
    """

    def _wait(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.05) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait


# =============================================================================
# Database and Component Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Fresh SQLite database in a temporary directory."""
    return Database(tmp_path / "state.db")


@pytest.fixture
def fast_limits() -> Limits:
    """Short timeouts so process tests finish quickly."""
    return Limits(
        health_interval=0.2,
        probe_timeout=1.0,
        spawn_confirm_timeout=2.0,
        graceful_stop_timeout=1.0,
        kill_timeout=2.0,
        port_free_timeout=1.0,
        lock_timeout=2.0,
        stall_interval=0.2,
    )


@pytest.fixture
def audit(test_db: Database, clock: FakeClock) -> AuditLog:
    return AuditLog(test_db, clock=clock)


@pytest.fixture
def insights(test_db: Database, audit: AuditLog, clock: FakeClock) -> InsightLog:
    return InsightLog(test_db, audit, clock=clock)


@pytest.fixture
def orchestrators(test_db: Database, audit: AuditLog, clock: FakeClock) -> OrchestratorRegistry:
    return OrchestratorRegistry(test_db, audit, clock=clock)


@pytest.fixture
def orchestrator(orchestrators: OrchestratorRegistry) -> Orchestrator:
    """The master orchestrator of user 'alice'."""
    return orchestrators.create_master("alice")


@pytest.fixture
def tasks(test_db: Database, audit: AuditLog, clock: FakeClock) -> TaskQueue:
    return TaskQueue(test_db, audit, clock=clock)


@pytest.fixture
def supervisor(
    test_db: Database, fast_limits: Limits, audit: AuditLog, clock: FakeClock
) -> Generator[ProcessSupervisor, None, None]:
    """Process supervisor that stops everything it spawned on teardown."""
    sup = ProcessSupervisor(test_db, fast_limits, audit=audit, clock=clock)
    yield sup
    sup.shutdown()


# =============================================================================
# Child Process Fixtures
# =============================================================================


@pytest.fixture
def script(tmp_path: Path) -> Callable[[str, str], list[str]]:
    """Write a Python script and return the argv that runs it unbuffered.

    Example:
        argv = script("sleeper", "import time; time.sleep(30)")
    """
    scripts_dir = tmp_path / "scripts"
    scripts_dir.mkdir(exist_ok=True)

    def _script(name: str, body: str) -> list[str]:
        path = scripts_dir / f"{name}.py"
        path.write_text(textwrap.dedent(body))
        return [sys.executable, "-u", str(path)]

    return _script


SUCCESS_AGENT = """
    import sys
    prompt = sys.stdin.read()
    print("working on it")
    print("```json")
    print('{"status": "success", "summary": "Fixed the bug", "files_modified": ["app.py"]}')
    print("```")
"""

FAILURE_AGENT = """
    import sys
    sys.stdin.read()
    print("could not do it")
    sys.exit(3)
"""

SILENT_AGENT = """
    import sys, time
    sys.stdin.read()
    time.sleep(60)
"""

INTERACTIVE_AGENT = """
    import sys
    print("session ready")
    while True:
        line = sys.stdin.readline()
        if not line:
            break
        if "json" in line.lower() and "block" in line.lower():
            print("```json")
            print('{"status": "success", "summary": "Handled", "files_modified": []}')
            print("```")
            sys.stdout.flush()
"""


@pytest.fixture
def fake_providers(script) -> Callable[..., ProviderRegistry]:
    """Registry with a 'fake' provider whose one-shot command runs ``body``.

    The interactive command (for reusable sessions) runs INTERACTIVE_AGENT.
    """

    def _providers(body: str = SUCCESS_AGENT) -> ProviderRegistry:
        one_shot = script("agent", body)
        interactive = script("interactive_agent", INTERACTIVE_AGENT)
        return ProviderRegistry(
            {
                "fake": ConfiguredProvider(
                    ProviderConfig(
                        name="fake",
                        command=one_shot,
                        prompt_via_stdin=True,
                        interactive_command=interactive,
                    )
                )
            }
        )

    return _providers


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    """Project directory agents run in."""
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def make_engine(
    test_db: Database,
    tasks: TaskQueue,
    supervisor: ProcessSupervisor,
    audit: AuditLog,
    clock: FakeClock,
    tmp_path: Path,
) -> Callable[..., DelegationEngine]:
    """Build a delegation engine around the shared supervisor and task queue."""

    def _make(providers: ProviderRegistry, **kwargs) -> DelegationEngine:
        return DelegationEngine(
            test_db,
            tasks,
            supervisor,
            audit,
            providers,
            transcript_dir=tmp_path / "transcripts",
            clock=clock,
            **kwargs,
        )

    return _make


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def fleet_config(tmp_path: Path, fast_limits: Limits, script) -> FleetConfig:
    """Config whose 'dev' profile runs two sleeping Python services."""
    project = tmp_path / "project"
    project.mkdir()
    sleeper = script(
        "service",
        """
        import os, signal, sys, time
        signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))
        print("service", os.environ.get("PORT"), os.environ.get("AUTH_URL"), flush=True)
        while True:
            time.sleep(0.1)
        """,
    )
    return FleetConfig(
        project_dir=project,
        runtime_dir=tmp_path / "runtime",
        user_id="alice",
        limits=fast_limits,
        profiles={
            "dev": ProfileConfig(
                name="dev",
                services=[
                    ServiceConfig(name="web", command=sleeper, port=46001),
                    ServiceConfig(name="terminal", command=sleeper, port=46002),
                ],
                auth_url="http://localhost:46001",
            ),
            "prod": ProfileConfig(
                name="prod",
                services=[ServiceConfig(name="web", command=sleeper, socket="web.sock")],
            ),
        },
    )

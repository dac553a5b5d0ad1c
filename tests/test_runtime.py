"""Tests for control plane wiring and recovery of orphaned records."""

from __future__ import annotations

import os
import subprocess
import sys

import pytest

from devfleet.core.fleet import DETACHED_EXIT_REASON
from devfleet.core.health import ProbeResult
from devfleet.core.models import (
    Delegation,
    DelegationStatus,
    ErrorCategory,
    ProcessKind,
    ProcessStatus,
    SupervisedProcess,
    TaskStatus,
)
from devfleet.core.runtime import ORPHAN_REASON, ControlPlane


@pytest.fixture
def dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


@pytest.fixture
def plane(fleet_config, fake_providers, clock):
    control = ControlPlane(
        fleet_config,
        providers=fake_providers(),
        probe=lambda **kwargs: ProbeResult(healthy=True, status_code=200),
        clock=clock,
    )
    yield control
    control.stop()


def _orphan(plane, process_id, kind, pid, supervisor_pid, clock):
    plane.db.insert_process(
        SupervisedProcess(
            id=process_id,
            kind=kind,
            pid=pid,
            status=ProcessStatus.RUNNING,
            created_at=clock(),
            supervisor_pid=supervisor_pid,
        )
    )


class TestWiring:
    def test_components_share_one_database(self, plane, fleet_config):
        assert plane.db.db_path == fleet_config.db_path
        assert plane.engine.supervisor is plane.supervisor
        assert plane.stall.engine is plane.engine

    def test_orchestrator_created_on_first_use(self, plane):
        first = plane.orchestrator
        assert first.user_id == "alice"
        assert plane.orchestrator.id == first.id

    def test_loops_start_and_stop(self, plane):
        plane.start()
        assert plane.health.running
        assert plane.stall.running

        plane.stop()
        assert not plane.health.running
        assert not plane.stall.running

    def test_delegate_end_to_end(self, plane, tmp_path, wait_until):
        workdir = tmp_path / "work"
        workdir.mkdir()
        plane.start()
        task = plane.tasks.create(plane.orchestrator.id, "Fix the login bug")

        delegation = plane.engine.delegate(task.id, provider="fake", workdir=workdir)

        assert wait_until(lambda: plane.engine.get(delegation.id).status.is_terminal)
        assert plane.tasks.get(task.id).status == TaskStatus.COMPLETED


class TestRecover:
    def test_dead_dev_server_marked_crashed(self, plane, clock, dead_pid):
        _orphan(plane, "proc-dead", ProcessKind.DEV_SERVER, dead_pid, dead_pid, clock)

        assert plane.recover() == 1

        assert plane.db.get_process("proc-dead").status == ProcessStatus.CRASHED
        assert plane.db.get_health("proc-dead").crash_reason == ORPHAN_REASON

    def test_detached_service_judged_by_own_pid(self, plane, clock, dead_pid):
        _orphan(plane, "proc-gone", ProcessKind.DEV_SERVER, dead_pid, None, clock)
        _orphan(plane, "proc-up", ProcessKind.DEV_SERVER, os.getpid(), None, clock)

        assert plane.recover() == 1

        assert plane.db.get_health("proc-gone").crash_reason == DETACHED_EXIT_REASON
        assert plane.db.get_process("proc-up").status == ProcessStatus.RUNNING

    def test_records_of_live_owner_untouched(self, plane, clock, dead_pid):
        _orphan(plane, "proc-other", ProcessKind.DEV_SERVER, dead_pid, os.getpid(), clock)

        assert plane.recover() == 0
        assert plane.db.get_process("proc-other").status == ProcessStatus.RUNNING

    def test_orphaned_session_cancels_its_task(self, plane, clock, dead_pid):
        _orphan(plane, "proc-agent", ProcessKind.AGENT_SESSION, dead_pid, dead_pid, clock)
        task = plane.tasks.create(plane.orchestrator.id, "Fix the login bug")
        plane.tasks.start_planning(task.id)
        plane.tasks.start_execution(task.id, agent="fake", delegation_id="dlg-orphan")
        plane.db.insert_delegation(
            Delegation(
                id="dlg-orphan",
                task_id=task.id,
                session_id="proc-agent",
                status=DelegationStatus.RUNNING,
                agent_provider="fake",
                created_at=clock(),
                updated_at=clock(),
            )
        )

        plane.start(loops=False)

        assert plane.tasks.get(task.id).status == TaskStatus.CANCELLED
        delegation = plane.engine.get("dlg-orphan")
        assert delegation.status == DelegationStatus.FAILED
        assert delegation.error.category == ErrorCategory.CRASH_DURING_RUN
        assert ORPHAN_REASON in delegation.error.message
        assert plane.db.get_process("proc-agent").status == ProcessStatus.STOPPED

    def test_idle_orphaned_session_stopped(self, plane, clock, dead_pid):
        _orphan(plane, "proc-idle", ProcessKind.AGENT_SESSION, dead_pid, None, clock)

        assert plane.recover() == 1
        assert plane.db.get_process("proc-idle").status == ProcessStatus.STOPPED

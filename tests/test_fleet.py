"""Tests for fleet control (start/stop/restart/status of a profile).

Tests cover:
- Starting a profile writes PID and profile markers; stopping removes them
- Idempotent start, and refusing to start a second profile
- Preflight port checks and rollback on spawn failure
- Stale marker cleanup and the inter-process lock
"""

from __future__ import annotations

import subprocess
import sys
from dataclasses import replace

import pytest

from devfleet.core.config import ProfileConfig, ServiceConfig
from devfleet.core.fleet import (
    DETACHED_EXIT_REASON,
    PROFILE_MARKER,
    FleetController,
    FleetError,
    FleetLock,
    FleetLockTimeout,
    atomic_write,
)
from devfleet.core.health import HealthMonitor, ProbeResult
from devfleet.core.models import ErrorCategory, ProcessKind, ProcessStatus
from devfleet.core.process import ProcessSupervisor, is_alive, terminate_pid


@pytest.fixture
def dead_pid() -> int:
    """PID of a process that has already exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


@pytest.fixture
def fleet(fleet_config):
    controller = FleetController(fleet_config, port_check=lambda port: False)
    yield controller
    controller.stop()


# =============================================================================
# Start / Stop Tests
# =============================================================================


class TestStartStop:
    def test_start_status_stop(self, fleet, fleet_config):
        status = fleet.start("dev")

        assert status.profile == "dev"
        assert status.running
        assert [s.name for s in status.services] == ["terminal", "web"]
        assert all(s.alive for s in status.services)
        web = next(s for s in status.services if s.name == "web")
        assert web.target == "port 46001"
        assert (fleet_config.server_dir / PROFILE_MARKER).read_text() == "dev\n"
        pids = [s.pid for s in status.services]

        stopped = fleet.stop()

        assert sorted(stopped) == ["terminal", "web"]
        assert not any(is_alive(pid) for pid in pids)
        after = fleet.status()
        assert after.profile is None
        assert after.services == []
        assert not (fleet_config.server_dir / PROFILE_MARKER).exists()

    def test_service_environment_and_log(self, fleet, fleet_config, wait_until):
        fleet.start("dev")
        log = fleet_config.log_dir / "web.log"

        assert wait_until(lambda: log.exists() and "service" in log.read_text())
        assert log.read_text().strip() == "service 46001 http://localhost:46001"

    def test_start_same_profile_is_noop(self, fleet):
        first = fleet.start("dev")
        second = fleet.start("dev")

        assert [s.pid for s in second.services] == [s.pid for s in first.services]

    def test_other_profile_running(self, fleet):
        fleet.start("dev")
        with pytest.raises(FleetError, match="Profile 'dev' is running"):
            fleet.start("prod")

    def test_restart_switches_profile(self, fleet, fleet_config):
        old = fleet.start("dev")

        status = fleet.restart("prod")

        assert status.profile == "prod"
        assert [s.name for s in status.services] == ["web"]
        assert status.services[0].target == str(fleet_config.socket_dir / "web.sock")
        assert not any(is_alive(s.pid) for s in old.services)

    def test_restart_defaults_to_current_profile(self, fleet):
        old = fleet.start("dev")
        status = fleet.restart()

        assert status.profile == "dev"
        assert {s.pid for s in status.services}.isdisjoint({s.pid for s in old.services})

    def test_stop_when_nothing_runs(self, fleet):
        assert fleet.stop() == []


# =============================================================================
# Preflight & Rollback Tests
# =============================================================================


class TestPreflight:
    def test_port_in_use_blocks_start(self, fleet_config):
        controller = FleetController(fleet_config, port_check=lambda port: port == 46002)

        with pytest.raises(FleetError, match="Port 46002 for terminal is already in use"):
            controller.start("dev")

        assert controller.status().services == []
        assert not (fleet_config.server_dir / PROFILE_MARKER).exists()

    def test_spawn_failure_rolls_back(self, fleet_config):
        sleeper = fleet_config.profiles["dev"].services[0].command
        fleet_config.profiles["broken"] = ProfileConfig(
            name="broken",
            services=[
                ServiceConfig(name="web", command=sleeper, port=46003),
                ServiceConfig(name="worker", command=["/nonexistent/worker"]),
            ],
        )
        controller = FleetController(fleet_config, port_check=lambda port: False)

        with pytest.raises(FleetError, match="Could not start broken"):
            controller.start("broken")

        assert controller.status().services == []
        assert not (fleet_config.server_dir / PROFILE_MARKER).exists()
        records = controller.db.list_processes(kind=ProcessKind.DEV_SERVER)
        assert [r.status for r in records] == [ProcessStatus.STOPPED]

    def test_stale_socket_removed_before_start(self, fleet, fleet_config):
        socket_path = fleet_config.socket_dir / "web.sock"
        socket_path.parent.mkdir(parents=True)
        socket_path.write_text("")

        fleet.start("prod")

        assert fleet.status().profile == "prod"

    def test_unknown_profile(self, fleet):
        from devfleet.core.config import ConfigError

        with pytest.raises(ConfigError):
            fleet.start("qa")


# =============================================================================
# Marker Tests
# =============================================================================


class TestMarkers:
    def test_stale_markers_cleared(self, fleet, fleet_config, dead_pid):
        server_dir = fleet_config.server_dir
        atomic_write(server_dir / "web.pid", f"{dead_pid}\n")
        atomic_write(server_dir / PROFILE_MARKER, "dev\n")

        before = fleet.status()
        assert before.profile is None
        assert [(s.name, s.alive) for s in before.services] == [("web", False)]

        after = fleet.refresh()

        assert after.services == []
        assert not (server_dir / "web.pid").exists()
        assert not (server_dir / PROFILE_MARKER).exists()

    def test_stale_markers_do_not_block_start(self, fleet, fleet_config, dead_pid):
        atomic_write(fleet_config.server_dir / "web.pid", f"{dead_pid}\n")
        atomic_write(fleet_config.server_dir / PROFILE_MARKER, "prod\n")

        assert fleet.start("dev").profile == "dev"

    def test_garbage_pid_file_is_stale(self, fleet, fleet_config):
        atomic_write(fleet_config.server_dir / "web.pid", "not a pid\n")
        assert fleet.clear_stale() == ["web"]

    def test_atomic_write_leaves_no_temp_files(self, tmp_path):
        target = tmp_path / "server" / "web.pid"
        atomic_write(target, "123\n")
        atomic_write(target, "456\n")

        assert target.read_text() == "456\n"
        assert [p.name for p in target.parent.iterdir()] == ["web.pid"]


class TestLock:
    def test_lock_is_exclusive(self, tmp_path):
        with FleetLock(tmp_path, timeout=1.0):
            with pytest.raises(FleetLockTimeout):
                with FleetLock(tmp_path, timeout=0.1):
                    pass

    def test_refresh_with_busy_lock_is_read_only(self, fleet_config, dead_pid):
        limits = replace(fleet_config.limits, lock_timeout=0.2)
        controller = FleetController(replace(fleet_config, limits=limits), port_check=lambda p: False)
        atomic_write(fleet_config.server_dir / "web.pid", f"{dead_pid}\n")

        with FleetLock(fleet_config.server_dir, timeout=1.0):
            status = controller.refresh()

        assert [(s.name, s.alive) for s in status.services] == [("web", False)]
        assert (fleet_config.server_dir / "web.pid").exists()

    def test_symlinked_lock_refused(self, tmp_path):
        (tmp_path / "elsewhere").write_text("")
        (tmp_path / ".fleet.lock").symlink_to(tmp_path / "elsewhere")

        with pytest.raises(FleetError, match="symlink"):
            with FleetLock(tmp_path, timeout=0.1):
                pass


# =============================================================================
# Supervision Tests
# =============================================================================


def _service_record(fleet, pid):
    return next(r for r in fleet.db.list_processes(kind=ProcessKind.DEV_SERVER) if r.pid == pid)


def _monitor(fleet, check) -> HealthMonitor:
    return HealthMonitor(fleet.db, ProcessSupervisor(fleet.db, fleet.limits), fleet.limits, probe=check)


def _healthy(**kwargs) -> ProbeResult:
    return ProbeResult(healthy=True, status_code=200)


def _refused(**kwargs) -> ProbeResult:
    return ProbeResult(healthy=False, error="Connection refused")


class TestSupervisedServices:
    def test_start_records_dev_servers(self, fleet):
        status = fleet.start("dev")

        web_pid = next(s.pid for s in status.services if s.name == "web")
        record = _service_record(fleet, web_pid)
        assert record.status == ProcessStatus.STARTING
        assert record.bind_port == 46001
        assert record.startup_deadline is not None
        assert record.supervisor_pid is None
        assert fleet.db.get_health(record.id).consecutive_failures == 0
        assert all(s.process_status == ProcessStatus.STARTING for s in status.services)

    def test_socket_service_records_its_path(self, fleet, fleet_config):
        status = fleet.start("prod")

        record = _service_record(fleet, status.services[0].pid)
        assert record.bind_socket == str(fleet_config.socket_dir / "web.sock")
        assert record.bind_port is None

    def test_healthy_services_marked_running(self, fleet):
        fleet.start("dev")
        checked = []

        def answer(port=None, socket_path=None, timeout=None):
            checked.append(port)
            return ProbeResult(healthy=True, status_code=200)

        assert _monitor(fleet, answer).run_cycle() == 2

        assert sorted(checked) == [46001, 46002]
        assert all(s.process_status == ProcessStatus.RUNNING for s in fleet.status().services)

    def test_dead_service_crashes_after_failed_checks(self, fleet):
        status = fleet.start("dev")
        _monitor(fleet, _healthy).run_cycle()
        web_pid = next(s.pid for s in status.services if s.name == "web")
        assert terminate_pid(web_pid, 1.0, 1.0)

        monitor = _monitor(fleet, _refused)
        for _ in range(fleet.limits.failure_threshold):
            monitor.run_cycle()

        record = _service_record(fleet, web_pid)
        assert record.status == ProcessStatus.CRASHED
        assert fleet.db.get_health(record.id).crash_category == ErrorCategory.CRASH_DURING_RUN

    def test_stop_marks_records_stopped(self, fleet):
        fleet.start("dev")
        fleet.stop()

        records = fleet.db.list_processes(kind=ProcessKind.DEV_SERVER)
        assert len(records) == 2
        assert {r.status for r in records} == {ProcessStatus.STOPPED}
        assert all(r.stopped_at is not None for r in records)

    def test_stale_marker_crashes_its_record(self, fleet):
        status = fleet.start("dev")
        web_pid = next(s.pid for s in status.services if s.name == "web")
        assert terminate_pid(web_pid, 1.0, 1.0)

        fleet.refresh()

        record = _service_record(fleet, web_pid)
        assert record.status == ProcessStatus.CRASHED
        assert fleet.db.get_health(record.id).crash_reason == DETACHED_EXIT_REASON

"""Tests for the port/socket registry.

Tests cover:
- Reservation and conflict detection across sibling scopes
- Free-port suggestions (skipping reserved, well-known and listening ports)
- Environment scanning and syncing
- Socket paths and stale socket cleanup
"""

from __future__ import annotations

import socket

import pytest

from devfleet.core.ports import (
    Conflict,
    PortRangeError,
    PortRegistry,
    Reserved,
    extract_port_variables,
    is_port_listening,
    validate_port,
)


@pytest.fixture
def registry(test_db, tmp_path) -> PortRegistry:
    """Registry that treats no port as listening."""
    return PortRegistry(test_db, tmp_path / "run", user_id="alice", runtime_check=None)


# =============================================================================
# Validation
# =============================================================================


class TestValidation:
    @pytest.mark.parametrize("port", [0, 80, 1023, 65536, -1])
    def test_out_of_range(self, port):
        with pytest.raises(PortRangeError):
            validate_port(port)

    @pytest.mark.parametrize("port", ["3000", 3000.0, True, None])
    def test_not_an_integer(self, port):
        with pytest.raises(PortRangeError):
            validate_port(port)

    def test_bounds_are_valid(self):
        assert validate_port(1024) == 1024
        assert validate_port(65535) == 65535

    def test_extract_port_variables(self):
        env = {
            "PORT": "3000",
            "API_PORT": " 4000 ",
            "#OLD_PORT": "5000",
            "NAME": "web",
            "RETRIES": "3",
            "BIG": "99999",
            "LOW": "80",
        }
        assert extract_port_variables(env) == {"PORT": 3000, "API_PORT": 4000}


# =============================================================================
# Reservation
# =============================================================================


class TestReserve:
    def test_reserve_free_port(self, registry):
        outcome = registry.reserve("app", "PORT", 3000)

        assert outcome == Reserved(scope="app", variable_name="PORT", port=3000)
        assert [(r.scope, r.port) for r in registry.list()] == [("app", 3000)]

    def test_sibling_conflict_suggests_next_free(self, registry):
        """A sibling holding PORT=3000 yields a conflict suggesting 3001."""
        registry.reserve("app", "PORT", 3000)

        outcome = registry.reserve("other", "PORT", 3000)

        assert isinstance(outcome, Conflict)
        assert outcome.other_scope == "app"
        assert outcome.other_variable == "PORT"
        assert outcome.suggested_port == 3001
        assert [r.scope for r in registry.list()] == ["app"]

    def test_suggestion_skips_reserved_ports(self, registry):
        registry.reserve("app", "PORT", 3000)
        registry.reserve("app", "API_PORT", 3001)

        outcome = registry.reserve("other", "PORT", 3000)

        assert outcome.suggested_port == 3002

    def test_suggestion_skips_well_known_ports(self, registry):
        registry.reserve("db", "PG", 5431)

        outcome = registry.reserve("other", "PORT", 5431)

        assert outcome.suggested_port == 5433

    def test_suggestion_skips_listening_ports(self, test_db, tmp_path):
        listening = {3001, 3002}
        registry = PortRegistry(
            test_db, tmp_path / "run", user_id="alice", runtime_check=lambda p: p in listening
        )
        registry.reserve("app", "PORT", 3000)

        assert registry.reserve("other", "PORT", 3000).suggested_port == 3003

    def test_no_suggestion_when_budget_exhausted(self, test_db, tmp_path):
        registry = PortRegistry(
            test_db,
            tmp_path / "run",
            user_id="alice",
            max_suggestion_attempts=3,
            runtime_check=lambda p: True,
        )
        registry.reserve("app", "PORT", 3000)

        assert registry.reserve("other", "PORT", 3000).suggested_port is None

    def test_same_scope_may_reclaim(self, registry):
        registry.reserve("app", "PORT", 3000)
        assert isinstance(registry.reserve("app", "PORT", 3000), Reserved)

    def test_users_are_independent(self, test_db, tmp_path):
        alice = PortRegistry(test_db, tmp_path / "run", user_id="alice", runtime_check=None)
        bob = PortRegistry(test_db, tmp_path / "run", user_id="bob", runtime_check=None)
        alice.reserve("app", "PORT", 3000)

        assert isinstance(bob.reserve("app", "PORT", 3000), Reserved)

    def test_release(self, registry):
        registry.reserve("app", "PORT", 3000)
        registry.reserve("app", "API_PORT", 3001)

        assert registry.release("app") == 2
        assert isinstance(registry.reserve("other", "PORT", 3000), Reserved)


class TestEnvironment:
    def test_validate_environment_reports_conflicts(self, registry):
        registry.reserve("app", "PORT", 3000)

        conflicts = registry.validate_environment("other", {"PORT": "3000", "API_PORT": "4000"})

        assert len(conflicts) == 1
        assert conflicts[0].variable_name == "PORT"
        assert conflicts[0].suggested_port == 3001
        assert [r.scope for r in registry.list()] == ["app"]

    def test_sync_replaces_scope(self, registry):
        registry.reserve("app", "OLD_PORT", 3999)

        reserved = registry.sync_from_environment("app", {"PORT": "3000", "#X": "3001"})

        assert [r.port for r in reserved] == [3000]
        assert [(r.variable_name, r.port) for r in registry.list("app")] == [("PORT", 3000)]


# =============================================================================
# Sockets
# =============================================================================


class TestSockets:
    def test_socket_path_is_stable(self, registry, tmp_path):
        path = registry.socket_path("my app/1", "web")
        assert path == tmp_path / "run" / "my_app_1-web.sock"
        assert registry.socket_path("my app/1", "web") == path

    def test_stale_socket_removed(self, registry):
        path = registry.socket_path("app", "web")
        path.parent.mkdir(parents=True)
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.bind(str(path))
        sock.close()

        status = registry.reserve_socket("app", "web")

        assert status.stale
        assert registry.remove_stale_socket(path)
        assert not path.exists()

    def test_live_socket_kept(self, registry):
        path = registry.socket_path("app", "web")
        path.parent.mkdir(parents=True)
        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        server.bind(str(path))
        server.listen(1)
        try:
            assert not registry.reserve_socket("app", "web").stale
            assert not registry.remove_stale_socket(path)
            assert path.exists()
        finally:
            server.close()


def test_is_port_listening():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    port = server.getsockname()[1]
    try:
        assert is_port_listening(port)
    finally:
        server.close()
    assert not is_port_listening(port)

"""Port and socket registry.

Scopes (a folder, a profile, a project) claim ports for named environment
variables. A claim conflicts when another scope of the same user already
holds the port; the conflict carries the nearest free port as a suggestion.
Unix sockets live at fixed per-scope paths and never get suggestions.
"""

from __future__ import annotations

import logging
import re
import socket
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from devfleet.core.models import PortReservation, utc_now
from devfleet.core.state import Database

logger = logging.getLogger(__name__)

MIN_PORT = 1024
MAX_PORT = 65535

# Common infrastructure services; never suggested.
WELL_KNOWN_PORTS = frozenset({5432, 5672, 6379, 8080, 8443, 9200, 27017})

_PORT_VALUE = re.compile(r"^\d{2,5}$")
_SCOPE_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


class PortRangeError(ValueError):
    """Port is not an integer in 1024..65535."""

    pass


@dataclass(frozen=True)
class Reserved:
    scope: str
    variable_name: str
    port: int


@dataclass(frozen=True)
class Conflict:
    scope: str
    variable_name: str
    port: int
    other_scope: str
    other_variable: str
    suggested_port: int | None


@dataclass(frozen=True)
class SocketStatus:
    path: Path
    stale: bool


def validate_port(port: object) -> int:
    """Return ``port`` as int or raise PortRangeError."""
    if isinstance(port, bool) or not isinstance(port, int):
        raise PortRangeError(f"Port must be an integer, got {port!r}")
    if not MIN_PORT <= port <= MAX_PORT:
        raise PortRangeError(f"Port {port} outside {MIN_PORT}-{MAX_PORT}")
    return port


def extract_port_variables(env: Mapping[str, str]) -> dict[str, int]:
    """Pick the variables of an environment whose values look like ports.

    Variables whose name starts with ``#`` are disabled and skipped.
    """
    ports = {}
    for name, value in env.items():
        if name.startswith("#"):
            continue
        value = str(value).strip()
        if not _PORT_VALUE.match(value):
            continue
        port = int(value)
        if MIN_PORT <= port <= MAX_PORT:
            ports[name] = port
    return ports


def is_port_listening(port: int, host: str = "127.0.0.1", timeout: float = 0.2) -> bool:
    """True if something accepts TCP connections on ``host:port``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        return sock.connect_ex((host, port)) == 0


def socket_answers(path: Path, timeout: float = 0.2) -> bool:
    """True if a live process accepts connections on the Unix socket."""
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        try:
            sock.connect(str(path))
        except OSError:
            return False
        return True


class PortRegistry:
    """Claims ports and socket paths per scope."""

    def __init__(
        self,
        db: Database,
        socket_dir: Path,
        user_id: str = "local",
        max_suggestion_attempts: int = 100,
        runtime_check: Callable[[int], bool] | None = is_port_listening,
    ):
        self.db = db
        self.socket_dir = Path(socket_dir)
        self.user_id = user_id
        self.max_suggestion_attempts = max_suggestion_attempts
        self._runtime_check = runtime_check

    def reserve(self, scope: str, variable_name: str, candidate_port: int) -> Reserved | Conflict:
        """Claim ``candidate_port`` for ``scope``/``variable_name``.

        Returns Reserved on success, or Conflict naming the other holder and
        a suggested free port. Claiming again in the same scope replaces the
        earlier value for that variable.

        Raises:
            PortRangeError: If the candidate is not a valid port.
        """
        port = validate_port(candidate_port)
        # the check and the insert share one write transaction so two scopes
        # racing for the same port cannot both win
        with self.db.transaction() as conn:
            reservations = self.db.list_port_reservations(self.user_id, conn=conn)
            holder = next(
                (r for r in reservations if r.port == port and r.scope != scope), None
            )
            if holder is None:
                self.db.upsert_port_reservation(
                    PortReservation(
                        user_id=self.user_id,
                        scope=scope,
                        variable_name=variable_name,
                        port=port,
                        created_at=utc_now(),
                    ),
                    conn=conn,
                )
                logger.debug(f"Reserved port {port} for {scope}/{variable_name}")
                return Reserved(scope=scope, variable_name=variable_name, port=port)
            used = {
                r.port
                for r in reservations
                if not (r.scope == scope and r.variable_name == variable_name)
            }
        suggestion = self.suggest_port(port, used)
        logger.info(
            f"Port {port} for {scope}/{variable_name} conflicts with "
            f"{holder.scope}/{holder.variable_name}; suggesting {suggestion}"
        )
        return Conflict(
            scope=scope,
            variable_name=variable_name,
            port=port,
            other_scope=holder.scope,
            other_variable=holder.variable_name,
            suggested_port=suggestion,
        )

    def suggest_port(self, port: int, used: set[int] | None = None) -> int | None:
        """Nearest free port above ``port``, or None if none within the attempt budget."""
        if used is None:
            used = {r.port for r in self.db.list_port_reservations(self.user_id)}
        for offset in range(1, self.max_suggestion_attempts + 1):
            candidate = port + offset
            if candidate > MAX_PORT:
                return None
            if candidate in used or candidate in WELL_KNOWN_PORTS:
                continue
            if self._runtime_check is not None and self._runtime_check(candidate):
                continue
            return candidate
        return None

    def validate_environment(self, scope: str, env: Mapping[str, str]) -> list[Conflict]:
        """Report every conflict the environment would cause, without writing."""
        reservations = self.db.list_port_reservations(self.user_id)
        used = {r.port for r in reservations if r.scope != scope}
        conflicts = []
        for name, port in extract_port_variables(env).items():
            holder = next((r for r in reservations if r.port == port and r.scope != scope), None)
            if holder is None:
                continue
            conflicts.append(
                Conflict(
                    scope=scope,
                    variable_name=name,
                    port=port,
                    other_scope=holder.scope,
                    other_variable=holder.variable_name,
                    suggested_port=self.suggest_port(port, used),
                )
            )
        return conflicts

    def sync_from_environment(self, scope: str, env: Mapping[str, str]) -> list[Reserved]:
        """Replace all of a scope's reservations with the ports found in ``env``."""
        found = extract_port_variables(env)
        now = utc_now()
        with self.db.transaction() as conn:
            self.db.delete_port_reservations(self.user_id, scope, conn=conn)
            for name, port in found.items():
                self.db.upsert_port_reservation(
                    PortReservation(
                        user_id=self.user_id,
                        scope=scope,
                        variable_name=name,
                        port=port,
                        created_at=now,
                    ),
                    conn=conn,
                )
        return [Reserved(scope=scope, variable_name=n, port=p) for n, p in found.items()]

    def list(self, scope: str | None = None) -> list[PortReservation]:
        return self.db.list_port_reservations(self.user_id, scope=scope)

    def release(self, scope: str) -> int:
        """Drop a scope's reservations. Returns how many were removed."""
        return self.db.delete_port_reservations(self.user_id, scope)

    # --- Sockets ---

    def socket_path(self, scope: str, name: str) -> Path:
        """Fixed socket path for ``scope``/``name``."""
        safe_scope = _SCOPE_UNSAFE.sub("_", scope).strip("_") or "default"
        return self.socket_dir / f"{safe_scope}-{name}.sock"

    def reserve_socket(self, scope: str, name: str) -> SocketStatus:
        path = self.socket_path(scope, name)
        path.parent.mkdir(parents=True, exist_ok=True)
        stale = path.exists() and not socket_answers(path)
        return SocketStatus(path=path, stale=stale)

    def remove_stale_socket(self, path: Path) -> bool:
        """Delete a socket file nobody answers on. Returns True if removed."""
        path = Path(path)
        if not path.exists():
            return False
        if socket_answers(path):
            logger.warning(f"Socket {path} is in use; not removing")
            return False
        path.unlink(missing_ok=True)
        logger.info(f"Removed stale socket {path}")
        return True

"""Configuration loading for devfleet.

Project configuration lives in ``.devfleet/config.yaml``. Every key is
optional; missing keys fall back to the defaults below. Runtime state (the
database, PID markers, sockets, logs) lives under the runtime directory,
``~/.devfleet`` unless ``DEVFLEET_HOME`` says otherwise.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

CONFIG_RELATIVE_PATH = Path(".devfleet/config.yaml")
RUNTIME_DIR_ENV = "DEVFLEET_HOME"


class ConfigError(Exception):
    """Configuration file is malformed or holds invalid values."""

    pass


@dataclass
class Limits:
    """Policy constants for the supervisor, monitors and fleet control.

    All durations are seconds except ``startup_timeout_minutes``.
    """

    health_interval: float = 10.0
    probe_timeout: float = 5.0
    failure_threshold: int = 3
    startup_timeout_minutes: float = 2.0
    spawn_confirm_timeout: float = 2.0
    graceful_stop_timeout: float = 5.0
    kill_timeout: float = 2.0
    port_free_timeout: float = 5.0
    lock_timeout: float = 10.0
    stall_interval: float = 10.0
    max_reprompts: int = 1
    port_suggestion_attempts: int = 100
    log_buffer_lines: int = 10000
    default_stall_threshold: int = 300
    default_monitoring_interval: int = 30

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"limits.{f.name} must be a number, got {value!r}")
            if f.name == "max_reprompts":
                if value < 0:
                    raise ConfigError("limits.max_reprompts must be >= 0")
            elif value <= 0:
                raise ConfigError(f"limits.{f.name} must be positive, got {value}")

    @property
    def startup_timeout(self) -> float:
        """Startup deadline in seconds."""
        return self.startup_timeout_minutes * 60


@dataclass
class ServiceConfig:
    """One process of a fleet profile."""

    name: str
    command: list[str]
    port: int | None = None
    socket: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None

    def __post_init__(self) -> None:
        if not self.command:
            raise ConfigError(f"service '{self.name}' has no command")
        if self.port is not None and self.socket is not None:
            raise ConfigError(f"service '{self.name}' sets both port and socket")


@dataclass
class ProfileConfig:
    """A named set of services started together (e.g. dev, prod)."""

    name: str
    services: list[ServiceConfig]
    auth_url: str | None = None


@dataclass
class ProviderConfig:
    """A custom agent provider defined in the config file."""

    name: str
    command: list[str]
    prompt_via_stdin: bool = False
    interactive_command: list[str] | None = None
    env: dict[str, str] = field(default_factory=dict)


def _default_profiles() -> dict[str, ProfileConfig]:
    return {
        "dev": ProfileConfig(
            name="dev",
            services=[
                ServiceConfig(name="web", command=["npm", "run", "dev"], port=6001),
                ServiceConfig(name="terminal", command=["npm", "run", "terminal"], port=6002),
            ],
            auth_url="http://localhost:6001",
        ),
        "prod": ProfileConfig(
            name="prod",
            services=[
                ServiceConfig(name="web", command=["npm", "run", "start"], socket="web.sock"),
                ServiceConfig(
                    name="terminal", command=["npm", "run", "terminal:prod"], socket="terminal.sock"
                ),
            ],
        ),
    }


@dataclass
class FleetConfig:
    """Resolved configuration for one project."""

    project_dir: Path
    runtime_dir: Path
    user_id: str = "local"
    default_profile: str = "dev"
    limits: Limits = field(default_factory=Limits)
    profiles: dict[str, ProfileConfig] = field(default_factory=_default_profiles)
    providers: dict[str, ProviderConfig] = field(default_factory=dict)

    @property
    def db_path(self) -> Path:
        return self.runtime_dir / "state.db"

    @property
    def server_dir(self) -> Path:
        """PID and profile marker files."""
        return self.runtime_dir / "server"

    @property
    def socket_dir(self) -> Path:
        return self.runtime_dir / "run"

    @property
    def log_dir(self) -> Path:
        return self.runtime_dir / "logs"

    @property
    def transcript_dir(self) -> Path:
        return self.runtime_dir / "transcripts"

    def profile(self, name: str) -> ProfileConfig:
        try:
            return self.profiles[name]
        except KeyError:
            known = ", ".join(sorted(self.profiles)) or "none"
            raise ConfigError(f"Unknown profile '{name}' (known: {known})") from None


def default_runtime_dir() -> Path:
    env = os.environ.get(RUNTIME_DIR_ENV)
    if env:
        return Path(env).expanduser()
    return Path.home() / ".devfleet"


def _parse_services(profile_name: str, raw: Any) -> list[ServiceConfig]:
    if not isinstance(raw, dict):
        raise ConfigError(f"profiles.{profile_name}.services must be a mapping")
    services = []
    for name, spec in raw.items():
        if not isinstance(spec, dict):
            raise ConfigError(f"service '{name}' must be a mapping")
        command = spec.get("command")
        if isinstance(command, str):
            command = command.split()
        port = spec.get("port")
        if port is not None and (isinstance(port, bool) or not isinstance(port, int)):
            raise ConfigError(f"service '{name}' port must be an integer")
        services.append(
            ServiceConfig(
                name=str(name),
                command=list(command or []),
                port=port,
                socket=spec.get("socket"),
                env={str(k): str(v) for k, v in (spec.get("env") or {}).items()},
                cwd=spec.get("cwd"),
            )
        )
    return services


def _parse_providers(raw: Any) -> dict[str, ProviderConfig]:
    if not isinstance(raw, dict):
        raise ConfigError("providers must be a mapping")
    providers = {}
    for name, spec in raw.items():
        if not isinstance(spec, dict) or not spec.get("command"):
            raise ConfigError(f"provider '{name}' needs a command")
        providers[str(name)] = ProviderConfig(
            name=str(name),
            command=list(spec["command"]),
            prompt_via_stdin=bool(spec.get("prompt_via_stdin", False)),
            interactive_command=spec.get("interactive_command"),
            env={str(k): str(v) for k, v in (spec.get("env") or {}).items()},
        )
    return providers


def load_config(project_dir: Path | None = None, runtime_dir: Path | None = None) -> FleetConfig:
    """Load ``.devfleet/config.yaml`` from ``project_dir``.

    Raises:
        ConfigError: If the file is not valid YAML or holds invalid values.
    """
    project_dir = (project_dir or Path.cwd()).resolve()
    config_path = project_dir / CONFIG_RELATIVE_PATH
    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping")

    limits_raw = data.get("limits") or {}
    if not isinstance(limits_raw, dict):
        raise ConfigError("limits must be a mapping")
    known = {f.name for f in fields(Limits)}
    unknown = set(limits_raw) - known
    if unknown:
        raise ConfigError(f"Unknown limits: {', '.join(sorted(unknown))}")
    limits = Limits(**limits_raw)

    if runtime_dir is None:
        runtime_dir = (
            Path(data["runtime_dir"]).expanduser() if data.get("runtime_dir") else None
        )
        # the environment wins over the file
        if os.environ.get(RUNTIME_DIR_ENV) or runtime_dir is None:
            runtime_dir = default_runtime_dir()

    config = FleetConfig(
        project_dir=project_dir,
        runtime_dir=runtime_dir,
        user_id=str(data.get("user_id", "local")),
        default_profile=str(data.get("default_profile", "dev")),
        limits=limits,
    )

    profiles_raw = data.get("profiles")
    if profiles_raw is not None:
        if not isinstance(profiles_raw, dict):
            raise ConfigError("profiles must be a mapping")
        config.profiles = {
            str(name): ProfileConfig(
                name=str(name),
                services=_parse_services(str(name), (spec or {}).get("services", {})),
                auth_url=(spec or {}).get("auth_url"),
            )
            for name, spec in profiles_raw.items()
        }
    if data.get("providers") is not None:
        config.providers = _parse_providers(data["providers"])
    return config


DEFAULT_CONFIG_YAML = """\
# devfleet project configuration
user_id: local
default_profile: dev

# Policy constants (seconds unless noted)
limits:
  health_interval: 10
  probe_timeout: 5
  failure_threshold: 3
  startup_timeout_minutes: 2
  graceful_stop_timeout: 5
  kill_timeout: 2
  stall_interval: 10
  max_reprompts: 1

profiles:
  dev:
    auth_url: http://localhost:6001
    services:
      web:
        command: [npm, run, dev]
        port: 6001
      terminal:
        command: [npm, run, terminal]
        port: 6002
  prod:
    services:
      web:
        command: [npm, run, start]
        socket: web.sock
      terminal:
        command: [npm, run, "terminal:prod"]
        socket: terminal.sock

# Extra agent providers, in addition to claude, codex, gemini and opencode
# providers:
#   aider:
#     command: [aider, --yes, --message]
"""

"""CLI entry point for devfleet.

Commands:
- devfleet init: Write the default config and create the database
- devfleet start/stop/restart/status: Fleet control for a profile
- devfleet ports: Port reservations per scope
- devfleet task: Task queue (add, list, show, edit, cancel, requeue, ...)
- devfleet delegate: Hand a task to an agent session and follow it
- devfleet insights: Open insights, and resolving them
- devfleet audit: Audit trail
- devfleet orchestrator: Orchestrator settings
- devfleet health: Supervised processes and their health
- devfleet monitor: Run the health monitor and stall detector in the foreground
"""

from __future__ import annotations

import logging
import sqlite3
import sys
import time
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel

from devfleet import __version__
from devfleet.cli_ui.tables import (
    audit_table,
    fleet_table,
    insights_table,
    ports_table,
    processes_table,
    task_panel,
    tasks_table,
)
from devfleet.core.audit import InsightNotFoundError
from devfleet.core.config import (
    CONFIG_RELATIVE_PATH,
    DEFAULT_CONFIG_YAML,
    ConfigError,
    FleetConfig,
    load_config,
)
from devfleet.core.delegation import DelegationError
from devfleet.core.fleet import FleetController, FleetError
from devfleet.core.models import AuditAction, DelegationStatus, TaskStatus
from devfleet.core.orchestrators import OrchestratorNotFoundError, OrchestratorValidationError
from devfleet.core.ports import Conflict, PortRangeError
from devfleet.core.process import ProcessError
from devfleet.core.providers import UnknownProviderError
from devfleet.core.runtime import ControlPlane
from devfleet.core.state import StaleStateError
from devfleet.core.tasks import (
    InvalidTransitionError,
    TaskNotEditableError,
    TaskNotFoundError,
    TaskValidationError,
)

console = Console()

# Errors reported to the user as a one-line message
USER_ERRORS = (
    ConfigError,
    FleetError,
    PortRangeError,
    TaskValidationError,
    TaskNotFoundError,
    TaskNotEditableError,
    InvalidTransitionError,
    DelegationError,
    UnknownProviderError,
    InsightNotFoundError,
    OrchestratorNotFoundError,
    OrchestratorValidationError,
    ProcessError,
    StaleStateError,
    sqlite3.OperationalError,
)


def get_repo_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def _error(e: Exception) -> NoReturn:
    console.print(f"[red]Error:[/red] {escape(str(e))}")
    sys.exit(1)


def _config() -> FleetConfig:
    try:
        return load_config(get_repo_path())
    except ConfigError as e:
        _error(e)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def main(verbose: bool) -> None:
    """devfleet - control plane for dev servers and AI agent sessions.

    Runs isolated development environments, keeps their ports apart,
    and delegates tasks to agent CLIs with a full audit trail.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


@main.command()
def init() -> None:
    """Initialize project for devfleet."""
    repo_path = get_repo_path()
    config_path = repo_path / CONFIG_RELATIVE_PATH

    if config_path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG_YAML)

    config = _config()
    for directory in (config.server_dir, config.socket_dir, config.log_dir, config.transcript_dir):
        directory.mkdir(parents=True, exist_ok=True)
    plane = ControlPlane(config)
    orchestrator = plane.orchestrator

    console.print(
        Panel(
            "[green]Project initialized![/green]\n\n"
            f"Created: {config_path}\n"
            f"Runtime: {config.runtime_dir}\n"
            f"- state.db: control plane database\n"
            f"- master orchestrator: {orchestrator.id}",
            title="devfleet Initialized",
        )
    )


# --- Fleet control ---


@main.command()
@click.argument("profile", required=False)
def start(profile: str | None) -> None:
    """Start the services of PROFILE (default from config)."""
    config = _config()
    try:
        status = FleetController(config).start(profile)
    except USER_ERRORS as e:
        _error(e)
    console.print(fleet_table(status))


@main.command()
def stop() -> None:
    """Stop every running service."""
    config = _config()
    try:
        stopped = FleetController(config).stop()
    except USER_ERRORS as e:
        _error(e)
    if stopped:
        console.print(f"[green]Stopped:[/green] {', '.join(stopped)}")
    else:
        console.print("[yellow]Nothing was running[/yellow]")


@main.command()
@click.argument("profile", required=False)
def restart(profile: str | None) -> None:
    """Stop whatever runs, then start PROFILE (default: the current one)."""
    config = _config()
    try:
        status = FleetController(config).restart(profile)
    except USER_ERRORS as e:
        _error(e)
    console.print(fleet_table(status))


@main.command()
def status() -> None:
    """Show the running profile and supervised processes."""
    config = _config()
    fleet = FleetController(config).refresh()
    console.print(fleet_table(fleet))
    plane = ControlPlane(config)
    processes = plane.supervisor.list()
    if processes:
        console.print(
            processes_table(processes, {p.id: plane.db.get_health(p.id) for p in processes})
        )


# --- Ports ---


def _read_env_file(path: Path) -> dict[str, str]:
    env = {}
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or "=" not in line:
            continue
        name, value = line.split("=", 1)
        env[name.strip()] = value.strip().strip("\"'")
    return env


@main.group()
def ports() -> None:
    """Port reservations per scope."""
    pass


@ports.command("reserve")
@click.argument("scope")
@click.argument("variable")
@click.argument("port", type=int)
def ports_reserve(scope: str, variable: str, port: int) -> None:
    """Reserve PORT for VARIABLE in SCOPE."""
    plane = ControlPlane(_config())
    try:
        outcome = plane.ports.reserve(scope, variable, port)
    except USER_ERRORS as e:
        _error(e)
    if isinstance(outcome, Conflict):
        suggestion = (
            f"try {outcome.suggested_port}" if outcome.suggested_port else "no free port nearby"
        )
        console.print(
            f"[yellow]Conflict:[/yellow] port {outcome.port} is held by "
            f"{escape(outcome.other_scope)}/{escape(outcome.other_variable)}; {suggestion}"
        )
        sys.exit(1)
    console.print(f"[green]Reserved[/green] {outcome.port} for {escape(scope)}/{escape(variable)}")


@ports.command("list")
@click.option("--scope", "-s", help="Only this scope")
def ports_list(scope: str | None) -> None:
    """List reservations."""
    plane = ControlPlane(_config())
    console.print(ports_table(plane.ports.list(scope)))


@ports.command("release")
@click.argument("scope")
def ports_release(scope: str) -> None:
    """Release every reservation of SCOPE."""
    plane = ControlPlane(_config())
    removed = plane.ports.release(scope)
    console.print(f"Released {removed} reservation(s) for {escape(scope)}")


@ports.command("sync")
@click.argument("scope")
@click.argument("env_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--check", is_flag=True, help="Only report conflicts, do not write")
def ports_sync(scope: str, env_file: Path, check: bool) -> None:
    """Reserve the ports found in ENV_FILE for SCOPE."""
    plane = ControlPlane(_config())
    env = _read_env_file(env_file)
    conflicts = plane.ports.validate_environment(scope, env)
    for conflict in conflicts:
        console.print(
            f"[yellow]Conflict:[/yellow] {escape(conflict.variable_name)}={conflict.port} "
            f"held by {escape(conflict.other_scope)}/{escape(conflict.other_variable)}"
            + (f"; try {conflict.suggested_port}" if conflict.suggested_port else "")
        )
    if conflicts:
        sys.exit(1)
    if check:
        console.print("[green]No conflicts[/green]")
        return
    reserved = plane.ports.sync_from_environment(scope, env)
    console.print(f"[green]Reserved {len(reserved)} port(s) for {escape(scope)}[/green]")


# --- Tasks ---


@main.group()
def task() -> None:
    """Task queue."""
    pass


@task.command("add")
@click.argument("description")
@click.option("--type", "task_type", help="Task type (classified from the text if omitted)")
@click.option("--folder", "-f", help="Folder scope; uses that folder's orchestrator")
@click.option("--issue", help="External issue reference")
def task_add(
    description: str, task_type: str | None, folder: str | None, issue: str | None
) -> None:
    """Queue a new task."""
    config = _config()
    plane = ControlPlane(config)
    try:
        orchestrator = (
            plane.orchestrators.ensure_folder(config.user_id, folder) if folder else plane.orchestrator
        )
        created = plane.tasks.create(
            orchestrator.id,
            description,
            task_type=task_type,
            folder_scope=folder,
            external_issue_ref=issue,
        )
    except USER_ERRORS as e:
        _error(e)
    console.print(
        f"[green]Queued[/green] {created.id} ({created.type.value}, "
        f"confidence {created.confidence:.0%})"
    )


@task.command("list")
@click.option("--status", "-s", type=click.Choice([s.value for s in TaskStatus]), help="Filter by status")
@click.option("--folder", "-f", help="Filter by folder scope")
def task_list(status: str | None, folder: str | None) -> None:
    """List tasks."""
    plane = ControlPlane(_config())
    tasks = plane.tasks.list(status=TaskStatus(status) if status else None, folder_scope=folder)
    if not tasks:
        console.print("[dim]No tasks[/dim]")
        return
    console.print(tasks_table(tasks))


@task.command("show")
@click.argument("task_id")
def task_show(task_id: str) -> None:
    """Show a task with its delegations."""
    plane = ControlPlane(_config())
    try:
        found = plane.tasks.get(task_id)
    except USER_ERRORS as e:
        _error(e)
    console.print(task_panel(found, plane.engine.list(task_id=task_id)))


@task.command("edit")
@click.argument("task_id")
@click.argument("description")
def task_edit(task_id: str, description: str) -> None:
    """Replace the description of a queued task."""
    plane = ControlPlane(_config())
    try:
        plane.tasks.edit_description(task_id, description)
    except USER_ERRORS as e:
        _error(e)
    console.print(f"[green]Updated[/green] {task_id}")


@task.command("cancel")
@click.argument("task_id")
@click.option("--reason", default="cancelled by user", help="Reason recorded on the task")
def task_cancel(task_id: str, reason: str) -> None:
    """Cancel a task and stop its agent session."""
    plane = ControlPlane(_config())
    try:
        cancelled = plane.engine.cancel_task(task_id, reason=reason)
    except USER_ERRORS as e:
        _error(e)
    console.print(f"[yellow]Cancelled[/yellow] {cancelled.id}")


@task.command("requeue")
@click.argument("task_id")
def task_requeue(task_id: str) -> None:
    """Queue a copy of a failed or cancelled task."""
    plane = ControlPlane(_config())
    try:
        copy = plane.tasks.requeue(task_id)
    except USER_ERRORS as e:
        _error(e)
    console.print(f"[green]Requeued[/green] {task_id} as {copy.id}")


@task.command("note")
@click.argument("task_id")
@click.argument("note")
def task_note(task_id: str, note: str) -> None:
    """Attach a note to a task's audit trail."""
    plane = ControlPlane(_config())
    try:
        plane.tasks.annotate(task_id, note)
    except USER_ERRORS as e:
        _error(e)
    console.print(f"Noted on {task_id}")


@task.command("link")
@click.argument("task_id")
@click.argument("issue_ref")
def task_link(task_id: str, issue_ref: str) -> None:
    """Link an external issue to a task."""
    plane = ControlPlane(_config())
    try:
        plane.tasks.link_issue(task_id, issue_ref)
    except USER_ERRORS as e:
        _error(e)
    console.print(f"Linked {escape(issue_ref)} to {task_id}")


# --- Delegation ---


@main.command()
@click.argument("task_id")
@click.option("--provider", "-p", help="Agent provider (default: recommended for the task type)")
@click.option("--session", help="Reuse a live interactive session")
@click.option(
    "--workdir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Directory the agent works in (default: current directory)",
)
@click.option("--timeout", type=int, default=None, help="Cancel the task after N seconds")
def delegate(
    task_id: str,
    provider: str | None,
    session: str | None,
    workdir: Path | None,
    timeout: int | None,
) -> None:
    """Delegate TASK_ID to an agent and follow it until it finishes."""
    plane = ControlPlane(_config())
    plane.start()
    try:
        try:
            delegation = plane.engine.delegate(
                task_id, provider=provider, session_id=session, workdir=workdir
            )
        except USER_ERRORS as e:
            _error(e)
        console.print(
            f"[bold]Delegation:[/bold] {delegation.id} -> "
            f"{escape(delegation.agent_provider)} (session {delegation.session_id or '-'})"
        )
        deadline = time.monotonic() + timeout if timeout else None
        try:
            while not delegation.status.is_terminal:
                if deadline is not None and time.monotonic() >= deadline:
                    plane.engine.cancel_task(task_id, reason=f"timed out after {timeout}s")
                    console.print(f"[yellow]Timed out after {timeout}s; task cancelled[/yellow]")
                    break
                time.sleep(0.5)
                delegation = plane.engine.reconcile(delegation.id)
        except KeyboardInterrupt:
            plane.engine.cancel_task(task_id, reason="interrupted")
            console.print("[yellow]Interrupted; task cancelled[/yellow]")
        delegation = plane.engine.get(delegation.id)
    finally:
        plane.stop()

    if delegation.result is not None:
        style = "green" if delegation.result.success else "red"
        console.print(
            Panel(
                f"[{style}]{delegation.status.value}[/]\n\n{escape(delegation.result.summary)}",
                title=f"Delegation {delegation.id}",
            )
        )
        for path in delegation.result.files_modified:
            console.print(f"  - {escape(path)}")
    elif delegation.error is not None:
        console.print(
            f"[red]{delegation.status.value}:[/red] {escape(delegation.error.code)} "
            f"{escape(delegation.error.message)}"
        )
    if delegation.status != DelegationStatus.COMPLETED:
        sys.exit(1)


# --- Insights & audit ---


@main.group(invoke_without_command=True)
@click.option("--all", "show_all", is_flag=True, help="Include resolved insights")
@click.pass_context
def insights(ctx: click.Context, show_all: bool) -> None:
    """Show open insights."""
    if ctx.invoked_subcommand is not None:
        return
    plane = ControlPlane(_config())
    found = plane.insights.list(resolved=None if show_all else False)
    if not found:
        console.print("[dim]No insights[/dim]")
        return
    console.print(insights_table(found))


@insights.command("resolve")
@click.argument("insight_id")
@click.option("--reason", default="resolved by user", help="Reason recorded in the audit log")
def insights_resolve(insight_id: str, reason: str) -> None:
    """Mark an insight resolved."""
    plane = ControlPlane(_config())
    try:
        plane.insights.resolve(insight_id, reason=reason)
    except USER_ERRORS as e:
        _error(e)
    console.print(f"[green]Resolved[/green] {insight_id}")


@main.command()
@click.option("--task", "task_id", help="Filter by task")
@click.option("--delegation", "delegation_id", help="Filter by delegation")
@click.option("--action", type=click.Choice([a.value for a in AuditAction]), help="Filter by action")
@click.option("--limit", "-n", type=int, default=50, help="Show the newest N entries")
def audit(
    task_id: str | None, delegation_id: str | None, action: str | None, limit: int
) -> None:
    """Show the audit trail."""
    plane = ControlPlane(_config())
    entries = plane.audit.list(
        task_id=task_id,
        delegation_id=delegation_id,
        action=AuditAction(action) if action else None,
        limit=limit,
    )
    if not entries:
        console.print("[dim]No audit entries[/dim]")
        return
    console.print(audit_table(entries))


# --- Orchestrators ---


@main.group()
def orchestrator() -> None:
    """Orchestrator settings."""
    pass


@orchestrator.command("show")
def orchestrator_show() -> None:
    """List orchestrators and their settings."""
    config = _config()
    plane = ControlPlane(config)
    plane.orchestrators.ensure_master(config.user_id)
    for orch in plane.orchestrators.list(config.user_id):
        where = orch.folder_id or "all folders"
        console.print(
            f"[cyan]{orch.id}[/cyan] {orch.scope.value} ({escape(where)}) {orch.status.value} "
            f"interval={orch.monitoring_interval_sec}s stall={orch.stall_threshold_sec}s "
            f"auto_intervention={'on' if orch.auto_intervention else 'off'}"
        )


@orchestrator.command("set")
@click.option("--id", "orchestrator_id", help="Orchestrator (default: master)")
@click.option("--interval", type=int, help="Seconds between stall checks of a silent session")
@click.option("--stall-threshold", type=int, help="Seconds of silence before a stall")
@click.option("--auto-intervention/--no-auto-intervention", default=None)
def orchestrator_set(
    orchestrator_id: str | None,
    interval: int | None,
    stall_threshold: int | None,
    auto_intervention: bool | None,
) -> None:
    """Change monitoring settings."""
    plane = ControlPlane(_config())
    try:
        updated = plane.orchestrators.update_settings(
            orchestrator_id or plane.orchestrator.id,
            monitoring_interval_sec=interval,
            stall_threshold_sec=stall_threshold,
            auto_intervention=auto_intervention,
        )
    except USER_ERRORS as e:
        _error(e)
    console.print(
        f"[green]Updated[/green] {updated.id}: interval={updated.monitoring_interval_sec}s "
        f"stall={updated.stall_threshold_sec}s "
        f"auto_intervention={'on' if updated.auto_intervention else 'off'}"
    )


@orchestrator.command("pause")
@click.option("--id", "orchestrator_id", help="Orchestrator (default: master)")
def orchestrator_pause(orchestrator_id: str | None) -> None:
    """Pause stall handling for an orchestrator's tasks."""
    plane = ControlPlane(_config())
    try:
        paused = plane.orchestrators.pause(orchestrator_id or plane.orchestrator.id)
    except USER_ERRORS as e:
        _error(e)
    console.print(f"Paused {paused.id}")


@orchestrator.command("resume")
@click.option("--id", "orchestrator_id", help="Orchestrator (default: master)")
def orchestrator_resume(orchestrator_id: str | None) -> None:
    """Resume a paused orchestrator."""
    plane = ControlPlane(_config())
    try:
        resumed = plane.orchestrators.resume(orchestrator_id or plane.orchestrator.id)
    except USER_ERRORS as e:
        _error(e)
    console.print(f"Resumed {resumed.id}")


# --- Supervision loops ---


@main.command()
@click.option("--once", is_flag=True, help="Run one probe cycle before showing")
def health(once: bool) -> None:
    """Show supervised processes and their health."""
    plane = ControlPlane(_config())
    if once:
        plane.start(loops=False)
        try:
            checked = plane.health.run_cycle()
        finally:
            plane.stop()
        console.print(f"[dim]Probed {checked} process(es)[/dim]")
    processes = plane.supervisor.list()
    if not processes:
        console.print("[dim]No supervised processes[/dim]")
        return
    console.print(processes_table(processes, {p.id: plane.db.get_health(p.id) for p in processes}))


@main.command()
@click.option("--duration", type=float, default=None, help="Stop after N seconds")
def monitor(duration: float | None) -> None:
    """Run the health monitor and stall detector until interrupted."""
    plane = ControlPlane(_config())
    plane.start()
    console.print("[bold]Monitoring[/bold] (Ctrl-C to stop)")
    deadline = time.monotonic() + duration if duration is not None else None
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        plane.stop()
    open_insights = plane.insights.list(resolved=False)
    if open_insights:
        console.print(insights_table(open_insights))


if __name__ == "__main__":
    main()

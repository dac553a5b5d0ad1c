"""Rich tables for the devfleet CLI.

All user-controlled strings (descriptions, messages, commands) are escaped
so they cannot inject Rich markup.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from devfleet.core.fleet import FleetStatus
from devfleet.core.models import (
    AuditEntry,
    Delegation,
    HealthRecord,
    Insight,
    InsightSeverity,
    PortReservation,
    SupervisedProcess,
    Task,
)

STATUS_STYLES = {
    "running": "blue",
    "monitoring": "blue",
    "executing": "blue",
    "injecting_context": "blue",
    "spawning": "yellow",
    "starting": "yellow",
    "planning": "yellow",
    "queued": "dim",
    "completed": "green",
    "stopped": "dim",
    "cancelled": "dim",
    "failed": "red",
    "crashed": "red",
}

SEVERITY_STYLES = {
    InsightSeverity.INFO: "dim",
    InsightSeverity.WARNING: "yellow",
    InsightSeverity.ERROR: "red",
    InsightSeverity.CRITICAL: "bold red",
}


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/]"


def _time(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def _truncate(text: str, width: int = 60) -> str:
    text = " ".join(text.split())
    if len(text) > width:
        text = text[: width - 3] + "..."
    return escape(text)


def fleet_table(status: FleetStatus) -> Table:
    title = f"Fleet: {status.profile}" if status.profile else "Fleet: stopped"
    table = Table(title=title)
    table.add_column("Service", style="cyan")
    table.add_column("PID", justify="right")
    table.add_column("Bound to")
    table.add_column("State", justify="center")
    table.add_column("Health", justify="center")
    for service in status.services:
        state = "[green]✓ alive[/]" if service.alive else "[red]✗ stale[/]"
        health = styled_status(service.process_status.value) if service.process_status else "-"
        table.add_row(
            escape(service.name),
            str(service.pid) if service.pid is not None else "-",
            escape(service.target or "-"),
            state,
            health,
        )
    return table


def processes_table(
    processes: list[SupervisedProcess], health: dict[str, HealthRecord | None]
) -> Table:
    table = Table(title="Supervised Processes")
    table.add_column("ID", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("PID", justify="right")
    table.add_column("Bound to")
    table.add_column("Status", justify="center")
    table.add_column("Failures", justify="right")
    table.add_column("CPU", justify="right")
    table.add_column("Mem", justify="right")
    table.add_column("Crash reason", max_width=40)
    for process in processes:
        record = health.get(process.id)
        target = process.bind_target
        cpu = f"{record.cpu_percent:.1f}%" if record and record.cpu_percent is not None else "-"
        mem = f"{record.memory_mb:.0f}MB" if record and record.memory_mb is not None else "-"
        table.add_row(
            process.id,
            process.kind.value,
            str(process.pid) if process.pid is not None else "-",
            escape(str(target)) if target is not None else "-",
            styled_status(process.status.value),
            str(record.consecutive_failures) if record else "-",
            cpu,
            mem,
            _truncate(record.crash_reason or "", 40) if record else "",
        )
    return table


def tasks_table(tasks: list[Task]) -> Table:
    table = Table(title="Tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Agent")
    table.add_column("Description", max_width=60)
    table.add_column("Created")
    for task in tasks:
        table.add_row(
            task.id,
            f"{task.type.value} ({task.confidence:.0%})",
            styled_status(task.status.value),
            escape(task.assigned_agent or "-"),
            _truncate(task.description),
            _time(task.created_at),
        )
    return table


def task_panel(task: Task, delegations: list[Delegation]) -> Panel:
    table = Table(show_header=False, box=None)
    table.add_column("Field", style="dim")
    table.add_column("Value")
    table.add_row("Status", styled_status(task.status.value))
    table.add_row("Type", f"{task.type.value} (confidence {task.confidence:.0%})")
    table.add_row("Orchestrator", task.orchestrator_id)
    if task.folder_scope:
        table.add_row("Folder", escape(task.folder_scope))
    if task.external_issue_ref:
        table.add_row("Issue", escape(task.external_issue_ref))
    table.add_row("Agent", escape(task.assigned_agent or "-"))
    table.add_row("Created", _time(task.created_at))
    if task.completed_at:
        table.add_row("Finished", _time(task.completed_at))
    if task.result_summary:
        table.add_row("Result", escape(task.result_summary))
    if task.error_info:
        error = task.error_info
        table.add_row("Error", f"[red]{escape(error.code)}[/] ({error.category.value}): {escape(error.message)}")
    table.add_row("Description", escape(task.description))
    for delegation in delegations:
        table.add_row(
            "Delegation",
            f"{delegation.id} {styled_status(delegation.status.value)} "
            f"{escape(delegation.agent_provider)} session={delegation.session_id or '-'}",
        )
    return Panel(table, title=f"Task {task.id}")


def insights_table(insights: list[Insight]) -> Table:
    table = Table(title="Insights")
    table.add_column("ID", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Severity", justify="center")
    table.add_column("Message", max_width=60)
    table.add_column("Task")
    table.add_column("Created")
    table.add_column("Resolved", justify="center")
    for insight in insights:
        style = SEVERITY_STYLES.get(insight.severity, "white")
        table.add_row(
            insight.id,
            insight.type.value,
            f"[{style}]{insight.severity.value}[/]",
            _truncate(insight.message),
            insight.task_id or "-",
            _time(insight.created_at),
            "[green]✓[/]" if insight.resolved else "",
        )
    return table


def _details(details: dict[str, Any]) -> str:
    if not details:
        return ""
    return _truncate(json.dumps(details, default=str, sort_keys=True), 50)


def audit_table(entries: list[AuditEntry]) -> Table:
    table = Table(title="Audit Log")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Time")
    table.add_column("Action", style="cyan")
    table.add_column("Task")
    table.add_column("Delegation")
    table.add_column("Details", max_width=50)
    for entry in entries:
        table.add_row(
            str(entry.id) if entry.id is not None else "-",
            _time(entry.created_at),
            entry.action.value,
            entry.task_id or "-",
            entry.delegation_id or "-",
            _details(entry.details),
        )
    return table


def ports_table(reservations: list[PortReservation]) -> Table:
    table = Table(title="Port Reservations")
    table.add_column("Scope", style="cyan")
    table.add_column("Variable")
    table.add_column("Port", justify="right", style="bold")
    table.add_column("Reserved")
    for reservation in reservations:
        table.add_row(
            escape(reservation.scope),
            escape(reservation.variable_name),
            str(reservation.port),
            _time(reservation.created_at),
        )
    return table

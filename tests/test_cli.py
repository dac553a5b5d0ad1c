"""Tests for CLI commands.

Tests the devfleet CLI using Click's CliRunner:
- init: Initialize project
- status: Fleet and process overview
- ports: Reserve, list, sync and release ports
- task: Add, list, show, edit, cancel, requeue, note, link
- delegate: Run a task through a configured agent provider
- insights / audit: Read the insight and audit logs
- orchestrator: Show and change settings
"""

from __future__ import annotations

import re
import sys
import textwrap
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner
from rich.console import Console

from devfleet.cli import main
from devfleet.core.config import CONFIG_RELATIVE_PATH

TASK_ID = re.compile(r"task-[0-9a-f]{12}")


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Wide enough that table cells are never wrapped."""
    monkeypatch.setattr("devfleet.cli.console", Console(width=200))


@pytest.fixture
def runtime_home(tmp_path, monkeypatch) -> Path:
    """Keep runtime state out of the real home directory."""
    home = tmp_path / "devfleet-home"
    monkeypatch.setenv("DEVFLEET_HOME", str(home))
    return home


@pytest.fixture
def project(cli_runner, runtime_home):
    """Initialized project in an isolated filesystem."""
    with cli_runner.isolated_filesystem():
        result = cli_runner.invoke(main, ["init"])
        assert result.exit_code == 0, result.output
        yield Path.cwd()


def _add_task(cli_runner, description: str, *args: str) -> str:
    result = cli_runner.invoke(main, ["task", "add", description, *args])
    assert result.exit_code == 0, result.output
    return TASK_ID.search(result.output).group(0)


class TestInitCommand:
    """Tests for 'devfleet init' command."""

    def test_init_creates_config_and_state(self, cli_runner, runtime_home):
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(main, ["init"])

            assert result.exit_code == 0
            assert "Project initialized!" in result.output
            config = yaml.safe_load(Path(CONFIG_RELATIVE_PATH).read_text())
            assert config["default_profile"] == "dev"
            assert (runtime_home / "state.db").exists()
            assert (runtime_home / "server").is_dir()
            assert (runtime_home / "logs").is_dir()

    def test_init_twice(self, cli_runner, project):
        result = cli_runner.invoke(main, ["init"])

        assert result.exit_code == 0
        assert "already initialized" in result.output

    def test_version(self, cli_runner):
        result = cli_runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_invalid_config_reported(self, cli_runner, runtime_home):
        with cli_runner.isolated_filesystem():
            Path(".devfleet").mkdir()
            Path(CONFIG_RELATIVE_PATH).write_text("limits: {bogus: 1}\n")

            result = cli_runner.invoke(main, ["task", "list"])

            assert result.exit_code == 1
            assert "Error:" in result.output
            assert "Unknown limits" in result.output


class TestStatusCommand:
    def test_nothing_running(self, cli_runner, project):
        result = cli_runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "Fleet: stopped" in result.output

    def test_unknown_profile(self, cli_runner, project):
        result = cli_runner.invoke(main, ["start", "qa"])

        assert result.exit_code == 1
        assert "Unknown profile 'qa'" in result.output


class TestPortsCommands:
    def test_reserve_and_list(self, cli_runner, project):
        result = cli_runner.invoke(main, ["ports", "reserve", "app", "PORT", "43000"])
        assert result.exit_code == 0
        assert "Reserved" in result.output

        listed = cli_runner.invoke(main, ["ports", "list"])
        assert "43000" in listed.output

    def test_conflict_exits_nonzero(self, cli_runner, project):
        cli_runner.invoke(main, ["ports", "reserve", "app", "PORT", "43000"])

        result = cli_runner.invoke(main, ["ports", "reserve", "other", "PORT", "43000"])

        assert result.exit_code == 1
        assert "Conflict:" in result.output
        assert "app/PORT" in result.output

    def test_out_of_range(self, cli_runner, project):
        result = cli_runner.invoke(main, ["ports", "reserve", "app", "PORT", "80"])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_sync_from_env_file(self, cli_runner, project):
        Path(".env").write_text('PORT=43100\nAPI_PORT="43101"\nNAME=web\n')

        checked = cli_runner.invoke(main, ["ports", "sync", "app", ".env", "--check"])
        assert checked.exit_code == 0
        assert "No conflicts" in checked.output

        synced = cli_runner.invoke(main, ["ports", "sync", "app", ".env"])
        assert synced.exit_code == 0
        assert "Reserved 2 port(s)" in synced.output

        released = cli_runner.invoke(main, ["ports", "release", "app"])
        assert "Released 2 reservation(s)" in released.output


class TestTaskCommands:
    def test_add_and_list(self, cli_runner, project):
        task_id = _add_task(cli_runner, "Fix the login bug")

        result = cli_runner.invoke(main, ["task", "list"])

        assert result.exit_code == 0
        assert task_id in result.output

    def test_add_classifies(self, cli_runner, project):
        result = cli_runner.invoke(main, ["task", "add", "Fix the login bug"])
        assert "(bug, confidence 95%)" in result.output

    def test_add_empty_description(self, cli_runner, project):
        result = cli_runner.invoke(main, ["task", "add", "   "])

        assert result.exit_code == 1
        assert "must not be empty" in result.output

    def test_add_with_folder_and_filter(self, cli_runner, project):
        web_task = _add_task(cli_runner, "Add dark mode", "--folder", "web")
        _add_task(cli_runner, "Add search")

        result = cli_runner.invoke(main, ["task", "list", "--folder", "web"])

        assert web_task in result.output
        assert result.output.count("task-") == 1

    def test_show_edit_cancel_requeue(self, cli_runner, project):
        task_id = _add_task(cli_runner, "Add search")

        assert cli_runner.invoke(main, ["task", "edit", task_id, "Add fuzzy search"]).exit_code == 0
        shown = cli_runner.invoke(main, ["task", "show", task_id])
        assert "Add fuzzy search" in shown.output

        cancelled = cli_runner.invoke(main, ["task", "cancel", task_id, "--reason", "later"])
        assert cancelled.exit_code == 0

        edit_again = cli_runner.invoke(main, ["task", "edit", task_id, "Nope"])
        assert edit_again.exit_code == 1

        requeued = cli_runner.invoke(main, ["task", "requeue", task_id])
        assert requeued.exit_code == 0
        assert "Requeued" in requeued.output

    def test_note_and_link(self, cli_runner, project):
        task_id = _add_task(cli_runner, "Add search")

        assert cli_runner.invoke(main, ["task", "note", task_id, "talk to design"]).exit_code == 0
        assert cli_runner.invoke(main, ["task", "link", task_id, "GH-9"]).exit_code == 0

        result = cli_runner.invoke(main, ["audit", "--task", task_id])
        assert "task_annotated" in result.output
        assert "issue_linked" in result.output

    def test_show_missing(self, cli_runner, project):
        result = cli_runner.invoke(main, ["task", "show", "task-000000000000"])
        assert result.exit_code == 1
        assert "Task not found" in result.output


class TestDelegateCommand:
    def _configure_agent(self, project: Path, body: str) -> None:
        script = project / "agent.py"
        script.write_text(textwrap.dedent(body))
        config_path = project / CONFIG_RELATIVE_PATH
        config = yaml.safe_load(config_path.read_text())
        config["providers"] = {
            "fake": {"command": [sys.executable, "-u", str(script)], "prompt_via_stdin": True}
        }
        config_path.write_text(yaml.safe_dump(config))

    def test_successful_delegation(self, cli_runner, project):
        self._configure_agent(
            project,
            """
            import sys
            sys.stdin.read()
            print("```json")
            print('{"status": "success", "summary": "Search added", "files_modified": ["search.py"]}')
            print("```")
            """,
        )
        task_id = _add_task(cli_runner, "Add search")

        result = cli_runner.invoke(main, ["delegate", task_id, "--provider", "fake", "--timeout", "30"])

        assert result.exit_code == 0, result.output
        assert "Search added" in result.output
        assert "search.py" in result.output
        assert (project / ".devfleet" / "context.md").exists()

    def test_failed_delegation_exits_nonzero(self, cli_runner, project):
        self._configure_agent(project, "import sys; sys.stdin.read(); sys.exit(2)")
        task_id = _add_task(cli_runner, "Add search")

        result = cli_runner.invoke(main, ["delegate", task_id, "--provider", "fake", "--timeout", "30"])

        assert result.exit_code == 1
        assert "Agent exited with code 2" in result.output

    def test_unknown_provider(self, cli_runner, project):
        task_id = _add_task(cli_runner, "Add search")

        result = cli_runner.invoke(main, ["delegate", task_id, "--provider", "nope"])

        assert result.exit_code == 1
        assert "Unknown provider 'nope'" in result.output


class TestInsightsAndAudit:
    def test_no_insights(self, cli_runner, project):
        result = cli_runner.invoke(main, ["insights"])
        assert result.exit_code == 0
        assert "No insights" in result.output

    def test_resolve_missing(self, cli_runner, project):
        result = cli_runner.invoke(main, ["insights", "resolve", "ins-missing"])
        assert result.exit_code == 1

    def test_audit_lists_creation(self, cli_runner, project):
        _add_task(cli_runner, "Add search")

        result = cli_runner.invoke(main, ["audit", "--action", "task_created"])

        assert result.exit_code == 0
        assert "task_created" in result.output


class TestOrchestratorCommands:
    def test_show_creates_master(self, cli_runner, project):
        result = cli_runner.invoke(main, ["orchestrator", "show"])
        assert result.exit_code == 0
        assert "master" in result.output
        assert "stall=300s" in result.output

    def test_set_and_pause(self, cli_runner, project):
        result = cli_runner.invoke(
            main, ["orchestrator", "set", "--stall-threshold", "120", "--auto-intervention"]
        )
        assert result.exit_code == 0
        assert "stall=120s" in result.output
        assert "auto_intervention=on" in result.output

        assert "Paused" in cli_runner.invoke(main, ["orchestrator", "pause"]).output
        assert "Resumed" in cli_runner.invoke(main, ["orchestrator", "resume"]).output

    def test_invalid_threshold(self, cli_runner, project):
        result = cli_runner.invoke(main, ["orchestrator", "set", "--stall-threshold", "0"])
        assert result.exit_code == 1
        assert "must be a positive integer" in result.output

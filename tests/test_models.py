"""Tests for core data models and enums.

This module tests the Pydantic models and enums used throughout devfleet:
- Status enums and their terminal/live helpers
- Task and delegation transition tables
- Model validation and serialization
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from devfleet.core.models import (
    ACTIVE_DELEGATION_STATUSES,
    DELEGATION_TRANSITIONS,
    TASK_TRANSITIONS,
    AgentSummary,
    Delegation,
    DelegationStatus,
    ErrorCategory,
    LogEntry,
    ProcessKind,
    ProcessStatus,
    SupervisedProcess,
    Task,
    TaskError,
    TaskStatus,
)

# =============================================================================
# Status Enum Tests
# =============================================================================


class TestStatusEnums:
    def test_terminal_task_states(self):
        terminal = {s for s in TaskStatus if s.is_terminal}
        assert terminal == {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}

    def test_live_process_states(self):
        assert ProcessStatus.STARTING.is_live
        assert ProcessStatus.RUNNING.is_live
        assert not ProcessStatus.CRASHED.is_live
        assert not ProcessStatus.STOPPED.is_live

    def test_active_delegation_statuses(self):
        assert set(ACTIVE_DELEGATION_STATUSES) == {
            DelegationStatus.SPAWNING,
            DelegationStatus.INJECTING_CONTEXT,
            DelegationStatus.RUNNING,
            DelegationStatus.MONITORING,
        }

    def test_enum_values(self):
        assert ProcessKind.DEV_SERVER.value == "dev-server"
        assert ErrorCategory("stall_timeout") == ErrorCategory.STALL_TIMEOUT


# =============================================================================
# Transition Table Tests
# =============================================================================


class TestTransitions:
    def test_every_status_has_an_entry(self):
        assert set(TASK_TRANSITIONS) == set(TaskStatus)
        assert set(DELEGATION_TRANSITIONS) == set(DelegationStatus)

    def test_terminal_states_have_no_exits(self):
        for status in TaskStatus:
            if status.is_terminal:
                assert TASK_TRANSITIONS[status] == frozenset()
        for status in DelegationStatus:
            if status.is_terminal:
                assert DELEGATION_TRANSITIONS[status] == frozenset()

    @pytest.mark.parametrize(
        "source,target,allowed",
        [
            (TaskStatus.QUEUED, TaskStatus.PLANNING, True),
            (TaskStatus.QUEUED, TaskStatus.EXECUTING, False),
            (TaskStatus.QUEUED, TaskStatus.FAILED, False),
            (TaskStatus.EXECUTING, TaskStatus.COMPLETED, True),
            (TaskStatus.MONITORING, TaskStatus.EXECUTING, False),
        ],
    )
    def test_task_transitions(self, source, target, allowed):
        assert (target in TASK_TRANSITIONS[source]) is allowed

    def test_delegation_can_complete_from_running(self):
        assert DelegationStatus.COMPLETED in DELEGATION_TRANSITIONS[DelegationStatus.RUNNING]
        assert DelegationStatus.RUNNING not in DELEGATION_TRANSITIONS[DelegationStatus.SPAWNING]


# =============================================================================
# Model Tests
# =============================================================================


class TestModels:
    def test_bind_target(self):
        server = SupervisedProcess(id="p1", kind=ProcessKind.DEV_SERVER, bind_port=6001)
        socket = SupervisedProcess(id="p2", kind=ProcessKind.DEV_SERVER, bind_socket="/tmp/web.sock")
        agent = SupervisedProcess(id="p3", kind=ProcessKind.AGENT_SESSION)

        assert server.bind_target == 6001
        assert socket.bind_target == "/tmp/web.sock"
        assert agent.bind_target is None

    def test_task_confidence_bounds(self):
        with pytest.raises(ValidationError):
            Task(id="t", orchestrator_id="o", description="x", confidence=1.5)

    def test_agent_summary_status_restricted(self):
        assert AgentSummary(status="success").files_modified == []
        with pytest.raises(ValidationError):
            AgentSummary(status="done")

    def test_delegation_serialization_round_trip(self):
        delegation = Delegation(
            id="dlg-1",
            task_id="task-1",
            agent_provider="claude",
            execution_log=[LogEntry(message="spawned", metadata={"pid": 42})],
            error=TaskError(
                code="STALLED",
                message="no output",
                category=ErrorCategory.STALL_TIMEOUT,
            ),
        )

        restored = Delegation.model_validate_json(delegation.model_dump_json())

        assert restored == delegation
        assert restored.error.category == ErrorCategory.STALL_TIMEOUT

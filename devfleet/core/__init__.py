"""Core modules for the devfleet control plane."""

from devfleet.core.models import (
    Delegation,
    DelegationStatus,
    ErrorCategory,
    Insight,
    Orchestrator,
    SupervisedProcess,
    Task,
    TaskStatus,
)
from devfleet.core.state import Database, StaleStateError

__all__ = [
    "Database",
    "Delegation",
    "DelegationStatus",
    "ErrorCategory",
    "Insight",
    "Orchestrator",
    "StaleStateError",
    "SupervisedProcess",
    "Task",
    "TaskStatus",
]

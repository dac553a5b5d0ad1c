"""Orchestrator registry.

A user has at most one master orchestrator and at most one orchestrator per
folder; the database enforces both.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Callable
from datetime import datetime

from devfleet.core.audit import AuditLog
from devfleet.core.models import (
    AuditAction,
    Orchestrator,
    OrchestratorScope,
    OrchestratorStatus,
    utc_now,
)
from devfleet.core.state import Database

logger = logging.getLogger(__name__)


class OrchestratorValidationError(ValueError):
    """Invalid orchestrator settings."""

    pass


class OrchestratorExistsError(Exception):
    """An orchestrator already exists for this user (and folder)."""

    pass


class OrchestratorNotFoundError(LookupError):
    """No orchestrator with the given id."""

    pass


class OrchestratorRegistry:
    """Creates and configures orchestrators."""

    def __init__(
        self,
        db: Database,
        audit: AuditLog,
        default_interval: int = 30,
        default_stall_threshold: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.audit = audit
        self.default_interval = default_interval
        self.default_stall_threshold = default_stall_threshold
        self._clock = clock

    def create_master(self, user_id: str) -> Orchestrator:
        return self._create(user_id, OrchestratorScope.MASTER, None)

    def create_folder(self, user_id: str, folder_id: str) -> Orchestrator:
        if not folder_id:
            raise OrchestratorValidationError("folder orchestrators need a folder id")
        return self._create(user_id, OrchestratorScope.FOLDER, folder_id)

    def ensure_master(self, user_id: str) -> Orchestrator:
        """Return the user's master orchestrator, creating it if missing."""
        existing = self.db.find_orchestrator(user_id, OrchestratorScope.MASTER)
        if existing is not None:
            return existing
        try:
            return self.create_master(user_id)
        except OrchestratorExistsError:
            # created concurrently
            found = self.db.find_orchestrator(user_id, OrchestratorScope.MASTER)
            assert found is not None
            return found

    def ensure_folder(self, user_id: str, folder_id: str) -> Orchestrator:
        existing = self.db.find_orchestrator(user_id, OrchestratorScope.FOLDER, folder_id)
        if existing is not None:
            return existing
        try:
            return self.create_folder(user_id, folder_id)
        except OrchestratorExistsError:
            found = self.db.find_orchestrator(user_id, OrchestratorScope.FOLDER, folder_id)
            assert found is not None
            return found

    def _create(
        self, user_id: str, scope: OrchestratorScope, folder_id: str | None
    ) -> Orchestrator:
        now = self._clock()
        orch = Orchestrator(
            id=f"orch-{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            scope=scope,
            folder_id=folder_id,
            monitoring_interval_sec=self.default_interval,
            stall_threshold_sec=self.default_stall_threshold,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.db.transaction() as conn:
                self.db.insert_orchestrator(orch, conn=conn)
                self.audit.record(
                    AuditAction.ORCHESTRATOR_CREATED,
                    orchestrator_id=orch.id,
                    details={"scope": scope.value, "folder_id": folder_id},
                    conn=conn,
                )
        except sqlite3.IntegrityError as e:
            where = f"folder {folder_id}" if folder_id else "master scope"
            raise OrchestratorExistsError(
                f"User {user_id} already has an orchestrator for {where}"
            ) from e
        logger.info(f"Created {scope.value} orchestrator {orch.id} for {user_id}")
        return orch

    def get(self, orchestrator_id: str) -> Orchestrator:
        orch = self.db.get_orchestrator(orchestrator_id)
        if orch is None:
            raise OrchestratorNotFoundError(f"Orchestrator not found: {orchestrator_id}")
        return orch

    def list(self, user_id: str | None = None) -> list[Orchestrator]:
        return self.db.list_orchestrators(user_id)

    def set_status(self, orchestrator_id: str, status: OrchestratorStatus) -> Orchestrator:
        self.get(orchestrator_id)
        self.db.update_orchestrator(orchestrator_id, status=status, updated_at=self._clock())
        return self.get(orchestrator_id)

    def pause(self, orchestrator_id: str) -> Orchestrator:
        return self.set_status(orchestrator_id, OrchestratorStatus.PAUSED)

    def resume(self, orchestrator_id: str) -> Orchestrator:
        return self.set_status(orchestrator_id, OrchestratorStatus.IDLE)

    def update_settings(
        self,
        orchestrator_id: str,
        *,
        monitoring_interval_sec: int | None = None,
        stall_threshold_sec: int | None = None,
        auto_intervention: bool | None = None,
    ) -> Orchestrator:
        """Change polling/stall settings.

        Raises:
            OrchestratorValidationError: If an interval or threshold is not positive.
        """
        changes: dict[str, object] = {}
        for name, value in (
            ("monitoring_interval_sec", monitoring_interval_sec),
            ("stall_threshold_sec", stall_threshold_sec),
        ):
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise OrchestratorValidationError(f"{name} must be a positive integer")
            changes[name] = value
        if auto_intervention is not None:
            changes["auto_intervention"] = bool(auto_intervention)
        orch = self.get(orchestrator_id)
        if not changes:
            return orch
        with self.db.transaction() as conn:
            self.db.update_orchestrator(
                orchestrator_id, conn=conn, updated_at=self._clock(), **changes
            )
            self.audit.record(
                AuditAction.ORCHESTRATOR_UPDATED,
                orchestrator_id=orchestrator_id,
                details=changes,
                conn=conn,
            )
        return self.get(orchestrator_id)

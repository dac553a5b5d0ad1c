"""Interfaces to the systems around the control plane.

Preferences, secrets, project knowledge and issue trackers are owned
elsewhere; the delegation engine only reads from them through these
protocols. The static implementations back the CLI and the tests.
"""

from __future__ import annotations

from typing import Protocol


class PreferenceSource(Protocol):
    """Resolved environment for a folder (after inheritance)."""

    def resolve_environment(self, folder_id: str | None) -> dict[str, str]: ...


class SecretsSource(Protocol):
    """Provider credentials scoped to a folder."""

    def get_secrets(self, folder_id: str | None, provider: str) -> dict[str, str]: ...


class KnowledgeSource(Protocol):
    """Project knowledge snippets worth giving an agent."""

    def knowledge_for(self, folder_id: str | None) -> list[str]: ...


class IssueSource(Protocol):
    """Context of a linked external issue."""

    def issue_context(self, ref: str) -> str | None: ...


class StaticPreferences:
    def __init__(
        self,
        environment: dict[str, str] | None = None,
        per_folder: dict[str, dict[str, str]] | None = None,
    ):
        self.environment = environment or {}
        self.per_folder = per_folder or {}

    def resolve_environment(self, folder_id: str | None) -> dict[str, str]:
        resolved = dict(self.environment)
        if folder_id is not None:
            resolved.update(self.per_folder.get(folder_id, {}))
        return resolved


class StaticSecrets:
    def __init__(self, secrets: dict[str, dict[str, str]] | None = None):
        # provider name -> env vars
        self.secrets = secrets or {}

    def get_secrets(self, folder_id: str | None, provider: str) -> dict[str, str]:
        return dict(self.secrets.get(provider, {}))


class EnvironmentSecrets:
    """Forward credential variables already present in the parent environment."""

    def __init__(self, environ: dict[str, str], credential_names: dict[str, tuple[str, ...]]):
        self.environ = environ
        self.credential_names = credential_names

    def get_secrets(self, folder_id: str | None, provider: str) -> dict[str, str]:
        return {
            name: self.environ[name]
            for name in self.credential_names.get(provider, ())
            if name in self.environ
        }


class StaticKnowledge:
    def __init__(
        self,
        shared: list[str] | None = None,
        per_folder: dict[str, list[str]] | None = None,
    ):
        self.shared = shared or []
        self.per_folder = per_folder or {}

    def knowledge_for(self, folder_id: str | None) -> list[str]:
        items = list(self.shared)
        if folder_id is not None:
            items.extend(self.per_folder.get(folder_id, []))
        return items


class StaticIssues:
    def __init__(self, issues: dict[str, str] | None = None):
        self.issues = issues or {}

    def issue_context(self, ref: str) -> str | None:
        return self.issues.get(ref)

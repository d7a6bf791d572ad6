from __future__ import annotations

from abc import ABC, abstractmethod

from hivectl.models import (
    CleanupResult,
    CommitResult,
    DiffSummary,
    MergeResult,
    MergeStrategy,
    WorkspaceInfo,
)


class WorkspaceBackend(ABC):
    """Port for isolated per-task workspaces bound to version-control branches.

    Mutating operations raise ``GitCommandError`` (or a subclass) when the
    underlying tool fails. Read-only inspection degrades to "no information".
    """

    @abstractmethod
    def branch_for(self, feature: str, task: str) -> str:
        """Return the deterministic branch name for the task."""

    @abstractmethod
    def create(self, feature: str, task: str, *, reuse_branch: bool = False) -> WorkspaceInfo:
        """Materialize a workspace on a fresh task branch.

        With ``reuse_branch`` an existing task branch is checked out again, which
        recovers a workspace whose directory vanished without losing commits.
        """

    @abstractmethod
    def get(self, feature: str, task: str) -> WorkspaceInfo | None:
        """Look up an existing workspace without creating one."""

    @abstractmethod
    def list(self, feature: str | None = None) -> list[WorkspaceInfo]:
        """List live workspaces, optionally for one feature."""

    @abstractmethod
    def get_diff(
        self, feature: str, task: str, base_commit: str | None = None
    ) -> DiffSummary:
        """Summarize committed and uncommitted changes since the base commit."""

    @abstractmethod
    def has_uncommitted_changes(self, feature: str, task: str) -> bool:
        """Return True when the workspace tree is dirty."""

    @abstractmethod
    def commit_changes(
        self, feature: str, task: str, message: str | None = None
    ) -> CommitResult:
        """Commit every pending change; a clean tree is a no-op."""

    @abstractmethod
    def merge(
        self, feature: str, task: str, strategy: MergeStrategy = MergeStrategy.MERGE
    ) -> MergeResult:
        """Integrate the task branch into the current integration branch."""

    @abstractmethod
    def remove(self, feature: str, task: str, delete_branch: bool = False) -> None:
        """Delete the workspace (and optionally its branch); idempotent."""

    @abstractmethod
    def cleanup(self, feature: str) -> CleanupResult:
        """Remove workspaces whose linkage to the repository is broken."""

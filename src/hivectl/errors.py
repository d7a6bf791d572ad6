from __future__ import annotations


class HiveError(RuntimeError):
    """Base class for every error raised by hivectl."""


class NotFoundError(HiveError):
    """Raised when a feature, task or workspace does not exist."""

    def __init__(self, message: str, *, kind: str | None = None, key: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.key = key


class InvalidStateError(HiveError):
    """Raised when an operation is attempted from a state that forbids it."""

    def __init__(
        self,
        message: str,
        *,
        current: str | None = None,
        allowed: tuple[str, ...] = (),
    ) -> None:
        super().__init__(message)
        self.current = current
        self.allowed = allowed


class ValidationError(HiveError):
    """Raised for malformed caller input (task names, blockers, plan entries)."""


class DependencyError(HiveError):
    """Raised when a task is started before its dependencies are done."""

    def __init__(self, message: str, *, unmet: list[tuple[str, str]] | None = None) -> None:
        super().__init__(message)
        self.unmet = list(unmet or [])


class DependencyCycleError(HiveError):
    """Raised when explicit and implicit dependency edges form a cycle."""

    def __init__(self, message: str, *, cycle: list[str] | None = None) -> None:
        super().__init__(message)
        self.cycle = list(cycle or [])


class FeatureImmutableError(HiveError):
    """Raised when a completed feature would be mutated."""


class FeatureHeldError(HiveError):
    """Raised when a feature has been put on hold by a human."""

    def __init__(self, message: str, *, reason: str = "") -> None:
        super().__init__(message)
        self.reason = reason


class GitCommandError(HiveError):
    """Raised when a git subprocess exits non-zero."""

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = list(command or [])
        self.exit_code = exit_code
        self.stderr = stderr


class WorkspaceCreateError(GitCommandError):
    """Raised when a task workspace cannot be materialized."""


class LockTimeoutError(HiveError):
    """Raised when an exclusive lock file cannot be acquired in time."""

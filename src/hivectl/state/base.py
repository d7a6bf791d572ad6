from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from hivectl.models import Feature, PlanTask, Task


class FeatureStore(ABC):
    @abstractmethod
    def get(self, name: str) -> Feature | None:
        """Return the feature record or None."""

    @abstractmethod
    def list(self) -> list[str]:
        """Return all feature names in sorted order."""

    @abstractmethod
    def save(self, feature: Feature) -> Feature:
        """Persist the feature record, replacing any previous version."""

    @abstractmethod
    def hold_reason(self, name: str) -> str | None:
        """Return the hold reason when a human has put the feature on hold."""

    @abstractmethod
    def set_hold(self, name: str, reason: str | None) -> None:
        """Place (reason given) or lift (None) a hold on the feature."""


class TaskStore(ABC):
    """Durable per-task metadata.

    Implementations do not lock: callers must serialize writes to the same
    (feature, task) key. Writes to different keys never interfere.
    """

    @abstractmethod
    def get(self, feature: str, task: str) -> Task | None:
        """Return the task or None."""

    @abstractmethod
    def list(self, feature: str) -> list[Task]:
        """Return every task of the feature ordered by key."""

    @abstractmethod
    def create(self, feature: str, name: str, order: int | None = None) -> Task:
        """Create a manual pending task, auto-numbering when order is omitted."""

    @abstractmethod
    def create_from_plan(self, feature: str, plan_task: PlanTask) -> Task:
        """Create a pending task owned by the plan."""

    @abstractmethod
    def update(self, feature: str, task: str, **changes: Any) -> Task:
        """Apply field changes; raises NotFoundError when the task is absent."""

    @abstractmethod
    def delete(self, feature: str, task: str) -> None:
        """Delete the task record and its artifacts."""

    @abstractmethod
    def write_report(self, feature: str, task: str, report: str) -> Path:
        """Persist the completion report and return its location."""

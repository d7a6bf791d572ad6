"""Dependency resolution over a snapshot of a feature's tasks.

Every function here is pure: callers pass a fresh task list and nothing is
cached between calls, so concurrent status changes are visible to the next
scheduling decision.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from hivectl.errors import DependencyCycleError
from hivectl.models import Task, TaskStatus

MISSING = "missing"


@dataclass(slots=True)
class Schedule:
    runnable: list[str] = field(default_factory=list)
    blocked_by: dict[str, list[tuple[str, str]]] = field(default_factory=dict)
    effective: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "runnable": list(self.runnable),
            "blocked_by": {
                key: [{"task": dep, "status": status} for dep, status in deps]
                for key, deps in self.blocked_by.items()
            },
            "effective_dependencies": {key: list(deps) for key, deps in self.effective.items()},
        }


def effective_dependencies(tasks: Iterable[Task]) -> dict[str, list[str]]:
    """Explicit lists win outright; otherwise every strictly lower order is a dependency."""
    snapshot = sorted(tasks, key=lambda task: task.key)
    effective: dict[str, list[str]] = {}
    for task in snapshot:
        if task.depends_on is not None:
            effective[task.key] = sorted(dict.fromkeys(task.depends_on))
            continue
        effective[task.key] = [other.key for other in snapshot if other.order < task.order]
    return effective


def find_cycle(effective: dict[str, list[str]]) -> list[str] | None:
    visiting: list[str] = []
    on_path: set[str] = set()
    finished: set[str] = set()

    def _visit(key: str) -> list[str] | None:
        visiting.append(key)
        on_path.add(key)
        for dep in effective.get(key, []):
            if dep not in effective or dep in finished:
                continue
            if dep in on_path:
                return visiting[visiting.index(dep) :] + [dep]
            cycle = _visit(dep)
            if cycle:
                return cycle
        visiting.pop()
        on_path.discard(key)
        finished.add(key)
        return None

    for key in sorted(effective):
        if key in finished:
            continue
        cycle = _visit(key)
        if cycle:
            return cycle
    return None


def assert_acyclic(effective: dict[str, list[str]]) -> None:
    cycle = find_cycle(effective)
    if cycle:
        raise DependencyCycleError(
            "Task dependencies form a cycle: " + " -> ".join(cycle),
            cycle=cycle,
        )


def unmet_dependencies(
    task_key: str,
    tasks: Iterable[Task],
    effective: dict[str, list[str]] | None = None,
) -> list[tuple[str, str]]:
    snapshot = list(tasks)
    status_by_key = {task.key: task.status for task in snapshot}
    deps = (effective or effective_dependencies(snapshot)).get(task_key, [])
    unmet: list[tuple[str, str]] = []
    for dep in deps:
        status = status_by_key.get(dep)
        if status is None:
            unmet.append((dep, MISSING))
        elif status != TaskStatus.DONE:
            unmet.append((dep, str(status)))
    return unmet


def compute_schedule(tasks: Iterable[Task]) -> Schedule:
    snapshot = sorted(tasks, key=lambda task: task.key)
    effective = effective_dependencies(snapshot)
    assert_acyclic(effective)

    schedule = Schedule(effective=effective)
    for task in snapshot:
        if task.status != TaskStatus.PENDING:
            continue
        unmet = unmet_dependencies(task.key, snapshot, effective)
        if unmet:
            schedule.blocked_by[task.key] = unmet
        else:
            schedule.runnable.append(task.key)
    return schedule

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from dataclasses import fields
from pathlib import Path
from typing import Any

from hivectl.errors import NotFoundError, ValidationError
from hivectl.models import (
    TASK_KEY_PATTERN,
    Feature,
    PlanTask,
    Task,
    TaskOrigin,
    TaskStatus,
    slugify,
    task_key,
    task_order,
    utcnow_iso,
)
from hivectl.paths import FEATURE_FILE, ProjectLayout
from hivectl.state.base import FeatureStore, TaskStore

logger = logging.getLogger(__name__)

IMMUTABLE_TASK_FIELDS = {"feature", "key"}
TASK_FIELDS = {item.name for item in fields(Task)} - IMMUTABLE_TASK_FIELDS


def read_json(path: Path) -> Any:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning("Ignoring unreadable state file %s", path)
        return None


def write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    serialized = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        delete=False,
    ) as handle:
        handle.write(serialized)
        temp_path = handle.name
    try:
        os.replace(temp_path, path)
    except OSError:
        Path(temp_path).unlink(missing_ok=True)
        raise


class JsonFeatureStore(FeatureStore):
    def __init__(self, layout: ProjectLayout) -> None:
        self.layout = layout

    def get(self, name: str) -> Feature | None:
        payload = read_json(self.layout.feature_file(name))
        if not isinstance(payload, dict):
            return None
        payload.setdefault("name", name)
        return Feature.from_dict(payload)

    def list(self) -> list[str]:
        features_dir = self.layout.features_dir
        if not features_dir.exists():
            return []
        return sorted(
            entry.name
            for entry in features_dir.iterdir()
            if entry.is_dir() and (entry / FEATURE_FILE).exists()
        )

    def save(self, feature: Feature) -> Feature:
        write_json(self.layout.feature_file(feature.name), feature.to_dict())
        return feature

    def hold_reason(self, name: str) -> str | None:
        hold_file = self.layout.hold_file(name)
        if not hold_file.exists():
            return None
        return hold_file.read_text(encoding="utf-8").strip() or "(no reason provided)"

    def set_hold(self, name: str, reason: str | None) -> None:
        hold_file = self.layout.hold_file(name)
        if reason is None:
            hold_file.unlink(missing_ok=True)
            return
        hold_file.parent.mkdir(parents=True, exist_ok=True)
        hold_file.write_text(reason.strip() + "\n", encoding="utf-8")


class JsonTaskStore(TaskStore):
    """Task records as one ``status.json`` per task folder."""

    def __init__(self, layout: ProjectLayout) -> None:
        self.layout = layout

    def _task_keys(self, feature: str) -> list[str]:
        tasks_dir = self.layout.tasks_dir(feature)
        if not tasks_dir.exists():
            return []
        return sorted(entry.name for entry in tasks_dir.iterdir() if entry.is_dir())

    def _next_order(self, feature: str) -> int:
        orders = [task_order(key) for key in self._task_keys(feature)]
        return max(orders, default=0) + 1

    def _write(self, task: Task) -> Task:
        write_json(self.layout.task_status_file(task.feature, task.key), task.to_dict())
        return task

    def _insert(self, task: Task) -> Task:
        if not TASK_KEY_PATTERN.match(task.key):
            raise ValidationError(f"Invalid task key '{task.key}'. Expected '<order>-<slug>'.")
        if self.layout.task_status_file(task.feature, task.key).exists():
            raise ValidationError(f"Task '{task.key}' already exists in feature '{task.feature}'.")
        return self._write(task)

    def get(self, feature: str, task: str) -> Task | None:
        payload = read_json(self.layout.task_status_file(feature, task))
        if not isinstance(payload, dict):
            return None
        return Task.from_dict(feature, task, payload)

    def list(self, feature: str) -> list[Task]:
        tasks: list[Task] = []
        for key in self._task_keys(feature):
            task = self.get(feature, key)
            if task is not None:
                tasks.append(task)
        return tasks

    def create(self, feature: str, name: str, order: int | None = None) -> Task:
        if not slugify(name):
            raise ValidationError(f"Task name '{name}' has no usable characters.")
        if order is not None and order < 0:
            raise ValidationError("Task order must not be negative.")
        key = task_key(order if order is not None else self._next_order(feature), name)
        return self._insert(Task(feature=feature, key=key, origin=TaskOrigin.MANUAL))

    def create_from_plan(self, feature: str, plan_task: PlanTask) -> Task:
        depends_on = plan_task.depends_on
        return self._insert(
            Task(
                feature=feature,
                key=plan_task.key,
                origin=TaskOrigin.PLAN,
                depends_on=list(depends_on) if depends_on is not None else None,
                plan_title=plan_task.title,
            )
        )

    def update(self, feature: str, task: str, **changes: Any) -> Task:
        current = self.get(feature, task)
        if current is None:
            raise NotFoundError(
                f"Task '{task}' not found in feature '{feature}'.", kind="task", key=task
            )
        unknown = sorted(set(changes) - TASK_FIELDS)
        if unknown:
            raise ValidationError("Unknown task fields: " + ", ".join(unknown))

        status = changes.get("status")
        if status is not None:
            changes["status"] = TaskStatus(status)
            if changes["status"] == TaskStatus.IN_PROGRESS and not current.started_at:
                changes.setdefault("started_at", utcnow_iso())
            if changes["status"] == TaskStatus.DONE and not current.completed_at:
                changes.setdefault("completed_at", utcnow_iso())

        for name, value in changes.items():
            setattr(current, name, value)
        return self._write(current)

    def delete(self, feature: str, task: str) -> None:
        task_dir = self.layout.task_dir(feature, task)
        if task_dir.exists():
            shutil.rmtree(task_dir)

    def write_report(self, feature: str, task: str, report: str) -> Path:
        report_path = self.layout.task_report_file(feature, task)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(report, encoding="utf-8")
        return report_path

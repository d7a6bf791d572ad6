from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from hivectl.config import HiveConfig
from hivectl.errors import (
    DependencyCycleError,
    DependencyError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from hivectl.features import FeatureGate
from hivectl.models import (
    TASK_KEY_PATTERN,
    Blocker,
    CleanupResult,
    CommitResult,
    DiffSummary,
    Feature,
    FeatureStatus,
    MergeResult,
    MergeStrategy,
    Outcome,
    PlanTask,
    SyncResult,
    Task,
    TaskOrigin,
    TaskStatus,
    WorkerSession,
    WorkspaceInfo,
    slugify,
    task_key,
    utcnow_iso,
)
from hivectl.paths import ProjectLayout
from hivectl.reports import render_task_report
from hivectl.scheduler import (
    Schedule,
    assert_acyclic,
    compute_schedule,
    effective_dependencies,
    unmet_dependencies,
)
from hivectl.state import TaskStore, exclusive_lock
from hivectl.workspaces import WorkspaceBackend

logger = logging.getLogger(__name__)

RESUMABLE_STATUSES = (TaskStatus.BLOCKED, TaskStatus.FAILED, TaskStatus.PARTIAL)
COMPLETABLE_STATUSES = (TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED)
STARTABLE_STATES = tuple(str(status) for status in (TaskStatus.PENDING, *RESUMABLE_STATUSES))
MIN_BLOCKER_OPTIONS = 2
MAX_BLOCKER_OPTIONS = 4


def attempt_key(feature: str, task: str, attempt: int) -> str:
    return f"hive-{feature}-{task}-{attempt}"


@dataclass(slots=True)
class StartResult:
    task: Task
    workspace: WorkspaceInfo
    idempotency_key: str
    resumed: bool = False
    replayed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task.describe(),
            "workspace": self.workspace.to_dict(),
            "idempotency_key": self.idempotency_key,
            "resumed": self.resumed,
            "replayed": self.replayed,
        }


@dataclass(slots=True)
class CompleteResult:
    task: Task
    commit: CommitResult | None = None
    diff: DiffSummary | None = None
    report_path: Path | None = None
    workspace_removed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task.describe(),
            "commit": self.commit.to_dict() if self.commit else None,
            "diff": self.diff.to_dict() if self.diff else None,
            "report_path": str(self.report_path) if self.report_path else None,
            "workspace_removed": self.workspace_removed,
        }


@dataclass(slots=True)
class StatusReport:
    feature: Feature
    tasks: list[Task] = field(default_factory=list)
    workspaces: dict[str, WorkspaceInfo] = field(default_factory=dict)
    schedule: Schedule = field(default_factory=Schedule)
    hold_reason: str | None = None
    next_action: str = ""

    @property
    def counts(self) -> dict[str, int]:
        counter = Counter(str(task.status) for task in self.tasks)
        return {str(status): counter.get(str(status), 0) for status in TaskStatus}

    def to_dict(self) -> dict[str, Any]:
        tasks = []
        for task in self.tasks:
            entry = task.describe()
            workspace = self.workspaces.get(task.key)
            entry["workspace"] = workspace.to_dict() if workspace else None
            tasks.append(entry)
        return {
            "feature": self.feature.to_dict(),
            "hold_reason": self.hold_reason,
            "tasks": tasks,
            "counts": self.counts,
            **self.schedule.to_dict(),
            "next_action": self.next_action,
        }


def _coerce_blocker(blocker: Blocker | dict[str, Any] | None) -> Blocker:
    if blocker is None:
        raise ValidationError("A blocked outcome needs a blocker record.")
    if isinstance(blocker, dict):
        blocker = Blocker.from_dict(blocker)
    if not blocker.reason.strip():
        raise ValidationError("Blocker reason must not be empty.")
    if blocker.options and not (
        MIN_BLOCKER_OPTIONS <= len(blocker.options) <= MAX_BLOCKER_OPTIONS
    ):
        raise ValidationError(
            f"Blocker needs between {MIN_BLOCKER_OPTIONS} and {MAX_BLOCKER_OPTIONS} options, "
            f"got {len(blocker.options)}."
        )
    return blocker


def _commit_message(prefix: str, task: str, summary: str) -> str:
    headline = next((line.strip() for line in summary.splitlines() if line.strip()), "")
    if not headline:
        return f"{prefix}({task}): task changes"
    if len(headline) > 72:
        headline = headline[:69].rstrip() + "..."
    return f"{prefix}({task}): {headline}"


class TaskController:
    """Drives tasks through their lifecycle and keeps workspaces in step.

    Every call is synchronous and reads a fresh snapshot from the task store.
    Calls for different tasks may run concurrently; calls for the same task
    must be serialized by the caller. Integration is the only operation that
    takes a lock, one per feature.
    """

    def __init__(
        self,
        features: FeatureGate,
        tasks: TaskStore,
        workspaces: WorkspaceBackend,
        layout: ProjectLayout,
        config: HiveConfig | None = None,
    ) -> None:
        self.features = features
        self.tasks = tasks
        self.workspaces = workspaces
        self.layout = layout
        self.config = config or HiveConfig.default()

    def _require_task(self, feature: str, task: str) -> Task:
        record = self.tasks.get(feature, task)
        if record is None:
            raise NotFoundError(
                f"Task '{task}' not found in feature '{feature}'.", kind="task", key=task
            )
        return record

    def _ensure_workspace(self, feature: str, task: str) -> WorkspaceInfo:
        info = self.workspaces.get(feature, task)
        if info is not None:
            return info
        return self.workspaces.create(feature, task, reuse_branch=True)

    def start(
        self,
        feature: str,
        task: str,
        idempotency_key: str | None = None,
        agent: str | None = None,
    ) -> StartResult:
        self.features.assert_executing(feature)
        self.features.check_not_held(feature)
        record = self._require_task(feature, task)
        session = record.worker_session

        if record.status == TaskStatus.IN_PROGRESS:
            if session and idempotency_key and idempotency_key == session.idempotency_key:
                logger.info(
                    "Replaying start of %s/%s (attempt %s)", feature, task, session.attempt
                )
                return StartResult(
                    task=record,
                    workspace=self._ensure_workspace(feature, task),
                    idempotency_key=session.idempotency_key,
                    replayed=True,
                )
            raise InvalidStateError(
                f"Task '{task}' is already in progress.",
                current=str(record.status),
                allowed=STARTABLE_STATES,
            )

        resumed = record.status in RESUMABLE_STATUSES
        if record.status == TaskStatus.PENDING:
            snapshot = self.tasks.list(feature)
            effective = effective_dependencies(snapshot)
            assert_acyclic(effective)
            unmet = unmet_dependencies(task, snapshot, effective)
            if unmet:
                raise DependencyError(
                    f"Task '{task}' has unmet dependencies: "
                    + ", ".join(f"{dep} ({status})" for dep, status in unmet),
                    unmet=unmet,
                )
        elif not resumed:
            raise InvalidStateError(
                f"Task '{task}' is {record.status} and cannot be started.",
                current=str(record.status),
                allowed=STARTABLE_STATES,
            )

        workspace = self._ensure_workspace(feature, task)
        attempt = record.attempt + 1
        key = attempt_key(feature, task, attempt)
        now = utcnow_iso()
        updated = self.tasks.update(
            feature,
            task,
            status=TaskStatus.IN_PROGRESS,
            blocker=None,
            base_commit=record.base_commit or workspace.base_commit,
            worker_session=WorkerSession(
                session_id=uuid.uuid4().hex,
                attempt=attempt,
                idempotency_key=key,
                agent=agent,
                started_at=now,
                last_heartbeat_at=now,
            ),
        )
        logger.info(
            "%s %s/%s (attempt %s) in %s",
            "Resumed" if resumed else "Started",
            feature,
            task,
            attempt,
            workspace.path,
        )
        return StartResult(task=updated, workspace=workspace, idempotency_key=key, resumed=resumed)

    def complete(
        self,
        feature: str,
        task: str,
        outcome: Outcome | str,
        summary: str,
        blocker: Blocker | dict[str, Any] | None = None,
    ) -> CompleteResult:
        try:
            outcome = Outcome(outcome)
        except ValueError as exc:
            raise ValidationError(f"Unknown outcome '{outcome}'.") from exc
        if outcome == Outcome.BLOCKED:
            blocker = _coerce_blocker(blocker)

        self.features.assert_executing(feature)
        record = self._require_task(feature, task)
        if record.status not in COMPLETABLE_STATUSES:
            raise InvalidStateError(
                f"Task '{task}' is {record.status}; only running or blocked tasks complete.",
                current=str(record.status),
                allowed=tuple(str(status) for status in COMPLETABLE_STATUSES),
            )
        if record.status == TaskStatus.BLOCKED and outcome != Outcome.BLOCKED:
            raise InvalidStateError(
                f"Task '{task}' is blocked; resume it with start before finishing it.",
                current=str(record.status),
                allowed=(str(TaskStatus.IN_PROGRESS),),
            )

        if outcome == Outcome.BLOCKED:
            updated = self.tasks.update(
                feature, task, status=TaskStatus.BLOCKED, blocker=blocker, summary=summary
            )
            logger.info("Task %s/%s blocked: %s", feature, task, blocker.reason)
            return CompleteResult(task=updated)

        workspace = self.workspaces.get(feature, task)
        if workspace is None and outcome == Outcome.DONE:
            raise NotFoundError(
                f"Workspace for task '{task}' not found; start the task again to recreate it.",
                kind="workspace",
                key=task,
            )

        message = _commit_message(self.config.workspace.branch_prefix, task, summary)
        commit = self.workspaces.commit_changes(feature, task, message)
        diff = self.workspaces.get_diff(feature, task, record.base_commit)
        report = render_task_report(record, outcome, summary, diff, commit.sha)
        report_path = self.tasks.write_report(feature, task, report)
        updated = self.tasks.update(
            feature, task, status=TaskStatus(str(outcome)), summary=summary, blocker=None
        )

        removed = False
        if outcome == Outcome.DONE and not self.config.workspace.retain_completed:
            self.workspaces.remove(feature, task, delete_branch=False)
            removed = True
        logger.info("Task %s/%s completed with outcome %s", feature, task, outcome)
        return CompleteResult(
            task=updated,
            commit=commit,
            diff=diff,
            report_path=report_path,
            workspace_removed=removed,
        )

    def discard(self, feature: str, task: str) -> Task:
        self.features.assert_executing(feature)
        record = self._require_task(feature, task)
        if record.status in (TaskStatus.PENDING, TaskStatus.DONE, TaskStatus.CANCELLED):
            raise InvalidStateError(
                f"Task '{task}' is {record.status} and cannot be discarded.",
                current=str(record.status),
                allowed=(str(TaskStatus.IN_PROGRESS), *(str(s) for s in RESUMABLE_STATUSES)),
            )
        self.workspaces.remove(feature, task, delete_branch=True)
        updated = self.tasks.update(
            feature,
            task,
            status=TaskStatus.PENDING,
            worker_session=None,
            blocker=None,
            base_commit=None,
            started_at=None,
        )
        logger.info("Discarded attempt of %s/%s; task is pending again", feature, task)
        return updated

    def cancel(self, feature: str, task: str) -> Task:
        self.features.assert_executing(feature)
        record = self._require_task(feature, task)
        if record.status == TaskStatus.DONE:
            raise InvalidStateError(
                f"Task '{task}' is done and cannot be cancelled.",
                current=str(record.status),
            )
        if record.status == TaskStatus.CANCELLED:
            return record
        self.workspaces.remove(feature, task, delete_branch=True)
        updated = self.tasks.update(
            feature, task, status=TaskStatus.CANCELLED, worker_session=None, blocker=None
        )
        logger.info("Cancelled %s/%s", feature, task)
        return updated

    def integrate(
        self, feature: str, task: str, strategy: MergeStrategy | str | None = None
    ) -> MergeResult:
        try:
            chosen = MergeStrategy(strategy or self.config.integration.default_strategy)
        except ValueError as exc:
            raise ValidationError(f"Unknown merge strategy '{strategy}'.") from exc
        self.features.assert_executing(feature)
        self.features.check_not_held(feature)
        record = self._require_task(feature, task)
        if record.status != TaskStatus.DONE:
            raise InvalidStateError(
                f"Task '{task}' is {record.status}; only done tasks can be integrated.",
                current=str(record.status),
                allowed=(str(TaskStatus.DONE),),
            )

        with exclusive_lock(
            self.layout.merge_lock_file(feature),
            timeout_seconds=self.config.integration.lock_timeout_seconds,
        ):
            result = self.workspaces.merge(feature, task, chosen)
            if not result.success:
                logger.warning(
                    "Integration of %s/%s did not apply: %s", feature, task, result.error
                )
                return result
            self.tasks.update(
                feature, task, integrated_at=utcnow_iso(), integrated_sha=result.sha
            )
            if self.config.integration.delete_branch_after_merge:
                self.workspaces.remove(feature, task, delete_branch=True)
        logger.info("Integrated %s/%s at %s", feature, task, result.sha)
        return result

    def heartbeat(self, feature: str, task: str, session_id: str | None = None) -> Task:
        self.features.assert_executing(feature)
        record = self._require_task(feature, task)
        session = record.worker_session
        if record.status != TaskStatus.IN_PROGRESS or session is None:
            raise InvalidStateError(
                f"Task '{task}' is {record.status}; heartbeats need a running task.",
                current=str(record.status),
                allowed=(str(TaskStatus.IN_PROGRESS),),
            )
        if session_id and session_id != session.session_id:
            raise InvalidStateError(
                f"Session '{session_id}' does not own task '{task}'.",
                current=str(record.status),
            )
        return self.tasks.update(
            feature,
            task,
            worker_session=replace(session, last_heartbeat_at=utcnow_iso()),
        )

    def status(self, feature: str) -> StatusReport:
        report = StatusReport(feature=self.features.get(feature))
        report.tasks = self.tasks.list(feature)
        report.schedule = compute_schedule(report.tasks)
        report.workspaces = {info.task: info for info in self.workspaces.list(feature)}
        report.hold_reason = self.features.features.hold_reason(feature)
        report.next_action = self._next_action(report)
        return report

    @staticmethod
    def _next_action(report: StatusReport) -> str:
        feature = report.feature
        if feature.status == FeatureStatus.COMPLETED:
            return "Feature is completed; nothing left to do."
        if report.hold_reason is not None:
            return f"Feature is on hold ({report.hold_reason}); release it to continue."
        if feature.status == FeatureStatus.PLANNING:
            return "Review the plan and approve the feature."
        if feature.status == FeatureStatus.APPROVED:
            return "Synchronize tasks from the approved plan to begin execution."
        if not report.tasks:
            return "Synchronize tasks from the plan or create a manual task."

        by_status: dict[TaskStatus, list[str]] = {}
        for task in report.tasks:
            by_status.setdefault(task.status, []).append(task.key)
        if TaskStatus.BLOCKED in by_status:
            return "Resolve blockers for: " + ", ".join(by_status[TaskStatus.BLOCKED])
        if report.schedule.runnable:
            return "Start runnable tasks: " + ", ".join(report.schedule.runnable)
        if TaskStatus.IN_PROGRESS in by_status:
            return "Wait for tasks in progress: " + ", ".join(by_status[TaskStatus.IN_PROGRESS])
        retry = by_status.get(TaskStatus.FAILED, []) + by_status.get(TaskStatus.PARTIAL, [])
        if retry:
            return "Retry or discard: " + ", ".join(sorted(retry))
        unintegrated = [
            task.key
            for task in report.tasks
            if task.status == TaskStatus.DONE and not task.integrated_at
        ]
        if unintegrated:
            return "Integrate completed tasks: " + ", ".join(unintegrated)
        if report.schedule.blocked_by:
            return "Pending tasks wait on dependencies: " + ", ".join(report.schedule.blocked_by)
        return "All tasks finished; complete the feature with verification evidence."

    def create_task(
        self,
        feature: str,
        name: str,
        order: int | None = None,
        depends_on: list[str] | None = None,
    ) -> Task:
        self.features.assert_mutable(feature)
        created = self.tasks.create(feature, name, order)
        if depends_on is None:
            logger.info("Created manual task %s/%s", feature, created.key)
            return created

        snapshot = [
            replace(task, depends_on=list(depends_on)) if task.key == created.key else task
            for task in self.tasks.list(feature)
        ]
        try:
            assert_acyclic(effective_dependencies(snapshot))
        except DependencyCycleError:
            self.tasks.delete(feature, created.key)
            raise
        updated = self.tasks.update(feature, created.key, depends_on=list(depends_on))
        logger.info("Created manual task %s/%s", feature, updated.key)
        return updated

    def _normalize_plan(self, feature: str, plan_tasks: list[PlanTask]) -> list[PlanTask]:
        orders = [task.order for task in self.tasks.list(feature)]
        orders += [plan.order for plan in plan_tasks if plan.order is not None]
        next_order = max(orders, default=0) + 1

        keys: list[str] = []
        renamed: dict[str, str] = {}
        for plan in plan_tasks:
            key = plan.key
            if not TASK_KEY_PATTERN.match(key):
                slug = slugify(key)
                if not slug:
                    raise ValidationError(f"Plan task key '{plan.key}' has no usable characters.")
                order = plan.order
                if order is None:
                    order = next_order
                    next_order += 1
                key = task_key(order, slug)
            if key in keys:
                raise ValidationError(f"Plan lists task '{key}' more than once.")
            keys.append(key)
            renamed[plan.key] = key

        normalized: list[PlanTask] = []
        for plan, key in zip(plan_tasks, keys, strict=True):
            depends_on = plan.depends_on
            if depends_on is not None:
                depends_on = [renamed.get(dep, dep) for dep in depends_on]
            normalized.append(replace(plan, key=key, depends_on=depends_on))
        return normalized

    def sync_tasks(self, feature: str, plan_tasks: list[PlanTask]) -> SyncResult:
        record = self.features.assert_mutable(feature)
        if record.status == FeatureStatus.PLANNING:
            raise InvalidStateError(
                f"Feature '{feature}' must be approved before tasks are synchronized.",
                current=str(record.status),
                allowed=(str(FeatureStatus.APPROVED), str(FeatureStatus.EXECUTING)),
            )

        plan = {item.key: item for item in self._normalize_plan(feature, plan_tasks)}
        existing = {task.key: task for task in self.tasks.list(feature)}
        result = SyncResult()
        prospective: list[Task] = []
        updates: dict[str, PlanTask] = {}

        for key, task in existing.items():
            if task.origin == TaskOrigin.MANUAL:
                result.manual.append(key)
                prospective.append(task)
            elif key in plan:
                result.kept.append(key)
                if task.status == TaskStatus.PENDING:
                    updates[key] = plan[key]
                    prospective.append(replace(task, depends_on=plan[key].depends_on))
                else:
                    prospective.append(task)
            elif task.status == TaskStatus.PENDING:
                result.removed.append(key)
            else:
                result.kept.append(key)
                prospective.append(task)
        for key, item in plan.items():
            if key not in existing:
                result.created.append(key)
                prospective.append(
                    Task(
                        feature=feature,
                        key=key,
                        origin=TaskOrigin.PLAN,
                        depends_on=item.depends_on,
                        plan_title=item.title,
                    )
                )
        assert_acyclic(effective_dependencies(prospective))

        for key in result.removed:
            self.tasks.delete(feature, key)
        for key, item in updates.items():
            self.tasks.update(
                feature,
                key,
                depends_on=list(item.depends_on) if item.depends_on is not None else None,
                plan_title=item.title,
            )
        for key in result.created:
            self.tasks.create_from_plan(feature, plan[key])

        if record.status == FeatureStatus.APPROVED:
            self.features.begin_execution(feature)
        logger.info(
            "Synchronized %s: %d created, %d removed, %d kept, %d manual",
            feature,
            len(result.created),
            len(result.removed),
            len(result.kept),
            len(result.manual),
        )
        return result

    def cleanup(self, feature: str) -> CleanupResult:
        self.features.assert_mutable(feature)
        return self.workspaces.cleanup(feature)

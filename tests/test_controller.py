import subprocess
from pathlib import Path

import pytest

from hivectl.config import HiveConfig
from hivectl.controller import TaskController, attempt_key
from hivectl.errors import (
    DependencyCycleError,
    DependencyError,
    FeatureHeldError,
    FeatureImmutableError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    WorkspaceCreateError,
)
from hivectl.features import FeatureGate
from hivectl.models import (
    Blocker,
    CleanupResult,
    CommitResult,
    DiffSummary,
    FeatureStatus,
    MergeResult,
    MergeStrategy,
    Outcome,
    PlanTask,
    TaskOrigin,
    TaskStatus,
    WorkspaceInfo,
)
from hivectl.paths import ProjectLayout
from hivectl.state import JsonFeatureStore, JsonTaskStore
from hivectl.workspaces import GitWorktreeBackend, WorkspaceBackend

EVIDENCE = "all tasks integrated and the test suite passes"


class FakeWorkspaceBackend(WorkspaceBackend):
    def __init__(self, layout: ProjectLayout) -> None:
        self.layout = layout
        self.workspaces: dict[tuple[str, str], WorkspaceInfo] = {}
        self.branches: set[str] = set()
        self.dirty: dict[tuple[str, str], list[str]] = {}
        self.created: list[tuple[str, bool]] = []
        self.merges: list[tuple[str, MergeStrategy]] = []
        self.merge_result: MergeResult | None = None
        self.commit_count = 0

    def branch_for(self, feature: str, task: str) -> str:
        return f"hive/{feature}/{task}"

    def create(self, feature: str, task: str, *, reuse_branch: bool = False) -> WorkspaceInfo:
        branch = self.branch_for(feature, task)
        if branch in self.branches and not reuse_branch:
            raise WorkspaceCreateError(f"Branch '{branch}' already exists.")
        self.branches.add(branch)
        self.created.append((task, reuse_branch))
        info = WorkspaceInfo(
            feature=feature,
            task=task,
            path=self.layout.worktree_path(feature, task),
            branch=branch,
            base_commit="base000",
            head_commit="base000",
        )
        self.workspaces[(feature, task)] = info
        return info

    def get(self, feature: str, task: str) -> WorkspaceInfo | None:
        return self.workspaces.get((feature, task))

    def list(self, feature: str | None = None) -> list[WorkspaceInfo]:
        return [
            info
            for (owner, _), info in sorted(self.workspaces.items())
            if feature is None or owner == feature
        ]

    def get_diff(
        self, feature: str, task: str, base_commit: str | None = None
    ) -> DiffSummary:
        files = self.dirty.get((feature, task), [])
        return DiffSummary(has_diff=bool(files), files_changed=list(files), insertions=len(files))

    def has_uncommitted_changes(self, feature: str, task: str) -> bool:
        return bool(self.dirty.get((feature, task)))

    def commit_changes(
        self, feature: str, task: str, message: str | None = None
    ) -> CommitResult:
        if (feature, task) not in self.workspaces:
            return CommitResult(committed=False, message="Workspace not found")
        if not self.dirty.get((feature, task)):
            return CommitResult(committed=False, message="No changes to commit")
        self.commit_count += 1
        return CommitResult(committed=True, message=message or "", sha=f"sha{self.commit_count}")

    def merge(
        self, feature: str, task: str, strategy: MergeStrategy = MergeStrategy.MERGE
    ) -> MergeResult:
        self.merges.append((task, strategy))
        if self.merge_result is not None:
            return self.merge_result
        return MergeResult(success=True, strategy=strategy, sha="merged1", files_changed=["x"])

    def remove(self, feature: str, task: str, delete_branch: bool = False) -> None:
        self.workspaces.pop((feature, task), None)
        if delete_branch:
            self.branches.discard(self.branch_for(feature, task))

    def cleanup(self, feature: str) -> CleanupResult:
        return CleanupResult()


def _controller(
    root: Path,
    backend: WorkspaceBackend | None = None,
    config: HiveConfig | None = None,
) -> tuple[TaskController, FeatureGate, JsonTaskStore, WorkspaceBackend]:
    layout = ProjectLayout(root)
    layout.ensure()
    tasks = JsonTaskStore(layout)
    gate = FeatureGate(JsonFeatureStore(layout), tasks)
    backend = backend or FakeWorkspaceBackend(layout)
    return TaskController(gate, tasks, backend, layout, config), gate, tasks, backend


def _executing(controller: TaskController, gate: FeatureGate, keys: list[str]) -> None:
    gate.create("auth")
    gate.approve("auth")
    controller.sync_tasks("auth", [PlanTask(key=key) for key in keys])


def _blocker() -> Blocker:
    return Blocker(
        reason="Token format undecided",
        options=["JWT", "opaque tokens"],
        recommendation="JWT",
        context="Both are supported by the gateway.",
    )


def test_start_with_unmet_dependencies_names_them(tmp_path: Path) -> None:
    controller, gate, _, backend = _controller(tmp_path)
    _executing(controller, gate, ["01-a", "01-b", "02-c"])

    with pytest.raises(DependencyError) as excinfo:
        controller.start("auth", "02-c")

    assert excinfo.value.unmet == [("01-a", "pending"), ("01-b", "pending")]
    assert backend.created == []


def test_start_records_session_and_workspace(tmp_path: Path) -> None:
    controller, gate, tasks, _ = _controller(tmp_path)
    _executing(controller, gate, ["01-a"])

    result = controller.start("auth", "01-a", agent="coder")

    assert result.resumed is False and result.replayed is False
    assert result.idempotency_key == "hive-auth-01-a-1"
    assert result.workspace.branch == "hive/auth/01-a"
    stored = tasks.get("auth", "01-a")
    assert stored is not None
    assert stored.status == TaskStatus.IN_PROGRESS
    assert stored.base_commit == "base000"
    assert stored.started_at is not None
    assert stored.worker_session is not None
    assert stored.worker_session.agent == "coder"
    assert stored.worker_session.idempotency_key == attempt_key("auth", "01-a", 1)


def test_start_replays_matching_idempotency_key(tmp_path: Path) -> None:
    controller, gate, _, backend = _controller(tmp_path)
    _executing(controller, gate, ["01-a"])
    first = controller.start("auth", "01-a")

    replay = controller.start("auth", "01-a", idempotency_key=first.idempotency_key)

    assert replay.replayed is True
    assert replay.task.attempt == 1
    assert replay.workspace.path == first.workspace.path
    assert len(backend.created) == 1
    with pytest.raises(InvalidStateError):
        controller.start("auth", "01-a")
    with pytest.raises(InvalidStateError):
        controller.start("auth", "01-a", idempotency_key="hive-auth-01-a-7")


def test_blocked_outcome_validates_blocker(tmp_path: Path) -> None:
    controller, gate, _, backend = _controller(tmp_path)
    _executing(controller, gate, ["01-a"])
    controller.start("auth", "01-a")

    with pytest.raises(ValidationError):
        controller.complete("auth", "01-a", Outcome.BLOCKED, "stuck")
    with pytest.raises(ValidationError):
        controller.complete(
            "auth", "01-a", Outcome.BLOCKED, "stuck", Blocker(reason="x", options=["only"])
        )
    with pytest.raises(ValidationError):
        controller.complete(
            "auth", "01-a", Outcome.BLOCKED, "stuck", Blocker(reason="x", options=list("abcde"))
        )
    with pytest.raises(ValidationError):
        controller.complete("auth", "01-a", "exploded", "stuck")

    result = controller.complete("auth", "01-a", "blocked", "stuck", _blocker())

    assert result.task.status == TaskStatus.BLOCKED
    assert result.task.blocker is not None
    assert result.task.blocker.recommendation == "JWT"
    assert result.commit is None
    assert backend.get("auth", "01-a") is not None


def test_blocked_task_must_resume_before_finishing(tmp_path: Path) -> None:
    controller, gate, tasks, _ = _controller(tmp_path)
    _executing(controller, gate, ["01-a"])
    controller.start("auth", "01-a")
    controller.complete("auth", "01-a", Outcome.BLOCKED, "stuck", _blocker())

    for outcome in (Outcome.DONE, Outcome.FAILED, Outcome.PARTIAL):
        with pytest.raises(InvalidStateError):
            controller.complete("auth", "01-a", outcome, "finished anyway")
    assert tasks.get("auth", "01-a").status == TaskStatus.BLOCKED

    reblocked = controller.complete(
        "auth", "01-a", Outcome.BLOCKED, "still stuck", Blocker(reason="waiting on vendor")
    )
    assert reblocked.task.blocker.reason == "waiting on vendor"

    controller.start("auth", "01-a")
    done = controller.complete("auth", "01-a", Outcome.DONE, "finished")
    assert done.task.status == TaskStatus.DONE
    assert done.task.attempt == 2


def test_resume_reuses_workspace_and_increments_attempt(tmp_path: Path) -> None:
    controller, gate, _, backend = _controller(tmp_path)
    _executing(controller, gate, ["01-a", "02-b"])
    first = controller.start("auth", "01-a")
    controller.complete("auth", "01-a", Outcome.BLOCKED, "stuck", _blocker())

    resumed = controller.start("auth", "01-a")

    assert resumed.resumed is True
    assert resumed.workspace.path == first.workspace.path
    assert resumed.task.attempt == 2
    assert resumed.idempotency_key == "hive-auth-01-a-2"
    assert resumed.task.blocker is None
    assert len(backend.created) == 1


def test_resume_recreates_vanished_workspace_from_branch(tmp_path: Path) -> None:
    controller, gate, _, backend = _controller(tmp_path)
    _executing(controller, gate, ["01-a"])
    controller.start("auth", "01-a")
    controller.complete("auth", "01-a", Outcome.FAILED, "tests fail")
    backend.remove("auth", "01-a")

    retried = controller.start("auth", "01-a")

    assert retried.resumed is True
    assert backend.created[-1] == ("01-a", True)
    assert retried.task.attempt == 2


def test_done_commits_reports_and_removes_workspace(tmp_path: Path) -> None:
    controller, gate, tasks, backend = _controller(tmp_path)
    _executing(controller, gate, ["01-a", "02-b"])
    controller.start("auth", "01-a")
    backend.dirty[("auth", "01-a")] = ["app.py"]

    result = controller.complete("auth", "01-a", Outcome.DONE, "Add app entry point")

    assert result.commit is not None and result.commit.committed is True
    assert result.commit.message == "hive(01-a): Add app entry point"
    assert result.workspace_removed is True
    assert backend.get("auth", "01-a") is None
    assert "hive/auth/01-a" in backend.branches
    assert result.report_path is not None
    report = result.report_path.read_text(encoding="utf-8")
    assert "**Status:** success" in report
    assert "`app.py`" in report
    assert tasks.get("auth", "01-a").completed_at is not None
    assert controller.status("auth").schedule.runnable == ["02-b"]


def test_done_on_clean_tree_is_allowed(tmp_path: Path) -> None:
    controller, gate, _, _ = _controller(tmp_path)
    _executing(controller, gate, ["01-a"])
    controller.start("auth", "01-a")

    result = controller.complete("auth", "01-a", Outcome.DONE, "Nothing needed")

    assert result.commit is not None
    assert result.commit.committed is False
    assert result.task.status == TaskStatus.DONE
    assert "_No file changes detected_" in result.report_path.read_text(encoding="utf-8")


def test_done_without_workspace_is_refused(tmp_path: Path) -> None:
    controller, gate, tasks, backend = _controller(tmp_path)
    _executing(controller, gate, ["01-a"])
    controller.start("auth", "01-a")
    backend.remove("auth", "01-a")

    with pytest.raises(NotFoundError):
        controller.complete("auth", "01-a", Outcome.DONE, "done")
    assert tasks.get("auth", "01-a").status == TaskStatus.IN_PROGRESS


def test_retain_completed_keeps_workspace(tmp_path: Path) -> None:
    config = HiveConfig.default()
    config.workspace.retain_completed = True
    controller, gate, _, backend = _controller(tmp_path, config=config)
    _executing(controller, gate, ["01-a"])
    controller.start("auth", "01-a")

    result = controller.complete("auth", "01-a", Outcome.DONE, "done")

    assert result.workspace_removed is False
    assert backend.get("auth", "01-a") is not None


def test_failed_and_partial_keep_workspace(tmp_path: Path) -> None:
    controller, gate, _, backend = _controller(tmp_path)
    _executing(controller, gate, ["01-a", "01-b"])
    for key, outcome in (("01-a", Outcome.FAILED), ("01-b", Outcome.PARTIAL)):
        controller.start("auth", key)
        backend.dirty[("auth", key)] = ["wip.py"]

        result = controller.complete("auth", key, outcome, "half way")

        assert result.task.status == TaskStatus(str(outcome))
        assert result.commit is not None and result.commit.committed is True
        assert backend.get("auth", key) is not None
        assert f"**Status:** {outcome}" in result.report_path.read_text(encoding="utf-8")


def test_complete_from_pending_is_invalid(tmp_path: Path) -> None:
    controller, gate, _, _ = _controller(tmp_path)
    _executing(controller, gate, ["01-a"])

    with pytest.raises(InvalidStateError):
        controller.complete("auth", "01-a", Outcome.DONE, "done")
    with pytest.raises(NotFoundError):
        controller.complete("auth", "09-ghost", Outcome.DONE, "done")


def test_discard_returns_task_to_pending(tmp_path: Path) -> None:
    controller, gate, _, backend = _controller(tmp_path)
    _executing(controller, gate, ["01-a"])
    controller.start("auth", "01-a")

    discarded = controller.discard("auth", "01-a")

    assert discarded.status == TaskStatus.PENDING
    assert discarded.worker_session is None
    assert discarded.base_commit is None
    assert backend.get("auth", "01-a") is None
    assert "hive/auth/01-a" not in backend.branches
    assert controller.status("auth").schedule.runnable == ["01-a"]
    assert controller.start("auth", "01-a").task.attempt == 1


def test_discard_refuses_pending_task(tmp_path: Path) -> None:
    controller, gate, tasks, _ = _controller(tmp_path)
    _executing(controller, gate, ["01-a"])

    with pytest.raises(InvalidStateError):
        controller.discard("auth", "01-a")
    assert tasks.get("auth", "01-a").status == TaskStatus.PENDING


def test_cancel_and_terminal_guards(tmp_path: Path) -> None:
    controller, gate, _, backend = _controller(tmp_path)
    _executing(controller, gate, ["01-a", "01-b"])
    controller.start("auth", "01-a")
    controller.complete("auth", "01-a", Outcome.DONE, "done")
    controller.start("auth", "01-b")

    cancelled = controller.cancel("auth", "01-b")
    assert cancelled.status == TaskStatus.CANCELLED
    assert backend.get("auth", "01-b") is None
    assert controller.cancel("auth", "01-b").status == TaskStatus.CANCELLED

    with pytest.raises(InvalidStateError):
        controller.cancel("auth", "01-a")
    with pytest.raises(InvalidStateError):
        controller.discard("auth", "01-a")
    with pytest.raises(InvalidStateError):
        controller.start("auth", "01-a")
    with pytest.raises(InvalidStateError):
        controller.discard("auth", "01-b")


def test_integrate_records_sha_and_uses_default_strategy(tmp_path: Path) -> None:
    config = HiveConfig.default()
    config.integration.default_strategy = "squash"
    config.integration.delete_branch_after_merge = True
    controller, gate, tasks, backend = _controller(tmp_path, config=config)
    _executing(controller, gate, ["01-a"])
    controller.start("auth", "01-a")

    with pytest.raises(InvalidStateError):
        controller.integrate("auth", "01-a")

    controller.complete("auth", "01-a", Outcome.DONE, "done")
    result = controller.integrate("auth", "01-a")

    assert result.success is True
    assert backend.merges == [("01-a", MergeStrategy.SQUASH)]
    stored = tasks.get("auth", "01-a")
    assert stored.integrated_sha == "merged1"
    assert stored.integrated_at is not None
    assert "hive/auth/01-a" not in backend.branches
    assert not controller.layout.merge_lock_file("auth").exists()


def test_integrate_conflict_keeps_task_done_with_fake_backend(tmp_path: Path) -> None:
    controller, gate, tasks, backend = _controller(tmp_path)
    _executing(controller, gate, ["01-a"])
    controller.start("auth", "01-a")
    controller.complete("auth", "01-a", Outcome.DONE, "done")
    backend.merge_result = MergeResult(
        success=False, conflicts=["README.md"], error="Merge conflict"
    )

    result = controller.integrate("auth", "01-a", "rebase")

    assert result.conflicts == ["README.md"]
    stored = tasks.get("auth", "01-a")
    assert stored.status == TaskStatus.DONE
    assert stored.integrated_at is None
    with pytest.raises(ValidationError):
        controller.integrate("auth", "01-a", "octopus")


def test_hold_blocks_start_and_integrate(tmp_path: Path) -> None:
    controller, gate, _, _ = _controller(tmp_path)
    _executing(controller, gate, ["01-a", "01-b"])
    controller.start("auth", "01-a")
    controller.complete("auth", "01-a", Outcome.DONE, "done")
    gate.hold("auth", "security review")

    with pytest.raises(FeatureHeldError):
        controller.start("auth", "01-b")
    with pytest.raises(FeatureHeldError):
        controller.integrate("auth", "01-a")
    report = controller.status("auth")
    assert report.hold_reason == "security review"
    assert "on hold" in report.next_action

    gate.release("auth")
    assert controller.start("auth", "01-b").task.status == TaskStatus.IN_PROGRESS


def test_task_operations_need_executing_feature(tmp_path: Path) -> None:
    controller, gate, tasks, _ = _controller(tmp_path)
    gate.create("auth")
    tasks.create("auth", "setup")

    with pytest.raises(InvalidStateError):
        controller.start("auth", "01-setup")
    with pytest.raises(InvalidStateError):
        controller.sync_tasks("auth", [PlanTask(key="01-setup")])


def test_completed_feature_rejects_every_mutation(tmp_path: Path) -> None:
    controller, gate, _, _ = _controller(tmp_path)
    _executing(controller, gate, ["01-a"])
    controller.start("auth", "01-a")
    controller.complete("auth", "01-a", Outcome.DONE, "done")
    gate.complete("auth", EVIDENCE)

    for action in (
        lambda: controller.start("auth", "01-a"),
        lambda: controller.complete("auth", "01-a", Outcome.DONE, "again"),
        lambda: controller.integrate("auth", "01-a"),
        lambda: controller.discard("auth", "01-a"),
        lambda: controller.cancel("auth", "01-a"),
        lambda: controller.heartbeat("auth", "01-a"),
        lambda: controller.create_task("auth", "late"),
        lambda: controller.sync_tasks("auth", []),
        lambda: controller.cleanup("auth"),
    ):
        with pytest.raises(FeatureImmutableError):
            action()
    assert controller.status("auth").next_action.startswith("Feature is completed")


def test_heartbeat_refreshes_running_session(tmp_path: Path) -> None:
    controller, gate, tasks, _ = _controller(tmp_path)
    _executing(controller, gate, ["01-a", "01-b"])
    started = controller.start("auth", "01-a")
    session = started.task.worker_session
    session.last_heartbeat_at = "2000-01-01T00:00:00+00:00"
    tasks.update("auth", "01-a", worker_session=session)

    beat = controller.heartbeat("auth", "01-a", session.session_id)

    assert beat.worker_session.last_heartbeat_at != "2000-01-01T00:00:00+00:00"
    assert beat.worker_session.attempt == 1
    with pytest.raises(InvalidStateError):
        controller.heartbeat("auth", "01-a", "someone-else")
    with pytest.raises(InvalidStateError):
        controller.heartbeat("auth", "01-b")


def test_status_reports_schedule_counts_and_next_action(tmp_path: Path) -> None:
    controller, gate, _, _ = _controller(tmp_path)
    gate.create("auth")
    assert controller.status("auth").next_action == "Review the plan and approve the feature."
    gate.approve("auth")
    controller.sync_tasks("auth", [PlanTask(key=key) for key in ("01-a", "01-b", "02-c")])

    report = controller.status("auth")
    assert report.schedule.runnable == ["01-a", "01-b"]
    assert report.next_action == "Start runnable tasks: 01-a, 01-b"

    controller.start("auth", "01-a")
    controller.complete("auth", "01-a", Outcome.BLOCKED, "stuck", _blocker())
    payload = controller.status("auth").to_dict()

    assert payload["counts"]["blocked"] == 1
    assert payload["counts"]["pending"] == 2
    assert payload["next_action"] == "Resolve blockers for: 01-a"
    assert payload["blocked_by"]["02-c"] == [
        {"task": "01-a", "status": "blocked"},
        {"task": "01-b", "status": "pending"},
    ]
    by_key = {entry["key"]: entry for entry in payload["tasks"]}
    assert by_key["01-a"]["workspace"]["branch"] == "hive/auth/01-a"
    assert by_key["01-b"]["workspace"] is None


def test_sync_applies_plan_rules(tmp_path: Path) -> None:
    controller, gate, tasks, _ = _controller(tmp_path)
    gate.create("auth")
    gate.approve("auth")
    controller.sync_tasks(
        "auth",
        [PlanTask(key="01-a"), PlanTask(key="02-b"), PlanTask(key="03-c"), PlanTask(key="04-d")],
    )
    assert gate.get("auth").status == FeatureStatus.EXECUTING
    controller.start("auth", "01-a")
    controller.complete("auth", "01-a", Outcome.DONE, "done")
    controller.create_task("auth", "hotfix", order=9)

    result = controller.sync_tasks(
        "auth",
        [
            PlanTask(key="02-b", depends_on=["01-a"], title="B"),
            PlanTask(key="docs", title="Write docs"),
        ],
    )

    assert result.created == ["10-docs"]
    assert sorted(result.removed) == ["03-c", "04-d"]
    assert sorted(result.kept) == ["01-a", "02-b"]
    assert result.manual == ["09-hotfix"]
    assert [task.key for task in tasks.list("auth")] == ["01-a", "02-b", "09-hotfix", "10-docs"]
    assert tasks.get("auth", "01-a").status == TaskStatus.DONE
    kept = tasks.get("auth", "02-b")
    assert kept.depends_on == ["01-a"]
    assert kept.plan_title == "B"
    created = tasks.get("auth", "10-docs")
    assert created.origin == TaskOrigin.PLAN
    assert created.plan_title == "Write docs"


def test_sync_renames_dependencies_of_unprefixed_plan_keys(tmp_path: Path) -> None:
    controller, gate, tasks, _ = _controller(tmp_path)
    gate.create("auth")
    gate.approve("auth")

    result = controller.sync_tasks(
        "auth",
        [PlanTask(key="setup", order=1), PlanTask(key="api", order=2, depends_on=["setup"])],
    )

    assert result.created == ["01-setup", "02-api"]
    assert tasks.get("auth", "02-api").depends_on == ["01-setup"]
    controller.start("auth", "01-setup")
    controller.complete("auth", "01-setup", Outcome.DONE, "done")
    schedule = controller.status("auth").schedule
    assert schedule.runnable == ["02-api"]
    assert schedule.blocked_by == {}


def test_sync_rejects_cycles_without_writing(tmp_path: Path) -> None:
    controller, gate, tasks, _ = _controller(tmp_path)
    gate.create("auth")
    gate.approve("auth")

    with pytest.raises(DependencyCycleError):
        controller.sync_tasks(
            "auth", [PlanTask(key="01-a", depends_on=["02-b"]), PlanTask(key="02-b")]
        )
    with pytest.raises(ValidationError):
        controller.sync_tasks("auth", [PlanTask(key="01-a"), PlanTask(key="01-a")])

    assert tasks.list("auth") == []
    assert gate.get("auth").status == FeatureStatus.APPROVED


def test_create_task_rejects_cycle_and_keeps_store_clean(tmp_path: Path) -> None:
    controller, gate, tasks, _ = _controller(tmp_path)
    _executing(controller, gate, ["02-b"])

    with pytest.raises(DependencyCycleError):
        controller.create_task("auth", "base", order=1, depends_on=["02-b"])

    assert [task.key for task in tasks.list("auth")] == ["02-b"]
    created = controller.create_task("auth", "extra", depends_on=[])
    assert created.key == "03-extra"
    assert created.depends_on == []


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _init_git_repo(repo: Path) -> None:
    _run(["git", "init"], cwd=repo)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo)
    _run(["git", "config", "user.name", "Test User"], cwd=repo)
    (repo / "README.md").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "README.md"], cwd=repo)
    _run(["git", "commit", "-m", "seed"], cwd=repo)


def _git_controller(tmp_path: Path) -> tuple[Path, TaskController, FeatureGate]:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    layout = ProjectLayout(repo)
    controller, gate, _, _ = _controller(repo, backend=GitWorktreeBackend(layout))
    return repo, controller, gate


def test_blocked_task_resumes_with_uncommitted_work_intact(tmp_path: Path) -> None:
    repo, controller, gate = _git_controller(tmp_path)
    _executing(controller, gate, ["01-setup", "02-api"])
    first = controller.start("auth", "01-setup")
    (first.workspace.path / "draft.py").write_text("x = 1\n", encoding="utf-8")
    controller.complete("auth", "01-setup", Outcome.BLOCKED, "need input", _blocker())

    resumed = controller.start("auth", "01-setup")

    assert resumed.workspace.path == first.workspace.path
    assert resumed.workspace.branch == first.workspace.branch
    assert resumed.task.attempt > first.task.attempt
    assert (resumed.workspace.path / "draft.py").read_text(encoding="utf-8") == "x = 1\n"

    done = controller.complete("auth", "01-setup", Outcome.DONE, "Add draft module")
    assert done.commit.committed is True
    assert done.diff.files_changed == ["draft.py"]
    assert not first.workspace.path.exists()

    merged = controller.integrate("auth", "01-setup", MergeStrategy.SQUASH)
    assert merged.success is True
    assert (repo / "draft.py").exists()
    assert controller.status("auth").schedule.runnable == ["02-api"]


def test_integration_conflict_leaves_task_done(tmp_path: Path) -> None:
    repo, controller, gate = _git_controller(tmp_path)
    _executing(controller, gate, ["01-setup"])
    started = controller.start("auth", "01-setup")
    (started.workspace.path / "README.md").write_text("task\n", encoding="utf-8")
    controller.complete("auth", "01-setup", Outcome.DONE, "Rewrite readme")
    (repo / "README.md").write_text("main\n", encoding="utf-8")
    _run(["git", "commit", "-am", "main edit"], cwd=repo)
    before = _run(["git", "rev-parse", "HEAD"], cwd=repo)

    result = controller.integrate("auth", "01-setup")

    assert result.success is False
    assert result.conflicts == ["README.md"]
    assert _run(["git", "rev-parse", "HEAD"], cwd=repo) == before
    assert controller.tasks.get("auth", "01-setup").status == TaskStatus.DONE
    assert "Integrate completed tasks: 01-setup" == controller.status("auth").next_action

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

FEATURES_DIR = "features"
TASKS_DIR = "tasks"
WORKTREES_DIR = ".worktrees"
FEATURE_FILE = "feature.json"
STATUS_FILE = "status.json"
REPORT_FILE = "report.md"
HOLD_FILE = "BLOCKED"
MERGE_LOCK_FILE = ".merge.lock"


@dataclass(slots=True, frozen=True)
class ProjectLayout:
    """On-disk layout of the control directory for one project root."""

    root: Path
    state_dir_name: str = ".control"

    @property
    def state_dir(self) -> Path:
        return self.root / self.state_dir_name

    @property
    def features_dir(self) -> Path:
        return self.state_dir / FEATURES_DIR

    @property
    def worktrees_dir(self) -> Path:
        return self.state_dir / WORKTREES_DIR

    def feature_dir(self, feature: str) -> Path:
        return self.features_dir / feature

    def feature_file(self, feature: str) -> Path:
        return self.feature_dir(feature) / FEATURE_FILE

    def hold_file(self, feature: str) -> Path:
        return self.feature_dir(feature) / HOLD_FILE

    def merge_lock_file(self, feature: str) -> Path:
        return self.feature_dir(feature) / MERGE_LOCK_FILE

    def tasks_dir(self, feature: str) -> Path:
        return self.feature_dir(feature) / TASKS_DIR

    def task_dir(self, feature: str, task: str) -> Path:
        return self.tasks_dir(feature) / task

    def task_status_file(self, feature: str, task: str) -> Path:
        return self.task_dir(feature, task) / STATUS_FILE

    def task_report_file(self, feature: str, task: str) -> Path:
        return self.task_dir(feature, task) / REPORT_FILE

    def feature_worktrees_dir(self, feature: str) -> Path:
        return self.worktrees_dir / feature

    def worktree_path(self, feature: str, task: str) -> Path:
        return self.feature_worktrees_dir(feature) / task

    def ensure(self) -> None:
        self.features_dir.mkdir(parents=True, exist_ok=True)
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        gitignore = self.state_dir / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(
                f"{WORKTREES_DIR}/\n{FEATURES_DIR}/*/{MERGE_LOCK_FILE}\n",
                encoding="utf-8",
            )


def branch_name(prefix: str, feature: str, task: str) -> str:
    return f"{prefix}/{feature}/{task}"

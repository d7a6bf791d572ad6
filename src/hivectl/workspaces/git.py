from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from hivectl.errors import GitCommandError, WorkspaceCreateError
from hivectl.models import (
    CleanupResult,
    CommitResult,
    DiffSummary,
    MergeResult,
    MergeStrategy,
    WorkspaceInfo,
)
from hivectl.paths import ProjectLayout, branch_name
from hivectl.workspaces.base import WorkspaceBackend

logger = logging.getLogger(__name__)

NO_CHANGES_MESSAGE = "No changes to commit"
WORKSPACE_NOT_FOUND_MESSAGE = "Workspace not found"


class GitWorktreeBackend(WorkspaceBackend):
    """Workspaces as ``git worktree`` checkouts under the control directory."""

    def __init__(self, layout: ProjectLayout, *, branch_prefix: str = "hive") -> None:
        self.layout = layout
        self.repo_root = layout.root.resolve()
        self.branch_prefix = branch_prefix

    def _run_git(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = ["git", "--no-pager", *args]
        logger.debug("git %s (cwd=%s)", " ".join(args), cwd or self.repo_root)
        proc = subprocess.run(
            command,
            cwd=cwd or self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            stderr = proc.stderr.strip() or proc.stdout.strip()
            raise GitCommandError(
                f"git {args[0]} failed: {stderr}",
                command=command,
                exit_code=proc.returncode,
                stderr=stderr,
            )
        return proc

    def branch_for(self, feature: str, task: str) -> str:
        return branch_name(self.branch_prefix, feature, task)

    def _branch_exists(self, branch: str) -> bool:
        proc = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"],
            check=False,
        )
        return proc.returncode == 0

    def _head(self, cwd: Path | None = None) -> str:
        return self._run_git(["rev-parse", "HEAD"], cwd=cwd).stdout.strip()

    def current_branch(self) -> str:
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    @staticmethod
    def _linkage_intact(path: Path) -> bool:
        marker = path / ".git"
        if marker.is_dir():
            return True
        if not marker.is_file():
            return False
        content = marker.read_text(encoding="utf-8", errors="replace").strip()
        if not content.startswith("gitdir:"):
            return False
        gitdir = Path(content[len("gitdir:") :].strip())
        if not gitdir.is_absolute():
            gitdir = (path / gitdir).resolve()
        return gitdir.exists()

    def create(self, feature: str, task: str, *, reuse_branch: bool = False) -> WorkspaceInfo:
        path = self.layout.worktree_path(feature, task)
        branch = self.branch_for(feature, task)
        branch_exists = self._branch_exists(branch)
        if branch_exists and not reuse_branch:
            raise WorkspaceCreateError(f"Branch '{branch}' already exists.")
        if path.exists():
            raise WorkspaceCreateError(f"Workspace path already exists: {path}")

        head = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if head.returncode != 0:
            raise WorkspaceCreateError(
                "Repository has no commits to branch from.",
                exit_code=head.returncode,
                stderr=head.stderr.strip(),
            )
        base_commit = head.stdout.strip()
        head_commit = base_commit
        if branch_exists:
            head_commit = self._run_git(["rev-parse", branch]).stdout.strip()
            base_commit = self._run_git(["merge-base", branch, "HEAD"]).stdout.strip()

        path.parent.mkdir(parents=True, exist_ok=True)
        self._run_git(["worktree", "prune"])
        if branch_exists:
            args = ["worktree", "add", str(path), branch]
        else:
            args = ["worktree", "add", "-b", branch, str(path), base_commit]
        proc = self._run_git(args, check=False)
        if proc.returncode != 0:
            stderr = proc.stderr.strip() or proc.stdout.strip()
            raise WorkspaceCreateError(
                f"Failed to create workspace for {feature}/{task}: {stderr}",
                command=["git", *args],
                exit_code=proc.returncode,
                stderr=stderr,
            )
        logger.info("Created workspace %s on branch %s", path, branch)
        return WorkspaceInfo(
            feature=feature,
            task=task,
            path=path,
            branch=branch,
            base_commit=base_commit,
            head_commit=head_commit,
        )

    def get(self, feature: str, task: str) -> WorkspaceInfo | None:
        path = self.layout.worktree_path(feature, task)
        if not self._linkage_intact(path):
            return None
        toplevel = self._run_git(["rev-parse", "--show-toplevel"], cwd=path, check=False)
        if toplevel.returncode != 0 or Path(toplevel.stdout.strip()).resolve() != path.resolve():
            return None
        head = self._run_git(["rev-parse", "HEAD"], cwd=path, check=False)
        branch = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=path, check=False)
        if head.returncode != 0 or branch.returncode != 0:
            return None
        head_commit = head.stdout.strip()
        base = self._run_git(["merge-base", head_commit, "HEAD"], check=False)
        return WorkspaceInfo(
            feature=feature,
            task=task,
            path=path,
            branch=branch.stdout.strip(),
            base_commit=base.stdout.strip() if base.returncode == 0 else None,
            head_commit=head_commit,
        )

    def list(self, feature: str | None = None) -> list[WorkspaceInfo]:
        root = self.layout.worktrees_dir
        if feature is not None:
            feature_dirs = [self.layout.feature_worktrees_dir(feature)]
        elif root.exists():
            feature_dirs = sorted(entry for entry in root.iterdir() if entry.is_dir())
        else:
            feature_dirs = []

        workspaces: list[WorkspaceInfo] = []
        for feature_dir in feature_dirs:
            if not feature_dir.is_dir():
                continue
            for task_dir in sorted(entry for entry in feature_dir.iterdir() if entry.is_dir()):
                info = self.get(feature_dir.name, task_dir.name)
                if info is not None:
                    workspaces.append(info)
        return workspaces

    @staticmethod
    def _count_lines(path: Path) -> int:
        try:
            content = path.read_bytes()
        except OSError:
            return 0
        if not content or b"\0" in content:
            return 0
        return content.count(b"\n") + (0 if content.endswith(b"\n") else 1)

    def get_diff(
        self, feature: str, task: str, base_commit: str | None = None
    ) -> DiffSummary:
        info = self.get(feature, task)
        if info is None:
            return DiffSummary()
        base = base_commit or info.base_commit or "HEAD"
        try:
            numstat = self._run_git(["diff", "--numstat", base], cwd=info.path).stdout
            untracked = self._run_git(
                ["ls-files", "--others", "--exclude-standard"], cwd=info.path
            ).stdout
        except GitCommandError as exc:
            logger.warning("Could not diff workspace %s/%s: %s", feature, task, exc)
            return DiffSummary()

        summary = DiffSummary()
        for line in numstat.splitlines():
            added, _, rest = line.partition("\t")
            removed, _, file_path = rest.partition("\t")
            if not file_path:
                continue
            summary.files_changed.append(file_path)
            summary.insertions += int(added) if added.isdigit() else 0
            summary.deletions += int(removed) if removed.isdigit() else 0
        for file_path in (line.strip() for line in untracked.splitlines()):
            if file_path and file_path not in summary.files_changed:
                summary.files_changed.append(file_path)
                summary.insertions += self._count_lines(info.path / file_path)
        summary.has_diff = bool(summary.files_changed)
        return summary

    def has_uncommitted_changes(self, feature: str, task: str) -> bool:
        info = self.get(feature, task)
        if info is None:
            return False
        proc = self._run_git(["status", "--porcelain"], cwd=info.path, check=False)
        return proc.returncode == 0 and bool(proc.stdout.strip())

    def commit_changes(
        self, feature: str, task: str, message: str | None = None
    ) -> CommitResult:
        info = self.get(feature, task)
        if info is None:
            return CommitResult(committed=False, message=WORKSPACE_NOT_FOUND_MESSAGE)

        self._run_git(["add", "-A"], cwd=info.path)
        if not self._run_git(["status", "--porcelain"], cwd=info.path).stdout.strip():
            return CommitResult(committed=False, message=NO_CHANGES_MESSAGE)

        commit_message = message or f"{self.branch_prefix}({task}): task changes"
        self._run_git(["commit", "-m", commit_message], cwd=info.path)
        sha = self._head(cwd=info.path)
        logger.info("Committed %s on %s", sha[:10], info.branch)
        return CommitResult(committed=True, message=commit_message, sha=sha)

    def _conflicted_files(self) -> list[str]:
        proc = self._run_git(["diff", "--name-only", "--diff-filter=U"], check=False)
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def _restore(self, head_before: str, abort_args: list[str]) -> None:
        self._run_git(abort_args, check=False)
        if self._head() != head_before or self._conflicted_files():
            self._run_git(["reset", "--merge", head_before])

    def _integration_failure(
        self,
        proc: subprocess.CompletedProcess[str],
        strategy: MergeStrategy,
        head_before: str,
        abort_args: list[str],
        command: list[str],
    ) -> MergeResult:
        conflicts = self._conflicted_files()
        self._restore(head_before, abort_args)
        if conflicts:
            logger.warning("Integration conflict (%s): %s", strategy, ", ".join(conflicts))
            return MergeResult(
                success=False,
                strategy=strategy,
                conflicts=conflicts,
                error="Merge conflict",
            )
        stderr = proc.stderr.strip() or proc.stdout.strip()
        raise GitCommandError(
            f"git {command[0]} failed: {stderr}",
            command=["git", *command],
            exit_code=proc.returncode,
            stderr=stderr,
        )

    def merge(
        self, feature: str, task: str, strategy: MergeStrategy = MergeStrategy.MERGE
    ) -> MergeResult:
        strategy = MergeStrategy(strategy)
        branch = self.branch_for(feature, task)
        if not self._branch_exists(branch):
            return MergeResult(
                success=False, strategy=strategy, error=f"Branch '{branch}' not found"
            )

        head_before = self._head()
        if strategy == MergeStrategy.MERGE:
            command = ["merge", "--no-ff", "-m", f"{self.branch_prefix}: merge {branch}", branch]
            proc = self._run_git(command, check=False)
            if proc.returncode != 0:
                return self._integration_failure(
                    proc, strategy, head_before, ["merge", "--abort"], command
                )
        elif strategy == MergeStrategy.SQUASH:
            command = ["merge", "--squash", branch]
            proc = self._run_git(command, check=False)
            if proc.returncode != 0:
                return self._integration_failure(
                    proc, strategy, head_before, ["reset", "--merge", head_before], command
                )
            staged = self._run_git(["diff", "--cached", "--quiet"], check=False)
            if staged.returncode != 0:
                self._run_git(["commit", "-m", f"{self.branch_prefix}: squash {branch}"])
        else:
            commits = self._run_git(
                ["rev-list", "--reverse", "--no-merges", f"HEAD..{branch}"]
            ).stdout.split()
            if commits:
                command = ["cherry-pick", *commits]
                proc = self._run_git(command, check=False)
                if proc.returncode != 0:
                    return self._integration_failure(
                        proc, strategy, head_before, ["cherry-pick", "--abort"], command
                    )

        sha = self._head()
        files_changed = [
            line.strip()
            for line in self._run_git(
                ["diff", "--name-only", head_before, sha]
            ).stdout.splitlines()
            if line.strip()
        ]
        logger.info("Integrated %s with %s strategy at %s", branch, strategy, sha[:10])
        return MergeResult(
            success=True,
            strategy=strategy,
            sha=sha,
            files_changed=files_changed,
        )

    def remove(self, feature: str, task: str, delete_branch: bool = False) -> None:
        path = self.layout.worktree_path(feature, task)
        if path.exists():
            proc = self._run_git(["worktree", "remove", "--force", str(path)], check=False)
            if proc.returncode != 0:
                logger.warning(
                    "git worktree remove failed for %s, deleting directory: %s",
                    path,
                    proc.stderr.strip(),
                )
                shutil.rmtree(path)
            logger.info("Removed workspace %s", path)
        self._run_git(["worktree", "prune"])

        branch = self.branch_for(feature, task)
        if delete_branch and self._branch_exists(branch):
            self._run_git(["branch", "-D", branch])
            logger.info("Deleted branch %s", branch)

    def cleanup(self, feature: str) -> CleanupResult:
        result = CleanupResult()
        feature_dir = self.layout.feature_worktrees_dir(feature)
        task_dirs: list[Path] = []
        if feature_dir.is_dir():
            task_dirs = sorted(entry for entry in feature_dir.iterdir() if entry.is_dir())
        for task_dir in task_dirs:
            if self._linkage_intact(task_dir):
                continue
            shutil.rmtree(task_dir)
            result.removed.append(str(task_dir))
            logger.info("Removed orphaned workspace %s", task_dir)
        self._run_git(["worktree", "prune"])
        return result

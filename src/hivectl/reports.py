from __future__ import annotations

from hivectl.models import DiffSummary, Outcome, Task, utcnow_iso

STATUS_LABELS = {
    Outcome.DONE: "success",
    Outcome.FAILED: "failed",
    Outcome.PARTIAL: "partial",
    Outcome.BLOCKED: "blocked",
}


def render_task_report(
    task: Task,
    outcome: Outcome,
    summary: str,
    diff: DiffSummary,
    commit_sha: str | None = None,
) -> str:
    lines = [
        f"# Task Report: {task.key}",
        "",
        f"**Feature:** {task.feature}",
        f"**Completed:** {utcnow_iso()}",
        f"**Status:** {STATUS_LABELS[Outcome(outcome)]}",
        f"**Attempt:** {task.attempt}",
    ]
    if commit_sha:
        lines.append(f"**Commit:** {commit_sha}")
    lines.extend(["", "---", "", "## Summary", "", summary.strip() or "_No summary provided_", ""])

    lines.extend(["## Changes", ""])
    if diff.has_diff:
        lines.extend(
            [
                f"- **Files changed:** {len(diff.files_changed)}",
                f"- **Insertions:** +{diff.insertions}",
                f"- **Deletions:** -{diff.deletions}",
                "",
                "### Files Modified",
                "",
            ]
        )
        lines.extend(f"- `{path}`" for path in diff.files_changed)
    else:
        lines.append("_No file changes detected_")
    return "\n".join(lines) + "\n"

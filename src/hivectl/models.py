from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

SCHEMA_VERSION = 1
TASK_KEY_PATTERN = re.compile(r"^(\d+)-([a-z0-9][a-z0-9-]*)$")


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class FeatureStatus(StrEnum):
    PLANNING = "planning"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


class TaskOrigin(StrEnum):
    PLAN = "plan"
    MANUAL = "manual"


class Outcome(StrEnum):
    DONE = "done"
    BLOCKED = "blocked"
    FAILED = "failed"
    PARTIAL = "partial"


class MergeStrategy(StrEnum):
    MERGE = "merge"
    SQUASH = "squash"
    REBASE = "rebase"


def slugify(name: str) -> str:
    slug = re.sub(r"\s+", "-", name.strip().lower())
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    return re.sub(r"-{2,}", "-", slug).strip("-")


def task_key(order: int, name: str) -> str:
    return f"{order:02d}-{slugify(name)}"


def task_order(key: str) -> int:
    prefix, _, _ = key.partition("-")
    try:
        return int(prefix)
    except ValueError:
        return 0


@dataclass(slots=True)
class Feature:
    name: str
    status: FeatureStatus = FeatureStatus.PLANNING
    ticket: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    approved_at: str | None = None
    completed_at: str | None = None
    verification_evidence: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": str(self.status),
            "ticket": self.ticket,
            "created_at": self.created_at,
            "approved_at": self.approved_at,
            "completed_at": self.completed_at,
            "verification_evidence": self.verification_evidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Feature:
        return cls(
            name=str(data["name"]),
            status=FeatureStatus(data.get("status", FeatureStatus.PLANNING)),
            ticket=data.get("ticket"),
            created_at=data.get("created_at") or utcnow_iso(),
            approved_at=data.get("approved_at"),
            completed_at=data.get("completed_at"),
            verification_evidence=data.get("verification_evidence"),
        )


@dataclass(slots=True)
class Blocker:
    reason: str
    options: list[str] = field(default_factory=list)
    recommendation: str | None = None
    context: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "options": list(self.options),
            "recommendation": self.recommendation,
            "context": self.context,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Blocker:
        return cls(
            reason=str(data.get("reason", "")),
            options=[str(option) for option in data.get("options") or []],
            recommendation=data.get("recommendation"),
            context=data.get("context"),
        )


@dataclass(slots=True)
class WorkerSession:
    session_id: str
    attempt: int = 1
    idempotency_key: str = ""
    agent: str | None = None
    started_at: str = field(default_factory=utcnow_iso)
    last_heartbeat_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "attempt": self.attempt,
            "idempotency_key": self.idempotency_key,
            "agent": self.agent,
            "started_at": self.started_at,
            "last_heartbeat_at": self.last_heartbeat_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkerSession:
        return cls(
            session_id=str(data.get("session_id", "")),
            attempt=int(data.get("attempt") or 0),
            idempotency_key=str(data.get("idempotency_key") or ""),
            agent=data.get("agent"),
            started_at=data.get("started_at") or utcnow_iso(),
            last_heartbeat_at=data.get("last_heartbeat_at"),
        )


@dataclass(slots=True)
class Task:
    feature: str
    key: str
    status: TaskStatus = TaskStatus.PENDING
    origin: TaskOrigin = TaskOrigin.MANUAL
    depends_on: list[str] | None = None
    plan_title: str | None = None
    summary: str | None = None
    blocker: Blocker | None = None
    worker_session: WorkerSession | None = None
    base_commit: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    integrated_at: str | None = None
    integrated_sha: str | None = None

    @property
    def order(self) -> int:
        return task_order(self.key)

    @property
    def name(self) -> str:
        _, _, name = self.key.partition("-")
        return name or self.key

    @property
    def attempt(self) -> int:
        return self.worker_session.attempt if self.worker_session else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "status": str(self.status),
            "origin": str(self.origin),
            "depends_on": list(self.depends_on) if self.depends_on is not None else None,
            "plan_title": self.plan_title,
            "summary": self.summary,
            "blocker": self.blocker.to_dict() if self.blocker else None,
            "worker_session": self.worker_session.to_dict() if self.worker_session else None,
            "base_commit": self.base_commit,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "integrated_at": self.integrated_at,
            "integrated_sha": self.integrated_sha,
        }

    @classmethod
    def from_dict(cls, feature: str, key: str, data: dict[str, Any]) -> Task:
        depends_on = data.get("depends_on")
        blocker = data.get("blocker")
        session = data.get("worker_session")
        return cls(
            feature=feature,
            key=key,
            status=TaskStatus(data.get("status", TaskStatus.PENDING)),
            origin=TaskOrigin(data.get("origin", TaskOrigin.MANUAL)),
            depends_on=[str(dep) for dep in depends_on] if isinstance(depends_on, list) else None,
            plan_title=data.get("plan_title"),
            summary=data.get("summary"),
            blocker=Blocker.from_dict(blocker) if isinstance(blocker, dict) else None,
            worker_session=WorkerSession.from_dict(session) if isinstance(session, dict) else None,
            base_commit=data.get("base_commit"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            integrated_at=data.get("integrated_at"),
            integrated_sha=data.get("integrated_sha"),
        )

    def describe(self) -> dict[str, Any]:
        payload = self.to_dict()
        payload.pop("schema_version")
        return {"key": self.key, "feature": self.feature, "order": self.order, **payload}


@dataclass(slots=True)
class PlanTask:
    """Task entry supplied by the plan service during synchronization."""

    key: str
    order: int | None = None
    depends_on: list[str] | None = None
    title: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanTask:
        key = str(data["key"])
        order = data.get("order")
        if order is None and TASK_KEY_PATTERN.match(key):
            order = task_order(key)
        depends_on = data.get("depends_on")
        return cls(
            key=key,
            order=int(order) if order is not None else None,
            depends_on=[str(dep) for dep in depends_on] if isinstance(depends_on, list) else None,
            title=data.get("title"),
        )


@dataclass(slots=True)
class WorkspaceInfo:
    feature: str
    task: str
    path: Path
    branch: str
    base_commit: str | None = None
    head_commit: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature": self.feature,
            "task": self.task,
            "path": str(self.path),
            "branch": self.branch,
            "base_commit": self.base_commit,
            "head_commit": self.head_commit,
        }


@dataclass(slots=True)
class DiffSummary:
    has_diff: bool = False
    files_changed: list[str] = field(default_factory=list)
    insertions: int = 0
    deletions: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_diff": self.has_diff,
            "files_changed": list(self.files_changed),
            "insertions": self.insertions,
            "deletions": self.deletions,
        }


@dataclass(slots=True)
class CommitResult:
    committed: bool
    message: str
    sha: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"committed": self.committed, "sha": self.sha, "message": self.message}


@dataclass(slots=True)
class MergeResult:
    success: bool
    strategy: MergeStrategy = MergeStrategy.MERGE
    sha: str | None = None
    files_changed: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "strategy": str(self.strategy),
            "sha": self.sha,
            "files_changed": list(self.files_changed),
            "conflicts": list(self.conflicts),
            "error": self.error,
        }


@dataclass(slots=True)
class CleanupResult:
    removed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"removed": list(self.removed)}


@dataclass(slots=True)
class SyncResult:
    created: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)
    manual: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": list(self.created),
            "removed": list(self.removed),
            "kept": list(self.kept),
            "manual": list(self.manual),
        }

from __future__ import annotations

import logging

from hivectl.errors import (
    FeatureHeldError,
    FeatureImmutableError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from hivectl.models import Feature, FeatureStatus, TaskStatus, slugify, utcnow_iso
from hivectl.state.base import FeatureStore, TaskStore

logger = logging.getLogger(__name__)

MIN_EVIDENCE_LENGTH = 20


class FeatureGate:
    """Feature lifecycle: planning -> approved -> executing -> completed.

    Task operations are only authorized while a feature is executing, and a
    completed feature is frozen. A human can additionally put a feature on hold,
    which pauses new work without changing its status.
    """

    def __init__(self, features: FeatureStore, tasks: TaskStore) -> None:
        self.features = features
        self.tasks = tasks

    def create(self, name: str, ticket: str | None = None) -> Feature:
        if not name or slugify(name) != name:
            raise ValidationError(
                f"Invalid feature name '{name}'. Use lowercase letters, digits and dashes."
            )
        if self.features.get(name) is not None:
            raise ValidationError(f"Feature '{name}' already exists.")
        feature = self.features.save(Feature(name=name, ticket=ticket))
        logger.info("Created feature %s", name)
        return feature

    def get(self, name: str) -> Feature:
        feature = self.features.get(name)
        if feature is None:
            raise NotFoundError(f"Feature '{name}' not found.", kind="feature", key=name)
        return feature

    def list(self) -> list[Feature]:
        return [self.get(name) for name in self.features.list()]

    def assert_mutable(self, name: str) -> Feature:
        feature = self.get(name)
        if feature.status == FeatureStatus.COMPLETED:
            raise FeatureImmutableError(
                f"Feature '{name}' is completed and can no longer be changed."
            )
        return feature

    def assert_executing(self, name: str) -> Feature:
        feature = self.assert_mutable(name)
        if feature.status != FeatureStatus.EXECUTING:
            raise InvalidStateError(
                f"Feature '{name}' is {feature.status}; task operations need 'executing'.",
                current=str(feature.status),
                allowed=(str(FeatureStatus.EXECUTING),),
            )
        return feature

    def check_not_held(self, name: str) -> None:
        reason = self.features.hold_reason(name)
        if reason is not None:
            raise FeatureHeldError(f"Feature '{name}' is on hold: {reason}", reason=reason)

    def _transition(
        self, name: str, expected: FeatureStatus, target: FeatureStatus
    ) -> Feature:
        feature = self.assert_mutable(name)
        if feature.status != expected:
            raise InvalidStateError(
                f"Feature '{name}' is {feature.status}; expected '{expected}'.",
                current=str(feature.status),
                allowed=(str(expected),),
            )
        feature.status = target
        logger.info("Feature %s: %s -> %s", name, expected, target)
        return feature

    def approve(self, name: str) -> Feature:
        feature = self._transition(name, FeatureStatus.PLANNING, FeatureStatus.APPROVED)
        feature.approved_at = utcnow_iso()
        return self.features.save(feature)

    def begin_execution(self, name: str) -> Feature:
        feature = self.assert_mutable(name)
        if feature.status == FeatureStatus.EXECUTING:
            return feature
        feature = self._transition(name, FeatureStatus.APPROVED, FeatureStatus.EXECUTING)
        return self.features.save(feature)

    def complete(self, name: str, evidence: str) -> Feature:
        evidence = (evidence or "").strip()
        if len(evidence) < MIN_EVIDENCE_LENGTH:
            raise ValidationError(
                f"Verification evidence must be at least {MIN_EVIDENCE_LENGTH} characters."
            )
        self.assert_executing(name)
        running = [
            task.key for task in self.tasks.list(name) if task.status == TaskStatus.IN_PROGRESS
        ]
        if running:
            raise InvalidStateError(
                f"Feature '{name}' still has tasks in progress: {', '.join(running)}",
                current=str(FeatureStatus.EXECUTING),
            )
        feature = self._transition(name, FeatureStatus.EXECUTING, FeatureStatus.COMPLETED)
        feature.completed_at = utcnow_iso()
        feature.verification_evidence = evidence
        return self.features.save(feature)

    def hold(self, name: str, reason: str) -> Feature:
        if not reason or not reason.strip():
            raise ValidationError("A hold needs a reason.")
        feature = self.assert_mutable(name)
        self.features.set_hold(name, reason)
        logger.warning("Feature %s put on hold: %s", name, reason.strip())
        return feature

    def release(self, name: str) -> Feature:
        feature = self.assert_mutable(name)
        self.features.set_hold(name, None)
        logger.info("Feature %s released from hold", name)
        return feature

"""Domain models for the deploy task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    DEPLOYING = "deploying"
    DEPLOY_FAILED = "deploy_failed"
    DEPLOYED = "deployed"
    DONE = "done"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: str) -> TaskStatus:
        """Resolve a status name, accepting the ``canceled`` spelling."""

        normalized = value.strip().lower()
        if normalized == "canceled":
            return cls.CANCELLED
        return cls(normalized)


ACTIVE_STATUSES = frozenset({TaskStatus.DEPLOYING, TaskStatus.DEPLOYED})


@dataclass(slots=True)
class DeployTaskView:
    """Readable task row for API, CLI and dispatcher logic."""

    id: int
    branch: str
    status: TaskStatus
    score: int | None
    created_at: datetime
    updated_at: datetime

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "branch": self.branch,
            "status": self.status.value,
            "score": self.score,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class DeployTaskUpdate:
    """Partial update payload; at least one field must be set."""

    status: TaskStatus | None = None
    score: int | None = None

    @property
    def is_empty(self) -> bool:
        return self.status is None and self.score is None


@dataclass(slots=True)
class DeployTaskDetails:
    """Task row joined with its captured and uploaded logs."""

    task: DeployTaskView
    logs: dict[str, str | None] = field(default_factory=dict)

    def to_payload(self) -> dict[str, object]:
        payload = self.task.to_payload()
        payload["logs"] = dict(self.logs)
        return payload

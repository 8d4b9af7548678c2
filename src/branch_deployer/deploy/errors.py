"""Error taxonomy shared by the store, dispatcher and outer surfaces."""

from __future__ import annotations


class DeployError(RuntimeError):
    """Base class for deploy dispatcher errors."""


class ValidationError(DeployError):
    """A request field is missing or malformed; task state is unaffected."""


class TaskNotFoundError(DeployError):
    """The referenced task does not exist."""

    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class PipelineFailure(DeployError):
    """A deploy pipeline stage exited non-zero or could not be started."""

    def __init__(self, message: str, *, stage: str, exit_code: int | None) -> None:
        super().__init__(message)
        self.stage = stage
        self.exit_code = exit_code


class StoreFailure(DeployError):
    """The task store is unreachable or failed mid-operation."""

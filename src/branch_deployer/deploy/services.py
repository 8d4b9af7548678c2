"""Use-case services for the deploy task API."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import BinaryIO

from branch_deployer.deploy.errors import ValidationError
from branch_deployer.deploy.logsink import PROCESS_LOGS, TaskLogSink, validate_log_name
from branch_deployer.deploy.models import (
    DeployTaskDetails,
    DeployTaskUpdate,
    DeployTaskView,
    TaskStatus,
)
from branch_deployer.deploy.pipeline import DeployPipeline
from branch_deployer.deploy.repository import DeployTaskRepository
from branch_deployer.deploy.wake import WakeSignal

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class UploadedFile:
    """One operator-supplied file to store in a task's log directory."""

    name: str
    stream: BinaryIO


class DeployTaskService:
    """Coordinates task store mutations, log reads and dispatcher wake-ups."""

    def __init__(
        self,
        *,
        repository: DeployTaskRepository,
        log_sink: TaskLogSink,
        wake_signal: WakeSignal,
        pipeline: DeployPipeline | None = None,
    ) -> None:
        self.repository = repository
        self.log_sink = log_sink
        self.wake_signal = wake_signal
        self.pipeline = pipeline

    def create_task(self, branch: str | None) -> DeployTaskView:
        task = self.repository.create_task(branch)
        logger.info("Task %s enqueued for branch %s", task.id, task.branch)
        self.wake_signal.notify()
        return task

    def list_tasks(self) -> list[DeployTaskView]:
        return self.repository.list_tasks()

    def get_task_details(self, task_id: int) -> DeployTaskDetails:
        task = self.repository.get_task(task_id)
        return DeployTaskDetails(task=task, logs=self.log_sink.read_all(task.id))

    def get_running_task(self) -> DeployTaskDetails | None:
        task = self.repository.find_active()
        if task is None:
            return None
        return DeployTaskDetails(task=task, logs=self.log_sink.read_all(task.id))

    def update_task(
        self,
        task_id: int,
        *,
        status: str | None = None,
        score: int | None = None,
    ) -> None:
        """Apply a partial update; unknown status names are rejected."""

        update = DeployTaskUpdate(status=_parse_status(status), score=score)
        self.repository.update_task(task_id, update)
        logger.info(
            "Task %s updated (status=%s score=%s)",
            task_id,
            update.status.value if update.status is not None else "-",
            update.score if update.score is not None else "-",
        )
        self.wake_signal.notify()

    def upload_files(self, task_id: int, files: Iterable[UploadedFile]) -> list[str]:
        """Store uploaded files under their own names in the task directory."""

        task = self.repository.get_task(task_id)
        pending = list(files)
        for item in pending:
            validate_log_name(item.name)
            if item.name in PROCESS_LOGS:
                raise ValidationError(f"{item.name!r} is reserved for captured process output")

        stored: list[str] = []
        for item in pending:
            self.log_sink.store(task.id, item.name, item.stream)
            stored.append(item.name)
        logger.info("Task %s: stored %d uploaded file(s)", task.id, len(stored))
        return stored

    def initialize(self, *, reset_working_copy: bool = True) -> None:
        """(Re)initialize the schema and, optionally, the deployment working copy.

        The working copy is not reset while a pipeline may be using it.
        A ``deployed`` task does not block the reset.
        """

        self.repository.init_schema()
        if reset_working_copy:
            if self.pipeline is None:
                raise RuntimeError("Working copy reset requires a deploy pipeline.")
            active = self.repository.find_active()
            if active is not None and active.status == TaskStatus.DEPLOYING:
                raise ValidationError(
                    f"task {active.id} is deploying; "
                    "the working copy can not be reset until it finishes",
                )
            self.pipeline.reset_working_copy()
        self.wake_signal.notify()


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus.parse(value)
    except ValueError as error:
        allowed = ", ".join(status.value for status in TaskStatus)
        raise ValidationError(f"Unknown status {value!r}; expected one of: {allowed}") from error

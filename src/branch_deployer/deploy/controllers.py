"""Controllers for deploy CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from branch_deployer.config import Settings
from branch_deployer.deploy.models import DeployTaskDetails, DeployTaskView
from branch_deployer.deploy.runtime import DeployRuntime, build_runtime


@dataclass(slots=True)
class InitCommand:
    """CLI input for schema and working-copy initialization."""

    db_path: Path | None
    reset_working_copy: bool = True


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for a foreground dispatcher run."""

    db_path: Path | None
    once: bool


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for task creation."""

    db_path: Path | None
    branch: str


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    output_format: str = "table"


@dataclass(slots=True)
class InspectTaskCommand:
    """CLI input for task inspection; ``task_id`` None means the active task."""

    db_path: Path | None
    task_id: int | None
    output_format: str = "table"


@dataclass(slots=True)
class UpdateTaskCommand:
    """CLI input for partial task update."""

    db_path: Path | None
    task_id: int
    status: str | None
    score: int | None


class DeployCliController:
    """Coordinates store, dispatcher and inspection CLI operations."""

    def init(self, command: InitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.reset_working_copy:
            settings.validate_for_init()
        with _runtime(settings) as runtime:
            runtime.service.initialize(reset_working_copy=command.reset_working_copy)
        lines = [f"Schema ready: {settings.db_path}"]
        if command.reset_working_copy:
            lines.append(f"Working copy cloned: {settings.deploy.repo_dir}")
        return lines

    def worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_dispatcher()
        with _runtime(settings) as runtime:
            runtime.repository.init_schema()
            if command.once:
                outcome = runtime.dispatcher.run_once()
                return [f"Dispatcher iteration: outcome={outcome.value}"]
            with runtime.dispatcher.signal_handlers():
                summary = runtime.dispatcher.run_forever()
        return [
            "Dispatcher stopped: "
            f"processed={summary.processed} deployed={summary.deployed} "
            f"failed={summary.failed} superseded={summary.superseded} "
            f"recovered={summary.recovered}",
        ]

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            runtime.repository.init_schema()
            task = runtime.service.create_task(command.branch)
        return [f"Task enqueued: id={task.id} branch={task.branch} status={task.status.value}"]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            runtime.repository.init_schema()
            tasks = runtime.service.list_tasks()
        if command.output_format == "json":
            return [json.dumps([task.to_payload() for task in tasks], ensure_ascii=False)]
        if not tasks:
            return ["No tasks."]
        return [_task_line(task) for task in tasks]

    def inspect(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            runtime.repository.init_schema()
            if command.task_id is None:
                details = runtime.service.get_running_task()
                if details is None:
                    return ["No running task."]
            else:
                details = runtime.service.get_task_details(command.task_id)
        if command.output_format == "json":
            return [json.dumps(details.to_payload(), ensure_ascii=False, indent=2)]
        return _details_lines(details)

    def update(self, command: UpdateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            runtime.repository.init_schema()
            runtime.service.update_task(
                command.task_id,
                status=command.status,
                score=command.score,
            )
            task = runtime.repository.get_task(command.task_id)
        return [f"Task updated: {_task_line(task)}"]


@contextmanager
def _runtime(settings: Settings) -> Iterator[DeployRuntime]:
    runtime = build_runtime(settings)
    try:
        yield runtime
    finally:
        runtime.close()


def _task_line(task: DeployTaskView) -> str:
    score = task.score if task.score is not None else "-"
    return (
        f"id={task.id} branch={task.branch} status={task.status.value} "
        f"score={score} updated_at={task.updated_at.isoformat()}"
    )


def _details_lines(details: DeployTaskDetails) -> list[str]:
    task = details.task
    lines = [
        _task_line(task),
        f"created_at={task.created_at.isoformat()}",
    ]
    for name, content in details.logs.items():
        if content is None:
            lines.append(f"--- {name}: (absent)")
            continue
        lines.append(f"--- {name}:")
        lines.append(content.rstrip("\n"))
    return lines

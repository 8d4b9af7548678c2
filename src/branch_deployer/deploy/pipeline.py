"""Subprocess-based deploy pipeline: fetch, checkout, run the deploy command."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO

from branch_deployer.deploy.errors import PipelineFailure
from branch_deployer.deploy.logsink import STDERR_LOG, STDOUT_LOG, TaskLogSink
from branch_deployer.deploy.models import DeployTaskView

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    """Ordered pipeline stages; every required stage fails the task on non-zero exit."""

    CLONE = "clone"
    FETCH = "fetch"
    CHECKOUT = "checkout"
    DEPLOY = "deploy"


@dataclass(slots=True)
class StageCommand:
    """One stage of the pipeline bound to its argv."""

    stage: PipelineStage
    args: list[str]
    required: bool = True


@dataclass(slots=True)
class StageResult:
    """Exit status of one stage; ``exit_code`` is None if it never started."""

    stage: PipelineStage
    exit_code: int | None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class DeployPipeline:
    """Runs the deploy stages for one task inside the shared working copy."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repo_dir: Path,
        deploy_command: str,
        log_sink: TaskLogSink,
        app_repository: str = "",
        shell: str = "bash",
        git_executable: str = "git",
    ) -> None:
        self.repo_dir = repo_dir
        self.deploy_command = deploy_command
        self.log_sink = log_sink
        self.app_repository = app_repository
        self.shell = shell
        self.git_executable = git_executable

    def stages_for(self, branch: str) -> list[StageCommand]:
        return [
            StageCommand(
                stage=PipelineStage.FETCH,
                args=[self.git_executable, "fetch"],
                required=False,
            ),
            StageCommand(
                stage=PipelineStage.CHECKOUT,
                args=[self.git_executable, "checkout", f"origin/{branch}"],
            ),
            StageCommand(
                stage=PipelineStage.DEPLOY,
                args=[self.shell, "-c", self.deploy_command],
            ),
        ]

    def run(self, task: DeployTaskView) -> list[StageResult]:
        """Execute every stage, streaming output into the task's log files.

        Raises PipelineFailure on the first required stage that does not
        exit with 0.
        """

        if not self.deploy_command.strip():
            raise PipelineFailure(
                "Deploy command is empty.",
                stage=PipelineStage.DEPLOY.value,
                exit_code=None,
            )

        env = os.environ.copy()
        env["BRANCH_DEPLOYER_TASK_ID"] = str(task.id)
        env["BRANCH_DEPLOYER_BRANCH"] = task.branch

        results: list[StageResult] = []
        with (
            self.log_sink.open_for_write(task.id, STDOUT_LOG) as stdout_handle,
            self.log_sink.open_for_write(task.id, STDERR_LOG) as stderr_handle,
        ):
            for command in self.stages_for(task.branch):
                result = self._run_stage(
                    command=command,
                    env=env,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                )
                results.append(result)
                if result.ok:
                    continue
                if not command.required:
                    logger.warning(
                        "Task %s: %s exited with %s, continuing",
                        task.id,
                        command.stage.value,
                        result.exit_code,
                    )
                    continue
                raise PipelineFailure(
                    f"{command.stage.value} failed with exit code {result.exit_code}",
                    stage=command.stage.value,
                    exit_code=result.exit_code,
                )
        return results

    def reset_working_copy(self) -> None:
        """Delete the working copy and clone the application repository again."""

        if not self.app_repository:
            raise PipelineFailure(
                "Application repository is not configured.",
                stage=PipelineStage.CLONE.value,
                exit_code=None,
            )
        shutil.rmtree(self.repo_dir, ignore_errors=True)
        self.repo_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            completed = subprocess.run(  # noqa: S603
                [self.git_executable, "clone", self.app_repository, str(self.repo_dir)],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as error:
            raise PipelineFailure(
                f"git clone failed to start: {error}",
                stage=PipelineStage.CLONE.value,
                exit_code=None,
            ) from error
        if completed.returncode != 0:
            raise PipelineFailure(
                f"git clone exited with code {completed.returncode}: {completed.stderr.strip()}",
                stage=PipelineStage.CLONE.value,
                exit_code=completed.returncode,
            )
        logger.info("Working copy recreated at %s", self.repo_dir)

    def _run_stage(
        self,
        *,
        command: StageCommand,
        env: dict[str, str],
        stdout_handle: BinaryIO,
        stderr_handle: BinaryIO,
    ) -> StageResult:
        stdout_handle.write(f"==> {command.stage.value}: {_display(command)}\n".encode())
        stdout_handle.flush()
        stderr_handle.flush()
        try:
            process = subprocess.Popen(  # noqa: S603
                command.args,
                cwd=self.repo_dir,
                env=env,
                stdout=stdout_handle,
                stderr=stderr_handle,
            )
        except (OSError, ValueError) as error:
            # ValueError: arguments or environment the OS can not pass (NUL bytes).
            stderr_handle.write(f"{command.stage.value}: failed to start: {error}\n".encode())
            stderr_handle.flush()
            return StageResult(stage=command.stage, exit_code=None)
        return StageResult(stage=command.stage, exit_code=process.wait())


def _display(command: StageCommand) -> str:
    if command.stage == PipelineStage.DEPLOY:
        return command.args[-1]
    return " ".join(command.args)

"""Wiring of store, log sink, wake signal, pipeline, service and dispatcher."""

from __future__ import annotations

from dataclasses import dataclass

from branch_deployer.config import Settings
from branch_deployer.deploy.dispatcher import DeployDispatcher
from branch_deployer.deploy.logsink import TaskLogSink
from branch_deployer.deploy.pipeline import DeployPipeline
from branch_deployer.deploy.repository import DeployTaskRepository
from branch_deployer.deploy.services import DeployTaskService
from branch_deployer.deploy.wake import WakeSignal


@dataclass(slots=True)
class DeployRuntime:
    """Process-wide components sharing one wake signal."""

    settings: Settings
    repository: DeployTaskRepository
    log_sink: TaskLogSink
    wake_signal: WakeSignal
    pipeline: DeployPipeline
    service: DeployTaskService
    dispatcher: DeployDispatcher

    def close(self) -> None:
        self.dispatcher.stop(timeout=5)
        self.repository.close()


def build_runtime(settings: Settings) -> DeployRuntime:
    repository = DeployTaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.dispatcher.sqlite_busy_timeout_ms,
    )
    log_sink = TaskLogSink(settings.deploy.logs_root.resolve())
    wake_signal = WakeSignal()
    pipeline = DeployPipeline(
        repo_dir=settings.deploy.repo_dir.resolve(),
        deploy_command=settings.deploy.deploy_command,
        log_sink=log_sink,
        app_repository=settings.deploy.app_repository,
        shell=settings.deploy.shell,
    )
    service = DeployTaskService(
        repository=repository,
        log_sink=log_sink,
        wake_signal=wake_signal,
        pipeline=pipeline,
    )
    dispatcher = DeployDispatcher(
        repository=repository,
        pipeline=pipeline,
        wake_signal=wake_signal,
        wake_timeout_seconds=settings.dispatcher.wake_timeout_seconds,
        recover_interrupted=settings.dispatcher.recover_interrupted,
    )
    return DeployRuntime(
        settings=settings,
        repository=repository,
        log_sink=log_sink,
        wake_signal=wake_signal,
        pipeline=pipeline,
        service=service,
        dispatcher=dispatcher,
    )

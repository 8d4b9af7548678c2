"""Single-flight dispatcher that claims pending tasks and deploys them."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from branch_deployer.deploy.errors import PipelineFailure, StoreFailure
from branch_deployer.deploy.logsink import STDERR_LOG
from branch_deployer.deploy.models import DeployTaskView
from branch_deployer.deploy.pipeline import DeployPipeline
from branch_deployer.deploy.repository import DeployTaskRepository
from branch_deployer.deploy.wake import WakeSignal

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    """Result of one dispatcher iteration."""

    IDLE = "idle"
    DEPLOYED = "deployed"
    FAILED = "failed"
    SUPERSEDED = "superseded"


@dataclass(slots=True)
class DispatchSummary:
    """Aggregate dispatcher counters for CLI reporting."""

    processed: int = 0
    deployed: int = 0
    failed: int = 0
    superseded: int = 0
    idle_waits: int = 0
    recovered: int = 0

    def record(self, outcome: DispatchOutcome) -> None:
        if outcome == DispatchOutcome.IDLE:
            self.idle_waits += 1
            return
        self.processed += 1
        if outcome == DispatchOutcome.DEPLOYED:
            self.deployed += 1
        elif outcome == DispatchOutcome.FAILED:
            self.failed += 1
        else:
            self.superseded += 1


class DeployDispatcher:
    """Claims at most one task at a time and runs the deploy pipeline for it."""

    def __init__(
        self,
        *,
        repository: DeployTaskRepository,
        pipeline: DeployPipeline,
        wake_signal: WakeSignal,
        wake_timeout_seconds: float = 30.0,
        recover_interrupted: bool = True,
        on_fatal_error: Callable[[StoreFailure], None] | None = None,
    ) -> None:
        self.repository = repository
        self.pipeline = pipeline
        self.wake_signal = wake_signal
        self.wake_timeout_seconds = wake_timeout_seconds
        self.recover_interrupted = recover_interrupted
        self.on_fatal_error = on_fatal_error
        self.fatal_error: StoreFailure | None = None
        self._stop_requested = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> DispatchOutcome:
        """Claim and deploy at most one pending task."""

        task = self.repository.claim_next_pending()
        if task is None:
            return DispatchOutcome.IDLE

        logger.info("Claimed task %s (branch=%s)", task.id, task.branch)
        try:
            self.pipeline.run(task)
        except PipelineFailure as error:
            return self._fail(task, reason=f"{error.stage} stage failed: {error}")
        except OSError as error:
            logger.exception("Task %s: pipeline I/O error", task.id)
            return self._fail(task, reason=f"pipeline I/O error: {error}")

        if self.repository.mark_deployed(task.id):
            logger.info("Task %s deployed", task.id)
            return DispatchOutcome.DEPLOYED
        logger.info("Task %s changed status during deployment; leaving it as is", task.id)
        return DispatchOutcome.SUPERSEDED

    def run_forever(self) -> DispatchSummary:
        """Dispatch until stop is requested; a StoreFailure ends the loop."""

        summary = DispatchSummary()
        if self.recover_interrupted:
            summary.recovered = len(self.fail_interrupted())

        while not self._stop_requested.is_set():
            outcome = self.run_once()
            summary.record(outcome)
            if outcome != DispatchOutcome.IDLE:
                continue
            logger.debug("Nothing to claim; waiting up to %ss", self.wake_timeout_seconds)
            self.wake_signal.wait(timeout=self.wake_timeout_seconds)
        return summary

    def start(self) -> None:
        """Run the loop in a background daemon thread."""

        if self._thread is not None and self._thread.is_alive():
            return
        self.fatal_error = None
        self._stop_requested.clear()
        self._thread = threading.Thread(
            target=self._thread_main,
            daemon=True,
            name="deploy-dispatcher",
        )
        self._thread.start()
        logger.info("Dispatcher thread started")

    def stop(self, *, timeout: float | None = None) -> None:
        """Request the loop to stop after the current deployment finishes."""

        self.request_stop()
        if self._thread is None:
            return
        self._thread.join(timeout=timeout)
        if not self._thread.is_alive():
            self._thread = None
            logger.info("Dispatcher thread stopped")

    def request_stop(self) -> None:
        self._stop_requested.set()
        self.wake_signal.notify()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @contextmanager
    def signal_handlers(self) -> Iterator[None]:
        """Translate SIGINT/SIGTERM into a graceful stop for foreground runs."""

        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            name = signal.Signals(signum).name
            logger.info("Received %s; stopping after current deployment", name)
            self.request_stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _thread_main(self) -> None:
        try:
            self.run_forever()
        except StoreFailure as error:
            self.fatal_error = error
            logger.exception("Dispatcher stopped: task store failure")
            if self.on_fatal_error is not None:
                self.on_fatal_error(error)

    def _fail(self, task: DeployTaskView, *, reason: str) -> DispatchOutcome:
        logger.warning("Task %s failed: %s", task.id, reason)
        try:
            self.pipeline.log_sink.append_text(task.id, STDERR_LOG, f"deploy failed: {reason}\n")
        except OSError:
            logger.warning("Task %s: could not write failure note to stderr log", task.id)
        if self.repository.mark_deploy_failed(task.id):
            return DispatchOutcome.FAILED
        logger.info("Task %s changed status during deployment; leaving it as is", task.id)
        return DispatchOutcome.SUPERSEDED

    def fail_interrupted(self) -> list[int]:
        """Fail tasks a previous process left deploying and note it in their stderr."""

        task_ids = self.repository.recover_interrupted()
        for task_id in task_ids:
            logger.warning("Task %s was left deploying by a previous run; failing it", task_id)
            self.pipeline.log_sink.append_text(
                task_id,
                STDERR_LOG,
                "deploy failed: dispatcher restarted while this task was deploying\n",
            )
        return task_ids

from __future__ import annotations

import shutil
import threading
import time
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest
from conftest import GitFixture, python_command

from branch_deployer.deploy.errors import PipelineFailure
from branch_deployer.deploy.logsink import STDERR_LOG, STDOUT_LOG, TaskLogSink
from branch_deployer.deploy.models import DeployTaskView, TaskStatus
from branch_deployer.deploy.pipeline import DeployPipeline, PipelineStage

pytestmark = [
    allure.epic("Deploy Queue"),
    allure.feature("Deploy Pipeline"),
]


def _task(task_id: int = 1, branch: str = "feature-x") -> DeployTaskView:
    now = datetime.now(tz=UTC)
    return DeployTaskView(
        id=task_id,
        branch=branch,
        status=TaskStatus.DEPLOYING,
        score=None,
        created_at=now,
        updated_at=now,
    )


def _pipeline(repo_dir: Path, logs_root: Path, deploy_command: str) -> DeployPipeline:
    return DeployPipeline(
        repo_dir=repo_dir,
        deploy_command=deploy_command,
        log_sink=TaskLogSink(logs_root),
        shell="sh",
    )


def test_pipeline_checks_out_branch_and_streams_output(
    tmp_path: Path,
    git_origin: GitFixture,
) -> None:
    command = python_command(
        "import os, sys\n"
        "print(open('app.txt').read().strip())\n"
        "env = os.environ\n"
        "print('task', env['BRANCH_DEPLOYER_TASK_ID'], env['BRANCH_DEPLOYER_BRANCH'])\n"
        "print('warming up', file=sys.stderr)\n",
    )
    pipeline = _pipeline(git_origin.repo_dir, tmp_path / "file", command)

    results = pipeline.run(_task(task_id=5))

    assert [result.stage for result in results] == [
        PipelineStage.FETCH,
        PipelineStage.CHECKOUT,
        PipelineStage.DEPLOY,
    ]
    assert all(result.ok for result in results)
    stdout = (pipeline.log_sink.read(5, STDOUT_LOG) or b"").decode()
    stderr = (pipeline.log_sink.read(5, STDERR_LOG) or b"").decode()
    assert "==> fetch: git fetch" in stdout
    assert "==> checkout: git checkout origin/feature-x" in stdout
    assert "feature-x\ntask 5 feature-x\n" in stdout
    assert "warming up" in stderr


def test_checkout_failure_stops_pipeline_and_keeps_stderr(
    tmp_path: Path,
    git_origin: GitFixture,
) -> None:
    marker = tmp_path / "deploy-ran"
    pipeline = _pipeline(
        git_origin.repo_dir,
        tmp_path / "file",
        python_command(f"open({str(marker)!r}, 'w').close()"),
    )

    with pytest.raises(PipelineFailure) as excinfo:
        pipeline.run(_task(branch="does-not-exist"))

    assert excinfo.value.stage == PipelineStage.CHECKOUT.value
    assert excinfo.value.exit_code not in (None, 0)
    assert not marker.exists()
    stderr = pipeline.log_sink.read(1, STDERR_LOG)
    assert stderr
    assert b"does-not-exist" in stderr


def test_deploy_command_failure_reports_exit_code(
    tmp_path: Path,
    git_origin: GitFixture,
) -> None:
    pipeline = _pipeline(
        git_origin.repo_dir,
        tmp_path / "file",
        python_command("import sys; print('boom', file=sys.stderr); sys.exit(3)"),
    )

    with pytest.raises(PipelineFailure) as excinfo:
        pipeline.run(_task())

    assert excinfo.value.stage == PipelineStage.DEPLOY.value
    assert excinfo.value.exit_code == 3
    assert b"boom" in (pipeline.log_sink.read(1, STDERR_LOG) or b"")


def test_fetch_failure_is_ignored_when_ref_was_already_fetched(
    tmp_path: Path,
    git_origin: GitFixture,
) -> None:
    shutil.rmtree(git_origin.origin_dir)
    pipeline = _pipeline(git_origin.repo_dir, tmp_path / "file", python_command("print('ok')"))

    results = pipeline.run(_task())

    assert results[0].stage == PipelineStage.FETCH
    assert results[0].ok is False
    assert results[1].ok is True
    assert results[2].ok is True


def test_missing_working_copy_is_a_pipeline_failure(tmp_path: Path) -> None:
    pipeline = _pipeline(tmp_path / "absent", tmp_path / "file", python_command("print('ok')"))

    with pytest.raises(PipelineFailure) as excinfo:
        pipeline.run(_task())

    assert excinfo.value.stage == PipelineStage.CHECKOUT.value
    assert excinfo.value.exit_code is None
    assert b"failed to start" in (pipeline.log_sink.read(1, STDERR_LOG) or b"")


def test_output_is_visible_while_deploy_command_runs(
    tmp_path: Path,
    git_origin: GitFixture,
) -> None:
    release = tmp_path / "release"
    command = python_command(
        "import os, sys, time\n"
        "print('deploy', 'started', flush=True)\n"
        f"while not os.path.exists({str(release)!r}):\n"
        "    time.sleep(0.05)\n"
        "print('deploy', 'finished')\n",
    )
    pipeline = _pipeline(git_origin.repo_dir, tmp_path / "file", command)
    runner = threading.Thread(target=pipeline.run, args=(_task(),))
    runner.start()

    deadline = time.monotonic() + 20
    seen_while_running = False
    while time.monotonic() < deadline:
        content = pipeline.log_sink.read(1, STDOUT_LOG) or b""
        if b"deploy started" in content:
            seen_while_running = b"deploy finished" not in content
            break
        time.sleep(0.05)
    release.touch()
    runner.join(timeout=20)

    assert seen_while_running is True
    assert b"deploy finished" in (pipeline.log_sink.read(1, STDOUT_LOG) or b"")


def test_reset_working_copy_reclones_repository(tmp_path: Path, git_origin: GitFixture) -> None:
    repo_dir = tmp_path / "fresh" / "repo"
    repo_dir.mkdir(parents=True)
    (repo_dir / "stale.txt").write_text("stale", "utf-8")
    pipeline = DeployPipeline(
        repo_dir=repo_dir,
        deploy_command="true",
        log_sink=TaskLogSink(tmp_path / "file"),
        app_repository=str(git_origin.origin_dir),
    )

    pipeline.reset_working_copy()

    assert (repo_dir / "app.txt").read_text("utf-8") == "main\n"
    assert not (repo_dir / "stale.txt").exists()


def test_reset_working_copy_reports_clone_failure(tmp_path: Path, git_origin: GitFixture) -> None:
    pipeline = DeployPipeline(
        repo_dir=tmp_path / "repo-clone",
        deploy_command="true",
        log_sink=TaskLogSink(tmp_path / "file"),
        app_repository=str(tmp_path / "nowhere"),
    )

    with pytest.raises(PipelineFailure) as excinfo:
        pipeline.reset_working_copy()

    assert excinfo.value.stage == PipelineStage.CLONE.value
    assert excinfo.value.exit_code not in (None, 0)


def test_branch_the_os_can_not_pass_fails_checkout(
    tmp_path: Path,
    git_origin: GitFixture,
) -> None:
    pipeline = _pipeline(git_origin.repo_dir, tmp_path / "file", python_command("print('ok')"))

    with pytest.raises(PipelineFailure) as excinfo:
        pipeline.run(_task(branch="bad\x00branch"))

    assert excinfo.value.stage == PipelineStage.CHECKOUT.value
    assert excinfo.value.exit_code is None
    assert b"failed to start" in (pipeline.log_sink.read(1, STDERR_LOG) or b"")

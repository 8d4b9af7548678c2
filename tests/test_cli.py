from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
import uvicorn
from click.testing import CliRunner
from conftest import GitFixture, python_command

from branch_deployer.deploy.errors import StoreFailure
from branch_deployer.main import branch_deployer

pytestmark = [
    allure.epic("Deploy Queue"),
    allure.feature("CLI"),
]


def _env(tmp_path: Path, **overrides: str) -> dict[str, str]:
    env = {
        "BRANCH_DEPLOYER_DB_PATH": str(tmp_path / "cli.db"),
        "BRANCH_DEPLOYER_LOGS_ROOT": str(tmp_path / "file"),
        "BRANCH_DEPLOYER_REPO_DIR": str(tmp_path / "repo"),
        "BRANCH_DEPLOYER_SHELL": "sh",
        "BRANCH_DEPLOYER_DEPLOY_COMMAND": "",
        "BRANCH_DEPLOYER_APP_REPOSITORY": "",
    }
    env.update(overrides)
    return env


def test_enqueue_list_and_update(tmp_path: Path) -> None:
    runner = CliRunner()
    env = _env(tmp_path)

    enqueue_args = ["tasks", "enqueue", "--branch", "feature-x"]
    enqueued = runner.invoke(branch_deployer, enqueue_args, env=env)
    updated = runner.invoke(branch_deployer, ["tasks", "update", "1", "--score", "42"], env=env)
    listed = runner.invoke(branch_deployer, ["tasks", "list", "--format", "json"], env=env)

    assert enqueued.exit_code == 0, enqueued.output
    assert "Task enqueued: id=1 branch=feature-x status=pending" in enqueued.output
    assert updated.exit_code == 0, updated.output
    assert "score=42" in updated.output
    payload = json.loads(listed.stdout)
    assert [(item["id"], item["branch"], item["score"]) for item in payload] == [
        (1, "feature-x", 42),
    ]


def test_list_reports_empty_queue(tmp_path: Path) -> None:
    result = CliRunner().invoke(branch_deployer, ["tasks", "list"], env=_env(tmp_path))

    assert result.exit_code == 0, result.output
    assert "No tasks." in result.output


def test_update_without_fields_is_usage_error(tmp_path: Path) -> None:
    runner = CliRunner()
    env = _env(tmp_path)
    runner.invoke(branch_deployer, ["tasks", "enqueue", "--branch", "feature-x"], env=env)

    result = runner.invoke(branch_deployer, ["tasks", "update", "1"], env=env)

    assert result.exit_code == 2
    assert "status or score is required" in result.output


def test_show_unknown_task_fails(tmp_path: Path) -> None:
    result = CliRunner().invoke(branch_deployer, ["tasks", "show", "99"], env=_env(tmp_path))

    assert result.exit_code == 1
    assert "Task not found: 99" in result.output


def test_worker_requires_deploy_command(tmp_path: Path) -> None:
    result = CliRunner().invoke(branch_deployer, ["worker", "--once"], env=_env(tmp_path))

    assert result.exit_code == 2
    assert "BRANCH_DEPLOYER_DEPLOY_COMMAND" in result.output


def test_worker_once_deploys_and_running_shows_logs(
    tmp_path: Path,
    git_origin: GitFixture,
) -> None:
    runner = CliRunner()
    env = _env(
        tmp_path,
        BRANCH_DEPLOYER_REPO_DIR=str(git_origin.repo_dir),
        BRANCH_DEPLOYER_DEPLOY_COMMAND=python_command(
            "print('hello from', open('app.txt').read())",
        ),
    )

    idle = runner.invoke(branch_deployer, ["worker", "--once"], env=env)
    runner.invoke(branch_deployer, ["tasks", "enqueue", "--branch", "feature-x"], env=env)
    deployed = runner.invoke(branch_deployer, ["worker", "--once"], env=env)
    running = runner.invoke(branch_deployer, ["tasks", "running"], env=env)

    assert idle.exit_code == 0, idle.output
    assert "outcome=idle" in idle.output
    assert deployed.exit_code == 0, deployed.output
    assert "outcome=deployed" in deployed.output
    assert running.exit_code == 0, running.output
    assert "status=deployed" in running.output
    assert "hello from feature-x" in running.output
    assert "--- stderr:" in running.output


def test_running_reports_idle_queue(tmp_path: Path) -> None:
    result = CliRunner().invoke(branch_deployer, ["tasks", "running"], env=_env(tmp_path))

    assert result.exit_code == 0, result.output
    assert "No running task." in result.output


def test_init_clones_working_copy(tmp_path: Path, git_origin: GitFixture) -> None:
    clone_dir = tmp_path / "deploy" / "repo"
    env = _env(
        tmp_path,
        BRANCH_DEPLOYER_APP_REPOSITORY=str(git_origin.origin_dir),
        BRANCH_DEPLOYER_REPO_DIR=str(clone_dir),
    )

    result = CliRunner().invoke(branch_deployer, ["init"], env=env)

    assert result.exit_code == 0, result.output
    assert "Schema ready" in result.output
    assert "Working copy cloned" in result.output
    assert (clone_dir / "app.txt").read_text("utf-8") == "main\n"


def test_init_schema_only_needs_no_repository(tmp_path: Path) -> None:
    result = CliRunner().invoke(branch_deployer, ["init", "--schema-only"], env=_env(tmp_path))

    assert result.exit_code == 0, result.output
    assert "Schema ready" in result.output
    assert "Working copy cloned" not in result.output


def test_serve_exits_non_zero_after_dispatcher_store_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _fake_run(app, **_: object) -> None:
        app.state.runtime.dispatcher.fatal_error = StoreFailure("disk I/O error")

    monkeypatch.setattr(uvicorn, "run", _fake_run)
    env = _env(tmp_path, BRANCH_DEPLOYER_DEPLOY_COMMAND="true")

    result = CliRunner().invoke(branch_deployer, ["serve", "--keep-working-copy"], env=env)

    assert result.exit_code == 1
    assert "task store failure" in result.output


def test_serve_exits_cleanly_without_dispatcher_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls: list[dict[str, object]] = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append(kwargs))
    env = _env(tmp_path, BRANCH_DEPLOYER_DEPLOY_COMMAND="true")

    result = CliRunner().invoke(
        branch_deployer,
        ["serve", "--keep-working-copy", "--port", "9123"],
        env=env,
    )

    assert result.exit_code == 0, result.output
    assert calls[0]["port"] == 9123

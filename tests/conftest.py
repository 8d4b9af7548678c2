"""Shared test fixtures."""

from __future__ import annotations

import shlex
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

_GIT_IDENTITY = (
    "-c",
    "user.name=Deploy Tests",
    "-c",
    "user.email=deploy-tests@example.com",
    "-c",
    "commit.gpgsign=false",
)


@dataclass(slots=True)
class GitFixture:
    """Upstream repository with ``main`` and ``feature-x`` plus a cloned working copy."""

    origin_dir: Path
    repo_dir: Path


def run_git(*args: str, cwd: Path | None = None) -> str:
    completed = subprocess.run(
        ["git", *_GIT_IDENTITY, *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
    )
    return completed.stdout


def python_command(code: str) -> str:
    """Shell command line running ``code`` with the current interpreter."""

    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


@pytest.fixture()
def git_origin(tmp_path: Path) -> GitFixture:
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    origin_dir = tmp_path / "origin"
    origin_dir.mkdir()
    run_git("init", "--quiet", cwd=origin_dir)
    run_git("checkout", "--quiet", "-b", "main", cwd=origin_dir)
    (origin_dir / "app.txt").write_text("main\n", "utf-8")
    run_git("add", "app.txt", cwd=origin_dir)
    run_git("commit", "--quiet", "-m", "initial", cwd=origin_dir)
    run_git("checkout", "--quiet", "-b", "feature-x", cwd=origin_dir)
    (origin_dir / "app.txt").write_text("feature-x\n", "utf-8")
    run_git("commit", "--quiet", "-am", "feature", cwd=origin_dir)
    run_git("checkout", "--quiet", "main", cwd=origin_dir)

    repo_dir = tmp_path / "repo"
    run_git("clone", "--quiet", str(origin_dir), str(repo_dir))
    return GitFixture(origin_dir=origin_dir, repo_dir=repo_dir)

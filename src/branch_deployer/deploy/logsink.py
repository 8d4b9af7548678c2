"""Per-task log directory for captured process output and uploaded files."""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import BinaryIO

from branch_deployer.deploy.errors import ValidationError

STDOUT_LOG = "stdout"
STDERR_LOG = "stderr"
PROCESS_LOGS = (STDOUT_LOG, STDERR_LOG)

_LOG_NAME_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,127}")


class TaskLogSink:
    """Creates and reads the ``<root>/<task_id>/<name>`` layout.

    Directories are created on first write and never removed here.
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def task_dir(self, task_id: int) -> Path:
        return self.root_dir / str(task_id)

    def path_for(self, task_id: int, name: str) -> Path:
        return self.task_dir(task_id) / validate_log_name(name)

    def open_for_write(self, task_id: int, name: str, *, append: bool = False) -> BinaryIO:
        """Open ``name`` for binary writing, creating the task directory."""

        path = self.path_for(task_id, name)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path.open("ab" if append else "wb")

    def append_text(self, task_id: int, name: str, text: str) -> None:
        with self.open_for_write(task_id, name, append=True) as handle:
            handle.write(text.encode("utf-8"))

    def store(self, task_id: int, name: str, source: BinaryIO) -> Path:
        """Copy an uploaded stream into the task directory, replacing any previous file."""

        with self.open_for_write(task_id, name) as handle:
            shutil.copyfileobj(source, handle)
        return self.path_for(task_id, name)

    def read(self, task_id: int, name: str) -> bytes | None:
        """Return file contents, or None if it has not been produced yet."""

        path = self.path_for(task_id, name)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def read_all(self, task_id: int) -> dict[str, str | None]:
        """Decode every log of a task; process logs are always present as keys."""

        logs: dict[str, str | None] = {name: None for name in PROCESS_LOGS}
        task_dir = self.task_dir(task_id)
        if not task_dir.is_dir():
            return logs
        for path in sorted(task_dir.iterdir()):
            if not path.is_file() or not _LOG_NAME_RE.fullmatch(path.name):
                continue
            logs[path.name] = path.read_bytes().decode("utf-8", errors="replace")
        return logs


def validate_log_name(name: str) -> str:
    """Reject names that would escape the task directory."""

    if not _LOG_NAME_RE.fullmatch(name or ""):
        raise ValidationError(
            f"Invalid log file name: {name!r}. "
            "Use letters, digits, '.', '_' or '-', starting with a letter or digit.",
        )
    return name

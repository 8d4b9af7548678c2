"""CLI entrypoint for branch-deployer."""

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from branch_deployer import __version__
from branch_deployer.config import Settings
from branch_deployer.deploy.controllers import (
    DeployCliController,
    EnqueueCommand,
    InitCommand,
    InspectTaskCommand,
    ListTasksCommand,
    UpdateTaskCommand,
    WorkerCommand,
)
from branch_deployer.deploy.errors import DeployError, ValidationError

click.rich_click.USE_MARKDOWN = True
DEPLOY_CONTROLLER = DeployCliController()
TASK_STATUSES = ["pending", "deploy_failed", "deployed", "done", "cancelled"]


@click.group()
@click.version_option(version=__version__, prog_name="branch-deployer")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level for dispatcher and server output.",
)
def branch_deployer(log_level: str) -> None:
    """Queue branch deployments and run them one at a time."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@branch_deployer.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--host", default=None, help="Bind host (default from BRANCH_DEPLOYER_HOST).")
@click.option("--port", type=int, default=None, help="Bind port (default from env).")
@click.option(
    "--reset-working-copy/--keep-working-copy",
    default=True,
    show_default=True,
    help="Re-clone the application repository before serving.",
)
def serve(
    db_path: Path | None,
    host: str | None,
    port: int | None,
    reset_working_copy: bool,
) -> None:
    """Run the REST API with the dispatcher in a background thread."""

    import uvicorn

    from branch_deployer.web import create_app

    settings = Settings.from_env(db_path=db_path)
    with _domain_errors():
        app = create_app(settings, reset_working_copy=reset_working_copy)
    uvicorn.run(
        app,
        host=host or settings.http.host,
        port=port or settings.http.port,
        log_level=logging.getLevelName(logging.getLogger().level).lower(),
    )
    failure = app.state.runtime.dispatcher.fatal_error
    if failure is not None:
        raise click.ClickException(f"Dispatcher stopped on a task store failure: {failure}")


@branch_deployer.command("init")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--reset-working-copy/--schema-only",
    default=True,
    show_default=True,
    help="Also delete and re-clone the deployment working copy.",
)
def init(db_path: Path | None, reset_working_copy: bool) -> None:
    """Initialize the task schema and the deployment working copy."""

    _emit(
        lambda: DEPLOY_CONTROLLER.init(
            InitCommand(db_path=db_path, reset_working_copy=reset_working_copy),
        ),
    )


@branch_deployer.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, help="Run a single dispatcher iteration and exit.")
def worker(db_path: Path | None, once: bool) -> None:
    """Run the dispatcher in the foreground without the REST API."""

    _emit(lambda: DEPLOY_CONTROLLER.worker(WorkerCommand(db_path=db_path, once=once)))


@branch_deployer.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--branch", required=True, help="Branch to deploy (checked out as origin/<branch>).")
def tasks_enqueue(db_path: Path | None, branch: str) -> None:
    """Enqueue a deployment of BRANCH."""

    _emit(lambda: DEPLOY_CONTROLLER.enqueue(EnqueueCommand(db_path=db_path, branch=branch)))


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
)
def tasks_list(db_path: Path | None, output_format: str) -> None:
    """List all tasks ordered by id."""

    _emit(
        lambda: DEPLOY_CONTROLLER.list_tasks(
            ListTasksCommand(db_path=db_path, output_format=output_format),
        ),
    )


@tasks.command("show")
@click.argument("task_id", type=int)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
)
def tasks_show(task_id: int, db_path: Path | None, output_format: str) -> None:
    """Show one task with its captured and uploaded logs."""

    _emit(
        lambda: DEPLOY_CONTROLLER.inspect(
            InspectTaskCommand(db_path=db_path, task_id=task_id, output_format=output_format),
        ),
    )


@tasks.command("running")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def tasks_running(db_path: Path | None) -> None:
    """Show the task currently deploying or deployed."""

    _emit(
        lambda: DEPLOY_CONTROLLER.inspect(InspectTaskCommand(db_path=db_path, task_id=None)),
    )


@tasks.command("update")
@click.argument("task_id", type=int)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--status", type=click.Choice(TASK_STATUSES), default=None, help="New status.")
@click.option("--score", type=int, default=None, help="Benchmark score to attach.")
def tasks_update(
    task_id: int,
    db_path: Path | None,
    status: str | None,
    score: int | None,
) -> None:
    """Set status and/or score of a task."""

    _emit(
        lambda: DEPLOY_CONTROLLER.update(
            UpdateTaskCommand(db_path=db_path, task_id=task_id, status=status, score=score),
        ),
    )


def _emit(produce: Callable[[], list[str]]) -> None:
    with _domain_errors():
        lines = produce()
    for line in lines:
        click.echo(line)


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except (ValidationError, ValueError) as error:
        raise click.UsageError(str(error)) from error
    except DeployError as error:
        raise click.ClickException(str(error)) from error


if __name__ == "__main__":  # pragma: no cover
    branch_deployer()

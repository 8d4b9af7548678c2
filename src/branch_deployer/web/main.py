"""FastAPI application factory."""

from __future__ import annotations

import logging
import os
import signal
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from branch_deployer import __version__
from branch_deployer.config import Settings
from branch_deployer.deploy.errors import (
    PipelineFailure,
    StoreFailure,
    TaskNotFoundError,
    ValidationError,
)
from branch_deployer.deploy.runtime import build_runtime
from branch_deployer.web.routes import router

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings,
    *,
    start_dispatcher: bool = True,
    reset_working_copy: bool = False,
    on_dispatcher_failure: Callable[[StoreFailure], None] | None = None,
) -> FastAPI:
    """Build the app; the lifespan migrates the schema and owns the dispatcher thread.

    A task store failure in the dispatcher thread is fatal to the server:
    by default the process is sent SIGTERM so uvicorn shuts down and
    ``serve`` exits non-zero.
    """

    if start_dispatcher:
        settings.validate_for_dispatcher()
    if reset_working_copy:
        settings.validate_for_init()
    runtime = build_runtime(settings)
    runtime.dispatcher.on_fatal_error = on_dispatcher_failure or _shutdown_server

    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        runtime.repository.init_schema()
        if start_dispatcher and runtime.dispatcher.recover_interrupted:
            # Tasks left deploying by a dead process must not block the reset.
            runtime.dispatcher.fail_interrupted()
        runtime.service.initialize(reset_working_copy=reset_working_copy)
        if start_dispatcher:
            runtime.dispatcher.start()
        try:
            yield
        finally:
            runtime.close()

    app = FastAPI(title="branch-deployer", version=__version__, lifespan=_lifespan)
    app.state.runtime = runtime
    app.include_router(router)
    _register_error_handlers(app)
    return app


def _shutdown_server(error: StoreFailure) -> None:
    logger.critical("Task store failure stopped the dispatcher; shutting down: %s", error)
    os.kill(os.getpid(), signal.SIGTERM)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def _validation_error(_: Request, error: ValidationError) -> PlainTextResponse:
        return PlainTextResponse(str(error), status_code=400)

    @app.exception_handler(TaskNotFoundError)
    async def _not_found(_: Request, error: TaskNotFoundError) -> PlainTextResponse:
        return PlainTextResponse("Not Found", status_code=404)

    @app.exception_handler(PipelineFailure)
    async def _pipeline_failure(_: Request, error: PipelineFailure) -> PlainTextResponse:
        logger.error("Pipeline failure in request: %s", error)
        return PlainTextResponse(str(error), status_code=500)

    @app.exception_handler(StoreFailure)
    async def _store_failure(_: Request, error: StoreFailure) -> PlainTextResponse:
        logger.error("Task store failure in request: %s", error)
        return PlainTextResponse(str(error), status_code=500)

"""FastAPI app factory.

Endpoints are thin wrappers over `WorkflowService`; engine errors are mapped to HTTP
status codes here so handlers stay free of try/except noise.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from workflow_assignment_engine import __version__
from workflow_assignment_engine.engine.errors import (
    AssignmentClosed,
    CloneFailure,
    ConcurrencyConflict,
    NotFound,
    PreconditionNotMet,
    TemplateValidationError,
)
from workflow_assignment_engine.engine.logging import configure_logging
from workflow_assignment_engine.engine.service import WorkflowService
from workflow_assignment_engine.engine.workflow.state_machine import IllegalTransitionError
from workflow_assignment_engine.server.config import ServerSettings
from workflow_assignment_engine.server.router import router
from workflow_assignment_engine.server.scheduler_runner import SchedulerRunner

logger = logging.getLogger(__name__)


def _error(status_code: int, detail: str, **extra: object) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, **extra})


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFound)
    async def not_found(_request: Request, exc: NotFound) -> JSONResponse:
        return _error(404, str(exc))

    @app.exception_handler(TemplateValidationError)
    async def invalid_template(_request: Request, exc: TemplateValidationError) -> JSONResponse:
        return _error(422, str(exc), errors=exc.errors)

    @app.exception_handler(CloneFailure)
    async def clone_failure(_request: Request, exc: CloneFailure) -> JSONResponse:
        return _error(422, str(exc))

    @app.exception_handler(PreconditionNotMet)
    async def precondition(_request: Request, exc: PreconditionNotMet) -> JSONResponse:
        return _error(422, str(exc), blockers=exc.blockers)

    @app.exception_handler(ConcurrencyConflict)
    async def conflict(_request: Request, exc: ConcurrencyConflict) -> JSONResponse:
        logger.info(
            "Concurrent modification",
            extra={"entity_id": exc.entity_id, "expected_version": exc.expected_version},
        )
        return _error(409, str(exc))

    @app.exception_handler(AssignmentClosed)
    async def closed(_request: Request, exc: AssignmentClosed) -> JSONResponse:
        return _error(409, str(exc))

    @app.exception_handler(IllegalTransitionError)
    async def illegal(_request: Request, exc: IllegalTransitionError) -> JSONResponse:
        return _error(409, str(exc))


def create_app(
    service: WorkflowService | None = None, settings: ServerSettings | None = None
) -> FastAPI:
    settings = settings or ServerSettings()
    owns_service = service is None
    if service is None:
        configure_logging(settings.log_level, settings.log_format)
        service = WorkflowService.from_settings(settings)

    runner = SchedulerRunner(
        service=service, poll_interval_seconds=settings.scheduler_poll_interval_seconds
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if settings.scheduler_enabled:
            logger.info("Starting recurrence scheduler", extra={"instance": settings.instance_id})
            runner.start()
        try:
            yield
        finally:
            runner.stop()
            if owns_service:
                service.close()

    app = FastAPI(
        title="Workflow Assignment Engine",
        version=__version__,
        description="REST API over the workflow template and assignment engine.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.service = service
    app.state.scheduler_runner = runner

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _install_error_handlers(app)
    app.include_router(router, prefix="/api")
    return app

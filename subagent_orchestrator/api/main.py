"""
Main FastAPI application for the Subagent Orchestrator.
"""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routes import router
from .websocket import ws_router
from .. import __version__
from ..models.errors import ErrorCategory, OrchestratorError, ValidationError
from ..orchestration.orchestrator import SubagentOrchestrator
from ..utils.config import SystemConfig, get_config
from ..utils.error_handler import error_handler
from ..utils.logging import get_logger

logger = get_logger(__name__)

STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 422,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.INVALID_STATE: 409,
    ErrorCategory.CONFLICT: 409,
}


def create_app(
    orchestrator: Optional[SubagentOrchestrator] = None,
    config: Optional[SystemConfig] = None,
    run_dispatch_loop: bool = True
) -> FastAPI:
    """
    Build the HTTP adapter around an orchestrator.

    Args:
        orchestrator: Orchestrator to expose; built from ``config`` when omitted
        config: System configuration; the global configuration when omitted
        run_dispatch_loop: Start the background dispatch loop for the app's lifetime
    """
    config = config or (orchestrator.config if orchestrator else get_config())
    orchestrator = orchestrator or SubagentOrchestrator(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting Subagent Orchestrator API...")
        if run_dispatch_loop:
            await orchestrator.start()
        yield
        logger.info("Shutting down Subagent Orchestrator API...")
        await orchestrator.shutdown()

    app = FastAPI(
        title="Subagent Orchestrator API",
        description="Agent registry, task dispatch, workflows and inter-agent messaging",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with their processing time."""
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        logger.debug(
            "Request handled",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(process_time * 1000, 3)
        )
        return response

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
        response = error_handler.handle(exc, {"path": request.url.path, "method": request.method})
        return JSONResponse(
            status_code=STATUS_BY_CATEGORY.get(exc.category, 500),
            content=response.model_dump(mode="json")
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
        error = ValidationError(f"Invalid request: {len(fields)} field error(s)", fields=fields)
        response = error_handler.handle(error, {"path": request.url.path, "method": request.method})
        return JSONResponse(status_code=422, content=response.model_dump(mode="json"))

    app.include_router(router, prefix="/api/subagents")
    app.include_router(ws_router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": "Subagent Orchestrator API",
            "version": __version__,
            "docs": "/docs",
            "health": "/api/subagents/health"
        }

    return app

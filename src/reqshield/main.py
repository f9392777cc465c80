"""
Main FastAPI application entry point.

This module sets up the FastAPI app with the security pipeline middleware,
routes, exception handlers and lifecycle events.
"""

import logging
import traceback
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .api import metrics_router
from .config import Settings, get_settings
from .core.clock import Clock, system_clock
from .core.exceptions import ReqShieldException
from .core.metrics import MetricsCollector
from .core.pipeline import SecurityPipeline, SecurityPipelineMiddleware


def configure_logging(log_level: str = "INFO", debug: bool = False) -> None:
    """Configure structured logging for the application."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
    )

    # Silence the verbose watchfiles logger
    logging.getLogger("watchfiles").setLevel(logging.WARNING)

    renderer = structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def create_lifespan_handler(pipeline: SecurityPipeline) -> Any:
    """Create a lifespan handler owning the pipeline's background work."""
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        FastAPI lifespan context manager.

        Starts the rate-limit cleanup task and cancels it on shutdown.
        """
        logger = structlog.get_logger(__name__)
        logger.info("Starting reqshield service", version=app.version)

        await pipeline.start()

        try:
            logger.info("reqshield service started successfully")
            yield
        finally:
            logger.info("Shutting down reqshield service")
            await pipeline.stop()
            logger.info("reqshield service shutdown complete")

    return lifespan


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    """Map pipeline exceptions and unexpected errors onto JSON responses."""

    @app.exception_handler(ReqShieldException)
    async def reqshield_exception_handler(request: Request, exc: ReqShieldException) -> JSONResponse:
        """Handle reqshield exceptions raised by route handlers."""
        logger = structlog.get_logger(__name__)
        logger.warning(
            "reqshield exception occurred",
            error=str(exc),
            error_code=exc.error_code,
            status_code=exc.status_code,
            path=request.url.path,
            method=request.method,
        )

        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response_body(),
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger = structlog.get_logger(__name__)
        logger.error(
            "Unexpected exception occurred",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            method=request.method,
            exc_info=True,
        )

        content: Dict[str, Any] = {
            "statusCode": 500,
            "message": "Internal Server Error",
            "error": "An unexpected error occurred",
        }
        if settings.debug:
            content["traceback"] = traceback.format_exception(type(exc), exc, exc.__traceback__)

        return JSONResponse(status_code=500, content=content)


def create_app(
    settings: Optional[Settings] = None,
    pipeline: Optional[SecurityPipeline] = None,
    clock: Optional[Clock] = None,
    logger: Any = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This factory function ensures all configuration is applied
    whether running via FastAPI CLI or direct execution.
    """
    if settings is None:
        settings = get_settings()

    configure_logging(settings.log_level, settings.debug)

    metrics_collector = pipeline.metrics if pipeline is not None and pipeline.metrics else MetricsCollector()
    if pipeline is None:
        pipeline = SecurityPipeline(
            settings,
            clock=clock or system_clock,
            metrics=metrics_collector,
            logger=logger,
        )

    app = FastAPI(
        title="reqshield",
        description="Request-security middleware pipeline",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=create_lifespan_handler(pipeline),
    )
    app.state.settings = settings
    app.state.metrics = metrics_collector
    app.state.pipeline = pipeline

    app.add_middleware(SecurityPipelineMiddleware, pipeline=pipeline)
    register_exception_handlers(app, settings)

    app.include_router(metrics_router, tags=["metrics"])

    @app.get("/", include_in_schema=False)
    async def root() -> Dict[str, str]:
        """Root endpoint with service information."""
        return {
            "service": "reqshield",
            "version": app.version,
            "description": "Request-security middleware pipeline",
            "docs": "/docs",
        }

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "reqshield.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=settings.debug,
    )

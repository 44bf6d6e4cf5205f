"""
FastAPI Application Entry Point

Creates the FastAPI application, wires the review runtime into its lifespan
and registers routes and exception handlers.

Design Decisions:
- Use lifespan events for runtime startup/shutdown
- The runtime is built by an injectable factory so tests can run the app
  over an in-memory Redis
- Queue errors map to HTTP responses by error kind
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app import __version__
from app.api import stats_router
from app.config import Settings, get_settings
from app.errors import ErrorKind, ReviewQueueError
from app.logging_config import get_logger, setup_logging
from app.runtime import ReviewRuntime
from app.webhook import router as webhook_router

logger = get_logger(__name__)

RuntimeFactory = Callable[[Settings], Awaitable[ReviewRuntime]]


def create_app(
    settings: Optional[Settings] = None,
    runtime_factory: Optional[RuntimeFactory] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to use; defaults to the environment
        runtime_factory: Builds the ReviewRuntime at startup
    """
    settings = settings or get_settings()
    runtime_factory = runtime_factory or ReviewRuntime.create
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(
            "Starting code review queue",
            host=settings.host,
            port=settings.port,
            environment=settings.environment,
            run_workers=settings.run_workers,
        )
        runtime = await runtime_factory(settings)
        app.state.runtime = runtime
        await runtime.start()
        try:
            yield
        finally:
            logger.info("Shutting down code review queue")
            await runtime.stop()

    app = FastAPI(
        title="AI Code Review Queue",
        description="Queues GitHub pull request reviews and runs them on workers",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(webhook_router)
    app.include_router(stats_router)

    @app.exception_handler(ReviewQueueError)
    async def queue_error_handler(request: Request, exc: ReviewQueueError) -> JSONResponse:
        if exc.kind == ErrorKind.VALIDATION:
            status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
        elif exc.kind == ErrorKind.RATE_LIMIT_EXCEEDED:
            status_code = status.HTTP_429_TOO_MANY_REQUESTS
        else:
            status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        logger.warning(
            "Queue error",
            path=request.url.path,
            error_kind=exc.kind.value,
            error=str(exc),
        )
        return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error", "type": type(exc).__name__},
        )

    @app.get("/")
    async def root():
        return {
            "name": "AI Code Review Queue",
            "version": __version__,
            "status": "running",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health_check():
        """Liveness for load balancers; does not touch Redis."""
        return {
            "status": "healthy",
            "service": "code-review-queue",
            "version": __version__,
        }

    @app.get("/ready")
    async def readiness_check(request: Request):
        """Ready once the shared store answers."""
        try:
            await request.app.state.runtime.ping()
        except Exception as e:
            logger.error("Readiness check failed", error=str(e))
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Not ready: {e}",
            )
        return {"status": "ready", "service": "code-review-queue"}

    return app


app = create_app()

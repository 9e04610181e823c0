from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from lineops import __version__
from lineops.core.config import settings
from lineops.core.dependencies import get_cache, get_stream_client
from lineops.core.exceptions import InvalidTimeframeError, LineNotFoundError, LineOpsError, UpstreamAPIError
from lineops.core.logging import configure_logging, get_logger
from lineops.core.middleware import LoggingMiddleware, RequestIDMiddleware
from lineops.services.lines_client import LinesClient
from lineops.services.sync_service import LiveSync
from lineops.stream.cache import LineCache
from lineops.stream.client import StreamClient


# Configure logging first
configure_logging()
logger = get_logger(__name__)


def build_sync() -> LiveSync:
    """Create the live sync service from settings."""
    stream_client = StreamClient(settings.stream_url) if settings.stream_enabled else None
    return LiveSync(LinesClient(), stream_client=stream_client)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan events.
    Runs on startup and shutdown.
    """
    logger.info("api_starting", env=settings.app_env, upstream=settings.upstream_api_url)

    sync = build_sync()
    app.state.sync = sync
    app.state.cache = sync.cache
    app.state.stream_client = sync.stream_client
    await sync.start()

    logger.info(
        "api_started",
        lines=len(sync.cache),
        stream_enabled=settings.stream_enabled,
        app_env=settings.app_env
    )

    yield

    logger.info("api_shutting_down")
    await sync.stop()
    logger.info("api_shutdown_complete")


def create_app(use_lifespan: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    Tests pass ``use_lifespan=False`` and set ``app.state.cache`` themselves.
    """
    app = FastAPI(
        title="LineOps Analytics API",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan if use_lifespan else None
    )
    app.state.cache = LineCache()
    app.state.stream_client = None

    # Add middleware (order matters!)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [settings.app_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from lineops.api.v1 import analytics, lines, metrics

    app.include_router(lines.router, prefix="/api/v1")
    app.include_router(analytics.router, prefix="/api/v1")
    app.include_router(metrics.router)

    register_routes(app)
    register_exception_handlers(app)
    return app


def register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health_check(
        cache: LineCache = Depends(get_cache),
        client: Optional[StreamClient] = Depends(get_stream_client)
    ):
        """
        Health check endpoint.
        Reports stream connection state and cache size.

        Returns:
            Health status with dependency checks
        """
        stream_state = client.state.value if client is not None else "disabled"
        overall_status = "healthy" if stream_state in ("connected", "disabled") else "degraded"

        return {
            "status": overall_status,
            "dependencies": {
                "stream": stream_state,
                "cache": {"lines": len(cache), "list_stale": cache.list_stale}
            }
        }

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "LineOps Analytics API",
            "version": __version__,
            "status": "running"
        }


def _error_response(status_code: int, exc: LineOpsError, **extra) -> JSONResponse:
    error = {"code": exc.code, "message": exc.message, **extra}
    if exc.details is not None:
        error["details"] = exc.details
    return JSONResponse(status_code=status_code, content={"error": error})


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """
        Handle request validation errors (422).
        Returns errors in the standard error envelope.
        """
        errors = []
        for error in exc.errors():
            errors.append({
                "field": ".".join(str(x) for x in error["loc"]),
                "message": error["msg"],
                "type": error["type"]
            })

        logger.warning(
            "validation_error",
            path=request.url.path,
            errors=errors
        )

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "details": errors
                }
            }
        )

    @app.exception_handler(InvalidTimeframeError)
    async def timeframe_exception_handler(request: Request, exc: InvalidTimeframeError):
        logger.warning("invalid_timeframe", path=request.url.path, error=exc.message)
        return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, exc)

    @app.exception_handler(LineNotFoundError)
    async def not_found_exception_handler(request: Request, exc: LineNotFoundError):
        return _error_response(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(UpstreamAPIError)
    async def upstream_exception_handler(request: Request, exc: UpstreamAPIError):
        logger.error("upstream_error", path=request.url.path, error=exc.message, status_code=exc.status_code)
        return _error_response(status.HTTP_502_BAD_GATEWAY, exc)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """
        Handle all unhandled exceptions.
        Logs full traceback and returns 500 error.
        """
        request_id = structlog.contextvars.get_contextvars().get("request_id", "unknown")

        logger.error(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "INTERNAL_SERVER_ERROR",
                    "message": "An unexpected error occurred",
                    "request_id": request_id
                }
            }
        )


app = create_app()

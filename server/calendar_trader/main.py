from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
import time

from calendar_trader.core.config import settings
from calendar_trader.core.logging import get_logger
from calendar_trader.core.monitoring import ErrorMonitoring
from calendar_trader.core.cache import cache_manager
from calendar_trader.core.database import DatabaseManager
from calendar_trader.core.responses import (
    create_error_response,
    external_api_error,
    validation_error,
    internal_error,
    ErrorCode
)
from calendar_trader.api.v1 import api_router
from calendar_trader.api.middleware import LoggingMiddleware
from calendar_trader.services.exceptions import (
    ExecutorConfigError,
    ExecutorStateError,
    RepositoryError,
    StrategyImportError,
    StrategyParseError,
    TradingEngineError,
)
from calendar_trader.services.external.base import ExternalAPIError
from calendar_trader.workers.strategy_executor import get_strategy_executor, reset_strategy_executor


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan events
    """
    # Startup
    logger.info("Starting application", environment=settings.environment)
    app.state.start_time = time.time()

    ErrorMonitoring.init_sentry(settings)

    if settings.enable_caching:
        cache_manager.connect()
    else:
        logger.info("Cache is disabled")

    if settings.enable_database:
        if await DatabaseManager.check_connection():
            logger.info("Database connection established")
        else:
            logger.warning("Database connection failed, strategies fall back to the local store")
    else:
        logger.info("Database is disabled")

    executor = get_strategy_executor()
    if settings.executor_autostart:
        try:
            await executor.start()
        except TradingEngineError as e:
            logger.error("Executor autostart failed", error=e)

    logger.info("Application started successfully")

    yield

    # Shutdown
    logger.info("Shutting down application")

    await reset_strategy_executor()

    if settings.enable_caching:
        cache_manager.disconnect()

    if settings.enable_database:
        await DatabaseManager.close()

    logger.info("Application shutdown complete")


# Create FastAPI app
app = FastAPI(
    title=settings.api.title,
    description=settings.api.description,
    version=settings.api.version,
    openapi_url=f"{settings.api.prefix}/openapi.json" if not settings.is_production else None,
    docs_url=f"{settings.api.prefix}/docs" if not settings.is_production else None,
    redoc_url=f"{settings.api.prefix}/redoc" if not settings.is_production else None,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.security.allow_credentials,
    allow_methods=settings.security.allowed_methods,
    allow_headers=settings.security.allowed_headers,
)

# Add custom middleware
app.add_middleware(LoggingMiddleware)


def _validation_details(errors) -> list:
    return [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        }
        for error in errors
    ]


# Global exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Handle validation errors with proper formatting
    """
    return validation_error(
        message="Request validation failed",
        errors=_validation_details(exc.errors())
    )


@app.exception_handler(ValidationError)
async def model_validation_exception_handler(request: Request, exc: ValidationError):
    """
    Handle model validation errors raised inside endpoints
    """
    return validation_error(
        message="Strategy validation failed",
        errors=_validation_details(exc.errors())
    )


@app.exception_handler(TradingEngineError)
async def engine_exception_handler(request: Request, exc: TradingEngineError):
    """
    Map engine errors to client or service errors
    """
    error_map = {
        StrategyParseError: (ErrorCode.INVALID_STRATEGY, status.HTTP_400_BAD_REQUEST),
        StrategyImportError: (ErrorCode.INVALID_IMPORT, status.HTTP_400_BAD_REQUEST),
        ExecutorConfigError: (ErrorCode.EXECUTOR_CONFIG_ERROR, status.HTTP_400_BAD_REQUEST),
        ExecutorStateError: (ErrorCode.EXECUTOR_STATE_ERROR, status.HTTP_409_CONFLICT),
        RepositoryError: (ErrorCode.STORAGE_ERROR, status.HTTP_503_SERVICE_UNAVAILABLE),
    }
    error_code, status_code = error_map.get(
        type(exc),
        (ErrorCode.INVALID_REQUEST, status.HTTP_400_BAD_REQUEST)
    )

    return create_error_response(
        error_code=error_code,
        message=str(exc),
        status_code=status_code
    )


@app.exception_handler(ExternalAPIError)
async def external_api_exception_handler(request: Request, exc: ExternalAPIError):
    """
    Handle brokerage gateway failures
    """
    return external_api_error(service=exc.service, message=str(exc))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """
    Handle HTTP exceptions
    """
    error_code_map = {
        400: ErrorCode.INVALID_REQUEST,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.CONFLICT,
        500: ErrorCode.INTERNAL_ERROR,
        502: ErrorCode.EXTERNAL_API_ERROR,
        503: ErrorCode.SERVICE_UNAVAILABLE
    }

    error_code = error_code_map.get(exc.status_code, ErrorCode.INTERNAL_ERROR)

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Handle all unhandled exceptions
    """
    logger.error("Unhandled exception", error=exc)

    ErrorMonitoring.capture_exception(
        exc,
        context={
            "path": request.url.path,
            "method": request.method,
            "client": request.client.host if request.client else None
        }
    )

    return internal_error(
        message="An unexpected error occurred",
        error=exc if settings.debug else None
    )


# Include API router
app.include_router(api_router, prefix=settings.api.prefix)


# Root endpoint
@app.get("/", tags=["root"])
async def root():
    """
    Root endpoint
    """
    return {
        "name": settings.api.title,
        "version": settings.api.version,
        "environment": settings.environment,
        "docs": f"{settings.api.prefix}/docs" if not settings.is_production else None,
        "uptime_seconds": round(time.time() - app.state.start_time, 1) if hasattr(app.state, "start_time") else 0
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "calendar_trader.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.logging_config.level.lower()
    )

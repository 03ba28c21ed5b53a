"""
FastAPI application entry point with health endpoints and service routing.

This module provides the main FastAPI application instance, the lifespan
that initializes the database and runs the packing-session reaper, request
logging with correlation ids, and the mapping from engine errors to HTTP
responses.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from fulfillment_engine.api.v1 import inventory_router, orders_router, routes_router
from fulfillment_engine.core.config import get_settings
from fulfillment_engine.core.exceptions import (
    AlreadyResolved,
    BackorderPending,
    BelowMinimumOrder,
    CreditLimitExceeded,
    CustomerNotFound,
    FulfillmentError,
    IncompletePacking,
    InsufficientStock,
    InvalidApprovedQuantity,
    InvalidDeliveryDate,
    InvalidTransition,
    LedgerWriteError,
    ManagerApprovalRequired,
    MissingDriver,
    MissingProof,
    MissingReturnReason,
    OrderNotFound,
    OrderValidationError,
    ProductNotFound,
    RouteProviderUnavailable,
    TransitionNotPermitted,
    VersionConflict,
)
from fulfillment_engine.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from fulfillment_engine.database.connection import (
    check_database_health,
    close_database_connections,
    initialize_database,
)
from fulfillment_engine.services.notifications.sinks import wait_for_pending_events
from fulfillment_engine.services.sessions.reaper import PackingSessionReaper

# Configure logging before application initialization
configure_logging()
logger = get_logger(__name__)

ERROR_STATUS_CODES: dict[type[FulfillmentError], int] = {
    OrderNotFound: status.HTTP_404_NOT_FOUND,
    ProductNotFound: status.HTTP_404_NOT_FOUND,
    CustomerNotFound: status.HTTP_404_NOT_FOUND,
    TransitionNotPermitted: status.HTTP_403_FORBIDDEN,
    ManagerApprovalRequired: status.HTTP_403_FORBIDDEN,
    VersionConflict: status.HTTP_409_CONFLICT,
    InvalidTransition: status.HTTP_409_CONFLICT,
    AlreadyResolved: status.HTTP_409_CONFLICT,
    InsufficientStock: status.HTTP_409_CONFLICT,
    BackorderPending: status.HTTP_409_CONFLICT,
    MissingDriver: status.HTTP_422_UNPROCESSABLE_ENTITY,
    MissingProof: status.HTTP_422_UNPROCESSABLE_ENTITY,
    MissingReturnReason: status.HTTP_422_UNPROCESSABLE_ENTITY,
    IncompletePacking: status.HTTP_422_UNPROCESSABLE_ENTITY,
    CreditLimitExceeded: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidDeliveryDate: status.HTTP_422_UNPROCESSABLE_ENTITY,
    BelowMinimumOrder: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidApprovedQuantity: status.HTTP_422_UNPROCESSABLE_ENTITY,
    OrderValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    RouteProviderUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    LedgerWriteError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_code_for(exc: FulfillmentError) -> int:
    """HTTP status for an engine error, falling back through its bases."""
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return status.HTTP_400_BAD_REQUEST


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan context manager for startup and shutdown events.

    Initializes the database and starts the packing-session reaper when
    enabled. On shutdown it stops the reaper, gives in-flight events a
    bounded chance to reach the sink and closes the database.

    Args:
        app: FastAPI application instance

    Yields:
        None during application runtime
    """
    settings = get_settings()

    # Startup
    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        version=settings.app_version,
    )

    with log_performance(logger, "application_startup"):
        await initialize_database()

    reaper = PackingSessionReaper(settings=settings)
    app.state.reaper = reaper
    if settings.reaper_enabled:
        await reaper.start()

    yield

    # Shutdown
    logger.info("Application shutting down")
    with log_performance(logger, "application_shutdown"):
        await reaper.stop()
        await wait_for_pending_events(timeout=settings.event_sink_timeout_seconds)
        await close_database_connections()
        logger.info("Resources cleaned up successfully")


# Initialize FastAPI application
settings = get_settings()
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Order fulfillment engine for perishable-goods distribution",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    debug=settings.debug,
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """
    Middleware for request logging and correlation ID management.

    Sets request ID for correlation, logs request details, and measures
    response time. Clears context after request processing.

    Args:
        request: Incoming HTTP request
        call_next: Next middleware or route handler

    Returns:
        HTTP response with X-Request-ID header
    """
    request_id = request.headers.get("X-Request-ID")
    request_id = set_request_id(request_id)

    logger.info(
        "Request received",
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None,
    )

    try:
        with log_performance(
            logger,
            "request_processing",
            method=request.method,
            path=request.url.path,
        ):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )

        return response
    except Exception as e:
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        clear_context()


@app.exception_handler(FulfillmentError)
async def fulfillment_exception_handler(
    request: Request, exc: FulfillmentError
) -> JSONResponse:
    """
    Map engine errors to HTTP responses.

    Args:
        request: HTTP request that raised
        exc: Engine error

    Returns:
        JSON response with the error kind, reason and context
    """
    status_code = status_code_for(exc)
    logger.warning(
        "Request rejected",
        method=request.method,
        path=request.url.path,
        error_code=exc.code,
        status_code=status_code,
        context=exc.to_dict()["context"],
    )

    content = exc.to_dict()
    content["retryable"] = exc.retryable
    content["request_id"] = get_request_id()
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Handle request validation errors with structured error response.

    Args:
        request: HTTP request that caused validation error
        exc: Validation exception with error details

    Returns:
        JSON response with validation error details
    """
    logger.warning(
        "Request validation failed",
        method=request.method,
        path=request.url.path,
        errors=exc.errors(),
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": OrderValidationError.code,
            "reason": "Request validation failed",
            "context": {"details": _jsonable_errors(exc.errors())},
            "request_id": get_request_id(),
        },
    )


def _jsonable_errors(errors) -> list[dict]:
    return [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "msg": str(error.get("msg", "")),
            "type": str(error.get("type", "")),
        }
        for error in errors
    ]


@app.exception_handler(Exception)
async def global_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Handle unexpected exceptions with structured error response.

    Logs error with full context and returns generic error message
    to avoid exposing internal details.
    """
    logger.error(
        "Unhandled exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "INTERNAL_ERROR",
            "reason": "An unexpected error occurred",
            "context": {},
            "request_id": get_request_id(),
        },
    )


@app.get(
    "/health",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Health check endpoint",
    response_description="Application health status",
)
async def health_check() -> dict[str, str]:
    """
    Basic health check endpoint.

    Always returns 200 OK if the application is running.
    """
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get(
    "/ready",
    tags=["Health"],
    summary="Readiness check endpoint",
    response_description="Application readiness status",
)
async def readiness_check() -> JSONResponse:
    """
    Readiness check including database connectivity.

    Returns:
        200 with readiness details, or 503 when the database is unreachable
    """
    database_ok = await check_database_health(max_retries=1)
    return JSONResponse(
        status_code=(
            status.HTTP_200_OK if database_ok else status.HTTP_503_SERVICE_UNAVAILABLE
        ),
        content={
            "status": "ready" if database_ok else "not_ready",
            "database": database_ok,
        },
    )


# Include API routers
app.include_router(orders_router, prefix=settings.api_v1_prefix)
app.include_router(routes_router, prefix=settings.api_v1_prefix)
app.include_router(inventory_router, prefix=settings.api_v1_prefix)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fulfillment_engine.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.is_development,
        log_config=None,
    )

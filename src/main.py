"""FastAPI application initialization."""

from contextlib import asynccontextmanager
from uuid import uuid4

from dotenv import load_dotenv

# Load environment variables before anything else
load_dotenv()

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api import (
    CorrelationIdMiddleware,
    devices_router,
    router,
    security_router,
    tokens_router,
)
from src.config import get_settings
from src.exceptions import MobileAuthError
from src.services.logging_service import configure_logging, get_logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level)
    logger = get_logger("main")

    # Initialize database connection pool and run migrations
    try:
        from src.database import init_database, run_migrations

        await init_database()
        await run_migrations()
        logger.info("database_initialized")
    except Exception as e:
        logger.warning(
            "database_initialization_failed",
            error=str(e),
            note="Continuing without database - device and token endpoints will fail",
        )

    # Initialize Redis connection
    try:
        from src.services.redis_service import get_redis

        await get_redis()
        logger.info("redis_initialized")
    except Exception as e:
        logger.warning(
            "redis_initialization_failed",
            error=str(e),
            note="Continuing without Redis - nonces fall back to process memory, lockout disabled",
        )

    if settings.api_key_required and not settings.mobile_api_key:
        logger.warning("mobile_api_key_not_configured", note="All signed requests will be rejected")

    logger.info(
        "application_started",
        log_level=settings.log_level,
        nonce_cache_backend=settings.nonce_cache_backend,
    )

    yield

    # Shutdown
    from src.database import close_database
    from src.services.redis_service import close_redis

    for close in (close_database, close_redis):
        try:
            await close()
        except Exception as e:
            logger.warning("shutdown_close_failed", resource=close.__name__, error=str(e))

    logger.info("application_shutdown")


app = FastAPI(
    title="Mobile Device Authentication API",
    description="Device registration, signed requests and device-bound tokens for mobile clients",
    version="0.1.0",
    lifespan=lifespan,
)


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or str(uuid4())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors with user-friendly messages.

    Returns 400 Bad Request naming the first invalid field.
    """
    correlation_id = _correlation_id(request)
    logger = structlog.get_logger()

    # Extract validation error details
    errors = exc.errors()
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", ["unknown"]))
        message = first_error.get("msg", "Validation failed")
        detail = f"Field '{field}': {message}"
    else:
        detail = "Request validation failed"

    logger.warning(
        "validation_error",
        correlation_id=correlation_id,
        detail=detail,
    )

    return JSONResponse(
        status_code=400,
        content={
            "error": "Validation error",
            "detail": detail,
            "correlation_id": correlation_id,
        },
        headers={"X-Correlation-Id": correlation_id},
    )


@app.exception_handler(MobileAuthError)
async def mobile_auth_exception_handler(
    request: Request, exc: MobileAuthError
) -> JSONResponse:
    """Render auth failures with their generic detail only.

    The internal reason is logged, never returned.
    """
    correlation_id = _correlation_id(request)
    logger = structlog.get_logger()

    logger.warning(
        "mobile_auth_error",
        error=type(exc).__name__,
        category=exc.category,
        reason=exc.reason,
        status_code=exc.status_code,
        path=request.url.path,
    )

    headers = {"X-Correlation-Id": correlation_id}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.category,
            "detail": exc.detail,
            "correlation_id": correlation_id,
        },
        headers=headers,
    )


# CORS middleware for browser clients
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Correlation ID middleware for request tracking and observability
app.add_middleware(CorrelationIdMiddleware)

# Include API routes
app.include_router(devices_router)
app.include_router(tokens_router)
app.include_router(security_router)
app.include_router(router)

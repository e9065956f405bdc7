"""
Main Application - FastAPI application setup.
"""

import asyncio
import os
import signal
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

from creditgate.api.gateway_routes import router as gateway_router
from creditgate.api.key_routes import router as key_router
from creditgate.api.routes import router
from creditgate.config import settings
from creditgate.db.migration_runner import run_migrations
from creditgate.db.session import close_engines, get_write_session_factory
from creditgate.exceptions import AuthenticationError, GatewayError, ThrottleError
from creditgate.models.api import ErrorDetail, ErrorResponse
from creditgate.observability import get_logger, metrics, setup_logging, setup_tracing
from creditgate.observability.tracing import instrument_fastapi
from creditgate.policy import get_policy
from creditgate.services.extraction import HttpContentExtractor
from creditgate.services.pipeline import GatewayPipeline
from creditgate.services.rate_limiter import create_rate_limiter
from creditgate.services.stripe_provider import StripeProvider
from creditgate.services.usage_recorder import ConsecutiveFailureGuard, UsageRecorder

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


def shutdown_on_background_failure(consecutive_failures: int, error: BaseException) -> None:
    """Background writes keep failing; ask the server to stop gracefully."""
    logger.critical(
        "background_failure_threshold_reached",
        consecutive_failures=consecutive_failures,
        error_type=type(error).__name__,
    )
    os.kill(os.getpid(), signal.SIGTERM)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        rate_limit_backend=settings.rate_limit_backend,
    )

    if settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)

    policy = get_policy()
    session_factory = get_write_session_factory()

    recorder = UsageRecorder(
        session_factory,
        failure_guard=ConsecutiveFailureGuard(
            settings.usage_failure_threshold, shutdown_on_background_failure
        ),
    )
    recorder.start()

    rate_limiter = create_rate_limiter()
    extractor = HttpContentExtractor()

    app.state.usage_recorder = recorder
    app.state.rate_limiter = rate_limiter
    app.state.extractor = extractor
    app.state.pipeline = GatewayPipeline(
        session_factory, rate_limiter, policy=policy, recorder=recorder
    )
    app.state.payment_provider = (
        StripeProvider(settings.stripe_api_key, settings.stripe_webhook_secret)
        if settings.stripe_api_key
        else None
    )
    if app.state.payment_provider is None:
        logger.warning("payment_provider_not_configured")

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await recorder.stop()
    await rate_limiter.close()
    await extractor.close()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Render a typed rejection. Only the public message leaves the process."""
    headers: dict[str, str] = {}
    if isinstance(exc, ThrottleError):
        headers = {
            "Retry-After": str(exc.retry_after),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
        }
    elif isinstance(exc, AuthenticationError):
        headers = {"WWW-Authenticate": "ApiKey"}

    if exc.status_code >= 500:
        logger.error(
            "request_error",
            path=request.url.path,
            reason=exc.reason_code,
            error=exc.message,
        )
    else:
        logger.info("request_rejected", path=request.url.path, reason=exc.reason_code)

    body = ErrorResponse(error=ErrorDetail(code=exc.reason_code, message=exc.public_message))
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort. Internal detail goes to the log, never to the client."""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    metrics.record_error(type(exc).__name__, "unhandled")
    body = ErrorResponse(error=ErrorDetail(code="internal_error", message="Internal error"))
    return JSONResponse(status_code=500, content=body.model_dump())


# Add validation error logging handler
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Log validation errors. Request bodies are not logged; they may hold secrets."""
    sanitized_errors = [
        {"type": error.get("type"), "loc": error.get("loc"), "msg": error.get("msg")}
        for error in exc.errors()
    ]

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(status_code=422, content={"detail": sanitized_errors})


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Proxy headers middleware - trust X-Forwarded-* headers from nginx
class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to handle X-Forwarded-* headers from reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto

        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for and request.client is not None:
            # First hop is the original client
            request.scope["client"] = (forwarded_for.split(",")[0].strip(), request.client.port)

        return await call_next(request)


app.add_middleware(ProxyHeadersMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-Request-ID"],
)


def _route_template(request: Request) -> str:
    """Route path template, so metrics labels do not grow with ids."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")
    method = request.method

    logger.info(
        "request_started",
        method=method,
        path=request.url.path,
        request_id=request_id,
    )

    metrics.http_requests_in_progress.labels(method=method).inc()

    try:
        response = await call_next(request)
        duration = time.time() - start_time
        endpoint = _route_template(request)

        metrics.record_http_request(endpoint, method, response.status_code, duration)

        logger.info(
            "request_completed",
            method=method,
            path=request.url.path,
            status_code=response.status_code,
            duration_seconds=duration,
            request_id=request_id,
        )

        return response
    except Exception as e:
        duration = time.time() - start_time
        metrics.record_http_request(_route_template(request), method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")

        logger.error(
            "request_failed",
            method=method,
            path=request.url.path,
            error_type=type(e).__name__,
            duration_seconds=duration,
            request_id=request_id,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(method=method).dec()


# Register routes
app.include_router(router)  # Session, account, credits, webhooks, health
app.include_router(key_router)  # API key lifecycle
app.include_router(gateway_router)  # Metered extraction


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not settings.metrics_enabled:
        return Response(status_code=404)
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "creditgate.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )

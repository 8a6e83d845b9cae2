"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from structlog import get_logger

from paysync.api.routes import router
from paysync.api.webhook_routes import router as webhook_router
from paysync.config import settings
from paysync.db.migration_runner import run_migrations
from paysync.db.session import close_engines, get_engine
from paysync.exceptions import (
    AuthenticationError,
    AuthorizationError,
    DatabaseError,
    DuplicateRecordError,
    IdempotencyConflictError,
    InvalidArgumentError,
    PaymentCoreError,
    PaymentProviderError,
    WebhookVerificationError,
)
from paysync.observability import log_context, metrics, setup_logging, setup_tracing
from paysync.observability.tracing import instrument_fastapi, instrument_sqlalchemy

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)

# Most specific first; the first isinstance match wins.
ERROR_STATUS_CODES: tuple[tuple[type[PaymentCoreError], int], ...] = (
    (InvalidArgumentError, status.HTTP_400_BAD_REQUEST),
    (WebhookVerificationError, status.HTTP_400_BAD_REQUEST),
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (IdempotencyConflictError, status.HTTP_409_CONFLICT),
    (DuplicateRecordError, status.HTTP_409_CONFLICT),
    (PaymentProviderError, status.HTTP_502_BAD_GATEWAY),
    (DatabaseError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_code_for(exc: PaymentCoreError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Apply pending migrations on startup when enabled; dispose engines on shutdown."""
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )
    if settings.run_migrations_on_startup:
        # Alembic's command API is synchronous.
        await asyncio.to_thread(run_migrations)
    if settings.tracing_enabled:
        instrument_sqlalchemy(get_engine())

    yield

    logger.info("application_shutting_down")
    await close_engines()


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """422 with the field errors; input values are not echoed back or logged."""
    errors = [
        {"type": error.get("type"), "loc": error.get("loc"), "msg": error.get("msg")}
        for error in exc.errors()
    ]
    logger.warning("validation_error", path=request.url.path, method=request.method, errors=errors)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": errors}
    )


@app.exception_handler(PaymentCoreError)
async def payment_core_exception_handler(request: Request, exc: PaymentCoreError) -> JSONResponse:
    """Map domain exceptions to HTTP errors."""
    status_code = status_code_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "request_rejected",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=str(exc),
        status_code=status_code,
    )
    metrics.record_error(type(exc).__name__, request.url.path)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# Setup tracing
setup_tracing()
instrument_fastapi(app)


class ForwardedProtoMiddleware(BaseHTTPMiddleware):
    """Honour X-Forwarded-Proto from the load balancer so redirects keep https."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto in ("http", "https"):
            request.scope["scheme"] = forwarded_proto
        return await call_next(request)


app.add_middleware(ForwardedProtoMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
)


@app.middleware("http")
async def request_context_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """
    Bind a request id to every log line of the request and record HTTP metrics.

    The id is taken from X-Request-ID when the caller sends one and echoed
    back on the response.
    """
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    route = request.url.path
    method = request.method
    started = time.perf_counter()

    with log_context(request_id=request_id):
        metrics.http_requests_in_progress.labels(endpoint=route, method=method).inc()
        try:
            response = await call_next(request)
        except Exception as exc:
            metrics.record_http_request(route, method, 500, time.perf_counter() - started)
            metrics.record_error(type(exc).__name__, "http_request")
            logger.exception("request_failed", method=method, path=route)
            raise
        finally:
            metrics.http_requests_in_progress.labels(endpoint=route, method=method).dec()

        duration = time.perf_counter() - started
        metrics.record_http_request(route, method, response.status_code, duration)
        logger.info(
            "request_completed",
            method=method,
            path=route,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2),
        )

    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(router)
app.include_router(webhook_router)


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """Prometheus scrape endpoint (404 when METRICS_ENABLED=false)."""
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled", status_code=status.HTTP_404_NOT_FOUND)
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "paysync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )

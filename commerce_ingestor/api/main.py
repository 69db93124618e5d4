"""FastAPI application for the commerce ingestion service."""

import math
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ..exceptions import (
    AuthenticationError,
    CommerceIngestorError,
    ConnectionInactiveError,
    ConnectionNotFoundError,
    PayloadMalformedError,
    ProviderNotFoundError,
    RateLimitExceededError,
    SignatureInvalidError,
    SyncAlreadyRunningError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
    ValidationFailedError,
)
from ..monitoring.tracing import (
    clear_correlation_id,
    ensure_correlation_id,
    extract_correlation_id_from_headers,
)
from ..sync.orchestrator import SyncOrchestrator
from ..sync.registry import ConnectionRegistry
from ..sync.task_handles import SyncTaskManager
from ..utils.config import ensure_runtime_configuration, get_settings
from ..utils.health_checks import register_all_health_checks
from ..utils.logging import setup_logger
from ..webhooks.processor import WebhookProcessor
from .rate_limit import RateLimitMiddleware

logger = setup_logger(__name__, context={"component": "FastAPI"})

# Most specific first; lookups walk the exception's MRO.
_STATUS_BY_ERROR: dict[type[CommerceIngestorError], int] = {
    SignatureInvalidError: status.HTTP_401_UNAUTHORIZED,
    PayloadMalformedError: status.HTTP_400_BAD_REQUEST,
    ValidationFailedError: status.HTTP_400_BAD_REQUEST,
    ConnectionNotFoundError: status.HTTP_404_NOT_FOUND,
    ProviderNotFoundError: status.HTTP_404_NOT_FOUND,
    ConnectionInactiveError: status.HTTP_409_CONFLICT,
    SyncAlreadyRunningError: status.HTTP_409_CONFLICT,
    RateLimitExceededError: status.HTTP_429_TOO_MANY_REQUESTS,
    AuthenticationError: status.HTTP_502_BAD_GATEWAY,
    UpstreamTimeoutError: status.HTTP_504_GATEWAY_TIMEOUT,
    UpstreamUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for_error(exc: CommerceIngestorError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore
    """Application lifespan context manager for startup/shutdown."""
    settings = ensure_runtime_configuration(get_settings())
    registry = ConnectionRegistry(settings)
    orchestrator = SyncOrchestrator(registry, settings=settings)
    app.state.orchestrator = orchestrator
    app.state.sync_tasks = SyncTaskManager(orchestrator)
    app.state.webhook_processor = WebhookProcessor(orchestrator)
    register_all_health_checks()
    logger.info("Commerce ingestor API starting up...")
    yield
    logger.info("Commerce ingestor API shutting down...")
    await app.state.sync_tasks.aclose()
    await app.state.orchestrator.registry.aclose()


app = FastAPI(
    title="Commerce Ingestor API",
    description="Webhook ingestion and historical sync for commerce and payment providers",
    version="0.1.0",
    lifespan=lifespan,
)
app.add_middleware(RateLimitMiddleware)


@app.middleware("http")
async def correlation_middleware(request: Request, call_next):  # type: ignore
    """Bind a correlation ID for the request and echo it back."""
    correlation_id = ensure_correlation_id(extract_correlation_id_from_headers(request.headers))
    try:
        response = await call_next(request)
    finally:
        clear_correlation_id()
    response.headers["X-Correlation-ID"] = correlation_id
    return response


@app.exception_handler(CommerceIngestorError)
async def commerce_exception_handler(request: Request, exc: CommerceIngestorError) -> JSONResponse:
    """Map typed errors to HTTP status codes with an actionable body."""
    status_code = status_for_error(exc)
    log = logger.warning if status_code < 500 else logger.error
    log(
        "%s on %s",
        type(exc).__name__,
        request.url.path,
        extra={
            "correlation_id": request.headers.get("x-correlation-id") or "-",
            "status": "error",
        },
    )
    headers = {}
    if isinstance(exc, RateLimitExceededError) and exc.retry_after is not None:
        headers["Retry-After"] = str(math.ceil(exc.retry_after))
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", **exc.as_dict()},
        headers=headers,
    )


# Import routers
from .routes import connections, health, metrics, webhooks  # noqa: E402

app.include_router(health.router, tags=["health"])
app.include_router(webhooks.router, tags=["webhooks"])
app.include_router(connections.router, prefix="/api/v1", tags=["connections"])
app.include_router(metrics.router, tags=["monitoring"])

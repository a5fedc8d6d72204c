"""
FastAPI application entry point.

This module sets up the FastAPI application with all middleware,
routers, and configuration for production use.
"""
from fastapi import FastAPI, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask, BackgroundTasks

from routers import admin, billing, credits, usage, workouts
from core.config import settings
from core.database import check_db_connection
from core.dependencies import get_usage_recorder
from core.logging import bind_log_context, clear_log_context, setup_logging
from core.exceptions import (
    EntitlementError,
    GenerationTimeout,
    LedgerContentionError,
    MeteringValidationError,
    PlanNotFoundError,
    ProviderError,
)
import logging
import time
import uuid

# Setup logging first
setup_logging()
logger = logging.getLogger(__name__)


def _filter_sensitive_data(event):
    """Filter sensitive data before sending to Sentry."""
    # Remove Authorization headers
    if "request" in event and "headers" in event["request"]:
        headers = event["request"]["headers"]
        if isinstance(headers, dict):
            headers.pop("authorization", None)
            headers.pop("cookie", None)
            headers.pop("x-billing-signature", None)
    return event


# Initialize Sentry for error tracking (production)
if settings.SENTRY_DSN:
    try:
        import sentry_sdk
        from sentry_sdk.integrations.celery import CeleryIntegration
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
            profiles_sample_rate=settings.SENTRY_PROFILES_SAMPLE_RATE,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                CeleryIntegration(),
            ],
            # Don't send PII
            send_default_pii=False,
            # Filter sensitive data
            before_send=lambda event, hint: _filter_sensitive_data(event),
        )
        logger.info(f"Sentry initialized for environment: {settings.ENVIRONMENT}")
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")


# Create FastAPI app
app = FastAPI(
    title="WOD Broker API",
    description="Entitlements, credits and usage accounting for AI workout generation",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

# CORS middleware
# Production: set CORS_ORIGINS env var (comma-separated)
# Development: DEBUG=True allows all origins
if settings.DEBUG:
    allowed_origins = ["*"]
elif settings.CORS_ORIGINS:
    allowed_origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",")]
else:
    # Fallback for local development
    allowed_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Usage recording
# ---------------------------------------------------------------------------

def _usage_outcome(request: Request, status_code: int, latency_ms: int, request_id: str) -> dict:
    tagged = getattr(request.state, "usage", None) or {}
    metadata = dict(tagged.get("metadata") or {})
    metadata["request_id"] = request_id
    return {
        "status_code": status_code,
        "latency_ms": latency_ms,
        "provider": tagged.get("provider"),
        "category": tagged.get("category"),
        "action": tagged.get("action"),
        "metadata": metadata,
    }


async def _dispatch_usage(user_id: str, endpoint: str, method: str, outcome: dict) -> None:
    """
    Hand a completed request to the Usage Recorder. Never raises.

    Async mode enqueues to Celery and falls back to an inline write when the
    broker is unreachable.
    """
    if settings.USAGE_RECORDING_ASYNC:
        try:
            from tasks.billing_tasks import record_usage_task

            record_usage_task.apply_async(
                kwargs={"user_id": user_id, "endpoint": endpoint, "method": method, "outcome": outcome},
                retry=False,
            )
            return
        except Exception as e:
            logger.exception(f"Usage enqueue failed, recording inline: {e}")

    await run_in_threadpool(get_usage_recorder().record, user_id, endpoint, method, outcome)


# Request logging + usage middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests with timing information and record usage for authenticated ones."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    clear_log_context()
    bind_log_context(request_id=request_id)

    # Log request
    logger.info(
        f"Request: {request.method} {request.url.path}",
        extra={
            "extra_fields": {
                "method": request.method,
                "path": request.url.path,
                "client_ip": request.client.host if request.client else None,
            }
        }
    )

    try:
        response = await call_next(request)
    except Exception as e:
        process_time = time.time() - start_time
        logger.error(
            f"Request failed: {request.method} {request.url.path}",
            exc_info=True,
            extra={
                "extra_fields": {
                    "method": request.method,
                    "path": request.url.path,
                    "error": str(e),
                }
            }
        )
        user_id = getattr(request.state, "user_id", None)
        if user_id is not None:
            await _dispatch_usage(
                str(user_id), request.url.path, request.method,
                _usage_outcome(request, 500, int(process_time * 1000), request_id),
            )
        raise

    process_time = time.time() - start_time

    # Log response
    logger.info(
        f"Response: {request.method} {request.url.path} - {response.status_code}",
        extra={
            "extra_fields": {
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "process_time_ms": round(process_time * 1000, 2),
            }
        }
    )

    # Add timing header
    response.headers["X-Process-Time"] = str(process_time)
    response.headers["X-Request-ID"] = request_id

    user_id = getattr(request.state, "user_id", None)
    if user_id is not None:
        # Runs after the body is sent; the client never waits on accounting.
        record = BackgroundTask(
            _dispatch_usage,
            str(user_id), request.url.path, request.method,
            _usage_outcome(request, response.status_code, int(process_time * 1000), request_id),
        )
        if response.background is None:
            response.background = record
        else:
            tasks = BackgroundTasks()
            tasks.add_task(response.background)
            tasks.add_task(record)
            response.background = tasks

    return response


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.exception_handler(EntitlementError)
async def entitlement_error_handler(request: Request, exc: EntitlementError):
    """Expected business outcome; logged at INFO, never as a system error."""
    logger.info(
        f"Entitlement outcome {exc.kind.value}: {exc.message}",
        extra={"extra_fields": {"path": request.url.path, "kind": exc.kind.value}},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(MeteringValidationError)
async def validation_error_handler(request: Request, exc: MeteringValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": exc.error_code, "detail": exc.detail, "field": exc.field},
    )


@app.exception_handler(LedgerContentionError)
async def contention_error_handler(request: Request, exc: LedgerContentionError):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "ledger_contention", "detail": str(exc)},
        headers={"Retry-After": str(exc.retry_after_s)},
    )


@app.exception_handler(GenerationTimeout)
async def generation_timeout_handler(request: Request, exc: GenerationTimeout):
    logger.warning(f"Generation timed out on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_504_GATEWAY_TIMEOUT,
        content={"error": "generation_timeout", "detail": "AI generation timed out", "credits_charged": 0},
    )


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    logger.warning(f"AI providers unavailable on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "provider_unavailable", "detail": "AI generation is temporarily unavailable", "credits_charged": 0},
        headers={"Retry-After": "5"},
    )


@app.exception_handler(PlanNotFoundError)
async def plan_not_found_handler(request: Request, exc: PlanNotFoundError):
    logger.error(f"Plan catalog is missing {exc.plan_id} (requested via {request.url.path})")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.error(
        f"Unhandled exception: {exc}",
        exc_info=True,
        extra={
            "extra_fields": {
                "method": request.method,
                "path": request.url.path,
            }
        }
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


@app.get("/health")
async def health():
    """
    Simple health check for load balancers and uptime monitors.

    Returns:
        - 200: Core systems operational
        - 503: Critical dependency unavailable
    """
    db_healthy = check_db_connection()

    if not db_healthy:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "unhealthy",
                "database": "unavailable",
            }
        )

    return {
        "status": "healthy",
        "timestamp": time.time(),
    }


app.include_router(billing.router)
app.include_router(credits.router)
app.include_router(workouts.router)
app.include_router(usage.router)
app.include_router(admin.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)

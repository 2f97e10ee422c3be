"""UltraGen API - FastAPI Application Entry Point."""

import logging
import time
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ultragen_api import __version__
from ultragen_api.billing.profile_store import SupabaseProfileStore
from ultragen_api.config.env import get_log_level, is_json_logging_enabled, is_production_env
from ultragen_api.config.settings import SettingsError, load_settings
from ultragen_api.context import customer_ref_var, request_id_var
from ultragen_api.routers import admin, health, webhooks
from ultragen_api.schemas import ProblemDetail
from ultragen_api.utils import configure_json_logging

app = FastAPI(
    title="UltraGen API",
    description="Kiwify billing webhook that reconciles UltraPrompt account entitlements.",
    version=__version__,
    # Interactive docs are not served in production
    docs_url=None if is_production_env() else "/api-docs",
    redoc_url=None if is_production_env() else "/redoc",
)

# Structured JSON logging
# Set ULTRAGEN_JSON_LOGS=false to disable (defaults to true for production)
if is_json_logging_enabled():
    configure_json_logging(log_level=get_log_level())
    logging.getLogger(__name__).info("Structured JSON logging enabled")

logger = logging.getLogger(__name__)


# ============================================================================
# HTTP Completion Logging Middleware
# ============================================================================


@app.middleware("http")
async def http_completion_logging_middleware(request: Request, call_next):
    """Log every HTTP request completion.

    - Every HTTP request emits an "http.request.completed" log
    - Fields: method, path, status_code, duration_ms (+ request_id, customer_ref from context)
    - Logs even on exceptions (status_code=500)
    - Clears customer_ref at start and end so it never leaks across requests
    """
    customer_ref_var.set("")

    start_time = time.perf_counter()
    status_code = 500  # Default to 500 in case of unhandled exception

    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            "http.request.completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
        customer_ref_var.set("")


# ============================================================================
# Request ID Middleware (MUST BE OUTERMOST)
# ============================================================================


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Generate and propagate request_id for observability.

    - Accepts X-Request-ID header from client (optional)
    - Generates new UUID if not provided
    - Sets context variable for logging
    - Returns X-Request-ID in response headers

    IMPORTANT: This MUST be registered LAST (outermost middleware) so that
    request_id is set in the parent async context before inner middlewares run.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(request_id)

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id

    return response


# ============================================================================
# RFC 9457 Global Exception Handlers
# ============================================================================


def _trace_instance() -> str:
    """Opaque instance identifier built from the request_id."""
    request_id = request_id_var.get()
    return f"urn:ultragen:trace:{request_id}" if request_id else f"urn:ultragen:trace:{uuid.uuid4()}"


@app.exception_handler(SettingsError)
async def settings_error_handler(request: Request, exc: SettingsError) -> JSONResponse:
    """Required configuration missing (e.g. KIWIFY_WEBHOOK_SECRET).

    Returns 500 + Retry-After so the payment vendor redelivers once the
    deployment is fixed. The underlying message is logged, never returned.
    """
    logger.error(
        "SERVICE_MISCONFIGURED",
        extra={"path": request.url.path, "error_msg": str(exc)},
    )

    problem = ProblemDetail(
        type="urn:ultragen:problem:service-misconfigured",
        title="Service Misconfigured",
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Required server configuration is missing or invalid.",
        instance=_trace_instance(),
    )
    content = problem.model_dump(exclude_none=True)
    content["error_code"] = "SERVICE_MISCONFIGURED"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=content,
        media_type="application/problem+json",
        headers={"Retry-After": "60"},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with RFC 9457 Problem Details format.

    Returns application/problem+json with top-level RFC 9457 fields.
    No {"detail": ...} wrapper. Exception headers (WWW-Authenticate, Allow)
    are forwarded.
    """
    detail_value = exc.detail if exc.detail is not None else _get_title_for_status(exc.status_code)

    problem = ProblemDetail(
        type=f"urn:ultragen:problem:http-{exc.status_code}",
        title=_get_title_for_status(exc.status_code),
        status=exc.status_code,
        detail=detail_value,
        instance=_trace_instance(),
    )

    headers = dict(exc.headers or {})
    if exc.status_code in (429, 503):
        headers.setdefault("Retry-After", "60")

    return JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors with RFC 9457 Problem Details format.

    Returns 422 Unprocessable Entity with application/problem+json.
    """
    # Extract first error for detail message
    first_error = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    msg = first_error.get("msg", "Validation error")

    problem = ProblemDetail(
        type="urn:ultragen:problem:validation-error",
        title="Request Validation Failed",
        status=422,
        detail=f"Invalid field '{field}': {msg}",
        instance=_trace_instance(),
    )

    return JSONResponse(
        status_code=422,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions with RFC 9457 Problem Details format.

    Returns 500 Internal Server Error with application/problem+json.
    """
    problem = ProblemDetail(
        type="urn:ultragen:problem:internal-error",
        title="Internal Server Error",
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An unexpected error occurred. Please try again later.",
        instance=_trace_instance(),
    )

    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        401: "Unauthorized",
        403: "Forbidden",
        404: "Not Found",
        405: "Method Not Allowed",
        409: "Conflict",
        429: "Too Many Requests",
        500: "Internal Server Error",
        502: "Bad Gateway",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(webhooks.router)
app.include_router(admin.router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": "UltraGen API",
        "version": __version__,
        "status": "running",
    }


# ============================================================================
# Application Lifecycle
# ============================================================================


@app.on_event("startup")
async def startup_event():
    """Initialize application state on startup.

    - Loads settings (secret, tier catalog, timeouts) once
    - Builds the profiles store (the Supabase client itself is created lazily)
    - Leaves the delivery ledger to get_ledger, which creates its schema on first use

    Incomplete configuration is logged, not raised: the process still starts
    and requests that need settings fail with SERVICE_MISCONFIGURED.
    Tests override the dependencies instead of relying on this hook.
    """
    try:
        settings = load_settings()
    except SettingsError as e:
        logger.error("Startup settings incomplete", extra={"error_msg": str(e)})
        return

    app.state.settings = settings
    app.state.profile_store = SupabaseProfileStore(
        table=settings.profiles_table,
        timeout_seconds=settings.store_timeout_seconds,
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Dispose the ledger engine if one was built."""
    ledger = getattr(app.state, "ledger", None)
    if ledger is not None:
        ledger.dispose()

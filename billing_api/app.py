"""FastAPI application for the billing dashboard API."""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from billing_api.config import check_required_settings, get_settings
from billing_api.database import init_db, close_db, get_database_type, ping_db
from billing_api.errors import BillingError, ErrorCode
from billing_api.logging_config import setup_logging
from billing_api.middleware.correlation import CorrelationIdMiddleware
from billing_api.routes import users_router, payment_methods_router
from billing_api.metrics import (
    HTTP_REQUESTS_TOTAL,
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_PROGRESS,
    normalize_endpoint,
)
from billing_api.shutdown import drain, is_shutting_down, set_shutting_down

VERSION = "0.1.0"

settings = get_settings()
logger = logging.getLogger(__name__)

# Field-specific guidance for request validation errors
FIELD_HINTS = {
    "mobile": "Use an Iranian mobile number such as 09123456789.",
    "national_id": "The national ID is exactly 10 digits.",
    "expire_at": "Send the expiry as 'YYYY-MM-DD HH:MM:SS', at least 30 days ahead.",
    "max_amount": "Amounts are positive integers in IRR.",
    "max_daily_count": "Send a positive whole number of transactions.",
    "max_monthly_count": "Send a positive whole number of transactions.",
    "status": "The bank reports either OK or NOK.",
    "payman_authority": "Use the authority returned when the contract was created.",
    "email": "Send a valid email address.",
}


def get_in_flight_count() -> int:
    """Sum the in-progress gauge across all endpoints."""
    return sum(
        int(sample.value)
        for metric in HTTP_REQUESTS_IN_PROGRESS.collect()
        for sample in metric.samples
        if sample.name == "http_requests_in_progress"
    )


class MetricsMiddleware(BaseHTTPMiddleware):
    """Counts, times and logs every request except scrapes of /metrics."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        labels = {"method": request.method, "endpoint": normalize_endpoint(request.url.path)}
        in_progress = HTTP_REQUESTS_IN_PROGRESS.labels(**labels)
        in_progress.inc()
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            elapsed = time.perf_counter() - started
            in_progress.dec()
            HTTP_REQUESTS_TOTAL.labels(**labels, status_code=status_code).inc()
            HTTP_REQUEST_DURATION_SECONDS.labels(**labels).observe(elapsed)
            logger.info(
                "request_completed",
                extra={
                    "method": labels["method"],
                    "path": labels["endpoint"],
                    "status_code": status_code,
                    "duration_ms": round(elapsed * 1000, 2),
                },
            )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and tables on startup; drain and dispose on shutdown."""
    setup_logging(settings.log_level, settings.log_json)
    check_required_settings(settings)
    logger.info(
        "Starting Billing Dashboard API",
        extra={"version": VERSION, "zarinpal_mode": settings.zarinpal_mode},
    )
    if settings.zarinpal_mode == "mock":
        logger.warning("ZarinPal mock mode is enabled; no real contracts will be created")

    await init_db()
    yield

    set_shutting_down()
    remaining = await drain(get_in_flight_count, settings.shutdown_timeout)
    if remaining:
        logger.warning(
            "Shutdown timeout reached with requests still in-flight",
            extra={"in_flight": remaining},
        )
    else:
        logger.info("All requests drained, closing connections")
    await close_db()


app = FastAPI(
    title="Billing Dashboard API",
    description="Direct debit (ZarinPal Payman) contract lifecycle: request, verify, recover, cancel and pick a default payment method.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.app_url],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", settings.session_header, "X-Correlation-ID"],
)
# Last added runs first: correlation id, then metrics, then CORS
app.add_middleware(MetricsMiddleware)
app.add_middleware(CorrelationIdMiddleware)


@app.get("/health")
async def health_check():
    """Liveness probe. Returns 200 while the process is up, even during shutdown."""
    return {
        "status": "healthy",
        "version": VERSION,
        "database": get_database_type(),
        "gateway": settings.zarinpal_mode,
    }


@app.get("/ready")
async def readiness_check():
    """Readiness probe. 503 while draining or when the database is unreachable."""
    if is_shutting_down():
        return JSONResponse(status_code=503, content={"status": "shutting_down"})
    if not await ping_db():
        return JSONResponse(status_code=503, content={"status": "database_unavailable"})
    return {"status": "ready"}


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint.

    Includes:
    - http_requests_total / http_request_duration_seconds / http_requests_in_progress
    - contract_transitions_total: Contract state changes by transition
    - gateway_requests_total / gateway_request_duration_seconds: ZarinPal calls by operation and outcome
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/")
async def root():
    return {
        "name": "Billing Dashboard API",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
    }


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """Render domain errors in the standard error envelope."""
    if exc.status_code >= 500:
        logger.warning(
            "Request failed upstream",
            extra={"path": request.url.path, "error_code": exc.code.value},
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Pass structured details through; wrap plain string details in the envelope."""
    content = exc.detail if isinstance(exc.detail, dict) else {"error": {"message": exc.detail}}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Report every invalid field at once.

    Each entry carries the dotted field path (``body.mobile``,
    ``query.status``) and a hint specific to the field where one exists.
    """
    errors = []
    for error in exc.errors():
        path = [str(part) for part in error["loc"]]
        name = path[-1] if path else "unknown"
        errors.append({
            "code": ErrorCode.INVALID_FIELD.value,
            "message": error["msg"],
            "field": ".".join(path),
            "hint": FIELD_HINTS.get(name, f"Check the '{name}' field in your request."),
        })

    return JSONResponse(status_code=422, content={"errors": errors})


app.include_router(users_router)
app.include_router(payment_methods_router)

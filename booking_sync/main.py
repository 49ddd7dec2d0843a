"""FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from booking_sync.core.config import settings
from booking_sync.core.exceptions import BookingSyncError, ValidationError
from booking_sync.core.rate_limit import limiter
from booking_sync.core.structured_logging import configure_logging
from booking_sync.core.telemetry import configure_telemetry
from booking_sync.db.session import engine

configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,  # Patient demographics must never leave the service
    )
    logger.info("Sentry initialized for error tracking")


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Booking Sync API",
    description="Appointment booking with EHR client synchronization",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(BookingSyncError)
async def booking_sync_error_handler(request: Request, exc: BookingSyncError):
    """Map domain errors to {"error": {"kind", "message"}} with their HTTP status."""
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": {"kind": exc.kind, "message": exc.message}},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Report rejected input in the domain error envelope; submitted values are not echoed."""
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    logger.info("Rejected request to %s: %d validation error(s)", request.url.path, len(problems))
    return JSONResponse(
        status_code=422,
        content={"error": {"kind": ValidationError.kind, "message": "; ".join(problems)}},
    )


# ============================================================================
# Routers
# ============================================================================

from booking_sync.routers import audit, availability, bookings, internal

app.include_router(bookings.router)
app.include_router(availability.router)

# Operator endpoints (protected by INTERNAL_SECRET)
app.include_router(audit.router)
app.include_router(internal.router)

configure_telemetry(app, engine)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}

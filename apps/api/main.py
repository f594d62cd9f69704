"""
FastAPI application entry point.

This module sets up the FastAPI application with all middleware,
routers, and configuration for production use.
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from routers import admin, links, payments, pro
from core.config import settings, validate_production_config
from core.database import check_db_connection
from core.logging import setup_logging
from core.exceptions import APIException
import logging
import time

# Setup logging first
setup_logging()
logger = logging.getLogger(__name__)

validate_production_config(
    environment=settings.ENVIRONMENT,
    debug=settings.DEBUG,
    cors_origins=settings.CORS_ORIGINS,
    postgres_password=settings.POSTGRES_PASSWORD,
    database_url=settings.DATABASE_URL,
)


def _filter_sensitive_data(event, hint):
    """Filter sensitive data before sending to Sentry."""
    # Remove Authorization headers and signatures
    if "request" in event and "headers" in event["request"]:
        headers = event["request"]["headers"]
        if isinstance(headers, dict):
            headers.pop("authorization", None)
            headers.pop("cookie", None)
            headers.pop("stripe-signature", None)
            headers.pop("x-admin-token", None)
    return event


# Initialize Sentry for error tracking (production)
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        # Don't send PII
        send_default_pii=False,
        before_send=_filter_sensitive_data,
    )
    logger.info(f"Sentry initialized for environment: {settings.ENVIRONMENT}")

# Create FastAPI app
app = FastAPI(
    title="FilePay API",
    description="Paid file links: Stripe checkout, entitlement-gated downloads and expiry cleanup",
    version="1.0.0",
    docs_url="/docs" if (settings.DEBUG or settings.EXPOSE_API_DOCS) else None,
    redoc_url="/redoc" if (settings.DEBUG or settings.EXPOSE_API_DOCS) else None,
)

# CORS middleware
# Production: set CORS_ORIGINS env var (comma-separated)
# Development: DEBUG=True allows all origins
if settings.DEBUG:
    allowed_origins = ["*"]
elif settings.CORS_ORIGINS:
    allowed_origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",")]
else:
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


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests with timing information."""
    start_time = time.time()
    try:
        response = await call_next(request)
    except Exception as e:
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
        raise

    process_time = time.time() - start_time
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
    response.headers["X-Process-Time"] = str(process_time)
    return response


@app.exception_handler(APIException)
async def api_exception_handler(request: Request, exc: APIException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error_code": exc.error_code},
        headers=exc.headers,
    )


# Error handler
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
        - 200: Database reachable; flags say which integrations are configured
        - 503: Database unavailable
    """
    if not check_db_connection():
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
        "stripe_configured": bool(settings.STRIPE_SECRET_KEY and settings.STRIPE_WEBHOOK_SECRET),
        "admin_cleanup_configured": bool(settings.ADMIN_PURGE_TOKEN or settings.ADMIN_ACTION_SECRET),
    }


# Include routers
app.include_router(payments.router)
app.include_router(links.router)
app.include_router(pro.router)
app.include_router(admin.router)

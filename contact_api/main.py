# contact_api/main.py
from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from contact_api.core.config import settings
from contact_api.core.exceptions import (
    BaseAPIException,
    CRMError,
    InternalError,
    ServiceUnavailableError,
    ValidationError,
)
from contact_api.core.logging import configure_structlog, get_structlog_logger
from contact_api.middleware import LoggingMiddleware, RequestIdMiddleware, SecurityHeadersMiddleware
from contact_api.routes import contact_router, health_router
from contact_api.schemas.contact import ContactResponse
from contact_api.services.contact import build_contact_service
from contact_api.services.crm import ZohoCRMClient
from contact_api.services.redis import close_redis_pool
from contact_api.services.store import MemoryStore, build_store

GENERIC_FAILURE_MESSAGE = "Failed to submit contact form"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    logger = get_structlog_logger(__name__)

    logger.info("application.starting", environment=settings.environment)

    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            integrations=[
                AsyncioIntegration(),
                FastApiIntegration(),
                StarletteIntegration(),
            ],
            traces_sample_rate=1.0 if settings.is_development else 0.1,
            send_default_pii=False,
        )
        logger.info("sentry.initialized")

    try:
        store = await build_store(settings)
    except ServiceUnavailableError as e:
        if settings.is_production:
            raise
        logger.error("store.redis_unavailable_falling_back", error=e.message)
        store = MemoryStore()

    crm = ZohoCRMClient.from_settings(settings)
    app.state.contact_service = build_contact_service(settings, store, crm=crm)

    logger.info("application.started", state_backend=type(store).__name__)
    yield

    logger.info("application.shutting_down")

    await crm.close()
    await store.close()
    if settings.state_backend == "redis":
        await close_redis_pool()

    logger.info("application.shutdown_complete")


# Configure logging before creating app
configure_structlog()
logger = get_structlog_logger(__name__)

app = FastAPI(
    title="Contact Gateway",
    version="1.0.0",
    description="Landing page contact form submission and CRM lead sync",
    docs_url="/docs" if settings.is_development else None,
    redoc_url=None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.origins(),
    allow_credentials=True,
    allow_methods=settings.methods(),
    allow_headers=settings.headers(),
    expose_headers=["X-Request-ID", "X-Response-Time"],
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.hosts())
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIdMiddleware)


def render_api_exception(exc: BaseAPIException) -> dict:
    """Render an API exception into the ``{success: false, ...}`` contract."""
    message = GENERIC_FAILURE_MESSAGE if isinstance(exc, CRMError) else exc.message
    body = ContactResponse(success=False, message=message).to_body()
    body["code"] = exc.code

    if isinstance(exc, ValidationError):
        body["field"] = exc.field

    if not settings.is_production:
        if isinstance(exc, InternalError):
            body["error"] = exc.detail
        elif isinstance(exc, CRMError):
            body["error"] = exc.message

    return body


@app.exception_handler(BaseAPIException)
async def api_exception_handler(request: Request, exc: BaseAPIException):
    """Handle custom API exceptions."""
    logger.warning(
        "api.exception",
        status_code=exc.status_code,
        code=exc.code,
        path=request.url.path,
        method=request.method,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=render_api_exception(exc),
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    """Render FastAPI's own parameter validation failures like sanitizer errors."""
    errors = exc.errors()
    loc = errors[0].get("loc", ()) if errors else ()
    field = str(loc[-1]) if loc else "form"

    logger.warning(
        "request.validation_failed",
        path=request.url.path,
        method=request.method,
        field=field,
        error_count=len(errors),
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=render_api_exception(ValidationError(field, "Invalid request")),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    error_id = f"err_{int(time.time())}_{uuid.uuid4().hex[:8]}"

    logger.error(
        "unhandled.exception",
        error_id=error_id,
        error_type=type(exc).__name__,
        error=str(exc),
        path=request.url.path,
        method=request.method,
    )

    body = ContactResponse(success=False, message="Internal server error").to_body()
    body["code"] = "internal_error"
    body["error_id"] = error_id
    if not settings.is_production:
        body["error"] = str(exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
        headers={"X-Error-ID": error_id},
    )


app.include_router(health_router, prefix=settings.api_prefix)
app.include_router(contact_router, prefix=settings.api_prefix, tags=["contact"])

if not settings.is_testing:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Contact Gateway",
        "version": app.version,
        "environment": settings.environment,
        "health": f"{settings.api_prefix}/health",
        "csrf_token": f"{settings.api_prefix}/csrf-token",
        "submit": f"{settings.api_prefix}/submit-contact",
    }


logger.info("application.configured", environment=settings.environment)

# contact_api/middleware/logging.py
from __future__ import annotations

import time
from typing import Dict, Mapping

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from contact_api.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)

QUIET_PATHS = frozenset({"/api/health", "/metrics"})
REDACTED_HEADERS = frozenset({"authorization", "cookie", "x-csrf-token"})


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Header snapshot safe to log; CSRF tokens and credentials are masked."""
    return {
        name: "[REDACTED]" if name.lower() in REDACTED_HEADERS else value
        for name, value in headers.items()
    }


class LoggingMiddleware(BaseHTTPMiddleware):
    """One event when a request arrives and one when its response leaves."""

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        path = request.url.path
        quiet = path in QUIET_PATHS

        if not quiet:
            logger.info(
                "request.received",
                method=request.method,
                path=path,
                content_length=request.headers.get("content-length", "0"),
                headers=redact_headers(request.headers),
            )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request.failed",
                method=request.method,
                path=path,
                elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
                error_type=type(e).__name__,
            )
            raise

        elapsed = time.perf_counter() - started
        response.headers["X-Response-Time"] = f"{elapsed:.3f}"

        if not quiet:
            log = logger.warning if response.status_code >= 400 else logger.info
            log(
                "response.sent",
                method=request.method,
                path=path,
                status_code=response.status_code,
                elapsed_ms=round(elapsed * 1000, 2),
            )

        return response

# contact_api/middleware/__init__.py
"""
ASGI middleware: request ids, request logging, security headers.
"""

from contact_api.middleware.logging import LoggingMiddleware
from contact_api.middleware.request_id import RequestIdMiddleware
from contact_api.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "LoggingMiddleware",
    "RequestIdMiddleware",
    "SecurityHeadersMiddleware",
]

# contact_api/middleware/request_id.py
from __future__ import annotations

import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from contact_api.core.logging import set_request_id

MAX_REQUEST_ID_LENGTH = 128


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Middleware to generate and set request IDs."""

    async def dispatch(self, request: Request, call_next):
        request_id = self._get_or_create_request_id(request)

        set_request_id(None)
        set_request_id(request_id)
        request.state.request_id = request_id

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id

        return response

    def _get_or_create_request_id(self, request: Request) -> str:
        """Extract request ID from headers or generate new one."""
        for header in ("X-Request-ID", "X-Correlation-ID"):
            value = request.headers.get(header)
            if value and len(value) <= MAX_REQUEST_ID_LENGTH:
                return value

        # W3C Trace Context: 00-<32 hex trace id>-...
        trace_id = request.headers.get("traceparent")
        if trace_id and trace_id.startswith("00-") and len(trace_id) >= 35:
            return trace_id[3:35]

        return str(uuid.uuid4())

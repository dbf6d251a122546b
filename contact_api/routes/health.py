# contact_api/routes/health.py
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request
from pydantic import BaseModel

from contact_api.core.config import settings
from contact_api.core.logging import get_structlog_logger
from contact_api.services.redis import health_check as redis_health_check

logger = get_structlog_logger(__name__)

router = APIRouter(tags=["health"])

_started_at = time.monotonic()


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    environment: str
    timestamp: str
    uptime: float
    checks: Dict[str, Dict[str, Any]]


async def check_state_store() -> Dict[str, Any]:
    if settings.state_backend == "redis":
        result = await redis_health_check()
        return {"backend": "redis", **result}
    return {"backend": "memory", "status": "healthy"}


def check_crm_circuit(request: Request) -> Dict[str, Any]:
    service = getattr(request.app.state, "contact_service", None)
    crm = getattr(service, "crm", None)
    if crm is None or not hasattr(crm, "circuit_state"):
        return {"status": "unknown"}
    stats = crm.circuit_state()
    return {"status": "healthy" if stats["state"] != "open" else "unhealthy", **stats}


@router.get("/health", response_model=HealthCheckResponse)
async def health(request: Request) -> HealthCheckResponse:
    """Report state store health and the CRM circuit breaker state."""
    checks = {
        "state_store": await check_state_store(),
        "crm_circuit": check_crm_circuit(request),
    }

    overall = "healthy"
    if any(check.get("status") == "unhealthy" for check in checks.values()):
        overall = "degraded"
        logger.warning("health.degraded", checks=checks)

    return HealthCheckResponse(
        status=overall,
        service="contact-gateway",
        environment=settings.environment,
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime=time.monotonic() - _started_at,
        checks=checks,
    )

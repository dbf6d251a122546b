import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("CSRF_SECRET", "test-csrf-secret-0123456789abcdef0123456789")
os.environ.setdefault("STATE_BACKEND", "memory")

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from contact_api.core.exceptions import CRMError
from contact_api.services.audit import AuditLogger
from contact_api.services.contact import ContactRequest, ContactSubmissionService
from contact_api.services.crm import LeadWriteResult
from contact_api.services.csrf import CSRFProtector
from contact_api.services.rate_limiter import FixedWindowRateLimiter
from contact_api.services.store import MemoryStore
from contact_api.services.submission_cache import SubmissionCache

FIXED_NOW = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
BROWSER_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingLogger:
    """Stands in for a structlog logger and keeps every event."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    def _record(self, level: str, event: str, **kw: Any) -> None:
        self.events.append({"level": level, "event": event, **kw})

    def info(self, event: str, **kw: Any) -> None:
        self._record("info", event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._record("warning", event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._record("error", event, **kw)

    def names(self) -> List[str]:
        return [e["event"] for e in self.events]


class FakeCRM:
    """In-memory CRM double that records every call."""

    def __init__(self):
        self.leads: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.fail_writes: Optional[Exception] = None
        self._next_id = 1000

    def add_existing(self, lead_id: str, email: str) -> None:
        self.leads[lead_id] = {"id": lead_id, "Email": email}

    async def search_by_email(self, email: str) -> List[Dict[str, Any]]:
        self.calls.append(("search", email))
        return [lead for lead in self.leads.values() if lead["Email"] == email]

    async def create_lead(self, lead: Dict[str, Any]) -> LeadWriteResult:
        self.calls.append(("create", lead))
        if self.fail_writes:
            raise self.fail_writes
        self._next_id += 1
        lead_id = str(self._next_id)
        self.leads[lead_id] = {"id": lead_id, **lead}
        return LeadWriteResult(lead_id=lead_id, status="success")

    async def update_lead(self, lead_id: str, lead: Dict[str, Any]) -> LeadWriteResult:
        self.calls.append(("update", lead_id, lead))
        if self.fail_writes:
            raise self.fail_writes
        self.leads[lead_id] = {"id": lead_id, **lead}
        return LeadWriteResult(lead_id=lead_id, status="success")

    def call_kinds(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def fake_crm():
    return FakeCRM()


@pytest.fixture
def audit_log():
    return RecordingLogger()


@pytest.fixture
def service(store, clock, fake_crm, audit_log):
    return ContactSubmissionService(
        csrf=CSRFProtector(store, "s" * 32, ttl_seconds=3600, clock=clock),
        rate_limiter=FixedWindowRateLimiter(store, max_requests=3, window_seconds=3600, clock=clock),
        cache=SubmissionCache(store, ttl_seconds=300, clock=clock),
        crm=fake_crm,
        audit=AuditLogger(logger=audit_log),
        now=lambda: FIXED_NOW,
    )


@pytest.fixture
def valid_body():
    return {
        "name": "Jean Dupont",
        "email": "jean@acme.fr",
        "phone": "0612345678",
        "interest": "pos",
        "locale": "fr",
    }


async def signed_request(
    service: ContactSubmissionService,
    body: Any,
    client_ip: str = "203.0.113.7",
    headers: Optional[Dict[str, str]] = None,
) -> ContactRequest:
    """A POST carrying a freshly issued CSRF token."""
    token = await service.csrf.issue()
    merged = {"user-agent": BROWSER_UA, "x-csrf-token": token}
    merged.update(headers or {})
    return ContactRequest.build("POST", client_ip=client_ip, headers=merged, body=body)


@pytest.fixture
def signed(service):
    async def _build(body: Any, **kwargs: Any) -> ContactRequest:
        return await signed_request(service, body, **kwargs)
    return _build

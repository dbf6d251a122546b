# contact_api/services/contact.py
"""
Contact submission pipeline.

Order: method guard -> request metadata -> CSRF -> rate limit -> sanitize ->
duplicate check -> CRM search + create/update -> cache write. Every rejection
is audited before the exception leaves this module.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from contact_api.core.config import Settings
from contact_api.core.exceptions import (
    BaseAPIException,
    CRMError,
    CSRFInvalid,
    InternalError,
    MethodNotAllowed,
    RateLimitExceeded,
    ValidationError,
)
from contact_api.core.logging import get_structlog_logger
from contact_api.schemas.contact import ContactResponse, SanitizedSubmission
from contact_api.services.audit import AuditLogger, SecurityEvent
from contact_api.services.crm import LeadWriteResult, ZohoCRMClient, build_lead_record
from contact_api.services.csrf import CSRFProtector
from contact_api.services.rate_limiter import FixedWindowRateLimiter
from contact_api.services.sanitizer import sanitize, validate_request_metadata
from contact_api.services.store import KeyValueStore
from contact_api.services.submission_cache import SubmissionCache

logger = get_structlog_logger(__name__)


class CRMGateway(Protocol):
    async def search_by_email(self, email: str) -> List[Dict[str, Any]]:
        ...

    async def create_lead(self, lead: Dict[str, Any]) -> LeadWriteResult:
        ...

    async def update_lead(self, lead_id: str, lead: Dict[str, Any]) -> LeadWriteResult:
        ...


@dataclass(frozen=True)
class ContactRequest:
    """Transport-neutral view of an incoming request. Header names are lowercase."""

    method: str
    path: str
    client_ip: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None

    @classmethod
    def build(
        cls,
        method: str,
        path: str = "/api/submit-contact",
        client_ip: str = "unknown",
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
    ) -> "ContactRequest":
        return cls(
            method=method.upper(),
            path=path,
            client_ip=client_ip,
            headers={k.lower(): v for k, v in (headers or {}).items()},
            body=body,
        )


@dataclass(frozen=True)
class SubmissionOutcome:
    status_code: int
    response: ContactResponse
    outcome: str


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_update_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ContactSubmissionService:
    def __init__(
        self,
        csrf: CSRFProtector,
        rate_limiter: FixedWindowRateLimiter,
        cache: SubmissionCache,
        crm: CRMGateway,
        audit: Optional[AuditLogger] = None,
        lead_brand: str = "TKPay",
        lead_source: str = "Website Form",
        now: Callable[[], datetime] = utc_now,
    ):
        self.csrf = csrf
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.crm = crm
        self.audit = audit or AuditLogger()
        self.lead_brand = lead_brand
        self.lead_source = lead_source
        self.now = now

    @staticmethod
    def rate_limit_identifier(request: ContactRequest) -> str:
        email = request.body.get("email") if isinstance(request.body, Mapping) else None
        email = email.strip().lower() if isinstance(email, str) else ""
        return f"contact:{request.client_ip}:{email}"

    async def issue_token(self, request: ContactRequest) -> str:
        if request.method != "GET":
            self.audit.security_event(SecurityEvent.METHOD_NOT_ALLOWED, request)
            raise MethodNotAllowed("GET")
        return await self.csrf.issue()

    async def submit(self, request: ContactRequest) -> SubmissionOutcome:
        try:
            return await self._process(request)
        except BaseAPIException as e:
            if e.status_code >= 500 and not isinstance(e, (CRMError, InternalError)):
                self.audit.security_event(SecurityEvent.INTERNAL_ERROR, request, code=e.code)
            raise
        except Exception as e:
            logger.exception("contact.unexpected_error", error_type=type(e).__name__)
            self.audit.security_event(
                SecurityEvent.INTERNAL_ERROR,
                request,
                error_type=type(e).__name__,
            )
            raise InternalError(str(e)) from e

    async def _process(self, request: ContactRequest) -> SubmissionOutcome:
        if request.method != "POST":
            self.audit.security_event(SecurityEvent.METHOD_NOT_ALLOWED, request)
            raise MethodNotAllowed("POST")

        try:
            validate_request_metadata(request.headers)
        except ValidationError as e:
            self.audit.security_event(SecurityEvent.INVALID_REQUEST_METADATA, request, field=e.field)
            raise

        try:
            await self.csrf.verify(request.headers, request.body)
        except CSRFInvalid:
            self.audit.csrf_invalid(request)
            raise

        identifier = self.rate_limit_identifier(request)
        try:
            await self.rate_limiter.check(identifier)
        except RateLimitExceeded as e:
            self.audit.rate_limit_exceeded(request, identifier, e.retry_after)
            raise

        try:
            submission = sanitize(request.body)
        except ValidationError as e:
            self.audit.invalid_input(request, e.field)
            raise

        fingerprint = self.cache.fingerprint(submission)
        # A concurrent twin waits here and then sees the recorded entry
        async with self.cache.lock(fingerprint):
            if await self.cache.is_duplicate(fingerprint):
                self.audit.submission(request, submission, "duplicate")
                return SubmissionOutcome(
                    status_code=200,
                    response=ContactResponse(success=True, message="Submission already received"),
                    outcome="duplicate",
                )

            try:
                result = await self._sync_lead(submission)
            except CRMError as e:
                logger.error("contact.crm_sync_failed", error=e.message, code=e.code, crm_status=e.status)
                self.audit.security_event(
                    SecurityEvent.CRM_API_ERROR,
                    request,
                    code=e.code,
                    crm_status=e.status,
                )
                raise

            await self.cache.record(fingerprint, submission)

        self.audit.submission(request, submission, result.outcome, lead_id=result.response.lead_id)
        return result

    async def _sync_lead(self, submission: SanitizedSubmission) -> SubmissionOutcome:
        """Last-write-wins upsert keyed on email."""
        lead = build_lead_record(submission, brand=self.lead_brand, lead_source=self.lead_source)
        existing = await self.crm.search_by_email(submission.email)

        if existing:
            lead_id = existing[0].get("id")
            if not lead_id:
                raise CRMError("Search returned a lead without an id")
            lead_id = str(lead_id)
            lead["Description"] = f"{lead['Description']}\n\nUpdated: {format_update_timestamp(self.now())}"
            await self.crm.update_lead(lead_id, lead)
            return SubmissionOutcome(
                status_code=200,
                response=ContactResponse(success=True, message="Lead updated successfully", lead_id=lead_id),
                outcome="updated",
            )

        created = await self.crm.create_lead(lead)
        if not created.lead_id:
            raise CRMError("Create response did not include a lead id")
        return SubmissionOutcome(
            status_code=201,
            response=ContactResponse(success=True, message="Lead created successfully", lead_id=created.lead_id),
            outcome="created",
        )


def build_contact_service(
    settings: Settings,
    store: KeyValueStore,
    crm: Optional[CRMGateway] = None,
) -> ContactSubmissionService:
    """Wire the pipeline from settings around a shared state store."""
    return ContactSubmissionService(
        csrf=CSRFProtector(store, settings.csrf_secret, ttl_seconds=settings.csrf_token_ttl_seconds),
        rate_limiter=FixedWindowRateLimiter(
            store,
            max_requests=settings.contact_rate_limit_requests,
            window_seconds=settings.contact_rate_limit_period,
        ),
        cache=SubmissionCache(store, ttl_seconds=settings.submission_cache_ttl_seconds),
        crm=crm or ZohoCRMClient.from_settings(settings),
        lead_brand=settings.lead_brand,
        lead_source=settings.lead_source,
    )

# contact_api/services/audit.py
from __future__ import annotations

import hashlib
from enum import Enum
from typing import Any, Dict, Optional

from contact_api.core.logging import get_structlog_logger
from contact_api.schemas.contact import SanitizedSubmission

MAX_LOGGED_USER_AGENT = 200


class SecurityEvent(str, Enum):
    METHOD_NOT_ALLOWED = "method_not_allowed"
    INVALID_REQUEST_METADATA = "invalid_request_metadata"
    CSRF_TOKEN_INVALID = "csrf_token_invalid"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INVALID_INPUT = "invalid_input"
    DUPLICATE_SUBMISSION = "duplicate_submission"
    CRM_API_ERROR = "crm_api_error"
    INTERNAL_ERROR = "internal_error"
    CONTACT_FORM_SUBMISSION = "contact_form_submission"


_WARNING_EVENTS = {
    SecurityEvent.METHOD_NOT_ALLOWED,
    SecurityEvent.INVALID_REQUEST_METADATA,
    SecurityEvent.CSRF_TOKEN_INVALID,
    SecurityEvent.RATE_LIMIT_EXCEEDED,
    SecurityEvent.INVALID_INPUT,
}
_ERROR_EVENTS = {SecurityEvent.CRM_API_ERROR, SecurityEvent.INTERNAL_ERROR}


def identifier_digest(identifier: str) -> str:
    """Short, non-reversible tag for identifiers that embed an email."""
    return hashlib.sha256(identifier.encode("utf-8")).hexdigest()[:16]


class AuditLogger:
    """Structured security and outcome events. Never logs email, phone or name."""

    def __init__(self, logger=None):
        self.logger = logger or get_structlog_logger("contact_api.audit")

    @staticmethod
    def _client_info(request) -> Dict[str, Any]:
        user_agent = request.headers.get("user-agent")
        return {
            "ip": request.client_ip,
            "user_agent": user_agent[:MAX_LOGGED_USER_AGENT] if user_agent else None,
            "method": request.method,
            "path": request.path,
            "referer": request.headers.get("referer"),
        }

    def security_event(self, event: SecurityEvent, request, **data: Any) -> None:
        fields = {**self._client_info(request), **data}
        name = f"security.{event.value}"
        if event in _ERROR_EVENTS:
            self.logger.error(name, **fields)
        elif event in _WARNING_EVENTS:
            self.logger.warning(name, **fields)
        else:
            self.logger.info(name, **fields)

    def rate_limit_exceeded(self, request, identifier: str, retry_after: Optional[int]) -> None:
        self.security_event(
            SecurityEvent.RATE_LIMIT_EXCEEDED,
            request,
            identifier=identifier_digest(identifier),
            retry_after=retry_after,
        )

    def invalid_input(self, request, field: str) -> None:
        self.security_event(SecurityEvent.INVALID_INPUT, request, errors=[field])

    def csrf_invalid(self, request) -> None:
        self.security_event(SecurityEvent.CSRF_TOKEN_INVALID, request)

    def submission(
        self,
        request,
        submission: SanitizedSubmission,
        outcome: str,
        lead_id: Optional[str] = None,
    ) -> None:
        event = (
            SecurityEvent.DUPLICATE_SUBMISSION
            if outcome == "duplicate"
            else SecurityEvent.CONTACT_FORM_SUBMISSION
        )
        self.security_event(
            event,
            request,
            outcome=outcome,
            lead_id=lead_id,
            name_length=len(submission.name),
            has_company=submission.company is not None,
            interest=submission.interest.value,
            locale=submission.locale.value,
        )

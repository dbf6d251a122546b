# contact_api/services/__init__.py
"""
Contact submission pipeline components organized by concern.
"""

from contact_api.services.contact import (
    ContactRequest,
    ContactSubmissionService,
    SubmissionOutcome,
    build_contact_service,
)
from contact_api.services.sanitizer import sanitize, validate_request_metadata
from contact_api.services.store import KeyValueStore, MemoryStore, RedisStore

__all__ = [
    # Pipeline
    "ContactRequest",
    "ContactSubmissionService",
    "SubmissionOutcome",
    "build_contact_service",
    # Sanitizer
    "sanitize",
    "validate_request_metadata",
    # State
    "KeyValueStore",
    "MemoryStore",
    "RedisStore",
]

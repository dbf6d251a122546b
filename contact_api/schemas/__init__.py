# contact_api/schemas/__init__.py
"""
Pydantic schemas for submissions and API responses.
"""

from contact_api.schemas.contact import (
    ContactResponse,
    CSRFTokenResponse,
    Interest,
    Locale,
    SanitizedSubmission,
)

__all__ = [
    "ContactResponse",
    "CSRFTokenResponse",
    "Interest",
    "Locale",
    "SanitizedSubmission",
]

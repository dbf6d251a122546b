# contact_api/schemas/contact.py
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Interest(str, Enum):
    POS = "pos"
    ONLINE = "online"
    ACCOUNT = "account"


class Locale(str, Enum):
    FR = "fr"
    AR = "ar"
    EN = "en"


class SanitizedSubmission(BaseModel):
    """A contact form submission that has passed every sanitizer rule.

    Instances are only built by ``services.sanitizer.sanitize``; nothing
    downstream re-validates them.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=2, max_length=100)
    company: Optional[str] = None
    email: str
    phone: str
    interest: Interest
    locale: Locale = Locale.FR


class ContactResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    lead_id: Optional[str] = Field(default=None, serialization_alias="leadId")
    error: Optional[str] = None

    def to_body(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class CSRFTokenResponse(BaseModel):
    token: str

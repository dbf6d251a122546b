# contact_api/services/sanitizer.py
"""
Turns an untrusted contact form body into a ``SanitizedSubmission``.

Rules run in a fixed order and the first violation raises
``ValidationError(field, reason)``; nothing is returned half-cleaned.
"""
from __future__ import annotations

import re
from typing import Any, Mapping, Optional

import bleach
from email_validator import EmailNotValidError, validate_email
from pydantic import HttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from contact_api.core.exceptions import ValidationError
from contact_api.schemas.contact import Interest, Locale, SanitizedSubmission

MAX_USER_AGENT_LENGTH = 1000
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 100

_SCRIPT_BLOCK = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_PHONE_CHARS = re.compile(r"^\+?[\d\s().-]+$")
_NAME_PUNCTUATION = frozenset(" -'’")

_INTERESTS = {interest.value for interest in Interest}
_LOCALES = {locale.value for locale in Locale}

_url_adapter = TypeAdapter(HttpUrl)


def strip_html(value: str) -> str:
    """Remove markup, dropping script/style bodies entirely."""
    without_scripts = _SCRIPT_BLOCK.sub("", value)
    return bleach.clean(without_scripts, tags=[], attributes={}, strip=True).strip()


def is_valid_moroccan_phone(phone: str) -> bool:
    """Accept 06/07 local numbers and +212 / 00212 mobile numbers."""
    raw = phone.strip()
    if not _PHONE_CHARS.match(raw):
        return False

    digits = re.sub(r"\D", "", raw)

    if not raw.startswith("+") and len(digits) == 10 and digits.startswith(("06", "07")):
        return True

    if raw.startswith("+212"):
        national = digits[3:]
    elif raw.startswith("00212"):
        national = digits[5:]
    else:
        return False

    return len(national) == 9 and national[0] in "67"


def _is_valid_name(name: str) -> bool:
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        return False
    if not name[0].isalpha():
        return False
    return all(ch.isalpha() or ch in _NAME_PUNCTUATION for ch in name)


def _normalize_email(email: str) -> Optional[str]:
    try:
        result = validate_email(email.strip(), check_deliverability=False)
    except EmailNotValidError:
        return None
    return result.normalized.lower()


def sanitize(data: Any) -> SanitizedSubmission:
    """Validate and clean a raw contact form body."""
    if not isinstance(data, Mapping):
        raise ValidationError("form", "Invalid form data")

    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("name", "Name is required")
    clean_name = " ".join(strip_html(name).split())
    if not _is_valid_name(clean_name):
        raise ValidationError(
            "name",
            f"Name must be {NAME_MIN_LENGTH}-{NAME_MAX_LENGTH} letters, spaces, hyphens or apostrophes",
        )

    email = data.get("email")
    clean_email = _normalize_email(email) if isinstance(email, str) else None
    if not clean_email:
        raise ValidationError("email", "Valid email is required")

    phone = data.get("phone")
    if not isinstance(phone, str) or not phone.strip():
        raise ValidationError("phone", "Phone is required")
    if not is_valid_moroccan_phone(phone):
        raise ValidationError("phone", "Valid Moroccan phone number is required")

    interest = data.get("interest")
    if not isinstance(interest, str) or interest.strip() not in _INTERESTS:
        raise ValidationError("interest", "Valid interest type is required")

    company = data.get("company")
    clean_company = strip_html(company) if isinstance(company, str) else ""

    locale = data.get("locale")
    clean_locale = locale if isinstance(locale, str) and locale in _LOCALES else Locale.FR.value

    return SanitizedSubmission(
        name=clean_name,
        company=clean_company or None,
        email=clean_email,
        phone=strip_html(phone),
        interest=Interest(interest.strip()),
        locale=Locale(clean_locale),
    )


def validate_request_metadata(headers: Mapping[str, str]) -> None:
    """Coarse bot filter on user-agent and referer headers."""
    user_agent = headers.get("user-agent")
    if not user_agent or len(user_agent) > MAX_USER_AGENT_LENGTH:
        raise ValidationError("user-agent", "Invalid user agent")

    referer = headers.get("referer")
    if referer:
        try:
            _url_adapter.validate_python(referer)
        except PydanticValidationError:
            raise ValidationError("referer", "Invalid referer")

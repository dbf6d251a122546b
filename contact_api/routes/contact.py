# contact_api/routes/contact.py
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from contact_api.core.exceptions import ServiceUnavailableError
from contact_api.schemas.contact import ContactResponse, CSRFTokenResponse
from contact_api.services.contact import ContactRequest, ContactSubmissionService

router = APIRouter()

# Wrong methods must reach the handler so the method guard can audit and answer them
GUARDED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]


def get_contact_service(request: Request) -> ContactSubmissionService:
    service = getattr(request.app.state, "contact_service", None)
    if service is None:
        raise ServiceUnavailableError(message="Contact service is not initialized")
    return service


def get_client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def _read_json_body(request: Request) -> Any:
    if request.method != "POST":
        return None
    try:
        return await request.json()
    except ValueError:
        # Unparseable bodies are rejected by the sanitizer as invalid form data
        return None


async def to_contact_request(request: Request) -> ContactRequest:
    return ContactRequest.build(
        method=request.method,
        path=request.url.path,
        client_ip=get_client_ip(request),
        headers=request.headers,
        body=await _read_json_body(request),
    )


@router.api_route(
    "/submit-contact",
    methods=GUARDED_METHODS,
    response_model=ContactResponse,
    response_model_exclude_none=True,
)
async def submit_contact(
    request: Request,
    service: ContactSubmissionService = Depends(get_contact_service),
):
    """Validate a contact form submission and sync it to the CRM as a lead."""
    outcome = await service.submit(await to_contact_request(request))
    return JSONResponse(status_code=outcome.status_code, content=outcome.response.to_body())


@router.api_route("/csrf-token", methods=GUARDED_METHODS, response_model=CSRFTokenResponse)
async def csrf_token(
    request: Request,
    service: ContactSubmissionService = Depends(get_contact_service),
):
    """Mint a single-use CSRF token for the contact form."""
    token = await service.issue_token(await to_contact_request(request))
    return JSONResponse(
        content=CSRFTokenResponse(token=token).model_dump(),
        headers={"Cache-Control": "no-store"},
    )

import json

import pytest
import pytest_asyncio
from fastapi.exceptions import RequestValidationError
from httpx import ASGITransport, AsyncClient
from starlette.requests import Request

from contact_api.core.exceptions import CRMError
from contact_api.main import app, request_validation_exception_handler
from contact_api.middleware.logging import redact_headers
from contact_api.middleware.security_headers import SECURITY_HEADERS
from contact_api.routes.contact import get_contact_service


@pytest_asyncio.fixture
async def client(service):
    app.dependency_overrides[get_contact_service] = lambda: service
    app.state.contact_service = service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.clear()
    app.state.contact_service = None


async def _token(client) -> str:
    response = await client.get("/api/csrf-token")
    assert response.status_code == 200
    return response.json()["token"]


@pytest.mark.asyncio
async def test_csrf_token_endpoint(client):
    response = await client.get("/api/csrf-token")

    assert response.status_code == 200
    assert len(response.json()["token"]) == 64
    assert response.headers["Cache-Control"] == "no-store"
    assert response.headers["X-Request-ID"]
    for header, value in SECURITY_HEADERS.items():
        assert response.headers[header] == value


@pytest.mark.asyncio
async def test_csrf_token_endpoint_rejects_post(client):
    response = await client.post("/api/csrf-token")

    assert response.status_code == 405
    assert response.headers["Allow"] == "GET"
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_submit_creates_lead(client, valid_body):
    token = await _token(client)

    response = await client.post("/api/submit-contact", json=valid_body, headers={"X-CSRF-Token": token})

    assert response.status_code == 201
    assert response.json() == {"success": True, "message": "Lead created successfully", "leadId": "1001"}


@pytest.mark.asyncio
async def test_submit_accepts_token_in_body(client, valid_body):
    token = await _token(client)

    response = await client.post("/api/submit-contact", json={**valid_body, "_csrf": token})

    assert response.status_code == 201


@pytest.mark.asyncio
async def test_submit_without_token_is_forbidden(client, valid_body, fake_crm):
    response = await client.post("/api/submit-contact", json=valid_body)

    assert response.status_code == 403
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "csrf_invalid"
    assert "leadId" not in body
    assert fake_crm.calls == []


@pytest.mark.asyncio
async def test_submit_rejects_get(client):
    response = await client.get("/api/submit-contact")

    assert response.status_code == 405
    assert response.headers["Allow"] == "POST"
    assert response.json()["message"] == "Method not allowed. Use POST."


@pytest.mark.asyncio
async def test_submit_invalid_json_is_bad_form(client):
    token = await _token(client)

    response = await client.post(
        "/api/submit-contact",
        content=b"{not json",
        headers={"X-CSRF-Token": token, "Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["field"] == "form"


@pytest.mark.asyncio
async def test_submit_validation_error_names_field(client, valid_body):
    token = await _token(client)

    response = await client.post(
        "/api/submit-contact",
        json={**valid_body, "phone": "+33612345678"},
        headers={"X-CSRF-Token": token},
    )

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "validation_error"
    assert body["field"] == "phone"
    assert body["message"] == "Valid Moroccan phone number is required"


@pytest.mark.asyncio
async def test_submit_without_user_agent_is_rejected(client, valid_body):
    token = await _token(client)

    response = await client.post(
        "/api/submit-contact",
        json=valid_body,
        headers={"X-CSRF-Token": token, "User-Agent": ""},
    )

    assert response.status_code == 400
    assert response.json()["field"] == "user-agent"


@pytest.mark.asyncio
async def test_rate_limit_returns_retry_after(client, valid_body):
    for _ in range(3):
        token = await _token(client)
        await client.post("/api/submit-contact", json=valid_body, headers={"X-CSRF-Token": token})

    token = await _token(client)
    response = await client.post("/api/submit-contact", json=valid_body, headers={"X-CSRF-Token": token})

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "3600"
    assert response.json()["code"] == "rate_limit_exceeded"


@pytest.mark.asyncio
async def test_rate_limit_keys_on_forwarded_ip(client, valid_body):
    for _ in range(3):
        token = await _token(client)
        await client.post(
            "/api/submit-contact",
            json=valid_body,
            headers={"X-CSRF-Token": token, "X-Forwarded-For": "198.51.100.9, 10.0.0.1"},
        )

    token = await _token(client)
    response = await client.post(
        "/api/submit-contact",
        json=valid_body,
        headers={"X-CSRF-Token": token, "X-Forwarded-For": "198.51.100.10"},
    )

    assert response.status_code == 200
    assert response.json()["message"] == "Submission already received"


@pytest.mark.asyncio
async def test_crm_failure_is_generic_500(client, valid_body, fake_crm):
    fake_crm.fail_writes = CRMError("Zoho down", status=503)
    token = await _token(client)

    response = await client.post("/api/submit-contact", json=valid_body, headers={"X-CSRF-Token": token})

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "Failed to submit contact form"
    assert body["code"] == "crm_error"
    assert body["error"] == "Zoho down"


@pytest.mark.asyncio
async def test_unexpected_failure_is_500(client, valid_body, fake_crm):
    fake_crm.fail_writes = RuntimeError("kaboom")
    token = await _token(client)

    response = await client.post("/api/submit-contact", json=valid_body, headers={"X-CSRF-Token": token})

    assert response.status_code == 500
    assert response.json()["message"] == "Failed to submit contact form"
    assert response.json()["error"] == "kaboom"


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["state_store"] == {"backend": "memory", "status": "healthy"}
    assert body["checks"]["crm_circuit"] == {"status": "unknown"}


@pytest.mark.asyncio
async def test_root_lists_endpoints(client):
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["submit"] == "/api/submit-contact"


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get("/", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
    assert float(response.headers["X-Response-Time"]) >= 0


def test_redact_headers_masks_csrf_and_credentials():
    redacted = redact_headers({"X-CSRF-Token": "abc", "Cookie": "s=1", "User-Agent": "ua"})

    assert redacted == {"X-CSRF-Token": "[REDACTED]", "Cookie": "[REDACTED]", "User-Agent": "ua"}


@pytest.mark.asyncio
async def test_submit_rejects_head_through_method_guard(client, audit_log):
    response = await client.head("/api/submit-contact")

    assert response.status_code == 405
    assert response.headers["Allow"] == "POST"
    assert audit_log.names() == ["security.method_not_allowed"]


@pytest.mark.asyncio
async def test_request_validation_error_uses_response_contract():
    request = Request(
        {"type": "http", "method": "POST", "path": "/api/submit-contact", "headers": [], "query_string": b""}
    )
    exc = RequestValidationError([{"loc": ("body", "email"), "msg": "field required", "type": "missing"}])

    response = await request_validation_exception_handler(request, exc)

    assert response.status_code == 400
    assert json.loads(response.body) == {
        "success": False,
        "message": "Invalid request",
        "code": "validation_error",
        "field": "email",
    }

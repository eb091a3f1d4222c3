"""Tests for the error envelope and the backend's exception handlers.

Every failure leaves the backend as:
{
    "error": true,
    "message": "<human_readable>",
    "code": "<stable_code>",
    "details": <object|array>      # omitted when empty
}
"""

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from gonews.api.error_handling import _error_code_for_status, _error_response
from gonews.api.schemas import ErrorEnvelope, SuccessEnvelope


@pytest.fixture
def client(backend_app):
    return TestClient(backend_app)


class TestErrorEnvelopeModel:
    def test_required_fields(self):
        envelope = ErrorEnvelope(message="Invalid credentials", code="unauthorized")
        assert envelope.error is True
        assert envelope.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorEnvelope(message="boom", code="teapot")

    def test_missing_message_rejected(self):
        with pytest.raises(ValidationError):
            ErrorEnvelope(code="server_error")

    def test_success_envelope_defaults(self):
        assert SuccessEnvelope().model_dump() == {"success": True, "message": "", "data": None}


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (502, "server_error"),
        ],
    )
    def test_status_codes(self, status, code):
        assert _error_code_for_status(status) == code

    def test_empty_details_omitted(self):
        response = _error_response(404, "User not found", details={})
        assert response.body == b'{"error":true,"message":"User not found","code":"not_found"}'


class TestHandlers:
    def test_unknown_route(self, client):
        resp = client.get("/api/v1/auth/nowhere")

        assert resp.status_code == 404
        body = resp.json()
        assert body["error"] is True
        assert body["code"] == "not_found"

    def test_validation_error_lists_fields(self, client):
        resp = client.post("/api/v1/auth/login", json={"email": "not-an-email"})

        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "validation_error"
        assert body["message"] == "Validation failed"
        assert {d["field"] for d in body["details"]} == {"email", "password"}

    def test_missing_bearer(self, client):
        resp = client.get("/api/v1/auth/me")

        assert resp.status_code == 401
        assert resp.json() == {
            "error": True,
            "message": "User authentication required",
            "code": "unauthorized",
        }

    def test_request_id_echoed(self, client):
        resp = client.get("/api/v1/healthz", headers={"X-Request-ID": "req-42"})

        assert resp.status_code == 200
        assert resp.headers["X-Request-ID"] == "req-42"

    def test_request_id_generated(self, client):
        resp = client.get("/api/v1/healthz")
        assert resp.headers["X-Request-ID"]

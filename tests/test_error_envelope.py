"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from vihara import app as app_module
from vihara.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from vihara.api.schemas import Envelope, ErrorBody
from vihara.service.runtime import get_runtime
from vihara.storage.errors import StoreError


@pytest.fixture
def client():
    return TestClient(app_module.app)


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "Invalid credentials"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"loc": ["body", "phone"]}, {"loc": ["body", "username"]}],
        )
        assert len(error.details) == 2

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    @pytest.mark.parametrize("code", ["rate_limited", "session_expired", ""])
    def test_error_body_rejects_unknown_codes(self, code):
        with pytest.raises(ValidationError):
            ErrorBody(code=code, message="nope")


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id and second.request_id
        assert first.request_id != second.request_id

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="failed")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="forbidden", message="Access denied for your role"),
            request_id="req-1",
        )
        dumped = envelope.model_dump()
        assert dumped == {
            "status": "error",
            "data": None,
            "error": {
                "code": "forbidden",
                "message": "Access denied for your role",
                "details": None,
            },
            "request_id": "req-1",
        }


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "server_error"),
            (503, "service_unavailable"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_mapped_code_is_a_valid_error_body_code(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(404, "User not found")
        body = json.loads(response.body)

        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"
        assert body["error"]["details"] is None
        assert body["request_id"]

    def test_error_response_custom_code(self):
        response = _error_response(
            401, "Session expired", {"reason": "session_expired"}, code="unauthorized"
        )
        body = json.loads(response.body)

        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["details"] == {"reason": "session_expired"}


class TestStoreFailures:
    def test_store_outage_during_validation_fails_closed(self, client, monkeypatch):
        runtime = get_runtime()

        def unreachable(token):
            raise StoreError("get_session failed", operation="get_session")

        monkeypatch.setattr(runtime.store, "get_session", unreachable)

        response = client.get("/v1/sessions", headers={"session_id": "a" * 64})

        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "session_invalid"

    def test_store_outage_elsewhere_is_service_unavailable(self, client, monkeypatch):
        runtime = get_runtime()

        def unreachable(*args, **kwargs):
            raise StoreError("principal_exists failed", operation="principal_exists")

        monkeypatch.setattr(runtime.store, "principal_exists", unreachable)

        response = client.post(
            "/v1/auth/register",
            json={
                "username": "alice",
                "email": "a@x.com",
                "password": "secret1",
                "full_name": "Alice",
                "phone": "0771234567",
            },
        )

        assert response.status_code == 503
        error = response.json()["error"]
        assert error["code"] == "service_unavailable"
        assert error["message"] == "storage temporarily unavailable"
        assert error["details"] == {"reason": "store_error"}

    def test_store_outage_on_session_status_reports_invalid(self, client, monkeypatch):
        runtime = get_runtime()

        def unreachable(token):
            raise StoreError("get_session failed", operation="get_session")

        monkeypatch.setattr(runtime.store, "get_session", unreachable)

        response = client.get("/v1/session", headers={"session_id": "a" * 64})

        assert response.status_code == 200
        assert response.json()["data"]["valid"] is False

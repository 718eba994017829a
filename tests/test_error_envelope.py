"""Tests for the error envelope format and exception mapping.

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
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError

from idwarden.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from idwarden.api.schemas import Envelope, ErrorBody
from idwarden.service.errors import (
    AuthenticationError,
    InsufficientPermissionError,
    NoRolesAssignedError,
    NotFoundError,
    RateLimitedError,
    ServerError,
)
from idwarden.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="rate_limited", message="Too many requests", details={"retry_after": 60}),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()

        assert dumped["error"]["code"] == "rate_limited"
        assert dumped["error"]["details"]["retry_after"] == 60
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_status_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_all_stable_codes_covered(self):
        assert set(_STATUS_TO_CODE.values()) == {
            "unauthorized",
            "forbidden",
            "not_found",
            "rate_limited",
            "validation_error",
            "conflict",
            "server_error",
        }

    def test_error_response_null_details(self):
        response = _error_response(404, "Not found", details=None)
        data = json.loads(response.body.decode())
        assert response.status_code == 404
        assert data["status"] == "error"
        assert data["error"]["details"] is None


class _Body(BaseModel):
    count: int


def _app_raising(exc):
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    @app.post("/validate")
    async def validate(body: _Body):
        return {"count": body.count}

    return app


class TestExceptionHandlers:
    """Domain and storage exceptions surface as envelopes."""

    def _get(self, exc):
        client = TestClient(_app_raising(exc), raise_server_exceptions=False)
        return client.get("/boom")

    def test_authentication_error(self):
        response = self._get(AuthenticationError("invalid or expired session token"))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_no_roles_assigned_reason(self):
        response = self._get(NoRolesAssignedError(resource="roles.list"))
        body = response.json()
        assert response.status_code == 403
        assert body["error"]["code"] == "forbidden"
        assert body["error"]["details"]["reason"] == "NO_ROLES_ASSIGNED"

    def test_insufficient_permission_details(self):
        response = self._get(
            InsufficientPermissionError(
                required_roles=["ADMIN"], user_roles=["USER"], resource="audit.query"
            )
        )
        details = response.json()["error"]["details"]
        assert details["reason"] == "INSUFFICIENT_PERMISSION"
        assert details["required_roles"] == ["ADMIN"]
        assert details["user_roles"] == ["USER"]

    def test_rate_limited_sets_retry_after(self):
        response = self._get(RateLimitedError("too many requests", detail={"retry_after": 37}))
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "37"
        assert response.json()["error"]["code"] == "rate_limited"

    def test_not_found(self):
        response = self._get(NotFoundError("role not found"))
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "role not found"

    def test_constraint_violation_is_conflict(self):
        response = self._get(ConstraintViolation("email already exists", {"field": "email"}))
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_server_error_message_sanitized(self):
        response = self._get(ServerError("delivery failed: token=abc123"))
        body = response.json()
        assert response.status_code == 500
        assert "abc123" not in body["error"]["message"]

    def test_unhandled_exception_hides_message(self):
        response = self._get(RuntimeError("connection to 10.0.0.5 refused"))
        body = response.json()
        assert response.status_code == 500
        assert body["error"]["code"] == "server_error"
        assert "10.0.0.5" not in body["error"]["message"]

    def test_request_validation_is_400(self):
        client = TestClient(_app_raising(RuntimeError()), raise_server_exceptions=False)
        response = client.post("/validate", json={"count": "many"})
        body = response.json()
        assert response.status_code == 400
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["loc"] == ["body", "count"]

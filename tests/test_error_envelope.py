"""Tests for the error envelope format and exception handlers.

Error responses conform to the stable API envelope:
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
from pydantic import BaseModel, ValidationError

from warden.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from warden.api.schemas import Envelope, ErrorBody
from warden.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TokenExpiredError,
)
from warden.storage.errors import ConstraintViolation, StoreError, StoreTimeoutError


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "Invalid credentials"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_rejects_unknown_code(self):
        """Only the stable codes are accepted."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    """Tests for the Envelope model with error support."""

    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"user_id": "123"})

        assert envelope.status == "ok"
        assert envelope.data == {"user_id": "123"}
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_envelope_error_serialization(self):
        error_body = ErrorBody(
            code="rate_limited",
            message="Too many requests",
            details={"retry_after": 60},
        )
        dumped = Envelope(status="error", error=error_body, request_id="test-req-123").model_dump()

        assert dumped["status"] == "error"
        assert dumped["error"]["code"] == "rate_limited"
        assert dumped["error"]["details"]["retry_after"] == 60
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status_code,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (429, "rate_limited"),
            (500, "server_error"),
            (503, "server_error"),
        ],
    )
    def test_status_maps_to_code(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_all_codes_covered(self):
        expected_codes = {
            "unauthorized",
            "forbidden",
            "not_found",
            "rate_limited",
            "validation_error",
            "conflict",
            "server_error",
        }
        assert set(_STATUS_TO_CODE.values()) == expected_codes


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")

        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "Invalid credentials"
        assert data["error"]["details"] is None
        assert data["request_id"]

    def test_error_response_custom_code(self):
        response = _error_response(400, "Custom error", code="conflict")

        assert json.loads(response.body.decode())["error"]["code"] == "conflict"


class _Body(BaseModel):
    count: int


@pytest.fixture
def error_client():
    """A bare app wired with the production exception handlers."""
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/auth")
    async def _auth():
        raise AuthenticationError("invalid email or password")

    @app.get("/expired")
    async def _expired():
        raise TokenExpiredError("token expired")

    @app.get("/forbidden")
    async def _forbidden():
        raise ForbiddenError("account is deactivated")

    @app.get("/missing")
    async def _missing():
        raise NotFoundError("user not found", detail={"user_id": "u1"})

    @app.get("/conflict")
    async def _conflict():
        raise ConflictError("email already registered")

    @app.get("/constraint")
    async def _constraint():
        raise ConstraintViolation("duplicate key", {"field": "email"})

    @app.get("/store-down")
    async def _store_down():
        raise StoreTimeoutError("pool exhausted", operation="get_session_by_token")

    @app.get("/store-error")
    async def _store_error():
        raise StoreError("connection refused to postgresql://u:p@db/warden", operation="health")

    @app.get("/boom")
    async def _boom():
        raise RuntimeError("secret internals")

    @app.post("/validate")
    async def _validate(body: _Body):
        return {"count": body.count}

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_authentication_error(self, error_client):
        response = error_client.get("/auth")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["details"] == {"reason": "invalid_credentials"}

    def test_expired_token_reason(self, error_client):
        response = error_client.get("/expired")

        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "token_expired"

    def test_forbidden(self, error_client):
        response = error_client.get("/forbidden")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_not_found_keeps_detail(self, error_client):
        response = error_client.get("/missing")

        assert response.status_code == 404
        assert response.json()["error"]["details"] == {"user_id": "u1"}

    def test_conflict_without_detail(self, error_client):
        response = error_client.get("/conflict")

        assert response.status_code == 409
        assert response.json()["error"]["details"] is None

    def test_constraint_violation_is_conflict(self, error_client):
        response = error_client.get("/constraint")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_store_timeout_is_generic_failure(self, error_client):
        response = error_client.get("/store-down")

        assert response.status_code == 503
        error = response.json()["error"]
        assert error["code"] == "server_error"
        assert error["message"] == "service temporarily unavailable"

    def test_store_error_hides_internals(self, error_client):
        response = error_client.get("/store-error")

        assert response.status_code == 503
        assert "postgresql" not in response.text

    def test_unhandled_exception(self, error_client):
        response = error_client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "secret internals" not in response.text

    def test_request_validation(self, error_client):
        response = error_client.post("/validate", json={"count": "many"})

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"] == ["body", "count"]

    def test_unknown_route_uses_envelope(self, error_client):
        response = error_client.get("/nowhere")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

"""Tests for the error envelope format and error handling.

Error responses share one envelope shape:
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

from idkeeper.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from idkeeper.api.schemas import Envelope, ErrorBody
from idkeeper.service.errors import (
    AlreadyExistsError,
    DeliveryFailedError,
    InternalError,
    NotFoundError,
)
from idkeeper.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        """ErrorBody requires code and message fields."""
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "Invalid credentials"
        assert error.details is None

    def test_error_body_with_details_list(self):
        """ErrorBody accepts list details."""
        error = ErrorBody(
            code="invalid_argument",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_rejects_unknown_code(self):
        """Only the stable error kinds are accepted."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="I'm a teapot")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="internal")


class TestEnvelope:
    """Tests for the Envelope model with error support."""

    def test_envelope_error_status(self):
        error_body = ErrorBody(code="unauthorized", message="Invalid token")
        envelope = Envelope(status="error", error=error_body)

        assert envelope.status == "error"
        assert envelope.error.code == "unauthorized"
        assert envelope.data is None

    def test_envelope_request_id_auto_generated(self):
        """Envelope auto-generates request_id if not provided."""
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    """Tests for HTTP status to error kind mapping."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "invalid_argument"),
            (401, "unauthorized"),
            (403, "permission_denied"),
            (404, "not_found"),
            (409, "already_exists"),
            (422, "invalid_argument"),
            (500, "internal"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_internal(self):
        assert _error_code_for_status(418) == "internal"
        assert _error_code_for_status(503) == "internal"

    def test_mapped_codes_are_valid_error_bodies(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="x")


class TestErrorResponseFactory:
    def test_error_response_body(self):
        response = _error_response(404, "user not found")
        body = json.loads(response.body)

        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "user not found", "details": None}

    def test_explicit_code_wins(self):
        response = _error_response(500, "email failed", code="delivery_failed")
        assert json.loads(response.body)["error"]["code"] == "delivery_failed"


class _Body(BaseModel):
    email: str


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/not-found")
    async def not_found():
        raise NotFoundError("user not found")

    @app.get("/exists")
    async def exists():
        raise AlreadyExistsError("email already registered")

    @app.get("/delivery")
    async def delivery():
        raise DeliveryFailedError(
            "email_verification email failed to send", detail={"user_id": "u-1"}
        )

    @app.get("/internal")
    async def internal():
        raise InternalError("connection to postgresql://admin:hunter2@db failed")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("unexpected")

    @app.post("/validate")
    async def validate(body: _Body):
        return {"ok": True}

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    """Service and storage errors become envelopes with their stable kind."""

    def test_not_found(self, client):
        response = client.get("/not-found")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_already_exists(self, client):
        response = client.get("/exists")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "already_exists"

    def test_delivery_failed_reports_commit(self, client):
        """Callers can see the account exists even though the email failed."""
        response = client.get("/delivery")
        error = response.json()["error"]

        assert response.status_code == 500
        assert error["code"] == "delivery_failed"
        assert error["details"] == {"user_id": "u-1", "committed": True}

    def test_internal_message_is_sanitized(self, client):
        response = client.get("/internal")
        assert response.status_code == 500
        assert "hunter2" not in response.json()["error"]["message"]

    def test_constraint_violation(self, client):
        response = client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "already_exists"

    def test_unhandled_exception(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "internal",
            "message": "internal server error",
            "details": None,
        }

    def test_request_validation(self, client):
        response = client.post("/validate", json={})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "invalid_argument"
        assert error["details"][0]["loc"] == ["body", "email"]

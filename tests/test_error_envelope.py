"""Tests for the error envelope format and error handling.

These tests verify that error responses conform to the stable API envelope format:
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
from pydantic import ValidationError

from latchkey.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from latchkey.api.schemas import Envelope, ErrorBody
from latchkey.service import errors as service_errors
from latchkey.service.errors import (
    ConfigMissingError,
    InvalidTransitionError,
    StepUpRequiredError,
)
from latchkey.storage.errors import StoreUnavailableError


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Authentication required.")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_with_details_dict(self):
        error = ErrorBody(
            code="unauthorized",
            message="Invalid credentials.",
            details={"attempts_remaining": 2},
        )
        assert error.details == {"attempts_remaining": 2}

    def test_error_body_rejects_unknown_code(self):
        """Only the stable codes may reach clients."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    """Tests for the Envelope model with error support."""

    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"granted": True})
        assert envelope.data == {"granted": True}
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(
                code="rate_limited",
                message="Too many attempts. Try again later.",
                details={"retry_after_seconds": 900},
            ),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["details"]["retry_after_seconds"] == 900
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    """Tests for HTTP status to error code mapping."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (428, "step_up_required"),
            (429, "rate_limited"),
            (500, "server_error"),
            (503, "service_unavailable"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Authentication required.")
        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert "request_id" in data

    def test_error_response_list_details(self):
        response = _error_response(400, "invalid request", details=[{"loc": ["body"]}])
        data = json.loads(response.body.decode())
        assert data["error"]["details"] == [{"loc": ["body"]}]


class TestExceptionHandlers:
    @pytest.fixture
    def client(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/transition")
        async def transition():
            raise InvalidTransitionError("revoked")

        @app.get("/step-up")
        async def step_up():
            raise StepUpRequiredError("Step-up authentication required.")

        @app.get("/config")
        async def config():
            raise ConfigMissingError("STAFF_PIN")

        @app.get("/store")
        async def store():
            raise StoreUnavailableError("redis get failed", {"error": "ConnectionError"})

        @app.get("/boom")
        async def boom():
            raise RuntimeError("unexpected")

        return TestClient(app, raise_server_exceptions=False)

    def test_invalid_transition(self, client):
        response = client.get("/transition")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "invalid_transition"
        assert response.json()["error"]["details"] == {"state": "revoked"}

    def test_step_up_required(self, client):
        response = client.get("/step-up")
        assert response.status_code == 428
        assert response.json()["error"]["code"] == "step_up_required"

    def test_missing_config(self, client):
        response = client.get("/config")
        assert response.status_code == 503
        assert response.json()["error"] == {
            "code": "service_unavailable",
            "message": "STAFF_PIN is not configured",
            "details": {"setting": "STAFF_PIN"},
        }

    def test_store_outage_hides_internals(self, client):
        response = client.get("/store")
        assert response.status_code == 503
        assert response.json()["error"]["message"] == "storage unavailable"
        assert response.json()["error"]["details"] is None

    def test_uncaught_exception(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"


@pytest.mark.parametrize("name", [name for name in service_errors.__all__ if name != "ServiceError"])
def test_exported_errors_render_their_own_status_and_code(name):
    error_cls = getattr(service_errors, name)
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/raise")
    async def raise_error():
        if error_cls is service_errors.InvalidTransitionError:
            raise error_cls("expired")
        if error_cls is service_errors.ConfigMissingError:
            raise error_cls("AUTH_SECRET")
        raise error_cls("failed")

    response = TestClient(app, raise_server_exceptions=False).get("/raise")
    assert response.status_code == error_cls.status_code
    assert response.json()["error"]["code"] == error_cls.error_code

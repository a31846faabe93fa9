"""Tests for the error envelope format and exception mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from gatekeeper.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from gatekeeper.api.schemas import Envelope, ErrorBody
from gatekeeper.service.errors import (
    AccountLockedError,
    AuthFailure,
    AuthenticationError,
    ConflictError,
    RateLimitedError,
)
from gatekeeper.storage.errors import ConstraintViolation, StorageUnavailableError


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_account_locked_is_a_stable_code(self):
        assert ErrorBody(code="account_locked", message="locked").code == "account_locked"


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (423, "account_locked"),
            (429, "rate_limited"),
            (500, "server_error"),
            (503, "server_error"),
            (418, "server_error"),
        ],
    )
    def test_code_for_status(self, status, code):
        assert _error_code_for_status(status) == code

    def test_every_mapped_code_is_valid(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")

    def test_error_response_shape(self):
        response = _error_response(404, "missing", {"id": "x"})
        body = json.loads(response.body)

        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "missing", "details": {"id": "x"}}
        assert body["request_id"]


class _Body(BaseModel):
    value: int


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/unauthorized")
    async def unauthorized():
        raise AuthenticationError(AuthFailure.SESSION_INVALIDATED)

    @app.get("/locked")
    async def locked():
        from datetime import datetime, timezone

        raise AccountLockedError(datetime(2030, 1, 1, tzinfo=timezone.utc))

    @app.get("/throttled")
    async def throttled():
        raise RateLimitedError("slow down", retry_after=42)

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("exists")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/storage")
    async def storage():
        raise StorageUnavailableError("pool exhausted at /srv/db")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("password=hunter2 leaked")

    @app.post("/validate")
    async def validate(body: _Body):
        return Envelope(status="ok", data=body.value)

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    """Tests for exception handlers installed on an app."""

    def test_authentication_error_carries_reason(self, client):
        response = client.get("/unauthorized")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["details"]["reason"] == "session-invalidated"

    def test_locked_includes_lock_until(self, client):
        response = client.get("/locked")

        assert response.status_code == 423
        error = response.json()["error"]
        assert error["code"] == "account_locked"
        assert error["details"]["lock_until"].startswith("2030-01-01")

    def test_rate_limited_sets_retry_after_header(self, client):
        response = client.get("/throttled")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.json()["error"]["details"]["retry_after"] == 42

    def test_conflict(self, client):
        assert client.get("/conflict").json()["error"]["code"] == "conflict"

    def test_constraint_violation_maps_to_conflict(self, client):
        response = client.get("/constraint")

        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_storage_outage_fails_closed(self, client):
        response = client.get("/storage")

        assert response.status_code == 503
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "/srv/db" not in body["error"]["message"]

    def test_unhandled_exception_is_sanitized(self, client):
        response = client.get("/boom")

        assert response.status_code == 500
        assert "hunter2" not in response.text
        assert response.json()["error"]["message"] == "internal server error"

    def test_request_validation_is_400(self, client):
        response = client.post("/validate", json={"value": "not-a-number"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["field"] == "value"

"""Tests for the error envelope format and error handling.

Error responses follow the stable envelope:
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

from marketauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from marketauth.api.schemas import Envelope, ErrorBody
from marketauth.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ServerError,
)
from marketauth.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="invalid_credentials", message="invalid identifier or password")
        assert error.code == "invalid_credentials"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "identifier"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    @pytest.mark.parametrize(
        "code",
        ["account_locked", "account_disabled", "invalid_token", "store_unavailable"],
    )
    def test_auth_codes_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code


class TestEnvelope:
    def test_error_envelope_shape(self):
        envelope = Envelope(status="error", error=ErrorBody(code="not_found", message="missing"))
        dumped = envelope.model_dump()

        assert dumped["status"] == "error"
        assert dumped["data"] is None
        assert dumped["request_id"]

    def test_invalid_status(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (423, "account_locked"),
            (503, "store_unavailable"),
            (500, "server_error"),
        ],
    )
    def test_status_codes(self, status, code):
        assert _STATUS_TO_CODE[status] == code
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_body(self):
        response = _error_response(423, "locked", code="account_locked")
        body = json.loads(response.body)

        assert response.status_code == 423
        assert body["error"] == {"code": "account_locked", "message": "locked", "details": None}


def _app_raising(exc: Exception) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    @pytest.mark.parametrize(
        "exc, status, code",
        [
            (InvalidCredentialsError(), 401, "invalid_credentials"),
            (AccountLockedError(), 423, "account_locked"),
            (AccountDisabledError(), 403, "account_disabled"),
            (InvalidTokenError(InvalidTokenError.REVOKED), 401, "invalid_token"),
            (NotFoundError("missing"), 404, "not_found"),
            (ConflictError("taken"), 409, "conflict"),
            (ServerError("oops"), 500, "server_error"),
        ],
    )
    def test_service_errors(self, exc, status, code):
        response = _app_raising(exc).get("/boom")

        assert response.status_code == status
        assert response.json()["error"]["code"] == code

    def test_token_reason_not_leaked(self):
        expired = _app_raising(InvalidTokenError(InvalidTokenError.EXPIRED)).get("/boom")
        revoked = _app_raising(InvalidTokenError(InvalidTokenError.REVOKED)).get("/boom")

        assert expired.json()["error"] == revoked.json()["error"]
        assert "invalid_token" in expired.headers["WWW-Authenticate"]

    def test_store_unavailable_is_503(self):
        exc = StoreUnavailable("revocation", "redis://:pw@host:6379 connection refused")
        response = _app_raising(exc).get("/boom")

        assert response.status_code == 503
        body = response.json()
        assert body["error"]["code"] == "store_unavailable"
        assert "pw" not in body["error"]["message"]
        assert response.headers["Retry-After"] == "1"

    def test_constraint_violation_is_409(self):
        response = _app_raising(ConstraintViolation("duplicate", {"field": "identifier"})).get("/boom")

        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "identifier"}

    def test_uncaught_exception_is_500(self):
        response = _app_raising(RuntimeError("kaboom")).get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "kaboom" not in response.text

    def test_unknown_route_uses_envelope(self):
        app = FastAPI()
        register_exception_handlers(app)

        response = TestClient(app).get("/nowhere")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

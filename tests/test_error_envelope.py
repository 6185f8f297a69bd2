"""Tests for the error taxonomy and the error envelope it renders into.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from nexora.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    _rate_limit_headers,
)
from nexora.api.schemas import Envelope, ErrorBody
from nexora.service.errors import (
    AuthenticationError,
    ConflictError,
    ErrorKind,
    ForbiddenError,
    NotFoundError,
    Ok,
    RateLimitedError,
    ValidationError as ServiceValidationError,
    conflict,
    error_for_failure,
    forbidden,
    not_found,
    rate_limited,
    unauthorized,
    unwrap,
    validation_failed,
)


class TestFailureKinds:
    """Every failure kind maps to one exception and one HTTP status."""

    @pytest.mark.parametrize(
        "failure,error_cls,status",
        [
            (unauthorized("no"), AuthenticationError, 401),
            (forbidden("no"), ForbiddenError, 403),
            (not_found("no"), NotFoundError, 404),
            (validation_failed("no"), ServiceValidationError, 400),
            (conflict("no"), ConflictError, 409),
            (rate_limited("no"), RateLimitedError, 429),
        ],
    )
    def test_failure_maps_to_error(self, failure, error_cls, status):
        error = error_for_failure(failure)

        assert isinstance(error, error_cls)
        assert error.status_code == status
        assert error.error_code == failure.kind.value

    def test_details_carried_over(self):
        error = error_for_failure(validation_failed("bad", field="email"))

        assert error.detail == {"field": "email"}
        assert error.message == "bad"

    def test_unwrap_returns_value(self):
        assert unwrap(Ok(42)) == 42

    def test_unwrap_raises_mapped_error(self):
        with pytest.raises(ConflictError) as excinfo:
            unwrap(conflict("Email already registered"))

        assert str(excinfo.value) == "Email already registered"

    def test_kind_values_are_envelope_codes(self):
        assert {kind.value for kind in ErrorKind} <= set(_STATUS_TO_CODE.values())


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")

        assert error.details is None

    def test_list_details(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )

        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        """Only the stable codes may appear in an envelope."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_missing_message_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_request_id_generated(self):
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


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
    def test_status_codes(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"


class TestErrorResponseFactory:
    def test_basic_envelope(self):
        response = _error_response(401, "Invalid credentials")

        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"] == {
            "code": "unauthorized",
            "message": "Invalid credentials",
            "details": None,
        }
        assert data["request_id"]

    def test_custom_code_and_headers(self):
        response = _error_response(
            429, "Too many requests", code="rate_limited", headers={"X-RateLimit-Remaining": "0"}
        )

        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_rate_limit_headers_from_details(self):
        headers = _rate_limit_headers({"reset_at": "2026-03-01T12:15:00+00:00", "remaining": 0})

        assert headers == {
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": "2026-03-01T12:15:00+00:00",
        }

    def test_no_rate_limit_headers_without_reset(self):
        assert _rate_limit_headers({}) is None

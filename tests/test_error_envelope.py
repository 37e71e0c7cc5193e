"""Tests for the error envelope format and error mapping.

Error responses share one stable shape:
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
from pydantic import ValidationError

from convoaccess.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from convoaccess.api.schemas import Envelope, ErrorBody
from convoaccess.service import errors


class TestErrorBody:
    def test_error_body_required_fields(self):
        """ErrorBody requires code and message fields."""
        error = ErrorBody(code="forbidden", message="not permitted")
        assert error.code == "forbidden"
        assert error.details is None

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"conversation_id": "c1"})
        assert envelope.error is None
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
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
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_all_codes_covered(self):
        assert set(_STATUS_TO_CODE.values()) == {
            "unauthorized",
            "forbidden",
            "not_found",
            "validation_error",
            "conflict",
            "server_error",
        }


class TestServiceErrorTaxonomy:
    @pytest.mark.parametrize(
        "exc_class,status,code",
        [
            (errors.ValidationError, 400, "validation_error"),
            (errors.AuthenticationError, 401, "unauthorized"),
            (errors.AuthorizationError, 403, "forbidden"),
            (errors.NotFoundError, 404, "not_found"),
            (errors.NotParticipantError, 404, "not_found"),
            (errors.ConflictError, 409, "conflict"),
            (errors.AlreadyParticipantError, 409, "conflict"),
            (errors.InvalidOrExpiredLinkError, 409, "conflict"),
            (errors.OrphanedAdminError, 409, "conflict"),
            (errors.InvariantViolation, 500, "server_error"),
        ],
    )
    def test_status_and_code(self, exc_class, status, code):
        exc = exc_class("boom")
        assert exc.status_code == status
        assert exc.error_code == code
        assert exc.detail == {}
        assert isinstance(exc, errors.ServiceError)

    def test_overrides(self):
        exc = errors.ServiceError("x", status_code=409, error_code="conflict", detail={"a": 1})
        assert (exc.status_code, exc.error_code, exc.detail) == (409, "conflict", {"a": 1})


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(403, "not permitted")
        assert response.status_code == 403
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "forbidden"
        assert data["error"]["message"] == "not permitted"
        assert data["error"]["details"] is None
        assert data["request_id"]

    def test_error_response_list_details(self):
        response = _error_response(400, "invalid", details=[{"loc": ["body"]}])
        data = json.loads(response.body.decode())
        assert data["error"]["details"] == [{"loc": ["body"]}]

    def test_error_response_custom_code(self):
        response = _error_response(400, "stale", code="conflict")
        assert json.loads(response.body.decode())["error"]["code"] == "conflict"

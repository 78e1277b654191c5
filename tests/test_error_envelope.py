"""Tests for the error envelope and the error taxonomy's HTTP mapping.

Error responses look like:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<correlation id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from fleetauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from fleetauth.api.schemas import Envelope, ErrorBody
from fleetauth.logging import correlation_id_var, set_correlation_id
from fleetauth.service import errors as service_errors


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="unauthorized")
        assert error.details is None

    def test_details_may_be_list(self):
        error = ErrorBody(code="validation_error", message="bad", details=[{"loc": ["page"]}])
        assert len(error.details) == 1

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="rate_limited", message="nope")

    def test_missing_message_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_request_id_generated_without_correlation(self):
        correlation_id_var.set(None)
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_request_id_follows_correlation_id(self):
        set_correlation_id("corr-42")
        try:
            assert Envelope(status="error").request_id == "corr-42"
        finally:
            correlation_id_var.set(None)

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_client_status_is_validation_error(self):
        assert _error_code_for_status(405) == "validation_error"

    def test_unknown_server_status_is_server_error(self):
        assert _error_code_for_status(503) == "server_error"

    def test_mapping_codes_are_all_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")


class TestServiceErrorTaxonomy:
    @pytest.mark.parametrize(
        "exc,status,code,message",
        [
            (service_errors.MissingSignatureError(), 400, "validation_error", "missing request signature header"),
            (service_errors.SignatureInvalidError(), 401, "unauthorized", "signature verification failed"),
            (service_errors.NotEntitledError(), 401, "unauthorized", "unauthorized"),
            (service_errors.DeviceNotFoundError(), 404, "not_found", "device not found"),
            (service_errors.TokenNotFoundError(), 404, "not_found", "token not found"),
            (service_errors.MissingTokenError(), 401, "unauthorized", "missing authorization header"),
            (service_errors.TokenExpiredError(), 403, "forbidden", "token expired"),
            (service_errors.TokenInvalidError(), 401, "unauthorized", "token invalid"),
        ],
    )
    def test_defaults(self, exc, status, code, message):
        assert (exc.status_code, exc.error_code, exc.message) == (status, code, message)

    def test_missing_signature_is_malformed_input(self):
        assert isinstance(service_errors.MissingSignatureError(), service_errors.MalformedInputError)


class TestErrorResponseFactory:
    def test_basic_envelope(self):
        response = _error_response(401, "token invalid")
        data = json.loads(response.body)
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"] == {"code": "unauthorized", "message": "token invalid", "details": None}
        assert data["data"] is None
        assert "request_id" in data

    def test_details_preserved(self):
        response = _error_response(400, "bad", details={"status": "foo"})
        assert json.loads(response.body)["error"]["details"] == {"status": "foo"}

    def test_empty_details_rendered_as_null(self):
        response = _error_response(404, "device not found", details={})
        assert json.loads(response.body)["error"]["details"] is None

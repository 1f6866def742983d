"""Tests for the error envelope format and error handling.

Error responses share one envelope:
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

from kbsync.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from kbsync.api.schemas import Envelope, ErrorBody
from kbsync.service.errors import (
    DuplicateNameError,
    RateLimitedError,
    StoreFailure,
    UpdateInProgressError,
)


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
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "rules_to_add"}, {"field": "files_to_add"}],
        )
        assert len(error.details) == 2

    def test_error_body_rejects_unknown_code(self):
        """Codes outside the stable set are rejected."""
        with pytest.raises(ValidationError):
            ErrorBody(code="forbidden", message="nope")

    @pytest.mark.parametrize("code", ["duplicate_name", "update_in_progress", "store_failure"])
    def test_error_body_accepts_sync_codes(self, code):
        assert ErrorBody(code=code, message="m").code == code


class TestEnvelope:
    """Tests for the Envelope model with error support."""

    def test_envelope_request_id_auto_generated(self):
        """Envelope auto-generates request_id if not provided."""
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        """Envelope rejects invalid status values."""
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_envelope_error_serialization(self):
        """Full error envelope serializes correctly for API response."""
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="rate_limited", message="Too many", details={"retry_after": 60}),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()

        assert dumped["error"]["details"]["retry_after"] == 60
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    """Tests for HTTP status to error code mapping."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (502, "store_failure"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        """Unknown status codes default to 'server_error'."""
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="m")


class TestServiceErrors:
    def test_conflict_subclasses_share_status(self):
        assert DuplicateNameError("x").status_code == 409
        assert DuplicateNameError("x").error_code == "duplicate_name"
        assert UpdateInProgressError("x").error_code == "update_in_progress"

    def test_rate_limited_detail_carries_retry_after(self):
        error = RateLimitedError("slow down", retry_after=12, remaining=0, limit=5)
        assert error.detail == {"retry_after": 12}
        assert error.limit == 5

    def test_store_failure_detail(self):
        error = StoreFailure("down", store="vector", committed=True)
        assert error.status_code == 502
        assert error.detail == {"store": "vector", "committed": True}


class TestErrorResponseFactory:
    """Tests for the _error_response helper function."""

    def test_error_response_basic(self):
        """_error_response creates JSONResponse with correct envelope."""
        response = _error_response(401, "Invalid credentials")

        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "Invalid credentials"
        assert "request_id" in data

    def test_error_response_custom_code_and_headers(self):
        response = _error_response(
            409, "taken", details={"name": "a.txt"}, code="duplicate_name", headers={"X-Test": "1"}
        )

        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "duplicate_name"
        assert data["error"]["details"] == {"name": "a.txt"}
        assert response.headers["X-Test"] == "1"

"""Tests for the error envelope and the service error taxonomy.

Every error response has the shape::

    {
        "status": "error",
        "error": {"code": "<stable_code>", "message": "...", "details": ...},
        "request_id": "<id>"
    }
"""

import json

import pytest
from pydantic import ValidationError as PydanticValidationError

from medgate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from medgate.api.schemas import Envelope, ErrorBody
from medgate.service import errors


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_details_may_be_dict_or_list(self):
        assert ErrorBody(code="conflict", message="x", details={"fields": ["email"]}).details
        assert len(ErrorBody(code="validation_error", message="x", details=[{}, {}]).details) == 2

    def test_unknown_code_rejected(self):
        """Codes outside the stable set never reach a client."""
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_missing_message_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_request_id_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    @pytest.mark.parametrize("status", ["pending", "success"])
    def test_invalid_status(self, status):
        with pytest.raises(PydanticValidationError):
            Envelope(status=status)

    def test_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="account_locked", message="locked", details={"retry_after_minutes": 5}),
            request_id="req-1",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["code"] == "account_locked"
        assert dumped["error"]["details"]["retry_after_minutes"] == 5
        assert dumped["data"] is None


class TestStatusMapping:
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
            (418, "server_error"),
        ],
    )
    def test_status_codes(self, status, code):
        assert _error_code_for_status(status) == code

    def test_mapped_codes_are_valid_error_codes(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestServiceErrorTaxonomy:
    @pytest.mark.parametrize(
        "exc_cls,status,code",
        [
            (errors.ValidationError, 400, "validation_error"),
            (errors.InvalidOperationError, 400, "invalid_operation"),
            (errors.InvalidCredentialsError, 401, "invalid_credentials"),
            (errors.AccountLockedError, 423, "account_locked"),
            (errors.AccountInactiveError, 401, "account_inactive"),
            (errors.EmailNotVerifiedError, 401, "email_not_verified"),
            (errors.TenantInactiveError, 401, "tenant_inactive"),
            (errors.TokenExpiredError, 401, "unauthorized"),
            (errors.TokenRevokedError, 401, "unauthorized"),
            (errors.InvalidVerificationCodeError, 400, "invalid_token"),
            (errors.VerificationExpiredError, 400, "token_expired"),
            (errors.VerificationUsedError, 400, "token_already_used"),
            (errors.AlreadyVerifiedError, 400, "already_verified"),
            (errors.TooManyAttemptsError, 429, "too_many_attempts"),
            (errors.InvalidCurrentPasswordError, 400, "invalid_current_password"),
            (errors.ForbiddenError, 403, "forbidden"),
            (errors.NotFoundError, 404, "not_found"),
            (errors.ConflictError, 409, "conflict"),
            (errors.EmailDispatchFailedError, 503, "email_dispatch_failed"),
            (errors.ServerError, 500, "server_error"),
        ],
    )
    def test_each_error_has_stable_code(self, exc_cls, status, code):
        exc = exc_cls("message")
        assert exc.status_code == status
        assert exc.error_code == code
        assert exc.detail == {}
        ErrorBody(code=exc.error_code, message=exc.message)

    def test_token_errors_share_a_base(self):
        for exc_cls in (
            errors.MalformedTokenError,
            errors.TokenExpiredError,
            errors.SignatureInvalidError,
            errors.TokenRevokedError,
        ):
            assert issubclass(exc_cls, errors.SessionTokenError)


class TestErrorResponseFactory:
    def test_basic(self):
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
            423,
            "locked",
            {"retry_after_minutes": 2},
            code="account_locked",
            headers={"Retry-After": "120"},
        )
        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "account_locked"
        assert response.headers["Retry-After"] == "120"

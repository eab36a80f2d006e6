"""
Tests for application_exception_handler.

These tests verify that:
- Application errors render as {error, error_code, details}
- The HTTP status follows the exception class (or its http_status)
- Lock contention sets a Retry-After header
- Non-application exceptions fall through to DRF's default handler
"""

from __future__ import annotations

import pytest
from django.http import Http404
from rest_framework import status
from rest_framework.exceptions import NotAuthenticated

from core.exception_handlers import application_exception_handler, status_for
from core.exceptions import BaseApplicationError, ConflictError
from escrow.exceptions import (
    AuthorizationError,
    CardDeclinedError,
    FeeCalculationError,
    GatewayTimeoutError,
    InvalidStateError,
    LedgerImmutableError,
    LockAcquisitionError,
    NotFoundError,
    ValidationError,
)


class TestStatusFor:
    """Tests for status_for()."""

    @pytest.mark.parametrize(
        ("exc", "expected"),
        [
            (ValidationError("bad"), status.HTTP_400_BAD_REQUEST),
            (NotFoundError("missing"), status.HTTP_404_NOT_FOUND),
            (AuthorizationError("no"), status.HTTP_403_FORBIDDEN),
            (InvalidStateError("wrong state"), status.HTTP_409_CONFLICT),
            (ConflictError("conflict"), status.HTTP_409_CONFLICT),
            (CardDeclinedError("declined"), status.HTTP_502_BAD_GATEWAY),
            (GatewayTimeoutError("timed out"), status.HTTP_502_BAD_GATEWAY),
            (FeeCalculationError("negative net"), status.HTTP_422_UNPROCESSABLE_ENTITY),
            (LedgerImmutableError("settled"), status.HTTP_500_INTERNAL_SERVER_ERROR),
            (LockAcquisitionError("busy"), status.HTTP_503_SERVICE_UNAVAILABLE),
            (BaseApplicationError("unclassified"), status.HTTP_400_BAD_REQUEST),
        ],
    )
    def test_status_mapping(self, exc, expected):
        assert status_for(exc) == expected


class TestApplicationExceptionHandler:
    """Tests for application_exception_handler()."""

    def test_renders_error_payload(self):
        exc = InvalidStateError(
            "Cannot start a milestone in 'submitted' status",
            details={"status": "submitted"},
        )

        response = application_exception_handler(exc, {"view": None})

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.data == {
            "error": "Cannot start a milestone in 'submitted' status",
            "error_code": "INVALID_STATE",
            "details": {"status": "submitted"},
        }

    def test_omits_empty_details(self):
        response = application_exception_handler(NotFoundError("Escrow account not found"), {})

        assert response.data == {"error": "Escrow account not found", "error_code": "ESCROW_NOT_FOUND"}

    def test_gateway_error_exposes_retryable_flag(self):
        response = application_exception_handler(GatewayTimeoutError("timed out", provider_code="timeout"), {})

        assert response.data["error_code"] == "GATEWAY_TIMEOUT"
        assert response.data["details"] == {"provider_code": "timeout", "retryable": True}

    def test_lock_contention_sets_retry_after(self):
        exc = LockAcquisitionError("busy", details={"key": "escrow:1", "retry_after": 2})

        response = application_exception_handler(exc, {})

        assert response["Retry-After"] == "2"

    def test_no_retry_after_without_hint(self):
        response = application_exception_handler(ValidationError("bad"), {})

        assert not response.has_header("Retry-After")

    @pytest.mark.parametrize(
        ("exc", "expected"),
        [
            (Http404(), status.HTTP_404_NOT_FOUND),
            (NotAuthenticated(), status.HTTP_401_UNAUTHORIZED),
        ],
    )
    def test_defers_to_drf_for_other_errors(self, exc, expected):
        response = application_exception_handler(exc, {"view": None})

        assert response.status_code == expected

    def test_unhandled_exception_returns_none(self):
        assert application_exception_handler(RuntimeError("boom"), {}) is None

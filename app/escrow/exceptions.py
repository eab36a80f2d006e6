"""
Escrow-specific exceptions.

Every error raised by the escrow services is one of the kinds below, so the
API layer (core.exception_handlers) can map it to an HTTP status and callers
can branch on the type.

Exception Hierarchy:
    EscrowError (base for the escrow domain)
    ├── ValidationError - Bad input or broken business rule (400)
    ├── NotFoundError - Unknown account, milestone, dispute, entry (404)
    ├── AuthorizationError - Actor may not perform the operation (403)
    ├── InvalidStateError - Illegal state transition (409)
    ├── FeeCalculationError - Fees exceed the gross amount (422)
    ├── LedgerImmutableError - Attempt to rewrite a settled ledger row (500)
    ├── LockAcquisitionError - Account/contract lock contended (503)
    └── GatewayError - Payment gateway failure (502)
        ├── CardDeclinedError - Card declined (permanent)
        ├── InsufficientFundsError - Insufficient funds (permanent)
        ├── InvalidPayoutAccountError - Payee account unusable (permanent)
        ├── InvalidGatewayRequestError - Malformed request (permanent)
        ├── GatewayRateLimitError - Rate limited (transient, not dispatched)
        ├── GatewayUnavailableError - Network / 5xx (transient, outcome unknown)
        └── GatewayTimeoutError - No response in time (transient, outcome unknown)

Usage:
    from escrow.exceptions import InvalidStateError

    raise InvalidStateError(
        "Milestone cannot be released from 'pending'",
        details={"milestone_id": str(milestone.id), "status": milestone.status},
    )

Note:
    Messages are shown to API clients. Never put gateway transaction ids or
    raw provider messages in them; keep those in logs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
)
from core.exceptions import NotFoundError as CoreNotFoundError
from core.exceptions import PermissionDeniedError
from core.exceptions import ValidationError as CoreValidationError

if TYPE_CHECKING:
    from typing import Any


class EscrowError(BaseApplicationError):
    """Base exception for all escrow operations."""

    default_error_code: str = "ESCROW_ERROR"


class ValidationError(EscrowError, CoreValidationError):
    """
    Raised when input fails a business rule.

    Use for:
    - Non-positive amounts or empty milestone lists
    - Missing rejection reasons or resolution amounts
    - Time entries that are not approved, out of range, or already attached
    - Overlapping payment periods
    """

    default_error_code: str = "ESCROW_VALIDATION_ERROR"


class NotFoundError(EscrowError, CoreNotFoundError):
    """Raised when a referenced escrow entity does not exist."""

    default_error_code: str = "ESCROW_NOT_FOUND"


class AuthorizationError(EscrowError, PermissionDeniedError):
    """
    Raised when the actor is not allowed to perform an operation.

    Example:
        if actor.actor_id != account.business_id:
            raise AuthorizationError("Only the business can approve milestones")
    """

    default_error_code: str = "ESCROW_NOT_AUTHORIZED"


class InvalidStateError(EscrowError, ConflictError):
    """
    Raised when an operation is not allowed from the current state.

    django-fsm's TransitionNotAllowed is translated into this error at the
    service boundary.
    """

    default_error_code: str = "INVALID_STATE"


class FeeCalculationError(EscrowError):
    """Raised when the fees on a gross amount would leave a negative net."""

    default_error_code: str = "FEE_CALCULATION_ERROR"
    http_status: int = 422


class LedgerImmutableError(EscrowError):
    """Raised when code tries to modify or delete a settled ledger entry."""

    default_error_code: str = "LEDGER_IMMUTABLE"
    http_status: int = 500


class LockAcquisitionError(EscrowError, ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    Another request is operating on the same escrow account or contract.
    The caller should retry after ``details["retry_after"]`` seconds; this is
    contention, not a business failure.
    """

    default_error_code: str = "LOCK_CONTENDED"
    http_status: int = 503


# =============================================================================
# Gateway Exceptions
# =============================================================================


class GatewayError(EscrowError, ExternalServiceError):
    """
    Base exception for payment gateway failures.

    Attributes:
        is_retryable: Whether retrying with the same idempotency key may succeed
        outcome_unknown: Whether the gateway may have applied the operation
            even though no confirmation was received. A ledger entry is left
            pending for these and reconciled later.
        provider_code: Provider error code (safe to expose)
        decline_code: Card decline code (if applicable)
    """

    default_error_code: str = "GATEWAY_ERROR"
    is_retryable: bool = False
    outcome_unknown: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_code: str | None = None,
        decline_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if provider_code:
            details["provider_code"] = provider_code
        if decline_code:
            details["decline_code"] = decline_code
        details["retryable"] = self.is_retryable
        super().__init__(message, error_code=error_code, details=details)
        self.provider_code = provider_code
        self.decline_code = decline_code


# -----------------------------------------------------------------------------
# Permanent Errors (do not retry)
# -----------------------------------------------------------------------------


class CardDeclinedError(GatewayError):
    """The business's card was declined by the issuing bank."""

    default_error_code: str = "CARD_DECLINED"


class InsufficientFundsError(GatewayError):
    """The payment method (or platform balance) lacks funds."""

    default_error_code: str = "INSUFFICIENT_FUNDS"


class InvalidPayoutAccountError(GatewayError):
    """
    The payee's connected account cannot receive transfers.

    Requires the talent to finish onboarding; retrying will not help.
    """

    default_error_code: str = "INVALID_PAYOUT_ACCOUNT"


class InvalidGatewayRequestError(GatewayError):
    """
    The gateway rejected the request parameters.

    Usually a bug on our side (bad amount, unknown charge id, refund larger
    than the capture). Logged for investigation.
    """

    default_error_code: str = "INVALID_GATEWAY_REQUEST"


# -----------------------------------------------------------------------------
# Transient Errors (safe to retry with the same idempotency key)
# -----------------------------------------------------------------------------


class GatewayRateLimitError(GatewayError):
    """Rate limited by the gateway; the request was not processed."""

    default_error_code: str = "GATEWAY_RATE_LIMITED"
    is_retryable: bool = True


class GatewayUnavailableError(GatewayError):
    """
    Gateway unreachable or returned a server error.

    The request may or may not have been applied, so the outcome is unknown
    until a retry with the same idempotency key returns the original result.
    """

    default_error_code: str = "GATEWAY_UNAVAILABLE"
    is_retryable: bool = True
    outcome_unknown: bool = True


class GatewayTimeoutError(GatewayUnavailableError):
    """The gateway did not answer within the configured timeout."""

    default_error_code: str = "GATEWAY_TIMEOUT"

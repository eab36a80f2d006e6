"""
Stripe implementation of the payment gateway.

All Stripe calls go through StripeGateway so that timeouts, idempotency,
error translation and timing logs are handled in one place.

Operations:
    capture  -> stripe.PaymentIntent.create(confirm=True)
    payout   -> stripe.Transfer.create (to the talent's Connected Account)
    refund   -> stripe.Refund.create (against the funding PaymentIntent)

Error translation:
    CardError                      -> CardDeclinedError / InsufficientFundsError
    InvalidRequestError            -> InvalidPayoutAccountError / InvalidGatewayRequestError
    RateLimitError                 -> GatewayRateLimitError (not processed)
    APIConnectionError (timeout)   -> GatewayTimeoutError (outcome unknown)
    APIConnectionError, APIError   -> GatewayUnavailableError (outcome unknown)
    AuthenticationError, other     -> InvalidGatewayRequestError / GatewayUnavailableError

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_API_TIMEOUT_SECONDS: API call timeout (default: 10)
- STRIPE_MAX_RETRIES: SDK retry attempts on network errors (default: 3)

Usage:
    from escrow.adapters import StripeGateway, IdempotencyKeyGenerator

    key = IdempotencyKeyGenerator.generate("escrow_fund", account.id)
    result = StripeGateway().capture(
        amount_cents=100000,
        currency="cad",
        payment_method_ref="pm_card_visa",
        idempotency_key=key,
    )
"""

from __future__ import annotations

import hashlib
import logging
import random
import time
import uuid
from typing import TYPE_CHECKING, Any

import stripe
from django.conf import settings

from escrow.adapters.base import GatewayResult
from escrow.exceptions import (
    CardDeclinedError,
    GatewayError,
    GatewayRateLimitError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    InsufficientFundsError,
    InvalidGatewayRequestError,
    InvalidPayoutAccountError,
)

if TYPE_CHECKING:
    from collections.abc import Callable


# =============================================================================
# Idempotency Keys
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for gateway calls.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    The key is a pure function of its inputs, so a retry of the same attempt
    (after a timeout, from reconciliation, or from a client retry) sends the
    same key and Stripe returns the original result.

    Example:
        key = IdempotencyKeyGenerator.generate(
            operation="milestone_release",
            entity_id=f"{account.id}:{milestone.id}",
            attempt=1,
        )
        # "milestone_release:<escrow>:<milestone>:1:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int = 1,
    ) -> str:
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]
        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


# =============================================================================
# Retry Logic Helpers
# =============================================================================


def is_retryable_gateway_error(error: Exception) -> bool:
    """
    Check if a gateway error is transient.

    Used by the reconciliation task to decide whether to retry:

        except GatewayError as e:
            if is_retryable_gateway_error(e):
                raise self.retry(exc=e, countdown=backoff_delay(self.request.retries))
            raise
    """
    if isinstance(error, GatewayError):
        return error.is_retryable
    return False


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Exponential backoff delay with 0-25% jitter.

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 2: 4.0 - 5.0 seconds
        delay = backoff_delay(attempt=2)
    """
    delay = min(base * (2**attempt), max_delay)
    jitter = delay * random.uniform(0, 0.25)
    return delay + jitter


# =============================================================================
# Stripe Gateway
# =============================================================================


class StripeGateway:
    """
    PaymentGateway backed by the Stripe API.

    Stateless; safe to share between requests and Celery workers.
    """

    @staticmethod
    def _configure_stripe() -> None:
        """Configure Stripe client with API key, timeout and retries."""
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = settings.STRIPE_MAX_RETRIES
        stripe.default_http_client = stripe.RequestsClient(
            timeout=settings.STRIPE_API_TIMEOUT_SECONDS
        )

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    # =========================================================================
    # Operations
    # =========================================================================

    def capture(
        self,
        amount_cents: int,
        currency: str,
        payment_method_ref: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> GatewayResult:
        """
        Charge the business's payment method for the escrow total.

        Raises:
            CardDeclinedError / InsufficientFundsError: Card refused
            GatewayTimeoutError / GatewayUnavailableError: Outcome unknown
        """

        def call() -> GatewayResult:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                payment_method=payment_method_ref,
                payment_method_types=["card"],
                confirm=True,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
            if intent.status != "succeeded":
                raise CardDeclinedError(
                    "Payment could not be completed",
                    provider_code=intent.status,
                )
            return GatewayResult(
                gateway_tx_id=intent.id,
                status=intent.status,
                amount_cents=intent.amount,
                currency=intent.currency,
                raw_response=intent.to_dict(),
            )

        return self._execute(
            "capture",
            call,
            {"amount_cents": amount_cents, "idempotency_key": idempotency_key},
        )

    def payout(
        self,
        amount_cents: int,
        currency: str,
        payee_account_ref: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> GatewayResult:
        """
        Transfer funds from the platform balance to a Connected Account.

        Raises:
            InvalidPayoutAccountError: Destination account unusable
            InsufficientFundsError: Platform balance too low
            GatewayTimeoutError / GatewayUnavailableError: Outcome unknown
        """

        def call() -> GatewayResult:
            transfer = stripe.Transfer.create(
                amount=amount_cents,
                currency=currency,
                destination=payee_account_ref,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
            return GatewayResult(
                gateway_tx_id=transfer.id,
                status="succeeded",
                amount_cents=transfer.amount,
                currency=transfer.currency,
                raw_response=transfer.to_dict(),
            )

        return self._execute(
            "payout",
            call,
            {"amount_cents": amount_cents, "idempotency_key": idempotency_key},
        )

    def refund(
        self,
        gateway_tx_id: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> GatewayResult:
        """
        Refund part or all of a funding capture.

        Raises:
            InvalidGatewayRequestError: Unknown capture or amount too large
            GatewayTimeoutError / GatewayUnavailableError: Outcome unknown
        """

        def call() -> GatewayResult:
            refund = stripe.Refund.create(
                payment_intent=gateway_tx_id,
                amount=amount_cents,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
            if refund.status == "failed":
                raise InvalidGatewayRequestError(
                    "Refund was rejected by the payment provider",
                    provider_code=refund.status,
                )
            return GatewayResult(
                gateway_tx_id=refund.id,
                status=refund.status,
                amount_cents=refund.amount,
                currency=refund.currency,
                raw_response=refund.to_dict(),
            )

        return self._execute(
            "refund",
            call,
            {"amount_cents": amount_cents, "idempotency_key": idempotency_key},
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _execute(
        self,
        operation: str,
        call: Callable[[], GatewayResult],
        log_context: dict[str, Any],
    ) -> GatewayResult:
        """Run a Stripe call with timing logs and error translation."""
        self._configure_stripe()
        logger = self.get_logger()
        log_context = {"operation": operation, **log_context}

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)
        try:
            result = call()
        except stripe.StripeError as e:
            duration_ms = (time.time() - start_time) * 1000
            self._handle_stripe_error(e, log_context, duration_ms)
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Stripe operation completed",
            extra={
                **log_context,
                "gateway_tx_id": result.gateway_tx_id,
                "duration_ms": duration_ms,
            },
        )
        return result

    @classmethod
    def _handle_stripe_error(
        cls,
        error: stripe.StripeError,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe exceptions to gateway exceptions.

        The raw Stripe message is logged but never copied into the raised
        error, since it may contain provider object ids.
        """
        logger = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms, "stripe_error": str(error)}

        if isinstance(error, stripe.CardError):
            # The decline code lives on the error object parsed from the response body
            decline_code = getattr(getattr(error, "error", None), "decline_code", None)
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": decline_code},
            )
            if decline_code == "insufficient_funds":
                raise InsufficientFundsError(
                    "The payment method has insufficient funds",
                    provider_code=error.code,
                    decline_code=decline_code,
                )
            raise CardDeclinedError(
                "The payment method was declined",
                provider_code=error.code,
                decline_code=decline_code,
            )

        if isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            if error.code == "balance_insufficient":
                raise InsufficientFundsError(
                    "The platform balance is insufficient for this payout",
                    provider_code=error.code,
                )
            if error.param == "destination" or "account" in (error.code or ""):
                raise InvalidPayoutAccountError(
                    "The payee account cannot receive payouts",
                    provider_code=error.code,
                )
            raise InvalidGatewayRequestError(
                "The payment provider rejected the request",
                provider_code=error.code,
            )

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise GatewayRateLimitError(
                "The payment provider is busy. Please retry.",
                provider_code="rate_limit",
            )

        if isinstance(error, stripe.APIConnectionError):
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            if "timed out" in str(error).lower() or "timeout" in str(error).lower():
                raise GatewayTimeoutError(
                    "The payment provider did not respond in time",
                    provider_code="timeout",
                )
            raise GatewayUnavailableError(
                "Could not reach the payment provider",
                provider_code="api_connection_error",
            )

        if isinstance(error, stripe.AuthenticationError):
            logger.critical("Stripe authentication failed - check API key", extra=log_context)
            raise InvalidGatewayRequestError(
                "The payment provider rejected our credentials",
                provider_code="authentication_error",
            )

        # APIError and anything unrecognized: the request may have been applied
        logger.error(
            f"Stripe error: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        raise GatewayUnavailableError(
            "The payment provider returned an error",
            provider_code="api_error",
        )

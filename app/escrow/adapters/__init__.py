"""
Payment gateway adapters.

Usage:
    from escrow.adapters import StripeGateway, IdempotencyKeyGenerator
"""

from escrow.adapters.base import GatewayResult, PaymentGateway
from escrow.adapters.stripe_adapter import (
    IdempotencyKeyGenerator,
    StripeGateway,
    backoff_delay,
    is_retryable_gateway_error,
)

__all__ = [
    "GatewayResult",
    "IdempotencyKeyGenerator",
    "PaymentGateway",
    "StripeGateway",
    "backoff_delay",
    "is_retryable_gateway_error",
]

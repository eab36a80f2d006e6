"""
Payment gateway interface.

Services depend on the PaymentGateway protocol, not on Stripe, so the
gateway can be swapped (or replaced by an in-memory fake in tests) by
passing a different object to the service constructor.

Every operation takes an idempotency key: calling it again with the same key
must return the original result instead of moving money twice.

Usage:
    from escrow.adapters.base import PaymentGateway

    class InMemoryGateway:
        def capture(self, amount_cents, currency, payment_method_ref, idempotency_key, metadata=None): ...
        def payout(self, amount_cents, currency, payee_account_ref, idempotency_key, metadata=None): ...
        def refund(self, gateway_tx_id, amount_cents, idempotency_key, metadata=None): ...

    gateway: PaymentGateway = InMemoryGateway()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from typing import Any


@dataclass(frozen=True)
class GatewayResult:
    """
    Confirmed outcome of a gateway operation.

    Attributes:
        gateway_tx_id: Provider id of the charge, transfer or refund
        status: Provider status string
        amount_cents: Amount the provider applied
        currency: Currency code
        raw_response: Full provider response (for debugging, never serialized)
    """

    gateway_tx_id: str
    status: str
    amount_cents: int
    currency: str
    raw_response: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@runtime_checkable
class PaymentGateway(Protocol):
    """
    Protocol for payment gateways.

    Methods raise escrow.exceptions.GatewayError subclasses on failure.
    """

    def capture(
        self,
        amount_cents: int,
        currency: str,
        payment_method_ref: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> GatewayResult:
        """Charge the business's payment method."""
        ...

    def payout(
        self,
        amount_cents: int,
        currency: str,
        payee_account_ref: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> GatewayResult:
        """Transfer funds to the talent's payout account."""
        ...

    def refund(
        self,
        gateway_tx_id: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> GatewayResult:
        """Refund (part of) an earlier capture to the business."""
        ...

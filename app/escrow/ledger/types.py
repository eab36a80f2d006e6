"""
Data types for ledger operations.

Types:
    Money: A monetary amount in cents with currency
    RecordTransactionParams: Parameters for appending a ledger entry

Usage:
    from escrow.ledger.types import Money, RecordTransactionParams

    params = RecordTransactionParams(
        type=TransactionType.FUNDING,
        amount_cents=100000,
        idempotency_key=key,
        contract_id=account.contract_id,
        escrow_account_id=account.id,
    )
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from escrow.state_machines import TransactionType

# Entry types that move money into escrow (positive amounts)
INFLOW_TYPES = frozenset({TransactionType.FUNDING, TransactionType.FEE})


@dataclass(frozen=True)
class Money:
    """
    A monetary amount in the smallest currency unit.

    Example:
        amount = Money(cents=50000, currency="cad")
        str(amount)  # "$500.00 CAD"
    """

    cents: int
    currency: str = "cad"

    def __str__(self) -> str:
        sign = "-" if self.cents < 0 else ""
        whole, fraction = divmod(abs(self.cents), 100)
        return f"{sign}${whole}.{fraction:02d} {self.currency.upper()}"

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot add Money with different currencies: "
                f"{self.currency} and {other.currency}"
            )
        return Money(cents=self.cents + other.cents, currency=self.currency)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot subtract Money with different currencies: "
                f"{self.currency} and {other.currency}"
            )
        return Money(cents=self.cents - other.cents, currency=self.currency)


@dataclass
class RecordTransactionParams:
    """
    Parameters for appending one ledger entry.

    Required Attributes:
        type: TransactionType value
        amount_cents: Signed amount (positive for funding and fee, negative
            for money leaving escrow)
        idempotency_key: Unique key; the same key never yields two entries
        contract_id: Contract the money belongs to

    Optional Attributes:
        escrow_account_id / milestone_id / dispute_id / payment_period_id:
            What the entry settles
        net_amount_cents / fee_amount_cents / tax_amount_cents: Fee breakdown
            of a payout
        description: Human-readable description
        metadata: JSON-serializable context (gateway instruction, finalizer)
        created_by: Actor or job that caused the entry
    """

    type: str
    amount_cents: int
    idempotency_key: str
    contract_id: str

    currency: str = "cad"
    escrow_account_id: uuid.UUID | None = None
    milestone_id: uuid.UUID | None = None
    dispute_id: uuid.UUID | None = None
    payment_period_id: uuid.UUID | None = None
    net_amount_cents: int = 0
    fee_amount_cents: int = 0
    tax_amount_cents: int = 0
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    created_by: str | None = None

    def __post_init__(self) -> None:
        """Validate params after initialization."""
        if self.type not in TransactionType.values:
            raise ValueError(f"Unknown transaction type: {self.type}")
        if self.amount_cents == 0:
            raise ValueError("amount_cents must be non-zero")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")
        if not self.contract_id:
            raise ValueError("contract_id is required")
        is_inflow = self.type in INFLOW_TYPES
        if is_inflow and self.amount_cents < 0:
            raise ValueError(f"{self.type} entries must have a positive amount")
        if not is_inflow and self.amount_cents > 0:
            raise ValueError(f"{self.type} entries must have a negative amount")

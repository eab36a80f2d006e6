"""
Ledger model: the append-only record of every money movement.

A Transaction is written for each gateway operation (capture, payout,
refund) and for the platform's fee share of each payout. Rows are inserted
as PENDING or COMPLETED; the only permitted update is PENDING → COMPLETED or
PENDING → FAILED. Settled rows can never be saved again or deleted.

Sign convention (escrow's point of view):
    FUNDING                 +amount
    MILESTONE_RELEASE       -gross
    DISPUTE_SETTLEMENT      -leg amount
    REFUND                  -amount
    BIWEEKLY_PAYMENT        -gross (contract-level, no escrow account)
    FEE                     +fee (platform revenue, excluded from balance)

So for a funded account:
    Σ completed non-fee amounts == EscrowAccount.pending_amount_cents
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import MetadataMixin, UUIDPrimaryKeyMixin

from escrow.exceptions import LedgerImmutableError
from escrow.state_machines import TransactionStatus, TransactionType


class Transaction(UUIDPrimaryKeyMixin, MetadataMixin, BaseModel):
    """
    A single ledger entry.

    Fields:
        escrow_account: Account whose balance the entry moves (null for
            biweekly payouts, which are paid per contract)
        milestone / dispute / payment_period: What the entry settles
        contract_id: Contract the money belongs to
        type: TransactionType
        amount_cents: Signed amount in cents
        net_amount_cents / fee_amount_cents / tax_amount_cents: Breakdown
            of a payout (zero for funding and refunds)
        status: pending → completed | failed (FSM)
        processor_reference: Gateway transaction id (never serialized)
        idempotency_key: Unique key sent to the gateway with the request
        metadata: Stored gateway instruction and finalizer for reconciliation
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    escrow_account = models.ForeignKey(
        "escrow.EscrowAccount",
        on_delete=models.PROTECT,
        related_name="transactions",
        null=True,
        blank=True,
    )
    milestone = models.ForeignKey(
        "escrow.Milestone",
        on_delete=models.PROTECT,
        related_name="transactions",
        null=True,
        blank=True,
    )
    dispute = models.ForeignKey(
        "escrow.DisputeCase",
        on_delete=models.PROTECT,
        related_name="transactions",
        null=True,
        blank=True,
    )
    payment_period = models.ForeignKey(
        "escrow.PaymentPeriod",
        on_delete=models.PROTECT,
        related_name="transactions",
        null=True,
        blank=True,
    )
    contract_id = models.CharField(max_length=64, db_index=True)

    # ==========================================================================
    # Amounts
    # ==========================================================================

    type = models.CharField(
        max_length=32,
        choices=TransactionType.choices,
        db_index=True,
    )
    amount_cents = models.BigIntegerField(
        help_text="Signed amount in cents from the escrow's point of view",
    )
    net_amount_cents = models.BigIntegerField(default=0)
    fee_amount_cents = models.BigIntegerField(default=0)
    tax_amount_cents = models.BigIntegerField(default=0)
    currency = models.CharField(max_length=3, default="cad")

    # ==========================================================================
    # State & Gateway
    # ==========================================================================

    status = FSMField(
        default=TransactionStatus.PENDING,
        choices=TransactionStatus.choices,
        db_index=True,
        protected=True,
    )
    processor_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Gateway transaction id (internal only)",
    )
    idempotency_key = models.CharField(max_length=255, unique=True)

    description = models.CharField(max_length=255, blank=True, default="")
    created_by = models.CharField(max_length=100, null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.TextField(null=True, blank=True)

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Transaction"
        verbose_name_plural = "Transactions"
        indexes = [
            models.Index(fields=["escrow_account", "type", "status"], name="ledger_tx_account_type_status"),
            models.Index(fields=["status", "created_at"], name="ledger_tx_status_created"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=~models.Q(amount_cents=0),
                name="transaction_amount_non_zero",
            ),
        ]

    def __str__(self) -> str:
        return f"Transaction({self.id}, {self.type}, {self.amount_cents}, {self.status})"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._loaded_status = instance.status
        return instance

    def save(self, *args, **kwargs):
        """Insert, or persist a pending row's single settlement transition."""
        loaded_status = getattr(self, "_loaded_status", None)
        if not self._state.adding and loaded_status in (
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
        ):
            raise LedgerImmutableError(
                "Settled ledger entries cannot be modified",
                details={"transaction_id": str(self.id), "status": loaded_status},
            )
        super().save(*args, **kwargs)
        self._loaded_status = self.status

    def delete(self, *args, **kwargs):
        raise LedgerImmutableError(
            "Ledger entries cannot be deleted",
            details={"transaction_id": str(self.id)},
        )

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=TransactionStatus.PENDING,
        target=TransactionStatus.COMPLETED,
    )
    def complete(self, processor_reference: str | None = None):
        """Gateway confirmed the operation."""
        self.completed_at = timezone.now()
        if processor_reference:
            self.processor_reference = processor_reference

    @transition(
        field=status,
        source=TransactionStatus.PENDING,
        target=TransactionStatus.FAILED,
    )
    def fail(self, reason: str | None = None):
        """Gateway definitively rejected the operation."""
        self.failed_at = timezone.now()
        self.failure_reason = reason

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

"""
EscrowAccount model: funds held for one contract.

Balances (all integer cents):
    total_amount_cents     Σ milestone amounts
    released_amount_cents  Every cent that has left escrow, whether paid to
                           the talent or refunded to the business
    pending_amount_cents   What escrow still holds
    refunded_amount_cents  The part of released that went back to the business

Invariant (database check constraint):
    released_amount_cents + pending_amount_cents == total_amount_cents

Nothing is released before funding, so pending == total from creation.

Usage:
    from escrow.models import EscrowAccount

    account.mark_funded(funding_reference="pi_123")
    account.save()
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from django_fsm import RETURN_VALUE, FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from escrow.state_machines import EscrowStatus, MilestoneStatus


def default_currency() -> str:
    return settings.ESCROW_CURRENCY


class EscrowAccount(UUIDPrimaryKeyMixin, BaseModel):
    """
    Funds held in escrow for a contract between a business and a talent.

    State Flow:
        CREATED -> FUNDED -> PARTIALLY_RELEASED -> COMPLETED
        FUNDED/PARTIALLY_RELEASED -> DISPUTED -> (recomputed)
        CREATED/FUNDED -> CANCELLED (nothing released)

    Fields:
        contract_id: External contract identifier (one escrow per contract)
        business_id / talent_id: Opaque identities of the two parties
        status: Current FSM state
        funding_reference: Gateway id of the capture (internal, used for refunds)
        payment_method_ref: Payment method the capture was charged to
    """

    # ==========================================================================
    # Parties
    # ==========================================================================

    contract_id = models.CharField(max_length=64, unique=True)
    business_id = models.CharField(max_length=64, db_index=True)
    talent_id = models.CharField(max_length=64, db_index=True)

    # ==========================================================================
    # Balances
    # ==========================================================================

    currency = models.CharField(max_length=3, default=default_currency)
    total_amount_cents = models.PositiveBigIntegerField()
    released_amount_cents = models.PositiveBigIntegerField(default=0)
    pending_amount_cents = models.PositiveBigIntegerField(default=0)
    refunded_amount_cents = models.PositiveBigIntegerField(default=0)

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=EscrowStatus.CREATED,
        choices=EscrowStatus.choices,
        db_index=True,
        protected=True,
    )

    # ==========================================================================
    # Funding & Lifecycle
    # ==========================================================================

    payment_method_ref = models.CharField(max_length=255, null=True, blank=True)
    funding_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Gateway id of the funding capture (internal only)",
    )
    funded_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.TextField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Escrow Account"
        verbose_name_plural = "Escrow Accounts"
        indexes = [
            models.Index(fields=["business_id", "status"], name="escrow_acct_business_status"),
            models.Index(fields=["talent_id", "status"], name="escrow_acct_talent_status"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(total_amount_cents__gt=0),
                name="escrow_total_positive",
            ),
            models.CheckConstraint(
                condition=models.Q(
                    total_amount_cents=models.F("released_amount_cents")
                    + models.F("pending_amount_cents")
                ),
                name="escrow_balances_sum_to_total",
            ),
            models.CheckConstraint(
                condition=models.Q(refunded_amount_cents__lte=models.F("released_amount_cents")),
                name="escrow_refunded_within_released",
            ),
        ]

    def __str__(self) -> str:
        return f"EscrowAccount({self.id}, contract={self.contract_id}, {self.status})"

    # ==========================================================================
    # Balance Helpers
    # ==========================================================================

    def move_to_released(self, amount_cents: int, refunded: bool = False) -> None:
        """
        Move an amount out of pending into released.

        Args:
            amount_cents: Amount leaving escrow
            refunded: Whether the amount went back to the business
        """
        if amount_cents <= 0 or amount_cents > self.pending_amount_cents:
            raise ValueError(
                f"Cannot release {amount_cents} cents with {self.pending_amount_cents} pending"
            )
        self.pending_amount_cents -= amount_cents
        self.released_amount_cents += amount_cents
        if refunded:
            self.refunded_amount_cents += amount_cents

    @property
    def talent_released_cents(self) -> int:
        """Gross amount released to the talent (before fees)."""
        return self.released_amount_cents - self.refunded_amount_cents

    def all_milestones_settled(self) -> bool:
        """True when every milestone is released or closed by a dispute."""
        return not self.milestones.exclude(
            models.Q(status=MilestoneStatus.RELEASED) | models.Q(closed_at__isnull=False)
        ).exists()

    def has_unresolved_disputes(self) -> bool:
        from escrow.state_machines import DisputeStatus

        return self.disputes.exclude(status=DisputeStatus.RESOLVED).exists()

    def party_for(self, actor_id: str) -> str | None:
        """Return "business", "talent" or None for an actor id."""
        if actor_id == self.business_id:
            return "business"
        if actor_id == self.talent_id:
            return "talent"
        return None

    def _settled_status(self) -> str:
        if self.pending_amount_cents == 0 and self.all_milestones_settled():
            return EscrowStatus.COMPLETED
        if self.released_amount_cents > 0:
            return EscrowStatus.PARTIALLY_RELEASED
        return EscrowStatus.FUNDED

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=EscrowStatus.CREATED,
        target=EscrowStatus.FUNDED,
    )
    def mark_funded(self, funding_reference: str | None = None, payment_method_ref: str | None = None):
        """
        Gateway capture confirmed.

        Transition: CREATED -> FUNDED
        """
        self.funding_reference = funding_reference
        if payment_method_ref:
            self.payment_method_ref = payment_method_ref
        self.pending_amount_cents = self.total_amount_cents
        self.funded_at = timezone.now()

    @transition(
        field=status,
        source=[EscrowStatus.FUNDED, EscrowStatus.PARTIALLY_RELEASED],
        target=RETURN_VALUE(EscrowStatus.PARTIALLY_RELEASED, EscrowStatus.COMPLETED),
    )
    def record_release(self):
        """
        Recompute status after a milestone release.

        Transition: FUNDED/PARTIALLY_RELEASED -> PARTIALLY_RELEASED | COMPLETED
        """
        target = self._settled_status()
        if target == EscrowStatus.COMPLETED:
            self.completed_at = timezone.now()
            return target
        return EscrowStatus.PARTIALLY_RELEASED

    @transition(
        field=status,
        source=[EscrowStatus.FUNDED, EscrowStatus.PARTIALLY_RELEASED, EscrowStatus.DISPUTED],
        target=EscrowStatus.DISPUTED,
    )
    def flag_dispute(self):
        """
        A milestone was disputed; funds are frozen until resolution.

        Transition: FUNDED/PARTIALLY_RELEASED/DISPUTED -> DISPUTED
        """

    @transition(
        field=status,
        source=EscrowStatus.DISPUTED,
        target=RETURN_VALUE(
            EscrowStatus.FUNDED,
            EscrowStatus.PARTIALLY_RELEASED,
            EscrowStatus.COMPLETED,
        ),
    )
    def clear_dispute(self):
        """
        Last unresolved dispute resolved; recompute status from balances.

        Transition: DISPUTED -> FUNDED | PARTIALLY_RELEASED | COMPLETED
        """
        target = self._settled_status()
        if target == EscrowStatus.COMPLETED:
            self.completed_at = timezone.now()
        return target

    @transition(
        field=status,
        source=[EscrowStatus.CREATED, EscrowStatus.FUNDED],
        target=EscrowStatus.CANCELLED,
        conditions=[lambda account: account.released_amount_cents == 0],
    )
    def cancel(self, reason: str | None = None, refunded: bool = False):
        """
        Cancel before any release.

        Transition: CREATED/FUNDED -> CANCELLED

        Args:
            reason: Why the contract was cancelled
            refunded: Whether the funded total was refunded to the business
        """
        if refunded:
            self.move_to_released(self.pending_amount_cents, refunded=True)
        self.cancelled_at = timezone.now()
        self.cancellation_reason = reason

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_disputed(self) -> bool:
        return self.status == EscrowStatus.DISPUTED

    @property
    def accepts_releases(self) -> bool:
        return self.status in (EscrowStatus.FUNDED, EscrowStatus.PARTIALLY_RELEASED)

"""
Hourly work models: TimeEntry and PaymentPeriod.

Hourly contracts are paid every two weeks. The talent logs TimeEntries, the
business approves them, and BiweeklyPaymentService pays the approved entries
of a period in one payout, after which the entries are settled and can never
be billed again.

TimeEntry State Flow:
    PENDING -> APPROVED -> SETTLED
    PENDING -> REJECTED

PaymentPeriod State Flow:
    OPEN -> PROCESSING -> PAID
    PROCESSING -> OPEN (gateway rejected the payout)
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from escrow.state_machines import PaymentPeriodStatus, TimeEntryStatus


class TimeEntry(UUIDPrimaryKeyMixin, BaseModel):
    """
    Hours worked by the talent on one day of an hourly contract.

    Fields:
        work_date: Day the work was done
        hours: Hours worked (two decimals)
        hourly_rate_cents: Agreed rate at the time of work
        payment_period: Period that paid (or is paying) this entry
    """

    contract_id = models.CharField(max_length=64, db_index=True)
    business_id = models.CharField(max_length=64)
    talent_id = models.CharField(max_length=64)
    work_date = models.DateField()
    hours = models.DecimalField(max_digits=5, decimal_places=2)
    hourly_rate_cents = models.PositiveIntegerField()
    description = models.TextField(blank=True, default="")

    status = FSMField(
        default=TimeEntryStatus.PENDING,
        choices=TimeEntryStatus.choices,
        db_index=True,
        protected=True,
    )
    rejection_reason = models.TextField(null=True, blank=True)
    approved_at = models.DateTimeField(null=True, blank=True)
    rejected_at = models.DateTimeField(null=True, blank=True)
    settled_at = models.DateTimeField(null=True, blank=True)

    payment_period = models.ForeignKey(
        "escrow.PaymentPeriod",
        on_delete=models.PROTECT,
        related_name="time_entries",
        null=True,
        blank=True,
    )

    class Meta:
        ordering = ["work_date", "created_at"]
        verbose_name = "Time Entry"
        verbose_name_plural = "Time Entries"
        indexes = [
            models.Index(fields=["contract_id", "status", "work_date"], name="time_entry_contract_status"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(hours__gt=0) & models.Q(hours__lte=24),
                name="time_entry_hours_in_day",
            ),
        ]

    def __str__(self) -> str:
        return f"TimeEntry({self.id}, {self.work_date}, {self.hours}h, {self.status})"

    @property
    def amount_cents(self) -> int:
        """hours × rate, rounded half-up to the cent."""
        value = Decimal(self.hours) * Decimal(self.hourly_rate_cents)
        return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @transition(
        field=status,
        source=TimeEntryStatus.PENDING,
        target=TimeEntryStatus.APPROVED,
    )
    def approve(self):
        self.approved_at = timezone.now()

    @transition(
        field=status,
        source=TimeEntryStatus.PENDING,
        target=TimeEntryStatus.REJECTED,
    )
    def reject(self, reason: str):
        self.rejection_reason = reason
        self.rejected_at = timezone.now()

    @transition(
        field=status,
        source=TimeEntryStatus.APPROVED,
        target=TimeEntryStatus.SETTLED,
    )
    def settle(self):
        """Paid as part of a payment period. Terminal."""
        self.settled_at = timezone.now()


class PaymentPeriod(UUIDPrimaryKeyMixin, BaseModel):
    """
    A biweekly payout window for one contract.

    Totals are frozen when processing starts. No two periods of the same
    contract overlap (enforced under the contract lock), and the exact range
    is unique.
    """

    contract_id = models.CharField(max_length=64, db_index=True)
    business_id = models.CharField(max_length=64)
    talent_id = models.CharField(max_length=64)
    period_start = models.DateField()
    period_end = models.DateField()

    total_hours = models.DecimalField(max_digits=8, decimal_places=2, default=Decimal("0"))
    total_amount_cents = models.PositiveBigIntegerField(default=0)
    platform_fee_cents = models.PositiveBigIntegerField(default=0)
    processing_fee_cents = models.PositiveBigIntegerField(default=0)
    tax_withholding_cents = models.PositiveBigIntegerField(default=0)
    net_amount_cents = models.PositiveBigIntegerField(default=0)

    status = FSMField(
        default=PaymentPeriodStatus.OPEN,
        choices=PaymentPeriodStatus.choices,
        db_index=True,
        protected=True,
    )
    notes = models.TextField(null=True, blank=True)
    processed_by = models.CharField(max_length=64, null=True, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-period_start"]
        verbose_name = "Payment Period"
        verbose_name_plural = "Payment Periods"
        constraints = [
            models.UniqueConstraint(
                fields=["contract_id", "period_start", "period_end"],
                name="payment_period_unique_range",
            ),
            models.CheckConstraint(
                condition=models.Q(period_end__gte=models.F("period_start")),
                name="payment_period_valid_range",
            ),
        ]

    def __str__(self) -> str:
        return f"PaymentPeriod({self.contract_id}, {self.period_start}..{self.period_end}, {self.status})"

    @transition(
        field=status,
        source=PaymentPeriodStatus.OPEN,
        target=PaymentPeriodStatus.PROCESSING,
    )
    def begin_processing(self, processed_by: str | None = None):
        """Transition: OPEN -> PROCESSING"""
        self.processed_by = processed_by

    @transition(
        field=status,
        source=PaymentPeriodStatus.PROCESSING,
        target=PaymentPeriodStatus.PAID,
    )
    def mark_paid(self):
        """Transition: PROCESSING -> PAID (terminal)"""
        self.paid_at = timezone.now()

    @transition(
        field=status,
        source=PaymentPeriodStatus.PROCESSING,
        target=PaymentPeriodStatus.OPEN,
    )
    def reopen(self):
        """Transition: PROCESSING -> OPEN (payout rejected)"""

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentPeriodStatus.PAID

"""
PayeeAccount model: where a talent's payouts go.

Each talent has one Stripe Connected Account. Payouts are only sent once
Stripe has enabled payouts on it. The tax-reporting fields drive the
withholding line of the fee breakdown.

Usage:
    payee = PayeeAccount.objects.get(talent_id=account.talent_id)
    if payee.is_ready_for_payouts:
        schedule = FeeSchedule.for_payee(payee)
"""

from __future__ import annotations

from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin


class PayeeAccount(UUIDPrimaryKeyMixin, BaseModel):
    """
    A talent's payout destination and tax status.

    Fields:
        talent_id: Identity of the talent (one payee account each)
        stripe_account_id: Stripe Connected Account id (acct_xxx)
        payouts_enabled: Whether Stripe has enabled payouts
        requires_tax_withholding: Whether withholding applies to payouts
        tax_withholding_rate_bps: Withholding rate in basis points
    """

    talent_id = models.CharField(max_length=64, unique=True)
    stripe_account_id = models.CharField(max_length=255, unique=True)
    payouts_enabled = models.BooleanField(default=False)
    requires_tax_withholding = models.BooleanField(default=False)
    tax_withholding_rate_bps = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payee Account"
        verbose_name_plural = "Payee Accounts"
        constraints = [
            models.CheckConstraint(
                condition=models.Q(tax_withholding_rate_bps__lte=10000),
                name="payee_withholding_rate_max_100_percent",
            ),
        ]

    def __str__(self) -> str:
        return f"PayeeAccount(talent={self.talent_id}, payouts={'on' if self.payouts_enabled else 'off'})"

    @property
    def is_ready_for_payouts(self) -> bool:
        return self.payouts_enabled and bool(self.stripe_account_id)

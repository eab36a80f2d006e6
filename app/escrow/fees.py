"""
Fee calculation for payouts.

Every payout (milestone release, dispute release leg, biweekly payment) runs
its gross amount through FeeCalculator.compute():

    platform fee     = 8% of gross
    processing fee   = 2.9% of gross + 30 cents
    tax withholding  = payee's withholding rate × gross (0 unless required)
    net              = gross - platform - processing - withholding

Each percentage is rounded half-up to the cent. The schedule comes from
settings (ESCROW_*_FEE_*), and one schedule serves every payout flow.

Usage:
    from escrow.fees import FeeCalculator, FeeSchedule

    breakdown = FeeCalculator.compute(50000)
    breakdown.net_cents  # 44520

    schedule = FeeSchedule.for_payee(payee_account)
    breakdown = FeeCalculator.compute(50000, schedule)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from django.conf import settings

from escrow.exceptions import FeeCalculationError, ValidationError

if TYPE_CHECKING:
    from typing import Any

    from escrow.models import PayeeAccount

BASIS_POINTS = Decimal(10000)


def percent_of(amount_cents: int | Decimal, basis_points: int) -> int:
    """Apply a basis-point rate to an amount, rounding half-up to the cent."""
    value = Decimal(amount_cents) * Decimal(basis_points) / BASIS_POINTS
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class FeeSchedule:
    """
    Rates applied to a payout.

    Attributes:
        platform_fee_bps: Platform commission in basis points
        processing_fee_bps: Card processing rate in basis points
        processing_fee_fixed_cents: Fixed processing fee per payout
        tax_withholding_bps: Withholding rate (0 when not required)
    """

    platform_fee_bps: int = 800
    processing_fee_bps: int = 290
    processing_fee_fixed_cents: int = 30
    tax_withholding_bps: int = 0

    @classmethod
    def from_settings(cls, tax_withholding_bps: int = 0) -> FeeSchedule:
        return cls(
            platform_fee_bps=settings.ESCROW_PLATFORM_FEE_BPS,
            processing_fee_bps=settings.ESCROW_PROCESSING_FEE_BPS,
            processing_fee_fixed_cents=settings.ESCROW_PROCESSING_FEE_FIXED_CENTS,
            tax_withholding_bps=tax_withholding_bps,
        )

    @classmethod
    def for_payee(cls, payee: PayeeAccount | None) -> FeeSchedule:
        """Settings schedule plus the payee's withholding rate, if any."""
        if payee is None or not payee.requires_tax_withholding:
            return cls.from_settings()
        return cls.from_settings(tax_withholding_bps=payee.tax_withholding_rate_bps)


@dataclass(frozen=True)
class FeeBreakdown:
    """Result of a fee computation. All values in cents."""

    gross_cents: int
    platform_fee_cents: int
    processing_fee_cents: int
    tax_withholding_cents: int
    net_cents: int

    @property
    def total_fees_cents(self) -> int:
        """Platform plus processing fees (withholding is not a fee)."""
        return self.platform_fee_cents + self.processing_fee_cents

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["total_fees_cents"] = self.total_fees_cents
        return data


class FeeCalculator:
    """Pure fee computation. No I/O, no state."""

    @staticmethod
    def compute(gross_cents: int, schedule: FeeSchedule | None = None) -> FeeBreakdown:
        """
        Compute the fee breakdown for a gross payout.

        Args:
            gross_cents: Gross amount in cents (must be positive)
            schedule: Rates to apply (defaults to the settings schedule)

        Returns:
            FeeBreakdown with net = gross - platform - processing - withholding

        Raises:
            ValidationError: If gross_cents is not positive
            FeeCalculationError: If the deductions leave no positive net

        Example:
            FeeCalculator.compute(50000)
            # FeeBreakdown(gross_cents=50000, platform_fee_cents=4000,
            #              processing_fee_cents=1480, tax_withholding_cents=0,
            #              net_cents=44520)
        """
        if isinstance(gross_cents, bool) or not isinstance(gross_cents, int):
            raise ValidationError(
                "Gross amount must be an integer number of cents",
                details={"gross_cents": str(gross_cents)},
            )
        if gross_cents <= 0:
            raise ValidationError(
                "Gross amount must be positive",
                details={"gross_cents": gross_cents},
            )

        schedule = schedule or FeeSchedule.from_settings()
        platform_fee, processing_fee, withholding = FeeCalculator._deductions(gross_cents, schedule)
        net = gross_cents - platform_fee - processing_fee - withholding

        # A transfer of 0 is rejected by the processor, so net must be positive
        if net <= 0:
            raise FeeCalculationError(
                "Fees leave nothing to pay out",
                details={
                    "gross_cents": gross_cents,
                    "platform_fee_cents": platform_fee,
                    "processing_fee_cents": processing_fee,
                    "tax_withholding_cents": withholding,
                },
            )

        return FeeBreakdown(
            gross_cents=gross_cents,
            platform_fee_cents=platform_fee,
            processing_fee_cents=processing_fee,
            tax_withholding_cents=withholding,
            net_cents=net,
        )

    @staticmethod
    def minimum_gross(schedule: FeeSchedule | None = None) -> int:
        """
        Smallest gross amount whose payout is at least one cent.

        Raises:
            FeeCalculationError: If the percentage rates add up to 100% or more
        """
        schedule = schedule or FeeSchedule.from_settings()
        total_bps = schedule.platform_fee_bps + schedule.processing_fee_bps + schedule.tax_withholding_bps
        if total_bps >= BASIS_POINTS:
            raise FeeCalculationError(
                "Fee rates leave nothing to pay out",
                details={"total_fee_bps": total_bps},
            )

        gross = schedule.processing_fee_fixed_cents + 1
        while gross - sum(FeeCalculator._deductions(gross, schedule)) <= 0:
            gross += 1
        return gross

    @staticmethod
    def _deductions(gross_cents: int, schedule: FeeSchedule) -> tuple[int, int, int]:
        """Return (platform, processing, withholding) for a gross amount."""
        return (
            percent_of(gross_cents, schedule.platform_fee_bps),
            percent_of(gross_cents, schedule.processing_fee_bps) + schedule.processing_fee_fixed_cents,
            percent_of(gross_cents, schedule.tax_withholding_bps),
        )

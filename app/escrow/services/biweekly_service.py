"""
Biweekly payments for hourly contracts.

The talent logs time entries, the business approves them, and every two
weeks the approved hours of a period are paid out in one payout:

    gross = Σ round_half_up(hours × hourly_rate)
    net   = gross - fees (same schedule as milestone releases)

Periods are fixed windows of BIWEEKLY_PERIOD_DAYS days counted from
BIWEEKLY_PERIOD_ANCHOR. Processing runs under the contract lock. The entries
are reserved on a PROCESSING period before the payout is sent, so a timed-out
payout keeps them out of any other period until it is settled.

Usage:
    from escrow.services import BiweeklyPaymentService

    summary = BiweeklyPaymentService.get_current_period("contract-1")
    period = BiweeklyPaymentService().process_payment(
        contract_id="contract-1",
        period_start=summary.period_start,
        period_end=summary.period_end,
        time_entry_ids=[entry.id for entry in summary.entries],
        actor=actor,
    )
"""

from __future__ import annotations

import datetime
import uuid
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from escrow.adapters import IdempotencyKeyGenerator
from escrow.exceptions import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from escrow.fees import FeeCalculator, FeeSchedule
from escrow.ledger.services import LedgerService
from escrow.ledger.types import RecordTransactionParams
from escrow.locks import contract_lock
from escrow.models import PayeeAccount, PaymentPeriod, TimeEntry
from escrow.services.base import LOOKUP_ERRORS, EscrowServiceBase
from escrow.services.dispatcher import (
    GatewayDispatcher,
    GatewayInstruction,
    GatewayOperation,
    register_failure_handler,
    register_finalizer,
)
from escrow.services.types import PeriodSummary
from escrow.state_machines import PaymentPeriodStatus, TimeEntryStatus, TransactionType

if TYPE_CHECKING:
    from collections.abc import Iterable

    from django.db.models import QuerySet

    from escrow.ledger.models import Transaction
    from escrow.services.dispatcher import LedgerRecord
    from escrow.services.types import Actor


def period_bounds(day: datetime.date) -> tuple[datetime.date, datetime.date]:
    """Return the (start, end) of the period window containing a day."""
    anchor = datetime.date.fromisoformat(settings.BIWEEKLY_PERIOD_ANCHOR)
    length = settings.BIWEEKLY_PERIOD_DAYS
    offset = (day - anchor).days // length
    start = anchor + datetime.timedelta(days=offset * length)
    return start, start + datetime.timedelta(days=length - 1)


class BiweeklyPaymentService(EscrowServiceBase):
    """Service for time entries and biweekly payouts."""

    # =========================================================================
    # Time Entries
    # =========================================================================

    def create_time_entry(
        self,
        contract_id: str,
        business_id: str,
        talent_id: str,
        work_date: datetime.date,
        hours: Decimal | str,
        hourly_rate_cents: int,
        actor: Actor,
        description: str = "",
    ) -> TimeEntry:
        """
        Log hours worked by the talent.

        Raises:
            AuthorizationError: Actor is not the talent
            ValidationError: Bad hours/rate, future date, or parties that do
                not match earlier entries of the contract
        """
        if actor.actor_id != talent_id:
            raise AuthorizationError("Only the talent can log time")
        if not contract_id:
            raise ValidationError("contract_id is required")

        try:
            hours = Decimal(str(hours)).quantize(Decimal("0.01"))
        except (InvalidOperation, ValueError):
            raise ValidationError("Hours must be a number", details={"hours": str(hours)}) from None
        if not Decimal("0") < hours <= Decimal("24"):
            raise ValidationError("Hours must be greater than 0 and at most 24", details={"hours": str(hours)})
        if isinstance(hourly_rate_cents, bool) or not isinstance(hourly_rate_cents, int) or hourly_rate_cents <= 0:
            raise ValidationError("Hourly rate must be a positive number of cents")
        if work_date > timezone.localdate():
            raise ValidationError("Time cannot be logged for a future date")

        earlier = TimeEntry.objects.filter(contract_id=contract_id).first()
        if earlier is not None and (earlier.business_id, earlier.talent_id) != (business_id, talent_id):
            raise ValidationError(
                "Parties do not match this contract",
                error_code="CONTRACT_PARTIES_MISMATCH",
                details={"contract_id": contract_id},
            )

        entry = TimeEntry.objects.create(
            contract_id=contract_id,
            business_id=business_id,
            talent_id=talent_id,
            work_date=work_date,
            hours=hours,
            hourly_rate_cents=hourly_rate_cents,
            description=description,
        )
        self.get_logger().info(
            f"Logged {hours}h on {work_date} for contract {contract_id}",
            extra={"time_entry_id": str(entry.id), "contract_id": contract_id},
        )
        return entry

    def approve_time_entry(self, entry_id: uuid.UUID | str, actor: Actor) -> TimeEntry:
        with self.atomic():
            entry = self._load_entry(entry_id, for_update=True)
            if actor.actor_id != entry.business_id:
                raise AuthorizationError("Only the business can approve time")
            self.transition(entry, "approve")
            entry.save()
        return entry

    def reject_time_entry(self, entry_id: uuid.UUID | str, actor: Actor, reason: str) -> TimeEntry:
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        with self.atomic():
            entry = self._load_entry(entry_id, for_update=True)
            if actor.actor_id != entry.business_id:
                raise AuthorizationError("Only the business can reject time")
            self.transition(entry, "reject", reason=reason)
            entry.save()
        return entry

    @staticmethod
    def list_time_entries(contract_id: str, actor: Actor, status: str | None = None) -> QuerySet[TimeEntry]:
        queryset = TimeEntry.objects.filter(contract_id=contract_id)
        if not actor.is_admin:
            queryset = queryset.filter(Q(business_id=actor.actor_id) | Q(talent_id=actor.actor_id))
        if status:
            queryset = queryset.filter(status=status.lower())
        return queryset

    @staticmethod
    def list_periods(contract_id: str, actor: Actor) -> QuerySet[PaymentPeriod]:
        queryset = PaymentPeriod.objects.filter(contract_id=contract_id)
        if not actor.is_admin:
            queryset = queryset.filter(Q(business_id=actor.actor_id) | Q(talent_id=actor.actor_id))
        return queryset

    # =========================================================================
    # Periods
    # =========================================================================

    @staticmethod
    def get_current_period(
        contract_id: str,
        today: datetime.date | None = None,
        actor: Actor | None = None,
    ) -> PeriodSummary:
        """
        Preview the period containing today: approved, unbilled entries and fees.

        A non-admin actor only sees the entries they are a party to.
        """
        start, end = period_bounds(today or timezone.localdate())
        queryset = TimeEntry.objects.filter(
            contract_id=contract_id,
            status=TimeEntryStatus.APPROVED,
            payment_period__isnull=True,
            work_date__gte=start,
            work_date__lte=end,
        )
        if actor is not None and not actor.is_admin:
            queryset = queryset.filter(Q(business_id=actor.actor_id) | Q(talent_id=actor.actor_id))
        entries = list(queryset)
        summary = PeriodSummary(
            contract_id=contract_id,
            period_start=start,
            period_end=end,
            entries=entries,
            total_hours=sum((entry.hours for entry in entries), Decimal("0")),
            gross_cents=sum(entry.amount_cents for entry in entries),
            already_paid=PaymentPeriod.objects.filter(
                contract_id=contract_id,
                period_start=start,
                period_end=end,
                status=PaymentPeriodStatus.PAID,
            ).exists(),
        )
        if summary.gross_cents > 0:
            payee = PayeeAccount.objects.filter(talent_id=entries[0].talent_id).first()
            summary.fees = FeeCalculator.compute(summary.gross_cents, FeeSchedule.for_payee(payee))
        return summary

    def process_payment(
        self,
        contract_id: str,
        period_start: datetime.date,
        period_end: datetime.date,
        time_entry_ids: Iterable[uuid.UUID | str],
        actor: Actor,
        notes: str | None = None,
    ) -> PaymentPeriod:
        """
        Pay the talent for the given approved entries of a period.

        Raises:
            InvalidStateError: The period is already paid
            ValidationError: Overlapping period, or an entry that is not
                approved, outside the range, from another contract or
                already in another period
            NotFoundError: An entry does not exist
            GatewayError: Payout rejected (reservation released) or outcome
                unknown (entries stay reserved)
        """
        if period_end < period_start:
            raise ValidationError("period_end must not be before period_start")
        entry_ids = self._parse_ids(time_entry_ids)
        if not entry_ids:
            raise ValidationError("At least one time entry is required")

        with contract_lock(contract_id) as lock:
            with self.atomic():
                period = (
                    PaymentPeriod.objects.select_for_update()
                    .filter(contract_id=contract_id, period_start=period_start, period_end=period_end)
                    .first()
                )
                if period is not None and period.is_paid:
                    raise InvalidStateError(
                        "This period has already been paid",
                        error_code="PERIOD_ALREADY_PAID",
                        details={"period_id": str(period.id)},
                    )

                overlapping = PaymentPeriod.objects.filter(
                    contract_id=contract_id,
                    period_start__lte=period_end,
                    period_end__gte=period_start,
                )
                if period is not None:
                    overlapping = overlapping.exclude(pk=period.pk)
                if overlapping.exists():
                    raise ValidationError(
                        "Period overlaps another payment period of this contract",
                        error_code="PERIOD_OVERLAP",
                    )

                entries = self._lock_entries(entry_ids)
                self._validate_entries(entries, contract_id, period_start, period_end, period)

                first = entries[0]
                if not actor.is_admin and actor.actor_id != first.business_id:
                    raise AuthorizationError("Only the business can process payments")

                payee = self.get_ready_payee(first.talent_id)
                gross = sum(entry.amount_cents for entry in entries)
                breakdown = FeeCalculator.compute(gross, FeeSchedule.for_payee(payee))

                if period is None:
                    period = PaymentPeriod.objects.create(
                        contract_id=contract_id,
                        business_id=first.business_id,
                        talent_id=first.talent_id,
                        period_start=period_start,
                        period_end=period_end,
                    )
                if period.status == PaymentPeriodStatus.OPEN:
                    period.total_hours = sum((entry.hours for entry in entries), Decimal("0"))
                    period.total_amount_cents = gross
                    period.platform_fee_cents = breakdown.platform_fee_cents
                    period.processing_fee_cents = breakdown.processing_fee_cents
                    period.tax_withholding_cents = breakdown.tax_withholding_cents
                    period.net_amount_cents = breakdown.net_cents
                    period.notes = notes
                    period.begin_processing(processed_by=actor.actor_id)
                    period.save()
                    TimeEntry.objects.filter(pk__in=entry_ids).update(payment_period=period)

            key = IdempotencyKeyGenerator.generate(
                operation="biweekly_payment",
                entity_id=f"{contract_id}:{period_start.isoformat()}:{period_end.isoformat()}",
                attempt=1
                + LedgerService.count_failed(payment_period_id=period.id, type=TransactionType.BIWEEKLY_PAYMENT),
            )
            params = RecordTransactionParams(
                type=TransactionType.BIWEEKLY_PAYMENT,
                amount_cents=-period.total_amount_cents,
                idempotency_key=key,
                contract_id=contract_id,
                payment_period_id=period.id,
                net_amount_cents=period.net_amount_cents,
                fee_amount_cents=period.platform_fee_cents + period.processing_fee_cents,
                tax_amount_cents=period.tax_withholding_cents,
                description=f"Biweekly payment {period_start.isoformat()} to {period_end.isoformat()}",
                metadata={"fees": breakdown.to_dict(), "time_entry_ids": [str(pk) for pk in entry_ids]},
                created_by=actor.actor_id,
            )
            instruction = GatewayInstruction(
                operation=GatewayOperation.PAYOUT,
                amount_cents=period.net_amount_cents,
                currency=settings.ESCROW_CURRENCY,
                target_ref=payee.stripe_account_id,
                idempotency_key=key,
                metadata={"contract_id": contract_id, "period_id": str(period.id)},
            )
            GatewayDispatcher(self.gateway, lock).dispatch(params, instruction, finalizer="biweekly_payment")

        period = PaymentPeriod.objects.get(pk=period.pk)
        self.get_logger().info(
            f"Paid biweekly period {period.id}",
            extra={
                "period_id": str(period.id),
                "contract_id": contract_id,
                "gross_cents": period.total_amount_cents,
                "net_cents": period.net_amount_cents,
                "entry_count": len(entry_ids),
            },
        )
        return period

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _parse_ids(time_entry_ids: Iterable[uuid.UUID | str]) -> list[uuid.UUID]:
        try:
            return list(dict.fromkeys(uuid.UUID(str(value)) for value in time_entry_ids))
        except ValueError:
            raise ValidationError("Time entry ids must be UUIDs") from None

    @staticmethod
    def _load_entry(entry_id: uuid.UUID | str, for_update: bool = False) -> TimeEntry:
        queryset = TimeEntry.objects.all()
        if for_update:
            queryset = queryset.select_for_update()
        try:
            return queryset.get(pk=entry_id)
        except (TimeEntry.DoesNotExist, *LOOKUP_ERRORS):
            raise NotFoundError(
                "Time entry not found",
                error_code="TIME_ENTRY_NOT_FOUND",
                details={"time_entry_id": str(entry_id)},
            ) from None

    @staticmethod
    def _lock_entries(entry_ids: list[uuid.UUID]) -> list[TimeEntry]:
        entries = list(TimeEntry.objects.select_for_update().filter(pk__in=entry_ids).order_by("work_date"))
        missing = set(entry_ids) - {entry.id for entry in entries}
        if missing:
            raise NotFoundError(
                "Time entry not found",
                error_code="TIME_ENTRY_NOT_FOUND",
                details={"time_entry_ids": sorted(str(pk) for pk in missing)},
            )
        return entries

    @staticmethod
    def _validate_entries(
        entries: list[TimeEntry],
        contract_id: str,
        period_start: datetime.date,
        period_end: datetime.date,
        period: PaymentPeriod | None,
    ) -> None:
        for entry in entries:
            details = {"time_entry_id": str(entry.id)}
            if entry.contract_id != contract_id:
                raise ValidationError("Time entry belongs to another contract", details=details)
            if entry.status != TimeEntryStatus.APPROVED:
                raise ValidationError(
                    f"Time entry is '{entry.status}', only approved entries can be paid",
                    details={**details, "status": entry.status},
                )
            if not period_start <= entry.work_date <= period_end:
                raise ValidationError("Time entry is outside the period", details=details)
            if entry.payment_period_id is not None and (period is None or entry.payment_period_id != period.id):
                raise ValidationError("Time entry already belongs to another period", details=details)

        if period is not None and period.status == PaymentPeriodStatus.PROCESSING:
            reserved = set(period.time_entries.values_list("id", flat=True))
            if reserved != {entry.id for entry in entries}:
                raise ValidationError(
                    "A payout for this period is in progress with different time entries",
                    error_code="PERIOD_IN_PROGRESS",
                    details={"period_id": str(period.id)},
                )


# =============================================================================
# Finalizer & Failure Handler
# =============================================================================


@register_finalizer("biweekly_payment")
def finalize_biweekly_payment(entry: Transaction) -> None:
    period = PaymentPeriod.objects.select_for_update().get(pk=entry.payment_period_id)
    if period.status != PaymentPeriodStatus.PROCESSING:
        return
    period.mark_paid()
    period.save()
    for time_entry in TimeEntry.objects.select_for_update().filter(
        payment_period=period, status=TimeEntryStatus.APPROVED
    ):
        time_entry.settle()
        time_entry.save()
    LedgerService.record_fee(entry)


@register_failure_handler("biweekly_payment")
def release_biweekly_reservation(record: LedgerRecord) -> None:
    period = PaymentPeriod.objects.select_for_update().get(pk=record.payment_period_id)
    if period.status != PaymentPeriodStatus.PROCESSING:
        return
    period.reopen()
    period.save()
    TimeEntry.objects.filter(payment_period=period, status=TimeEntryStatus.APPROVED).update(payment_period=None)

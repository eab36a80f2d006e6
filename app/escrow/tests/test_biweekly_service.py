"""
Integration tests for BiweeklyPaymentService.

Periods are 14-day windows anchored at 2024-01-01, so the first period is
2024-01-01..2024-01-14 and the second 2024-01-15..2024-01-28.
"""

import datetime
from decimal import Decimal

import pytest
from freezegun import freeze_time

from escrow.exceptions import (
    AuthorizationError,
    GatewayTimeoutError,
    InvalidPayoutAccountError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from escrow.ledger.models import Transaction
from escrow.models import PaymentPeriod, TimeEntry
from escrow.services import period_bounds
from escrow.state_machines import PaymentPeriodStatus, TimeEntryStatus, TransactionStatus, TransactionType
from escrow.tests.factories import BUSINESS_ID, TALENT_ID, TimeEntryFactory

FIRST_START = datetime.date(2024, 1, 1)
FIRST_END = datetime.date(2024, 1, 14)


@pytest.fixture
def approved_entries(db, biweekly_service, business, payee):
    """Two approved 8h days at $50/h in the first period ($800 gross)."""
    entries = [
        TimeEntryFactory(work_date=datetime.date(2024, 1, 3)),
        TimeEntryFactory(work_date=datetime.date(2024, 1, 4)),
    ]
    return [biweekly_service.approve_time_entry(entry.id, business) for entry in entries]


def pay(service, entries, actor, start=FIRST_START, end=FIRST_END):
    return service.process_payment(
        contract_id="hourly-1",
        period_start=start,
        period_end=end,
        time_entry_ids=[entry.id for entry in entries],
        actor=actor,
    )


class TestPeriodBounds:
    """Tests for period_bounds()."""

    @pytest.mark.parametrize(
        ("day", "expected"),
        [
            (datetime.date(2024, 1, 1), (FIRST_START, FIRST_END)),
            (datetime.date(2024, 1, 14), (FIRST_START, FIRST_END)),
            (datetime.date(2024, 1, 15), (datetime.date(2024, 1, 15), datetime.date(2024, 1, 28))),
            (datetime.date(2023, 12, 31), (datetime.date(2023, 12, 18), datetime.date(2023, 12, 31))),
        ],
    )
    def test_fixed_windows(self, day, expected):
        assert period_bounds(day) == expected


# =============================================================================
# Time Entries
# =============================================================================


@pytest.mark.django_db
class TestTimeEntries:
    """Tests for logging, approving and rejecting time."""

    @freeze_time("2024-01-10")
    def test_talent_logs_time(self, biweekly_service, talent):
        entry = biweekly_service.create_time_entry(
            "hourly-1", BUSINESS_ID, TALENT_ID, datetime.date(2024, 1, 9), "7.5", 4000, talent, "API work"
        )

        assert entry.status == TimeEntryStatus.PENDING
        assert entry.hours == Decimal("7.50")
        assert entry.amount_cents == 30000

    @freeze_time("2024-01-10")
    def test_future_date_rejected(self, biweekly_service, talent):
        with pytest.raises(ValidationError, match="future"):
            biweekly_service.create_time_entry(
                "hourly-1", BUSINESS_ID, TALENT_ID, datetime.date(2024, 1, 11), 1, 4000, talent
            )

    @pytest.mark.parametrize("hours", ["0", "24.01", "-1", "lots"])
    def test_bad_hours_rejected(self, db, biweekly_service, talent, hours):
        with pytest.raises(ValidationError):
            biweekly_service.create_time_entry(
                "hourly-1", BUSINESS_ID, TALENT_ID, datetime.date(2024, 1, 3), hours, 4000, talent
            )

    def test_only_talent_logs_time(self, db, biweekly_service, business):
        with pytest.raises(AuthorizationError):
            biweekly_service.create_time_entry(
                "hourly-1", BUSINESS_ID, TALENT_ID, datetime.date(2024, 1, 3), 1, 4000, business
            )

    def test_parties_must_match_contract(self, db, biweekly_service):
        from escrow.services import Actor

        TimeEntryFactory()

        with pytest.raises(ValidationError) as exc_info:
            biweekly_service.create_time_entry(
                "hourly-1", "business-2", "talent-2", datetime.date(2024, 1, 3), 1, 4000, Actor("talent-2")
            )

        assert exc_info.value.error_code == "CONTRACT_PARTIES_MISMATCH"

    def test_business_approves_and_rejects(self, db, biweekly_service, business):
        approved = biweekly_service.approve_time_entry(TimeEntryFactory().id, business)
        rejected = biweekly_service.reject_time_entry(TimeEntryFactory().id, business, reason="Duplicate")

        assert approved.status == TimeEntryStatus.APPROVED
        assert rejected.status == TimeEntryStatus.REJECTED
        assert rejected.rejection_reason == "Duplicate"

    def test_talent_cannot_approve_own_time(self, db, biweekly_service, talent):
        with pytest.raises(AuthorizationError):
            biweekly_service.approve_time_entry(TimeEntryFactory().id, talent)

    def test_cannot_approve_twice(self, approved_entries, biweekly_service, business):
        with pytest.raises(InvalidStateError):
            biweekly_service.approve_time_entry(approved_entries[0].id, business)

    def test_unknown_entry(self, db, biweekly_service, business):
        with pytest.raises(NotFoundError):
            biweekly_service.approve_time_entry("nope", business)

    def test_list_hides_other_parties(self, db, biweekly_service, talent, stranger):
        TimeEntryFactory()

        assert biweekly_service.list_time_entries("hourly-1", talent).count() == 1
        assert biweekly_service.list_time_entries("hourly-1", stranger).count() == 0


# =============================================================================
# Current Period
# =============================================================================


@pytest.mark.django_db
class TestCurrentPeriod:
    """Tests for get_current_period()."""

    @freeze_time("2024-01-10")
    def test_preview_of_approved_entries(self, approved_entries, biweekly_service):
        TimeEntryFactory(work_date=datetime.date(2024, 1, 5))  # pending, not included
        TimeEntryFactory(work_date=datetime.date(2024, 1, 16))  # next period

        summary = biweekly_service.get_current_period("hourly-1")

        assert (summary.period_start, summary.period_end) == (FIRST_START, FIRST_END)
        assert len(summary.entries) == 2
        assert summary.total_hours == Decimal("16.00")
        assert summary.gross_cents == 80000
        assert summary.fees.net_cents == 80000 - 6400 - 2350
        assert summary.already_paid is False

    def test_empty_period_has_no_fees(self, db, biweekly_service):
        summary = biweekly_service.get_current_period("hourly-1", today=datetime.date(2024, 2, 1))

        assert summary.entries == []
        assert summary.gross_cents == 0
        assert summary.fees is None

    def test_stranger_sees_nothing(self, approved_entries, biweekly_service, stranger):
        summary = biweekly_service.get_current_period("hourly-1", today=FIRST_END, actor=stranger)

        assert summary.entries == []

    def test_paid_period(self, approved_entries, biweekly_service, business):
        pay(biweekly_service, approved_entries, business)

        summary = biweekly_service.get_current_period("hourly-1", today=FIRST_END)

        assert summary.already_paid is True
        assert summary.entries == []


# =============================================================================
# Process Payment
# =============================================================================


@pytest.mark.django_db
class TestProcessPayment:
    """Tests for process_payment()."""

    def test_pays_net_and_settles_entries(self, approved_entries, biweekly_service, business, gateway, payee):
        period = pay(biweekly_service, approved_entries, business)

        assert period.status == PaymentPeriodStatus.PAID
        assert period.total_hours == Decimal("16.00")
        assert period.total_amount_cents == 80000
        assert period.platform_fee_cents == 6400
        assert period.processing_fee_cents == 2350
        assert period.net_amount_cents == 71250
        assert period.processed_by == business.actor_id

        (payout,) = gateway.calls_for("payout")
        assert payout["amount_cents"] == 71250
        assert payout["target"] == payee.stripe_account_id

        assert all(entry.status == TimeEntryStatus.SETTLED for entry in TimeEntry.objects.all())
        payment = Transaction.objects.get(type=TransactionType.BIWEEKLY_PAYMENT)
        assert payment.amount_cents == -80000
        assert payment.escrow_account_id is None
        assert Transaction.objects.get(type=TransactionType.FEE).amount_cents == 8750

    def test_admin_can_process(self, approved_entries, biweekly_service, admin):
        assert pay(biweekly_service, approved_entries, admin).is_paid

    def test_talent_cannot_process(self, approved_entries, biweekly_service, talent):
        with pytest.raises(AuthorizationError):
            pay(biweekly_service, approved_entries, talent)

    def test_cannot_pay_period_twice(self, approved_entries, biweekly_service, business, gateway):
        pay(biweekly_service, approved_entries, business)

        with pytest.raises(InvalidStateError) as exc_info:
            pay(biweekly_service, approved_entries, business)

        assert exc_info.value.error_code == "PERIOD_ALREADY_PAID"
        assert len(gateway.calls_for("payout")) == 1

    def test_settled_entries_cannot_be_billed_again(self, approved_entries, biweekly_service, business):
        pay(biweekly_service, approved_entries, business)

        with pytest.raises(ValidationError):
            pay(biweekly_service, approved_entries, business, datetime.date(2024, 1, 2), datetime.date(2024, 1, 5))

    def test_pending_entry_rejected(self, approved_entries, biweekly_service, business):
        pending = TimeEntryFactory(work_date=datetime.date(2024, 1, 5))

        with pytest.raises(ValidationError, match="only approved"):
            pay(biweekly_service, [*approved_entries, pending], business)

        assert not PaymentPeriod.objects.exists()

    def test_entry_outside_period_rejected(self, approved_entries, biweekly_service, business):
        with pytest.raises(ValidationError, match="outside"):
            pay(biweekly_service, approved_entries, business, FIRST_START, datetime.date(2024, 1, 3))

    def test_overlapping_period_rejected(self, approved_entries, biweekly_service, business):
        pay(biweekly_service, approved_entries[:1], business, FIRST_START, datetime.date(2024, 1, 3))

        with pytest.raises(ValidationError) as exc_info:
            pay(biweekly_service, approved_entries[1:], business, datetime.date(2024, 1, 3), FIRST_END)

        assert exc_info.value.error_code == "PERIOD_OVERLAP"

    def test_unknown_entry(self, approved_entries, biweekly_service, business):
        with pytest.raises(NotFoundError):
            biweekly_service.process_payment(
                "hourly-1", FIRST_START, FIRST_END, ["0b7e8d40-0000-0000-0000-000000000000"], business
            )

    @pytest.mark.parametrize("ids", [[], ["not-a-uuid"]])
    def test_bad_id_list(self, db, biweekly_service, business, ids):
        with pytest.raises(ValidationError):
            biweekly_service.process_payment("hourly-1", FIRST_START, FIRST_END, ids, business)

    def test_rejected_payout_reopens_period(self, approved_entries, biweekly_service, business, gateway):
        gateway.fail_next("payout", InvalidPayoutAccountError("bad account"))

        with pytest.raises(InvalidPayoutAccountError):
            pay(biweekly_service, approved_entries, business)

        period = PaymentPeriod.objects.get()
        assert period.status == PaymentPeriodStatus.OPEN
        assert not TimeEntry.objects.filter(payment_period__isnull=False).exists()
        assert not Transaction.objects.exists()

        assert pay(biweekly_service, approved_entries, business).is_paid

    def test_timeout_keeps_entries_reserved(self, approved_entries, biweekly_service, business, gateway):
        gateway.fail_next("payout", GatewayTimeoutError("timed out"))

        with pytest.raises(GatewayTimeoutError):
            pay(biweekly_service, approved_entries, business)

        period = PaymentPeriod.objects.get()
        assert period.status == PaymentPeriodStatus.PROCESSING
        assert period.time_entries.count() == 2
        assert Transaction.objects.get().status == TransactionStatus.PENDING

        with pytest.raises(ValidationError) as exc_info:
            pay(biweekly_service, approved_entries[:1], business)
        assert exc_info.value.error_code == "PERIOD_IN_PROGRESS"

        assert pay(biweekly_service, approved_entries, business).is_paid
        assert gateway.money_movements == 1

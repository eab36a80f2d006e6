"""
Tests for state machine transitions using django-fsm.

Tests valid and invalid transitions of EscrowAccount, Milestone,
Deliverable, DisputeCase, Transaction, TimeEntry and PaymentPeriod.
"""

import datetime
import uuid
from decimal import Decimal

import pytest
from django_fsm import TransitionNotAllowed

from escrow.exceptions import LedgerImmutableError
from escrow.models import DisputeCase, PaymentPeriod, Transaction
from escrow.state_machines import (
    DeliverableStatus,
    DisputeParty,
    DisputeStatus,
    EscrowStatus,
    MilestoneStatus,
    PaymentPeriodStatus,
    TimeEntryStatus,
    TransactionStatus,
    TransactionType,
)
from escrow.tests.factories import (
    DeliverableFactory,
    EscrowAccountFactory,
    MilestoneFactory,
    TimeEntryFactory,
)


@pytest.fixture
def account(db):
    return EscrowAccountFactory(total_amount_cents=100000)


@pytest.fixture
def funded(account):
    account.mark_funded(funding_reference="pi_1", payment_method_ref="pm_card_visa")
    account.save()
    return account


# =============================================================================
# EscrowAccount
# =============================================================================


class TestEscrowAccountTransitions:
    """Tests for EscrowAccount state machine transitions."""

    def test_created_to_funded(self, account):
        """Should record the capture and hold the full total."""
        account.mark_funded(funding_reference="pi_1", payment_method_ref="pm_card_visa")
        account.save()

        assert account.status == EscrowStatus.FUNDED
        assert account.funding_reference == "pi_1"
        assert account.pending_amount_cents == 100000
        assert account.funded_at is not None

    def test_release_of_part_is_partially_released(self, funded):
        """Releasing while milestones remain open gives PARTIALLY_RELEASED."""
        MilestoneFactory(escrow_account=funded, amount_cents=40000, status=MilestoneStatus.RELEASED)
        MilestoneFactory(escrow_account=funded, amount_cents=60000)

        funded.move_to_released(40000)
        funded.record_release()
        funded.save()

        assert funded.status == EscrowStatus.PARTIALLY_RELEASED
        assert funded.released_amount_cents == 40000
        assert funded.pending_amount_cents == 60000

    def test_release_of_everything_completes(self, funded):
        """Releasing the last milestone completes the account."""
        MilestoneFactory(escrow_account=funded, amount_cents=100000, status=MilestoneStatus.RELEASED)

        funded.move_to_released(100000)
        funded.record_release()
        funded.save()

        assert funded.status == EscrowStatus.COMPLETED
        assert funded.completed_at is not None

    def test_cannot_release_more_than_pending(self, funded):
        """Balances can never go negative."""
        with pytest.raises(ValueError):
            funded.move_to_released(100001)

    def test_cannot_fund_twice(self, funded):
        """FUNDED is not a source of mark_funded."""
        with pytest.raises(TransitionNotAllowed):
            funded.mark_funded(funding_reference="pi_2")

    def test_cannot_dispute_unfunded_account(self, account):
        """Only funded accounts can be disputed."""
        with pytest.raises(TransitionNotAllowed):
            account.flag_dispute()

    def test_clear_dispute_recomputes_status(self, funded):
        """Clearing a dispute returns to the status the balances imply."""
        MilestoneFactory(escrow_account=funded, amount_cents=100000)
        funded.flag_dispute()
        funded.save()

        funded.clear_dispute()
        funded.save()

        assert funded.status == EscrowStatus.FUNDED

    def test_cancel_unfunded(self, account):
        """An unfunded account cancels without moving balances."""
        account.cancel(reason="Project dropped")
        account.save()

        assert account.status == EscrowStatus.CANCELLED
        assert account.cancellation_reason == "Project dropped"
        assert account.refunded_amount_cents == 0

    def test_cancel_funded_refunds_everything(self, funded):
        """A refunded cancellation moves the whole balance out as refunded."""
        funded.cancel(reason="Project dropped", refunded=True)
        funded.save()

        assert funded.status == EscrowStatus.CANCELLED
        assert funded.pending_amount_cents == 0
        assert funded.released_amount_cents == 100000
        assert funded.refunded_amount_cents == 100000

    def test_cannot_cancel_after_release(self, funded):
        """The cancel condition blocks accounts with released funds."""
        funded.move_to_released(10000)

        with pytest.raises(TransitionNotAllowed):
            funded.cancel(reason="Too late")

    def test_party_for(self, account):
        """Actors are matched against the two parties."""
        assert account.party_for(account.business_id) == DisputeParty.BUSINESS
        assert account.party_for(account.talent_id) == DisputeParty.TALENT
        assert account.party_for("nobody") is None


# =============================================================================
# Milestone & Deliverable
# =============================================================================


class TestMilestoneTransitions:
    """Tests for Milestone state machine transitions."""

    def test_happy_path(self, account):
        """pending -> in_progress -> submitted -> approved -> released."""
        milestone = MilestoneFactory(escrow_account=account)

        milestone.start()
        milestone.submit(notes="Done")
        milestone.approve(notes="Looks good")
        milestone.release()
        milestone.save()

        assert milestone.status == MilestoneStatus.RELEASED
        assert milestone.submission_notes == "Done"
        assert milestone.approval_notes == "Looks good"
        assert milestone.released_at is not None
        assert milestone.is_settled

    def test_reject_and_resubmit(self, account):
        """A rejected milestone goes back to work and can be submitted again."""
        milestone = MilestoneFactory(escrow_account=account)
        milestone.start()
        milestone.submit()
        milestone.reject(reason="Missing files")

        assert milestone.rejection_reason == "Missing files"

        milestone.resume()
        milestone.submit()

        assert milestone.status == MilestoneStatus.SUBMITTED
        assert milestone.rejection_reason is None

    def test_cannot_release_unapproved(self, account):
        """Only approved milestones can be released directly."""
        milestone = MilestoneFactory(escrow_account=account)
        milestone.start()
        milestone.submit()

        with pytest.raises(TransitionNotAllowed):
            milestone.release()

    def test_cannot_dispute_in_progress(self, account):
        """Disputes need submitted or approved work."""
        milestone = MilestoneFactory(escrow_account=account)
        milestone.start()

        with pytest.raises(TransitionNotAllowed):
            milestone.dispute()

    def test_dispute_remembers_previous_status(self, account):
        """The pre-dispute status is kept for reference."""
        milestone = MilestoneFactory(escrow_account=account)
        milestone.start()
        milestone.submit()
        milestone.approve()
        milestone.dispute()

        assert milestone.status == MilestoneStatus.DISPUTED
        assert milestone.status_before_dispute == MilestoneStatus.APPROVED

    def test_closed_by_refund_cannot_resume(self, account):
        """A milestone refunded by a dispute is closed for good."""
        milestone = MilestoneFactory(escrow_account=account)
        milestone.start()
        milestone.submit()
        milestone.dispute()
        milestone.close_refunded(reason="Refunded")

        assert milestone.status == MilestoneStatus.REJECTED
        assert milestone.is_closed
        assert milestone.is_settled
        with pytest.raises(TransitionNotAllowed):
            milestone.resume()

    def test_percentage_of_total(self, account):
        """Share of the account total with two decimals."""
        milestone = MilestoneFactory(escrow_account=account, amount_cents=33333)

        assert milestone.percentage == Decimal("33.33")


class TestDeliverableTransitions:
    """Tests for Deliverable state machine transitions."""

    def test_submit_then_approve(self, account):
        deliverable = DeliverableFactory(milestone=MilestoneFactory(escrow_account=account))

        deliverable.submit()
        deliverable.approve()

        assert deliverable.status == DeliverableStatus.APPROVED
        assert deliverable.reviewed_at is not None

    def test_cannot_review_unsubmitted(self, account):
        """Pending deliverables cannot be reviewed."""
        deliverable = DeliverableFactory(milestone=MilestoneFactory(escrow_account=account))

        with pytest.raises(TransitionNotAllowed):
            deliverable.reject(reason="No")


# =============================================================================
# DisputeCase
# =============================================================================


class TestDisputeTransitions:
    """Tests for DisputeCase state machine transitions."""

    @pytest.fixture
    def dispute(self, funded):
        milestone = MilestoneFactory(escrow_account=funded, amount_cents=100000)
        return DisputeCase.objects.create(
            escrow_account=funded,
            milestone=milestone,
            initiated_by=DisputeParty.BUSINESS,
            initiator_id=funded.business_id,
            reason="Work not delivered",
        )

    def test_open_to_review_to_resolved(self, dispute):
        dispute.start_review(reviewer_id="admin-1")
        dispute.resolve()
        dispute.save()

        assert dispute.status == DisputeStatus.RESOLVED
        assert dispute.reviewed_by == "admin-1"
        assert dispute.resolved_at is not None

    def test_open_can_resolve_directly(self, dispute):
        dispute.resolve()

        assert dispute.is_resolved

    def test_cannot_review_twice(self, dispute):
        dispute.start_review(reviewer_id="admin-1")

        with pytest.raises(TransitionNotAllowed):
            dispute.start_review(reviewer_id="admin-2")


# =============================================================================
# Transaction (ledger entry)
# =============================================================================


class TestTransactionTransitions:
    """Tests for ledger entry settlement and immutability."""

    @pytest.fixture
    def pending_entry(self, funded):
        return Transaction.objects.create(
            escrow_account=funded,
            contract_id=funded.contract_id,
            type=TransactionType.FUNDING,
            amount_cents=100000,
            idempotency_key=f"test:{uuid.uuid4()}",
        )

    def test_pending_to_completed(self, pending_entry):
        pending_entry.complete(processor_reference="pi_1")
        pending_entry.save()

        entry = Transaction.objects.get(pk=pending_entry.pk)
        assert entry.status == TransactionStatus.COMPLETED
        assert entry.processor_reference == "pi_1"
        assert entry.completed_at is not None

    def test_pending_to_failed(self, pending_entry):
        pending_entry.fail(reason="Card declined")
        pending_entry.save()

        entry = Transaction.objects.get(pk=pending_entry.pk)
        assert entry.status == TransactionStatus.FAILED
        assert entry.failure_reason == "Card declined"

    def test_settled_entry_cannot_be_saved(self, pending_entry):
        """Settled rows are immutable."""
        pending_entry.complete(processor_reference="pi_1")
        pending_entry.save()

        entry = Transaction.objects.get(pk=pending_entry.pk)
        entry.description = "Rewritten"
        with pytest.raises(LedgerImmutableError):
            entry.save()

    def test_completed_cannot_fail(self, pending_entry):
        pending_entry.complete()

        with pytest.raises(TransitionNotAllowed):
            pending_entry.fail(reason="Too late")

    def test_entries_cannot_be_deleted(self, pending_entry):
        with pytest.raises(LedgerImmutableError):
            pending_entry.delete()


# =============================================================================
# TimeEntry & PaymentPeriod
# =============================================================================


class TestTimeEntryTransitions:
    """Tests for TimeEntry state machine transitions."""

    def test_approve_then_settle(self, db):
        entry = TimeEntryFactory()

        entry.approve()
        entry.settle()
        entry.save()

        assert entry.status == TimeEntryStatus.SETTLED
        assert entry.approved_at is not None
        assert entry.settled_at is not None

    def test_cannot_settle_pending(self, db):
        entry = TimeEntryFactory()

        with pytest.raises(TransitionNotAllowed):
            entry.settle()

    def test_rejected_is_final(self, db):
        entry = TimeEntryFactory()
        entry.reject(reason="Not on this contract")

        with pytest.raises(TransitionNotAllowed):
            entry.approve()

    @pytest.mark.parametrize(
        ("hours", "rate", "expected"),
        [
            (Decimal("8.00"), 5000, 40000),
            (Decimal("0.50"), 3333, 1667),
            (Decimal("1.25"), 3333, 4166),
        ],
    )
    def test_amount_rounds_half_up(self, db, hours, rate, expected):
        """hours × rate rounded half-up to the cent."""
        entry = TimeEntryFactory(hours=hours, hourly_rate_cents=rate)

        assert entry.amount_cents == expected


class TestPaymentPeriodTransitions:
    """Tests for PaymentPeriod state machine transitions."""

    @pytest.fixture
    def period(self, db):
        return PaymentPeriod.objects.create(
            contract_id="hourly-1",
            business_id="business-1",
            talent_id="talent-1",
            period_start=datetime.date(2024, 1, 1),
            period_end=datetime.date(2024, 1, 14),
        )

    def test_open_to_processing_to_paid(self, period):
        period.begin_processing(processed_by="business-1")
        period.mark_paid()
        period.save()

        assert period.status == PaymentPeriodStatus.PAID
        assert period.is_paid
        assert period.paid_at is not None

    def test_processing_can_reopen(self, period):
        """A rejected payout returns the period to OPEN."""
        period.begin_processing()
        period.reopen()

        assert period.status == PaymentPeriodStatus.OPEN

    def test_paid_is_terminal(self, period):
        period.begin_processing()
        period.mark_paid()

        with pytest.raises(TransitionNotAllowed):
            period.reopen()

    def test_cannot_pay_open_period(self, period):
        with pytest.raises(TransitionNotAllowed):
            period.mark_paid()
        assert period.paid_at is None

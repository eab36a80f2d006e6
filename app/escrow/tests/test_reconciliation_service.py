"""
Integration tests for ReconciliationService.

Each test leaves a PENDING ledger entry behind with a gateway timeout, then
lets reconciliation settle it.
"""

import pytest

from escrow.exceptions import CardDeclinedError, GatewayTimeoutError, InvalidPayoutAccountError
from escrow.ledger.models import Transaction
from escrow.models import EscrowAccount, Milestone, PaymentPeriod
from escrow.state_machines import (
    EscrowStatus,
    MilestoneStatus,
    PaymentPeriodStatus,
    TransactionStatus,
    TransactionType,
)


@pytest.fixture
def pending_funding(created_account, escrow_service, business, gateway, payee):
    gateway.fail_next("capture", GatewayTimeoutError("timed out"))
    with pytest.raises(GatewayTimeoutError):
        escrow_service.fund(created_account.id, "pm_card_visa", business)
    return Transaction.objects.get(type=TransactionType.FUNDING)


@pytest.fixture
def pending_release(funded_account, submitted_milestone, escrow_service, business, gateway):
    gateway.fail_next("payout", GatewayTimeoutError("timed out"))
    with pytest.raises(GatewayTimeoutError):
        escrow_service.release_milestone(funded_account.id, submitted_milestone.id, business)
    return Transaction.objects.get(type=TransactionType.MILESTONE_RELEASE)


@pytest.mark.django_db
class TestReconcile:
    """Tests for ReconciliationService.reconcile()."""

    def test_confirmed_funding_funds_account(self, pending_funding, reconciliation_service, created_account):
        result = reconciliation_service.reconcile(pending_funding.id)

        assert result.success
        assert result.data == TransactionStatus.COMPLETED
        account = EscrowAccount.objects.get(pk=created_account.id)
        assert account.status == EscrowStatus.FUNDED
        assert account.funding_reference is not None

    def test_confirmed_release_applies_effects(self, pending_release, reconciliation_service, funded_account):
        reconciliation_service.reconcile(pending_release.id)

        account = EscrowAccount.objects.get(pk=funded_account.id)
        assert account.released_amount_cents == 50000
        assert Milestone.objects.get(pk=pending_release.milestone_id).status == MilestoneStatus.RELEASED
        assert Transaction.objects.filter(type=TransactionType.FEE).count() == 1

    def test_reuses_original_key(self, pending_release, reconciliation_service, gateway):
        reconciliation_service.reconcile(pending_release.id)

        keys = {call["idempotency_key"] for call in gateway.calls_for("payout")}
        assert keys == {pending_release.idempotency_key}

    def test_definitive_rejection_fails_entry(self, pending_release, reconciliation_service, gateway):
        gateway.fail_next("payout", InvalidPayoutAccountError("bad account"))

        result = reconciliation_service.reconcile(pending_release.id)

        assert result.data == TransactionStatus.FAILED
        assert Transaction.objects.get(pk=pending_release.id).status == TransactionStatus.FAILED
        assert Milestone.objects.get(pk=pending_release.milestone_id).status == MilestoneStatus.APPROVED

    def test_release_can_be_retried_after_failure(
        self, pending_release, reconciliation_service, escrow_service, business, gateway
    ):
        """A failed key is never reused; the next release attempt gets a new one."""
        gateway.fail_next("payout", InvalidPayoutAccountError("bad account"))
        reconciliation_service.reconcile(pending_release.id)

        account = escrow_service.release_milestone(pending_release.escrow_account_id, pending_release.milestone_id, business)

        assert account.released_amount_cents == 50000
        completed = Transaction.objects.get(type=TransactionType.MILESTONE_RELEASE, status=TransactionStatus.COMPLETED)
        assert completed.idempotency_key != pending_release.idempotency_key

    def test_still_unknown(self, pending_release, reconciliation_service, gateway):
        gateway.fail_next("payout", GatewayTimeoutError("timed out"))

        result = reconciliation_service.reconcile(pending_release.id)

        assert result.data == "still_pending"
        assert Transaction.objects.get(pk=pending_release.id).is_pending

    def test_lock_contention_is_still_pending(self, pending_release, reconciliation_service, mock_redis, settings):
        settings.ESCROW_LOCK_TIMEOUT_SECONDS = 0.1
        mock_redis.set.return_value = False

        assert reconciliation_service.reconcile(pending_release.id).data == "still_pending"

    def test_settled_entry_is_reported(self, funded_account, reconciliation_service):
        entry = Transaction.objects.get(type=TransactionType.FUNDING)

        assert reconciliation_service.reconcile(entry.id).data == TransactionStatus.COMPLETED

    def test_unknown_transaction(self, db, reconciliation_service):
        result = reconciliation_service.reconcile("not-a-uuid")

        assert not result.success
        assert result.error_code == "ESCROW_NOT_FOUND"

    def test_biweekly_rejection_reopens_period(self, db, biweekly_service, reconciliation_service, business, payee, gateway):
        import datetime

        from escrow.tests.factories import TimeEntryFactory

        entry = biweekly_service.approve_time_entry(TimeEntryFactory().id, business)
        gateway.fail_next("payout", GatewayTimeoutError("timed out"))
        with pytest.raises(GatewayTimeoutError):
            biweekly_service.process_payment(
                "hourly-1", datetime.date(2024, 1, 1), datetime.date(2024, 1, 14), [entry.id], business
            )
        pending = Transaction.objects.get(type=TransactionType.BIWEEKLY_PAYMENT)
        gateway.fail_next("payout", InvalidPayoutAccountError("bad account"))

        reconciliation_service.reconcile(pending.id)

        assert PaymentPeriod.objects.get().status == PaymentPeriodStatus.OPEN


@pytest.mark.django_db
class TestReconcilePending:
    """Tests for ReconciliationService.reconcile_pending()."""

    def test_sweep_counts_outcomes(self, pending_funding, reconciliation_service):
        counts = reconciliation_service.reconcile_pending(min_age_minutes=0)

        assert counts == {"completed": 1, "failed": 0, "still_pending": 0, "errored": 0}

    def test_sweep_skips_recent_entries(self, pending_funding, reconciliation_service):
        counts = reconciliation_service.reconcile_pending(min_age_minutes=60)

        assert sum(counts.values()) == 0
        assert Transaction.objects.get(pk=pending_funding.id).is_pending

    def test_sweep_records_failures(self, pending_funding, reconciliation_service, gateway):
        gateway.fail_next("capture", CardDeclinedError("declined"))

        counts = reconciliation_service.reconcile_pending(min_age_minutes=0)

        assert counts["failed"] == 1

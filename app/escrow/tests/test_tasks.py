"""
Tests for escrow Celery tasks.

Tasks build their own ReconciliationService, so the default gateway is
patched to the fake one (api_gateway fixture).
"""

import pytest
from celery.exceptions import Retry

from escrow.exceptions import GatewayTimeoutError
from escrow.ledger.models import Transaction
from escrow.state_machines import TransactionStatus, TransactionType
from escrow.tasks import reconcile_pending_transactions, reconcile_transaction


@pytest.fixture
def pending_funding(created_account, escrow_service, business, gateway):
    gateway.fail_next("capture", GatewayTimeoutError("timed out"))
    with pytest.raises(GatewayTimeoutError):
        escrow_service.fund(created_account.id, "pm_card_visa", business)
    return Transaction.objects.get(type=TransactionType.FUNDING)


@pytest.mark.django_db
class TestReconcileTransaction:
    """Tests for reconcile_transaction task."""

    def test_settles_entry(self, pending_funding, api_gateway):
        result = reconcile_transaction.apply(args=[str(pending_funding.id)]).get()

        assert result == {"status": TransactionStatus.COMPLETED, "transaction_id": str(pending_funding.id)}
        assert Transaction.objects.get(pk=pending_funding.id).status == TransactionStatus.COMPLETED

    def test_retries_while_outcome_unknown(self, pending_funding, api_gateway, mocker):
        api_gateway.fail_next("capture", GatewayTimeoutError("timed out"))
        mock_retry = mocker.patch.object(reconcile_transaction, "retry", side_effect=Retry())

        with pytest.raises(Retry):
            reconcile_transaction.run(str(pending_funding.id))

        mock_retry.assert_called_once()
        assert mock_retry.call_args.kwargs["countdown"] >= 30

    def test_unknown_transaction(self, db, api_gateway):
        result = reconcile_transaction.apply(args=["not-a-uuid"]).get()

        assert result["status"] == "error"
        assert result["error"] == "Transaction not found"


@pytest.mark.django_db
class TestReconcilePendingTransactions:
    """Tests for reconcile_pending_transactions task."""

    def test_sweep_returns_counts(self, pending_funding, api_gateway):
        counts = reconcile_pending_transactions.apply(kwargs={"min_age_minutes": 0}).get()

        assert counts["completed"] == 1
        assert Transaction.objects.filter(status=TransactionStatus.PENDING).count() == 0

    def test_sweep_with_nothing_pending(self, db, api_gateway):
        counts = reconcile_pending_transactions.apply().get()

        assert counts == {"completed": 0, "failed": 0, "still_pending": 0, "errored": 0}

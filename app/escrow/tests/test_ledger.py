"""
Tests for the append-only ledger.

Covers LedgerService writes (idempotency, fee rows, settlement) and the
balance queries the services and reconciliation rely on.
"""

import pytest

from escrow.exceptions import LedgerImmutableError
from escrow.ledger.models import Transaction
from escrow.ledger.services import LedgerService
from escrow.ledger.types import Money, RecordTransactionParams
from escrow.state_machines import TransactionStatus, TransactionType
from escrow.tests.factories import EscrowAccountFactory


@pytest.fixture
def account(db):
    return EscrowAccountFactory(total_amount_cents=100000)


def params_for(account, type_, amount, key, **extra):
    return RecordTransactionParams(
        type=type_,
        amount_cents=amount,
        idempotency_key=key,
        contract_id=account.contract_id,
        escrow_account_id=account.id,
        **extra,
    )


# =============================================================================
# Params
# =============================================================================


class TestRecordTransactionParams:
    """Tests for sign and field validation of ledger params."""

    def test_funding_must_be_positive(self):
        with pytest.raises(ValueError, match="positive"):
            RecordTransactionParams(
                type=TransactionType.FUNDING, amount_cents=-1, idempotency_key="k", contract_id="c"
            )

    @pytest.mark.parametrize(
        "type_",
        [
            TransactionType.MILESTONE_RELEASE,
            TransactionType.REFUND,
            TransactionType.DISPUTE_SETTLEMENT,
            TransactionType.BIWEEKLY_PAYMENT,
        ],
    )
    def test_outflows_must_be_negative(self, type_):
        with pytest.raises(ValueError, match="negative"):
            RecordTransactionParams(type=type_, amount_cents=100, idempotency_key="k", contract_id="c")

    def test_zero_amount_rejected(self):
        with pytest.raises(ValueError):
            RecordTransactionParams(
                type=TransactionType.FUNDING, amount_cents=0, idempotency_key="k", contract_id="c"
            )

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError, match="Unknown"):
            RecordTransactionParams(type="bonus", amount_cents=10, idempotency_key="k", contract_id="c")

    def test_key_required(self):
        with pytest.raises(ValueError, match="idempotency_key"):
            RecordTransactionParams(
                type=TransactionType.FUNDING, amount_cents=10, idempotency_key="", contract_id="c"
            )


class TestMoney:
    def test_str(self):
        assert str(Money(cents=44520)) == "$445.20 CAD"
        assert str(Money(cents=-5, currency="usd")) == "-$0.05 USD"

    def test_currency_mismatch(self):
        with pytest.raises(ValueError):
            Money(cents=1, currency="cad") + Money(cents=1, currency="usd")


# =============================================================================
# Writes
# =============================================================================


@pytest.mark.django_db
class TestRecordTransaction:
    """Tests for LedgerService.record_transaction()."""

    def test_records_pending_entry(self, account):
        entry = LedgerService.record_transaction(
            params_for(account, TransactionType.FUNDING, 100000, "fund:1")
        )

        assert entry.status == TransactionStatus.PENDING
        assert entry.amount_cents == 100000
        assert entry.completed_at is None

    def test_records_completed_entry(self, account):
        entry = LedgerService.record_transaction(
            params_for(account, TransactionType.FUNDING, 100000, "fund:1"),
            status=TransactionStatus.COMPLETED,
            processor_reference="pi_1",
        )

        assert entry.status == TransactionStatus.COMPLETED
        assert entry.processor_reference == "pi_1"
        assert entry.completed_at is not None

    def test_same_key_returns_existing(self, account):
        """Replaying a key never appends a second row."""
        first = LedgerService.record_transaction(params_for(account, TransactionType.FUNDING, 100000, "fund:1"))
        second = LedgerService.record_transaction(params_for(account, TransactionType.FUNDING, 999, "fund:1"))

        assert second.id == first.id
        assert second.amount_cents == 100000
        assert Transaction.objects.count() == 1

    def test_complete_and_fail(self, account):
        completed = LedgerService.record_transaction(params_for(account, TransactionType.FUNDING, 100, "a"))
        failed = LedgerService.record_transaction(params_for(account, TransactionType.REFUND, -100, "b"))

        LedgerService.complete(completed, processor_reference="pi_1")
        LedgerService.fail(failed, reason="Declined")

        assert Transaction.objects.get(pk=completed.pk).status == TransactionStatus.COMPLETED
        assert Transaction.objects.get(pk=failed.pk).failure_reason == "Declined"

    def test_settled_entry_is_immutable(self, account):
        entry = LedgerService.record_transaction(
            params_for(account, TransactionType.FUNDING, 100, "a"),
            status=TransactionStatus.COMPLETED,
        )

        with pytest.raises(LedgerImmutableError):
            entry.save()


@pytest.mark.django_db
class TestRecordFee:
    """Tests for LedgerService.record_fee()."""

    def test_fee_row_for_payout(self, account):
        payout = LedgerService.record_transaction(
            params_for(
                account,
                TransactionType.MILESTONE_RELEASE,
                -50000,
                "release:m1:1:abcd",
                net_amount_cents=44520,
                fee_amount_cents=5480,
            ),
            status=TransactionStatus.COMPLETED,
        )

        fee = LedgerService.record_fee(payout)

        assert fee.type == TransactionType.FEE
        assert fee.amount_cents == 5480
        assert fee.status == TransactionStatus.COMPLETED
        assert fee.idempotency_key == "fee:release:m1:1:abcd"
        assert fee.get_meta("payout_transaction_id") == str(payout.id)

    def test_fee_row_is_written_once(self, account):
        payout = LedgerService.record_transaction(
            params_for(account, TransactionType.MILESTONE_RELEASE, -50000, "r", fee_amount_cents=5480),
            status=TransactionStatus.COMPLETED,
        )

        LedgerService.record_fee(payout)
        LedgerService.record_fee(payout)

        assert Transaction.objects.filter(type=TransactionType.FEE).count() == 1

    def test_no_fee_row_without_fee(self, account):
        refund = LedgerService.record_transaction(
            params_for(account, TransactionType.REFUND, -100, "r"),
            status=TransactionStatus.COMPLETED,
        )

        assert LedgerService.record_fee(refund) is None


# =============================================================================
# Queries
# =============================================================================


@pytest.mark.django_db
class TestLedgerQueries:
    """Tests for balance and bookkeeping queries."""

    @pytest.fixture
    def history(self, account):
        """Funded 1000, released 500 (fee 54.80), one pending refund, one failed."""
        completed = TransactionStatus.COMPLETED
        LedgerService.record_transaction(
            params_for(account, TransactionType.FUNDING, 100000, "fund"), status=completed
        )
        release = LedgerService.record_transaction(
            params_for(
                account,
                TransactionType.MILESTONE_RELEASE,
                -50000,
                "release",
                net_amount_cents=44520,
                fee_amount_cents=5480,
            ),
            status=completed,
        )
        LedgerService.record_fee(release)
        LedgerService.record_transaction(params_for(account, TransactionType.REFUND, -20000, "refund"))
        failed = LedgerService.record_transaction(
            params_for(account, TransactionType.REFUND, -30000, "refund-old", milestone_id=None)
        )
        LedgerService.fail(failed, reason="Declined")
        return account

    def test_balance_excludes_fees_and_unsettled(self, history):
        """Only completed non-fee rows count."""
        assert LedgerService.get_escrow_balance(history.id) == Money(cents=50000)

    def test_fees_collected(self, history):
        assert LedgerService.get_fees_collected(history.id) == 5480

    def test_net_paid(self, history):
        assert LedgerService.get_net_paid(history.id) == 44520

    def test_has_pending(self, history):
        assert LedgerService.has_pending(escrow_account_id=history.id)
        assert not LedgerService.has_pending(escrow_account_id=history.id, exclude_key="refund")
        assert not LedgerService.has_pending(escrow_account_id=history.id, type=TransactionType.FUNDING)

    def test_count_failed(self, history):
        assert LedgerService.count_failed(escrow_account_id=history.id, type=TransactionType.REFUND) == 1
        assert LedgerService.count_failed(escrow_account_id=history.id, type=TransactionType.FUNDING) == 0

    def test_pending_transactions_oldest_first(self, history):
        pending = list(LedgerService.get_pending_transactions())

        assert [entry.idempotency_key for entry in pending] == ["refund"]

    def test_transactions_for_escrow(self, history):
        keys = [entry.idempotency_key for entry in LedgerService.get_transactions_for_escrow(history.id)]

        assert set(keys) == {"fund", "release", "fee:release", "refund", "refund-old"}
        assert len(keys) == 5

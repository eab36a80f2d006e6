"""
Ledger service layer.

All ledger writes go through LedgerService so that every entry is keyed by
idempotency key, appended exactly once, and settled at most once.

Usage:
    from escrow.ledger.services import LedgerService

    tx = LedgerService.record_transaction(params)  # pending
    LedgerService.complete(tx, processor_reference="pi_123")

    balance = LedgerService.get_escrow_balance(account.id)
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from django.db import IntegrityError, transaction
from django.db.models import Sum
from django.utils import timezone

from escrow.state_machines import TransactionStatus, TransactionType

from .models import Transaction
from .types import Money, RecordTransactionParams

if TYPE_CHECKING:
    from django.db.models import QuerySet

logger = logging.getLogger(__name__)


class LedgerService:
    """
    Service class for ledger operations.

    Key features:
    - Idempotency via unique keys (safe to retry)
    - Append-only writes; settlement is the only update
    - Balance queries over completed entries

    All methods are static - no instance state is maintained.
    """

    @staticmethod
    def get_by_idempotency_key(idempotency_key: str) -> Transaction | None:
        return Transaction.objects.filter(idempotency_key=idempotency_key).first()

    @staticmethod
    def record_transaction(
        params: RecordTransactionParams,
        status: str = TransactionStatus.PENDING,
        processor_reference: str | None = None,
    ) -> Transaction:
        """
        Append a ledger entry.

        Idempotent - if an entry with the same idempotency_key exists it is
        returned unchanged.

        Args:
            params: Entry parameters
            status: PENDING (awaiting gateway confirmation) or COMPLETED
                (for entries with no gateway call, such as fees)
            processor_reference: Gateway transaction id for completed entries

        Returns:
            The created or existing Transaction
        """
        existing = LedgerService.get_by_idempotency_key(params.idempotency_key)
        if existing is not None:
            return existing

        fields = {
            "type": params.type,
            "amount_cents": params.amount_cents,
            "idempotency_key": params.idempotency_key,
            "contract_id": params.contract_id,
            "currency": params.currency,
            "escrow_account_id": params.escrow_account_id,
            "milestone_id": params.milestone_id,
            "dispute_id": params.dispute_id,
            "payment_period_id": params.payment_period_id,
            "net_amount_cents": params.net_amount_cents,
            "fee_amount_cents": params.fee_amount_cents,
            "tax_amount_cents": params.tax_amount_cents,
            "description": params.description,
            "metadata": params.metadata or {},
            "created_by": params.created_by,
            "status": status,
            "processor_reference": processor_reference,
        }
        if status == TransactionStatus.COMPLETED:
            fields["completed_at"] = timezone.now()

        try:
            # Savepoint so a lost race does not poison the caller's transaction
            with transaction.atomic():
                entry = Transaction.objects.create(**fields)
        except IntegrityError:
            entry = Transaction.objects.get(idempotency_key=params.idempotency_key)

        logger.info(
            f"Recorded {entry.type} transaction {entry.id}",
            extra={
                "transaction_id": str(entry.id),
                "type": entry.type,
                "amount_cents": entry.amount_cents,
                "status": entry.status,
                "contract_id": entry.contract_id,
            },
        )
        return entry

    @staticmethod
    def complete(entry: Transaction, processor_reference: str | None = None) -> Transaction:
        """Mark a pending entry completed (gateway confirmed)."""
        entry.complete(processor_reference=processor_reference)
        entry.save()
        logger.info(
            f"Completed transaction {entry.id}",
            extra={"transaction_id": str(entry.id), "type": entry.type},
        )
        return entry

    @staticmethod
    def fail(entry: Transaction, reason: str) -> Transaction:
        """Mark a pending entry failed (gateway definitively rejected)."""
        entry.fail(reason=reason)
        entry.save()
        logger.warning(
            f"Failed transaction {entry.id}: {reason}",
            extra={"transaction_id": str(entry.id), "type": entry.type},
        )
        return entry

    @staticmethod
    def record_fee(entry: Transaction) -> Transaction | None:
        """
        Append the platform's fee share of a completed payout.

        Keyed on the payout's idempotency key, so finalizing the same payout
        twice yields one fee row. Returns None when the payout carried no fee.
        """
        if entry.fee_amount_cents <= 0:
            return None
        params = RecordTransactionParams(
            type=TransactionType.FEE,
            amount_cents=entry.fee_amount_cents,
            idempotency_key=f"fee:{entry.idempotency_key}",
            contract_id=entry.contract_id,
            currency=entry.currency,
            escrow_account_id=entry.escrow_account_id,
            milestone_id=entry.milestone_id,
            dispute_id=entry.dispute_id,
            payment_period_id=entry.payment_period_id,
            description=f"Platform fee on {entry.get_type_display().lower()}",
            metadata={"payout_transaction_id": str(entry.id)},
            created_by=entry.created_by,
        )
        return LedgerService.record_transaction(params, status=TransactionStatus.COMPLETED)

    @staticmethod
    def has_pending(exclude_key: str | None = None, **filters) -> bool:
        """Whether a gateway operation matching the filters awaits confirmation."""
        queryset = Transaction.objects.filter(status=TransactionStatus.PENDING, **filters)
        if exclude_key:
            queryset = queryset.exclude(idempotency_key=exclude_key)
        return queryset.exists()

    @staticmethod
    def count_failed(**filters) -> int:
        """
        Count failed entries matching the filters.

        Services derive the gateway attempt number from this, so retries of
        the same attempt reuse one idempotency key and a failed key is never
        sent again.
        """
        return Transaction.objects.filter(status=TransactionStatus.FAILED, **filters).count()

    @staticmethod
    def get_transactions_for_escrow(escrow_id: uuid.UUID) -> QuerySet[Transaction]:
        """All entries for an account, oldest first."""
        return Transaction.objects.filter(escrow_account_id=escrow_id).order_by("created_at")

    @staticmethod
    def get_escrow_balance(escrow_id: uuid.UUID, currency: str = "cad") -> Money:
        """
        Funds still held in escrow according to the ledger.

        Sum of completed, balance-affecting entries; equals the account's
        pending_amount_cents once it is funded.
        """
        total = (
            Transaction.objects.filter(
                escrow_account_id=escrow_id,
                status=TransactionStatus.COMPLETED,
            )
            .exclude(type=TransactionType.FEE)
            .aggregate(total=Sum("amount_cents"))["total"]
        )
        return Money(cents=total or 0, currency=currency)

    @staticmethod
    def get_fees_collected(escrow_id: uuid.UUID) -> int:
        total = Transaction.objects.filter(
            escrow_account_id=escrow_id,
            type=TransactionType.FEE,
            status=TransactionStatus.COMPLETED,
        ).aggregate(total=Sum("amount_cents"))["total"]
        return total or 0

    @staticmethod
    def get_pending_transactions(created_before: datetime | None = None) -> QuerySet[Transaction]:
        """Pending entries awaiting reconciliation, oldest first."""
        queryset = Transaction.objects.filter(status=TransactionStatus.PENDING)
        if created_before is not None:
            queryset = queryset.filter(created_at__lt=created_before)
        return queryset.order_by("created_at")

    @staticmethod
    def get_net_paid(escrow_id: uuid.UUID) -> int:
        """Net amount the talent received from completed payouts of an account."""
        total = Transaction.objects.filter(
            escrow_account_id=escrow_id,
            status=TransactionStatus.COMPLETED,
            net_amount_cents__gt=0,
        ).aggregate(total=Sum("net_amount_cents"))["total"]
        return total or 0

"""
Reconciliation of unconfirmed gateway operations.

A gateway timeout leaves a PENDING ledger entry holding the instruction that
was sent. This service re-issues each such instruction with its original
idempotency key, so the gateway either returns the original outcome or
processes the request for the first time:

    confirmed           -> entry COMPLETED, local effects applied
    definitive reject   -> entry FAILED, reservations released
    still unknown       -> entry stays PENDING for the next run

Each entry is processed under the lock of the account (or contract) it
belongs to, and one entry's failure never stops the sweep.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils import timezone

from core.services import ServiceResult

from escrow.exceptions import GatewayError, LockAcquisitionError, NotFoundError
from escrow.ledger.models import Transaction
from escrow.ledger.services import LedgerService
from escrow.locks import contract_lock, escrow_account_lock
from escrow.services.base import LOOKUP_ERRORS, EscrowServiceBase
from escrow.services.dispatcher import GatewayDispatcher

if TYPE_CHECKING:
    import uuid

    from escrow.locks import DistributedLock


class ReconciliationService(EscrowServiceBase):
    """Settles PENDING ledger entries by re-issuing their gateway instructions."""

    def reconcile_pending(self, min_age_minutes: int | None = None, limit: int | None = None) -> dict[str, int]:
        """
        Sweep pending entries older than min_age_minutes.

        Returns:
            Counts of completed, failed, still_pending and errored entries
        """
        if min_age_minutes is None:
            min_age_minutes = settings.ESCROW_RECONCILIATION_MIN_AGE_MINUTES
        limit = limit or settings.ESCROW_RECONCILIATION_BATCH_SIZE
        cutoff = timezone.now() - timedelta(minutes=min_age_minutes)

        counts = {"completed": 0, "failed": 0, "still_pending": 0, "errored": 0}
        entry_ids = list(LedgerService.get_pending_transactions(created_before=cutoff).values_list("id", flat=True)[:limit])
        for entry_id in entry_ids:
            result = self.reconcile(entry_id)
            if result.success:
                counts[result.data] += 1
            else:
                counts["errored"] += 1

        self.get_logger().info(
            f"Reconciled {len(entry_ids)} pending transactions",
            extra=counts,
        )
        return counts

    def reconcile(self, transaction_id: uuid.UUID | str) -> ServiceResult[str]:
        """
        Settle one pending entry.

        Returns:
            ServiceResult whose data is "completed", "failed" or
            "still_pending"; a failure result for unexpected errors
        """
        try:
            entry = Transaction.objects.get(pk=transaction_id)
        except (Transaction.DoesNotExist, *LOOKUP_ERRORS):
            return ServiceResult.from_exception(
                NotFoundError("Transaction not found", details={"transaction_id": str(transaction_id)})
            )
        if not entry.is_pending:
            return ServiceResult.success_with(entry.status)

        try:
            with self._lock_for(entry) as lock:
                entry = Transaction.objects.get(pk=transaction_id)
                entry = GatewayDispatcher(self.gateway, lock).resume(entry)
        except GatewayError as exc:
            entry = Transaction.objects.get(pk=transaction_id)
            self.get_logger().warning(
                f"Reconciliation of {entry.id} ended with {exc.error_code}",
                extra={"transaction_id": str(entry.id), "status": entry.status, "retryable": exc.is_retryable},
            )
            return ServiceResult.success_with("still_pending" if entry.is_pending else entry.status)
        except LockAcquisitionError:
            return ServiceResult.success_with("still_pending")
        except Exception as exc:
            return self.handle_exception(exc, context=f"Reconciliation of transaction {transaction_id} failed")

        return ServiceResult.success_with(entry.status)

    @staticmethod
    def _lock_for(entry: Transaction) -> DistributedLock:
        if entry.escrow_account_id is not None:
            return escrow_account_lock(entry.escrow_account_id)
        return contract_lock(entry.contract_id)

"""
Celery tasks for escrow reconciliation.

This module provides async tasks for:
- Sweeping pending ledger entries left by gateway timeouts
- Reconciling a single entry (queued by the sweep or by support staff)

Usage:
    from escrow.tasks import reconcile_transaction

    reconcile_transaction.delay(str(transaction_id))

    # Sweep everything older than the configured age (typically via celery-beat)
    from escrow.tasks import reconcile_pending_transactions
    reconcile_pending_transactions.delay()
"""

from __future__ import annotations

import logging

from celery import shared_task

from escrow.adapters import backoff_delay

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MAX_RECONCILE_RETRIES = 5


# =============================================================================
# Reconciliation Tasks
# =============================================================================


@shared_task
def reconcile_pending_transactions(min_age_minutes: int | None = None) -> dict:
    """
    Periodic task settling pending ledger entries.

    Scheduled via celery-beat every 15 minutes (see migration 0002).

    Returns:
        Dict with counts of completed, failed, still_pending and errored entries
    """
    # Import here to avoid circular imports
    from escrow.services import ReconciliationService

    counts = ReconciliationService().reconcile_pending(min_age_minutes=min_age_minutes)
    logger.info("Reconciliation sweep finished", extra=counts)
    return counts


@shared_task(bind=True, max_retries=MAX_RECONCILE_RETRIES, acks_late=True)
def reconcile_transaction(self, transaction_id: str) -> dict:
    """
    Settle one pending ledger entry.

    Retries with exponential backoff while the gateway outcome is still
    unknown; after that the next sweep picks the entry up again.

    Args:
        transaction_id: UUID of the pending Transaction
    """
    from escrow.services import ReconciliationService

    result = ReconciliationService().reconcile(transaction_id)
    if not result.success:
        logger.error(
            f"Reconciliation failed: {result.error}",
            extra={"transaction_id": transaction_id, "error_code": result.error_code},
        )
        return {"status": "error", "transaction_id": transaction_id, "error": result.error}

    if result.data == "still_pending" and self.request.retries < MAX_RECONCILE_RETRIES:
        raise self.retry(countdown=backoff_delay(self.request.retries, base=30.0, max_delay=600.0))

    return {"status": result.data, "transaction_id": transaction_id}

"""
Gateway dispatch: one gateway call, one ledger entry, exactly once.

Every money movement follows the same protocol:

1. The service builds a GatewayInstruction (what to send) and the
   RecordTransactionParams of its ledger entry (what to record), keyed by a
   deterministic idempotency key.
2. GatewayDispatcher.dispatch() sends the instruction.
   - Confirmed: the entry is written COMPLETED and the named finalizer
     applies the local effects, all in one database transaction.
   - Outcome unknown (timeout, 5xx): the entry is written PENDING with the
     instruction stored in its metadata, and the error propagates.
   - Definitively rejected: nothing is written; the failure handler (if any)
     releases reservations, and the error propagates.
3. A PENDING entry is settled later by dispatching again with the same key
   (client retry) or by the reconciliation job (resume()).

Finalizers are registered by name so they can be found from a stored entry:

    @register_finalizer("escrow_funding")
    def finalize_funding(entry):
        ...

A finalizer runs at most once per entry, inside the transaction that
completes it.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Union

from django.db import transaction

from escrow.exceptions import GatewayError, InvalidStateError, LockAcquisitionError
from escrow.ledger.models import Transaction
from escrow.ledger.services import LedgerService
from escrow.state_machines import TransactionStatus

if TYPE_CHECKING:
    from collections.abc import Callable
    from typing import Any

    from escrow.adapters import GatewayResult, PaymentGateway
    from escrow.ledger.types import RecordTransactionParams
    from escrow.locks import DistributedLock

logger = logging.getLogger(__name__)

# A failure handler sees the pending entry when one exists, else the params
LedgerRecord = Union[Transaction, "RecordTransactionParams"]

FINALIZERS: dict[str, Callable[[Transaction], None]] = {}
FAILURE_HANDLERS: dict[str, Callable[[LedgerRecord], None]] = {}


def register_finalizer(name: str):
    """Register the function that applies a confirmed operation's effects."""

    def decorator(func):
        FINALIZERS[name] = func
        return func

    return decorator


def register_failure_handler(name: str):
    """Register the function that undoes reservations of a rejected operation."""

    def decorator(func):
        FAILURE_HANDLERS[name] = func
        return func

    return decorator


# =============================================================================
# Gateway Instruction
# =============================================================================


class GatewayOperation:
    CAPTURE = "capture"
    PAYOUT = "payout"
    REFUND = "refund"


@dataclass(frozen=True)
class GatewayInstruction:
    """
    A gateway request, stored on its ledger entry so it can be re-issued.

    Attributes:
        operation: capture, payout or refund
        amount_cents: Amount sent to the gateway
        currency: ISO currency code
        target_ref: Payment method (capture), payee account (payout) or
            original gateway transaction (refund)
        idempotency_key: Key sent with every issue of this request
        metadata: String metadata attached to the gateway object
    """

    operation: str
    amount_cents: int
    currency: str
    target_ref: str
    idempotency_key: str
    metadata: dict[str, str] = field(default_factory=dict)

    def execute(self, gateway: PaymentGateway) -> GatewayResult:
        if self.operation == GatewayOperation.CAPTURE:
            return gateway.capture(
                amount_cents=self.amount_cents,
                currency=self.currency,
                payment_method_ref=self.target_ref,
                idempotency_key=self.idempotency_key,
                metadata=self.metadata,
            )
        if self.operation == GatewayOperation.PAYOUT:
            return gateway.payout(
                amount_cents=self.amount_cents,
                currency=self.currency,
                payee_account_ref=self.target_ref,
                idempotency_key=self.idempotency_key,
                metadata=self.metadata,
            )
        if self.operation == GatewayOperation.REFUND:
            return gateway.refund(
                gateway_tx_id=self.target_ref,
                amount_cents=self.amount_cents,
                idempotency_key=self.idempotency_key,
                metadata=self.metadata,
            )
        raise ValueError(f"Unknown gateway operation: {self.operation}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GatewayInstruction:
        return cls(
            operation=data["operation"],
            amount_cents=data["amount_cents"],
            currency=data["currency"],
            target_ref=data["target_ref"],
            idempotency_key=data["idempotency_key"],
            metadata=data.get("metadata") or {},
        )


# =============================================================================
# Dispatcher
# =============================================================================


class GatewayDispatcher:
    """
    Sends gateway instructions and settles their ledger entries.

    The lock the caller holds (if given) has its TTL reset before every
    gateway call, so an operation with several legs keeps the lock for as
    long as it runs. ESCROW_LOCK_TTL_SECONDS must cover one call including
    the SDK's network retries.

    Args:
        gateway: PaymentGateway implementation
        lock: DistributedLock held for the duration of the operation
    """

    def __init__(self, gateway: PaymentGateway, lock: DistributedLock | None = None) -> None:
        self.gateway = gateway
        self.lock = lock

    def _execute(self, instruction: GatewayInstruction) -> GatewayResult:
        if self.lock is not None and not self.lock.extend():
            raise LockAcquisitionError(
                "The operation lock expired before the payment was sent. Please retry.",
                details={"key": self.lock.key, "retry_after": 0},
            )
        return instruction.execute(self.gateway)

    def dispatch(
        self,
        params: RecordTransactionParams,
        instruction: GatewayInstruction,
        finalizer: str,
    ) -> Transaction:
        """
        Send an instruction and record its ledger entry.

        An entry already recorded under the same idempotency key is resumed
        instead: a completed one is returned as-is, a pending one is re-issued.

        Returns:
            The COMPLETED Transaction

        Raises:
            GatewayError: Rejected (nothing written) or outcome unknown
                (PENDING entry written)
            InvalidStateError: The key belongs to a FAILED entry
        """
        if finalizer not in FINALIZERS:
            raise ValueError(f"No finalizer registered as {finalizer!r}")

        existing = LedgerService.get_by_idempotency_key(params.idempotency_key)
        if existing is not None:
            return self.resume(existing)

        params.metadata = {
            **params.metadata,
            "gateway_instruction": instruction.to_dict(),
            "finalizer": finalizer,
        }

        try:
            result = self._execute(instruction)
        except GatewayError as exc:
            if exc.outcome_unknown:
                entry = LedgerService.record_transaction(params)
                logger.warning(
                    f"Gateway outcome unknown for {params.type}, awaiting reconciliation",
                    extra={
                        "transaction_id": str(entry.id),
                        "idempotency_key": params.idempotency_key,
                        "error_code": exc.error_code,
                    },
                )
            else:
                logger.info(
                    f"Gateway rejected {params.type}",
                    extra={
                        "idempotency_key": params.idempotency_key,
                        "error_code": exc.error_code,
                    },
                )
                self._run_failure_handler(finalizer, params)
            raise

        with transaction.atomic():
            entry = LedgerService.record_transaction(
                params,
                status=TransactionStatus.COMPLETED,
                processor_reference=result.gateway_tx_id,
            )
            FINALIZERS[finalizer](entry)
        return entry

    def resume(self, entry: Transaction) -> Transaction:
        """
        Settle an entry recorded by an earlier dispatch.

        Re-issues the stored instruction of a PENDING entry with its original
        idempotency key. A rate-limited or timed-out resume leaves the entry
        PENDING; a definitive rejection marks it FAILED.
        """
        if entry.is_completed:
            logger.info(
                f"Replayed completed transaction {entry.id}",
                extra={"transaction_id": str(entry.id), "idempotency_key": entry.idempotency_key},
            )
            return entry
        if entry.status == TransactionStatus.FAILED:
            raise InvalidStateError(
                "This payment was rejected by the payment provider and cannot be retried with the same key",
                error_code="TRANSACTION_FAILED",
                details={"transaction_id": str(entry.id)},
            )

        instruction = GatewayInstruction.from_dict(entry.get_meta("gateway_instruction"))
        finalizer = entry.get_meta("finalizer")

        try:
            result = self._execute(instruction)
        except GatewayError as exc:
            if exc.outcome_unknown or exc.is_retryable:
                logger.warning(
                    f"Transaction {entry.id} still unconfirmed",
                    extra={"transaction_id": str(entry.id), "error_code": exc.error_code},
                )
            else:
                with transaction.atomic():
                    locked = Transaction.objects.select_for_update().get(pk=entry.pk)
                    if locked.is_pending:
                        LedgerService.fail(locked, reason=exc.message)
                        self._run_failure_handler(finalizer, locked)
            raise

        with transaction.atomic():
            locked = Transaction.objects.select_for_update().get(pk=entry.pk)
            if locked.is_pending:
                LedgerService.complete(locked, processor_reference=result.gateway_tx_id)
                FINALIZERS[finalizer](locked)
        return locked

    @staticmethod
    def _run_failure_handler(finalizer: str, record: LedgerRecord) -> None:
        handler = FAILURE_HANDLERS.get(finalizer)
        if handler is None:
            return
        with transaction.atomic():
            handler(record)

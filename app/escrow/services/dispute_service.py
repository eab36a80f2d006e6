"""
Dispute resolution.

Either party can dispute a submitted or approved milestone, which freezes
releases on the account. An admin reviews and resolves it:

    refund_business  full amount back to the business (one refund leg)
    release_talent   full amount to the talent, fees deducted (one release leg)
    partial_split    talent share released, the rest refunded (two legs)

Each leg is its own gateway operation with its own idempotency key. Balances
move as each leg is confirmed; the milestone closes and the dispute resolves
once every leg is confirmed. Calling resolve() again with the same resolution
resumes an interrupted one.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.db.models import Q, Sum

from escrow.adapters import IdempotencyKeyGenerator
from escrow.exceptions import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from escrow.fees import FeeCalculator, FeeSchedule
from escrow.ledger.models import Transaction
from escrow.ledger.services import LedgerService
from escrow.ledger.types import RecordTransactionParams
from escrow.locks import escrow_account_lock
from escrow.models import DisputeCase, EscrowAccount, Milestone
from escrow.services.base import LOOKUP_ERRORS, EscrowServiceBase
from escrow.services.dispatcher import (
    GatewayDispatcher,
    GatewayInstruction,
    GatewayOperation,
    register_finalizer,
)
from escrow.state_machines import DisputeResolution, MilestoneStatus, TransactionStatus, TransactionType

if TYPE_CHECKING:
    import uuid

    from django.db.models import QuerySet

    from escrow.fees import FeeBreakdown
    from escrow.models import PayeeAccount
    from escrow.services.types import Actor

REFUND_LEG = "refund"
RELEASE_LEG = "release"


class DisputeService(EscrowServiceBase):
    """Service for raising, reviewing and resolving disputes."""

    def initiate(
        self,
        escrow_id: uuid.UUID | str,
        milestone_id: uuid.UUID | str,
        actor: Actor,
        reason: str,
        description: str = "",
    ) -> DisputeCase:
        """
        Dispute a milestone.

        Raises:
            AuthorizationError: Actor is not a party to the account
            InvalidStateError: Milestone not submitted/approved, or its payout
                is still being confirmed
            ValidationError: Missing reason
        """
        if not reason or not reason.strip():
            raise ValidationError("A dispute reason is required")

        with escrow_account_lock(escrow_id), self.atomic():
            account = self.load_account(escrow_id, for_update=True)
            party = account.party_for(actor.actor_id)
            if party is None:
                raise AuthorizationError("Only a party to the escrow account can raise a dispute")

            milestone = self.load_milestone(account, milestone_id, for_update=True)
            if LedgerService.has_pending(milestone_id=milestone.id):
                raise InvalidStateError(
                    "A payout for this milestone is still being confirmed",
                    error_code="PAYMENT_IN_PROGRESS",
                )
            self.transition(milestone, "dispute")
            self.transition(account, "flag_dispute")
            milestone.save()
            account.save()

            dispute = DisputeCase.objects.create(
                escrow_account=account,
                milestone=milestone,
                initiated_by=party,
                initiator_id=actor.actor_id,
                reason=reason,
                description=description,
            )

        self.get_logger().info(
            f"Dispute {dispute.id} raised by {party}",
            extra={
                "dispute_id": str(dispute.id),
                "escrow_id": str(account.id),
                "milestone_id": str(milestone.id),
            },
        )
        return dispute

    def start_review(self, dispute_id: uuid.UUID | str, actor: Actor) -> DisputeCase:
        self.require_admin(actor, "review disputes")
        dispute = self.load_dispute(dispute_id)
        with escrow_account_lock(dispute.escrow_account_id), self.atomic():
            dispute = self.load_dispute(dispute_id, for_update=True)
            self.transition(dispute, "start_review", reviewer_id=actor.actor_id)
            dispute.save()
        return dispute

    def resolve(
        self,
        dispute_id: uuid.UUID | str,
        resolution: str,
        actor: Actor,
        resolution_amount: int | None = None,
        admin_notes: str = "",
    ) -> DisputeCase:
        """
        Resolve a dispute and settle the disputed milestone.

        Args:
            resolution: refund_business, release_talent or partial_split
            resolution_amount: Talent share in cents (partial_split only)

        Raises:
            AuthorizationError: Actor is not an admin
            InvalidStateError: Already resolved, or a different resolution is
                in progress
            ValidationError: Unknown resolution or bad split amount
            GatewayError: A settlement leg was rejected or timed out
        """
        self.require_admin(actor, "resolve disputes")
        resolution = (resolution or "").lower()
        if resolution not in DisputeResolution.values:
            raise ValidationError(
                f"Unknown resolution: {resolution!r}",
                details={"allowed": list(DisputeResolution.values)},
            )

        dispute = self.load_dispute(dispute_id)
        with escrow_account_lock(dispute.escrow_account_id) as lock:
            with self.atomic():
                dispute = self.load_dispute(dispute_id, for_update=True)
                account = self.load_account(dispute.escrow_account_id, for_update=True)
                milestone = Milestone.objects.get(pk=dispute.milestone_id)
                self._check_resolvable(dispute, resolution, resolution_amount)

                refund_cents, release_cents = self._split(milestone, resolution, resolution_amount)
                payee = self.get_ready_payee(account.talent_id) if release_cents else None
                schedule = FeeSchedule.for_payee(payee)
                if release_cents and resolution == DisputeResolution.PARTIAL_SPLIT:
                    self._check_payable_share(release_cents, schedule)
                breakdown = FeeCalculator.compute(release_cents, schedule) if payee else None

                if dispute.resolution is None:
                    dispute.plan_resolution(
                        resolution=resolution,
                        refund_amount_cents=refund_cents,
                        release_amount_cents=release_cents,
                        resolved_by=actor.actor_id,
                        resolution_amount_cents=resolution_amount if resolution == DisputeResolution.PARTIAL_SPLIT else None,
                        admin_notes=admin_notes,
                    )
                    dispute.save()

            dispatcher = GatewayDispatcher(self.gateway, lock)
            if refund_cents:
                self._settle_refund_leg(dispatcher, dispute, account, milestone, refund_cents, actor)
            if release_cents:
                self._settle_release_leg(dispatcher, dispute, account, milestone, breakdown, payee, actor)

        dispute = self.load_dispute(dispute_id)
        self.get_logger().info(
            f"Dispute {dispute.id} resolved: {resolution}",
            extra={
                "dispute_id": str(dispute.id),
                "refund_amount_cents": refund_cents,
                "release_amount_cents": release_cents,
                "status": dispute.status,
            },
        )
        return dispute

    # =========================================================================
    # Reads
    # =========================================================================

    def get_dispute(self, dispute_id: uuid.UUID | str, actor: Actor) -> DisputeCase:
        dispute = self.load_dispute(dispute_id)
        self.require_party_or_admin(dispute.escrow_account, actor)
        return dispute

    @staticmethod
    def list_disputes(
        actor: Actor,
        escrow_id: uuid.UUID | str | None = None,
        status: str | None = None,
    ) -> QuerySet[DisputeCase]:
        queryset = DisputeCase.objects.select_related("escrow_account", "milestone")
        if not actor.is_admin:
            queryset = queryset.filter(
                Q(escrow_account__business_id=actor.actor_id) | Q(escrow_account__talent_id=actor.actor_id)
            )
        if escrow_id:
            queryset = queryset.filter(escrow_account_id=escrow_id)
        if status:
            queryset = queryset.filter(status=status.lower())
        return queryset

    @staticmethod
    def load_dispute(dispute_id: uuid.UUID | str, for_update: bool = False) -> DisputeCase:
        queryset = DisputeCase.objects.all()
        if for_update:
            queryset = queryset.select_for_update()
        try:
            return queryset.get(pk=dispute_id)
        except (DisputeCase.DoesNotExist, *LOOKUP_ERRORS):
            raise NotFoundError(
                "Dispute not found",
                error_code="DISPUTE_NOT_FOUND",
                details={"dispute_id": str(dispute_id)},
            ) from None

    # =========================================================================
    # Settlement
    # =========================================================================

    @staticmethod
    def _check_resolvable(dispute: DisputeCase, resolution: str, resolution_amount: int | None) -> None:
        if dispute.is_resolved:
            raise InvalidStateError(
                "Dispute is already resolved",
                error_code="DISPUTE_RESOLVED",
                details={"dispute_id": str(dispute.id)},
            )
        if dispute.resolution is None:
            return
        same_amount = resolution != DisputeResolution.PARTIAL_SPLIT or resolution_amount == dispute.resolution_amount_cents
        if dispute.resolution != resolution or not same_amount:
            raise InvalidStateError(
                "A different resolution is already in progress for this dispute",
                error_code="RESOLUTION_IN_PROGRESS",
                details={"resolution": dispute.resolution},
            )

    @staticmethod
    def _split(milestone: Milestone, resolution: str, resolution_amount: int | None) -> tuple[int, int]:
        """Return (refund_cents, release_cents) for a resolution."""
        amount = milestone.amount_cents
        if resolution == DisputeResolution.REFUND_BUSINESS:
            return amount, 0
        if resolution == DisputeResolution.RELEASE_TALENT:
            return 0, amount

        if resolution_amount is None:
            raise ValidationError("A partial split requires the talent's share")
        if isinstance(resolution_amount, bool) or not isinstance(resolution_amount, int):
            raise ValidationError("The talent's share must be an integer number of cents")
        if not 0 <= resolution_amount <= amount:
            raise ValidationError(
                "The talent's share must be between 0 and the milestone amount",
                details={"resolution_amount": resolution_amount, "milestone_amount_cents": amount},
            )
        refund_cents, release_cents = amount - resolution_amount, resolution_amount
        if refund_cents + release_cents != amount:
            raise ValidationError("Settlement legs do not add up to the milestone amount")
        return refund_cents, release_cents

    @staticmethod
    def _check_payable_share(release_cents: int, schedule: FeeSchedule) -> None:
        minimum = FeeCalculator.minimum_gross(schedule)
        if release_cents < minimum:
            raise ValidationError(
                f"The talent's share must be 0 or at least {minimum} cents to cover payout fees",
                error_code="SHARE_BELOW_MINIMUM_PAYOUT",
                details={"resolution_amount": release_cents, "minimum_payout_cents": minimum},
            )

    @staticmethod
    def _leg_key(dispute: DisputeCase, leg: str) -> str:
        return IdempotencyKeyGenerator.generate(
            operation=f"dispute_{leg}",
            entity_id=dispute.id,
            attempt=1 + LedgerService.count_failed(dispute_id=dispute.id, metadata__leg=leg),
        )

    def _settle_refund_leg(
        self,
        dispatcher: GatewayDispatcher,
        dispute: DisputeCase,
        account: EscrowAccount,
        milestone: Milestone,
        refund_cents: int,
        actor: Actor,
    ) -> Transaction:
        key = self._leg_key(dispute, REFUND_LEG)
        params = RecordTransactionParams(
            type=TransactionType.DISPUTE_SETTLEMENT,
            amount_cents=-refund_cents,
            idempotency_key=key,
            contract_id=account.contract_id,
            currency=account.currency,
            escrow_account_id=account.id,
            milestone_id=milestone.id,
            dispute_id=dispute.id,
            description=f"Dispute refund for milestone '{milestone.title}'",
            metadata={"leg": REFUND_LEG},
            created_by=actor.actor_id,
        )
        instruction = GatewayInstruction(
            operation=GatewayOperation.REFUND,
            amount_cents=refund_cents,
            currency=account.currency,
            target_ref=account.funding_reference,
            idempotency_key=key,
            metadata={"escrow_id": str(account.id), "dispute_id": str(dispute.id)},
        )
        return dispatcher.dispatch(params, instruction, finalizer="dispute_settlement")

    def _settle_release_leg(
        self,
        dispatcher: GatewayDispatcher,
        dispute: DisputeCase,
        account: EscrowAccount,
        milestone: Milestone,
        breakdown: FeeBreakdown,
        payee: PayeeAccount,
        actor: Actor,
    ) -> Transaction:
        key = self._leg_key(dispute, RELEASE_LEG)
        # A full release is booked exactly like an ordinary milestone release
        tx_type = (
            TransactionType.MILESTONE_RELEASE
            if dispute.resolution == DisputeResolution.RELEASE_TALENT
            else TransactionType.DISPUTE_SETTLEMENT
        )
        params = RecordTransactionParams(
            type=tx_type,
            amount_cents=-breakdown.gross_cents,
            idempotency_key=key,
            contract_id=account.contract_id,
            currency=account.currency,
            escrow_account_id=account.id,
            milestone_id=milestone.id,
            dispute_id=dispute.id,
            net_amount_cents=breakdown.net_cents,
            fee_amount_cents=breakdown.total_fees_cents,
            tax_amount_cents=breakdown.tax_withholding_cents,
            description=f"Dispute release for milestone '{milestone.title}'",
            metadata={"leg": RELEASE_LEG, "fees": breakdown.to_dict()},
            created_by=actor.actor_id,
        )
        instruction = GatewayInstruction(
            operation=GatewayOperation.PAYOUT,
            amount_cents=breakdown.net_cents,
            currency=account.currency,
            target_ref=payee.stripe_account_id,
            idempotency_key=key,
            metadata={"escrow_id": str(account.id), "dispute_id": str(dispute.id)},
        )
        return dispatcher.dispatch(params, instruction, finalizer="dispute_settlement")


# =============================================================================
# Finalizer
# =============================================================================


@register_finalizer("dispute_settlement")
def finalize_dispute_leg(entry: Transaction) -> None:
    """Move one leg's amount out of escrow; close everything after the last leg."""
    dispute = DisputeCase.objects.select_for_update().get(pk=entry.dispute_id)
    account = EscrowAccount.objects.select_for_update().get(pk=entry.escrow_account_id)

    leg = entry.get_meta("leg")
    account.move_to_released(-entry.amount_cents, refunded=leg == REFUND_LEG)
    account.save()
    if leg == RELEASE_LEG:
        LedgerService.record_fee(entry)

    settled = -(
        Transaction.objects.filter(dispute_id=dispute.id, status=TransactionStatus.COMPLETED)
        .exclude(type=TransactionType.FEE)
        .aggregate(total=Sum("amount_cents"))["total"]
        or 0
    )
    if dispute.is_resolved or settled < dispute.refund_amount_cents + dispute.release_amount_cents:
        return

    milestone = Milestone.objects.select_for_update().get(pk=dispute.milestone_id)
    if milestone.status == MilestoneStatus.DISPUTED:
        if dispute.release_amount_cents:
            milestone.close_released()
        else:
            milestone.close_refunded(reason=dispute.admin_notes or "Refunded by dispute resolution")
        milestone.save()

    dispute.resolve()
    dispute.save()

    if account.is_disputed and not account.has_unresolved_disputes():
        account.clear_dispute()
        account.save()

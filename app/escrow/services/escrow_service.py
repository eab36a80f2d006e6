"""
Escrow account lifecycle: create, fund, release, cancel.

Every state-changing operation takes the account's distributed lock for its
whole duration (including the gateway call), then re-reads the account under
select_for_update before writing.

Usage:
    from escrow.services import EscrowAccountService, MilestoneSpec

    service = EscrowAccountService()
    account = service.create(
        contract_id="c-1",
        business_id="b-1",
        talent_id="t-1",
        milestone_specs=[MilestoneSpec("Design", 50000), MilestoneSpec("Build", 50000)],
        actor=actor,
    )
    service.fund(account.id, payment_method_ref="pm_card_visa", actor=actor)
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from django.db import IntegrityError
from django.db.models import Max, Q, Sum

from escrow.adapters import IdempotencyKeyGenerator
from escrow.exceptions import AuthorizationError, InvalidStateError, ValidationError
from escrow.fees import FeeCalculator, FeeSchedule
from escrow.ledger.services import LedgerService
from escrow.ledger.types import RecordTransactionParams
from escrow.locks import escrow_account_lock
from escrow.models import EscrowAccount, Milestone
from escrow.services.base import EscrowServiceBase
from escrow.services.dispatcher import (
    GatewayDispatcher,
    GatewayInstruction,
    GatewayOperation,
    register_finalizer,
)
from escrow.services.types import EscrowSummary, MilestoneSpec
from escrow.state_machines import EscrowStatus, MilestoneStatus, TransactionType

if TYPE_CHECKING:
    import datetime
    import uuid

    from django.db.models import QuerySet

    from escrow.ledger.models import Transaction
    from escrow.services.types import Actor


class EscrowAccountService(EscrowServiceBase):
    """
    Service for escrow account operations.

    Methods:
        create: Open an account with its milestones
        fund: Capture the total from the business
        release_milestone: Pay a milestone out to the talent
        cancel: Cancel (refunding a funded account) before any release
        add_milestone / update_milestone: Edit milestones before funding
        get_account / list_accounts_for / get_transactions / get_summary: Reads
    """

    # =========================================================================
    # Creation & Editing
    # =========================================================================

    def create(
        self,
        contract_id: str,
        business_id: str,
        talent_id: str,
        milestone_specs: list[MilestoneSpec | dict],
        actor: Actor,
        currency: str | None = None,
    ) -> EscrowAccount:
        """
        Create an escrow account in CREATED status.

        Raises:
            ValidationError: No milestones, a non-positive amount, a
                duplicate contract, or the same party on both sides
            AuthorizationError: Actor is not the business (or an admin)
        """
        if not actor.is_admin and actor.actor_id != business_id:
            raise AuthorizationError("Only the business can create an escrow account")
        if not contract_id:
            raise ValidationError("contract_id is required")
        if business_id == talent_id:
            raise ValidationError("Business and talent must be different parties")

        specs = [spec if isinstance(spec, MilestoneSpec) else MilestoneSpec(**spec) for spec in milestone_specs]
        if not specs:
            raise ValidationError("At least one milestone is required")
        total = sum(spec.amount_cents for spec in specs)

        if EscrowAccount.objects.filter(contract_id=contract_id).exists():
            raise ValidationError(
                "An escrow account already exists for this contract",
                error_code="DUPLICATE_CONTRACT",
                details={"contract_id": contract_id},
            )

        try:
            with self.atomic():
                fields = {
                    "contract_id": contract_id,
                    "business_id": business_id,
                    "talent_id": talent_id,
                    "total_amount_cents": total,
                    "pending_amount_cents": total,
                }
                if currency:
                    fields["currency"] = currency.lower()
                account = EscrowAccount.objects.create(**fields)
                Milestone.objects.bulk_create(
                    [
                        Milestone(
                            escrow_account=account,
                            position=position,
                            title=spec.title,
                            description=spec.description,
                            amount_cents=spec.amount_cents,
                            due_date=spec.due_date,
                        )
                        for position, spec in enumerate(specs)
                    ]
                )
        except IntegrityError:
            raise ValidationError(
                "An escrow account already exists for this contract",
                error_code="DUPLICATE_CONTRACT",
                details={"contract_id": contract_id},
            ) from None

        self.get_logger().info(
            f"Created escrow account {account.id}",
            extra={
                "escrow_id": str(account.id),
                "contract_id": contract_id,
                "total_amount_cents": total,
                "milestone_count": len(specs),
            },
        )
        return account

    def add_milestone(self, escrow_id: uuid.UUID | str, spec: MilestoneSpec, actor: Actor) -> Milestone:
        """Append a milestone to an unfunded account and grow its total."""
        with escrow_account_lock(escrow_id), self.atomic():
            account = self.load_account(escrow_id, for_update=True)
            self.require_business_or_admin(account, actor, "edit milestones")
            self._ensure_editable(account)

            last_position = account.milestones.aggregate(last=Max("position"))["last"]
            milestone = Milestone.objects.create(
                escrow_account=account,
                position=0 if last_position is None else last_position + 1,
                title=spec.title,
                description=spec.description,
                amount_cents=spec.amount_cents,
                due_date=spec.due_date,
            )
            self._recompute_total(account)

        self.get_logger().info(
            f"Added milestone {milestone.id} to escrow {account.id}",
            extra={"escrow_id": str(account.id), "amount_cents": milestone.amount_cents},
        )
        return milestone

    def update_milestone(
        self,
        escrow_id: uuid.UUID | str,
        milestone_id: uuid.UUID | str,
        actor: Actor,
        title: str | None = None,
        description: str | None = None,
        amount_cents: int | None = None,
        due_date: datetime.date | None = None,
    ) -> Milestone:
        """Edit a milestone of an unfunded account; the total follows the amount."""
        with escrow_account_lock(escrow_id), self.atomic():
            account = self.load_account(escrow_id, for_update=True)
            self.require_business_or_admin(account, actor, "edit milestones")
            self._ensure_editable(account)
            milestone = self.load_milestone(account, milestone_id, for_update=True)

            # Validates the merged values the same way as at creation
            merged = MilestoneSpec(
                title=milestone.title if title is None else title,
                amount_cents=milestone.amount_cents if amount_cents is None else amount_cents,
                description=milestone.description if description is None else description,
                due_date=milestone.due_date if due_date is None else due_date,
            )
            milestone.title = merged.title
            milestone.description = merged.description
            milestone.amount_cents = merged.amount_cents
            milestone.due_date = merged.due_date
            milestone.save(update_fields=["title", "description", "amount_cents", "due_date", "updated_at"])
            self._recompute_total(account)
        return milestone

    def _ensure_editable(self, account: EscrowAccount) -> None:
        if account.status != EscrowStatus.CREATED:
            raise InvalidStateError(
                "Milestones can only be edited before the account is funded",
                details={"status": account.status},
            )
        if LedgerService.has_pending(escrow_account_id=account.id):
            raise InvalidStateError(
                "A funding payment for this escrow account is still being confirmed",
                error_code="PAYMENT_IN_PROGRESS",
            )

    @staticmethod
    def _recompute_total(account: EscrowAccount) -> None:
        total = account.milestones.aggregate(total=Sum("amount_cents"))["total"] or 0
        account.total_amount_cents = total
        account.pending_amount_cents = total
        account.save(update_fields=["total_amount_cents", "pending_amount_cents", "updated_at"])

    # =========================================================================
    # Funding
    # =========================================================================

    def fund(
        self,
        escrow_id: uuid.UUID | str,
        payment_method_ref: str,
        actor: Actor,
        idempotency_key: str | None = None,
    ) -> EscrowAccount:
        """
        Capture the account total from the business.

        Replaying a completed funding key returns the account unchanged; a
        pending one re-issues the original capture.

        Raises:
            AuthorizationError: Actor is not the business
            InvalidStateError: Account is not CREATED
            GatewayError: Capture rejected or outcome unknown
        """
        if not payment_method_ref:
            raise ValidationError("payment_method_ref is required")

        with escrow_account_lock(escrow_id) as lock:
            account = self.load_account(escrow_id)
            self.require_business(account, actor, "fund this escrow account")

            key = idempotency_key or IdempotencyKeyGenerator.generate(
                operation="escrow_funding",
                entity_id=f"{account.id}:{payment_method_ref}",
                attempt=1 + LedgerService.count_failed(escrow_account_id=account.id, type=TransactionType.FUNDING),
            )
            existing = LedgerService.get_by_idempotency_key(key)
            if existing is not None:
                if existing.type != TransactionType.FUNDING or existing.escrow_account_id != account.id:
                    raise ValidationError(
                        "Idempotency key was already used for another operation",
                        error_code="IDEMPOTENCY_KEY_REUSED",
                    )
            else:
                if account.status != EscrowStatus.CREATED:
                    raise InvalidStateError(
                        f"Cannot fund an escrow account in '{account.status}' status",
                        details={"status": account.status},
                    )
                if LedgerService.has_pending(escrow_account_id=account.id, type=TransactionType.FUNDING):
                    raise InvalidStateError(
                        "A funding payment for this escrow account is still being confirmed",
                        error_code="PAYMENT_IN_PROGRESS",
                    )

            params = RecordTransactionParams(
                type=TransactionType.FUNDING,
                amount_cents=account.total_amount_cents,
                idempotency_key=key,
                contract_id=account.contract_id,
                currency=account.currency,
                escrow_account_id=account.id,
                description="Escrow funding",
                created_by=actor.actor_id,
            )
            instruction = GatewayInstruction(
                operation=GatewayOperation.CAPTURE,
                amount_cents=account.total_amount_cents,
                currency=account.currency,
                target_ref=payment_method_ref,
                idempotency_key=key,
                metadata={"escrow_id": str(account.id), "contract_id": account.contract_id},
            )
            GatewayDispatcher(self.gateway, lock).dispatch(params, instruction, finalizer="escrow_funding")

        account = self.load_account(escrow_id)
        self.get_logger().info(
            f"Funded escrow account {account.id}",
            extra={"escrow_id": str(account.id), "amount_cents": account.total_amount_cents},
        )
        return account

    # =========================================================================
    # Release
    # =========================================================================

    def release_milestone(
        self,
        escrow_id: uuid.UUID | str,
        milestone_id: uuid.UUID | str,
        actor: Actor,
    ) -> EscrowAccount:
        """
        Approve (if submitted) and pay out a milestone.

        Fees are computed on the milestone amount and the net is paid to the
        talent's payout account. Balances, milestone and account status are
        updated in one database transaction once the gateway confirms.

        Raises:
            AuthorizationError: Actor is not the business
            InvalidStateError: Already released, not submitted/approved, or
                account not FUNDED/PARTIALLY_RELEASED
            ValidationError: The talent cannot receive payouts
            GatewayError: Payout rejected or outcome unknown
        """
        with escrow_account_lock(escrow_id) as lock:
            with self.atomic():
                account = self.load_account(escrow_id, for_update=True)
                self.require_business(account, actor, "release milestones")
                milestone = self.load_milestone(account, milestone_id, for_update=True)

                if milestone.status == MilestoneStatus.RELEASED:
                    raise InvalidStateError(
                        "Milestone has already been released",
                        error_code="ALREADY_RELEASED",
                        details={"milestone_id": str(milestone.id)},
                    )
                if not account.accepts_releases:
                    raise InvalidStateError(
                        f"Cannot release milestones of an escrow account in '{account.status}' status",
                        details={"status": account.status},
                    )
                if milestone.status not in (MilestoneStatus.SUBMITTED, MilestoneStatus.APPROVED):
                    raise InvalidStateError(
                        f"Cannot release a milestone in '{milestone.status}' status",
                        details={"milestone_id": str(milestone.id), "status": milestone.status},
                    )

                key = IdempotencyKeyGenerator.generate(
                    operation="milestone_release",
                    entity_id=f"{account.id}:{milestone.id}",
                    attempt=1
                    + LedgerService.count_failed(milestone_id=milestone.id, type=TransactionType.MILESTONE_RELEASE),
                )
                if LedgerService.has_pending(exclude_key=key, escrow_account_id=account.id):
                    raise InvalidStateError(
                        "Another payment for this escrow account is still being confirmed",
                        error_code="PAYMENT_IN_PROGRESS",
                    )

                payee = self.get_ready_payee(account.talent_id)
                breakdown = FeeCalculator.compute(milestone.amount_cents, FeeSchedule.for_payee(payee))

                if milestone.status == MilestoneStatus.SUBMITTED:
                    self.transition(milestone, "approve")
                    milestone.save()
                    self.review_deliverables(milestone, approved=True)

            params = RecordTransactionParams(
                type=TransactionType.MILESTONE_RELEASE,
                amount_cents=-milestone.amount_cents,
                idempotency_key=key,
                contract_id=account.contract_id,
                currency=account.currency,
                escrow_account_id=account.id,
                milestone_id=milestone.id,
                net_amount_cents=breakdown.net_cents,
                fee_amount_cents=breakdown.total_fees_cents,
                tax_amount_cents=breakdown.tax_withholding_cents,
                description=f"Release of milestone '{milestone.title}'",
                metadata={"fees": breakdown.to_dict()},
                created_by=actor.actor_id,
            )
            instruction = GatewayInstruction(
                operation=GatewayOperation.PAYOUT,
                amount_cents=breakdown.net_cents,
                currency=account.currency,
                target_ref=payee.stripe_account_id,
                idempotency_key=key,
                metadata={"escrow_id": str(account.id), "milestone_id": str(milestone.id)},
            )
            GatewayDispatcher(self.gateway, lock).dispatch(params, instruction, finalizer="milestone_release")

        account = self.load_account(escrow_id)
        self.get_logger().info(
            f"Released milestone {milestone.id}",
            extra={
                "escrow_id": str(account.id),
                "milestone_id": str(milestone.id),
                "gross_cents": breakdown.gross_cents,
                "net_cents": breakdown.net_cents,
                "status": account.status,
            },
        )
        return account

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel(self, escrow_id: uuid.UUID | str, reason: str, actor: Actor) -> EscrowAccount:
        """
        Cancel an account before anything has been released.

        A funded account is refunded in full through the gateway first.

        Raises:
            InvalidStateError: Something was released, or the account is not
                CREATED/FUNDED (a disputed account cannot be cancelled)
        """
        with escrow_account_lock(escrow_id) as lock:
            with self.atomic():
                account = self.load_account(escrow_id, for_update=True)
                self.require_business_or_admin(account, actor, "cancel this escrow account")

                if account.status not in (EscrowStatus.CREATED, EscrowStatus.FUNDED) or account.released_amount_cents:
                    raise InvalidStateError(
                        f"Cannot cancel an escrow account in '{account.status}' status",
                        details={"status": account.status, "released_amount_cents": account.released_amount_cents},
                    )

                key = IdempotencyKeyGenerator.generate(
                    operation="escrow_refund",
                    entity_id=account.id,
                    attempt=1 + LedgerService.count_failed(escrow_account_id=account.id, type=TransactionType.REFUND),
                )
                if LedgerService.has_pending(exclude_key=key, escrow_account_id=account.id):
                    raise InvalidStateError(
                        "A payment for this escrow account is still being confirmed",
                        error_code="PAYMENT_IN_PROGRESS",
                    )

                if account.status == EscrowStatus.CREATED:
                    self.transition(account, "cancel", reason=reason)
                    account.save()
                    self.get_logger().info(
                        f"Cancelled unfunded escrow account {account.id}",
                        extra={"escrow_id": str(account.id)},
                    )
                    return account

            params = RecordTransactionParams(
                type=TransactionType.REFUND,
                amount_cents=-account.pending_amount_cents,
                idempotency_key=key,
                contract_id=account.contract_id,
                currency=account.currency,
                escrow_account_id=account.id,
                description="Refund on cancellation",
                metadata={"reason": reason},
                created_by=actor.actor_id,
            )
            instruction = GatewayInstruction(
                operation=GatewayOperation.REFUND,
                amount_cents=account.pending_amount_cents,
                currency=account.currency,
                target_ref=account.funding_reference,
                idempotency_key=key,
                metadata={"escrow_id": str(account.id), "reason": "cancellation"},
            )
            GatewayDispatcher(self.gateway, lock).dispatch(params, instruction, finalizer="escrow_cancellation")

        account = self.load_account(escrow_id)
        self.get_logger().info(
            f"Cancelled and refunded escrow account {account.id}",
            extra={"escrow_id": str(account.id), "refunded_amount_cents": account.refunded_amount_cents},
        )
        return account

    # =========================================================================
    # Reads
    # =========================================================================

    def get_account(self, escrow_id: uuid.UUID | str, actor: Actor) -> EscrowAccount:
        account = self.load_account(escrow_id)
        self.require_party_or_admin(account, actor)
        return account

    @staticmethod
    def list_accounts_for(actor: Actor, status: str | None = None) -> QuerySet[EscrowAccount]:
        """Accounts where the actor is a party (every account for admins)."""
        queryset = EscrowAccount.objects.all()
        if not actor.is_admin:
            queryset = queryset.filter(Q(business_id=actor.actor_id) | Q(talent_id=actor.actor_id))
        if status:
            queryset = queryset.filter(status=status.lower())
        return queryset.prefetch_related("milestones")

    def get_transactions(self, escrow_id: uuid.UUID | str, actor: Actor) -> QuerySet[Transaction]:
        account = self.get_account(escrow_id, actor)
        return LedgerService.get_transactions_for_escrow(account.id)

    def get_summary(self, escrow_id: uuid.UUID | str, actor: Actor) -> EscrowSummary:
        account = self.get_account(escrow_id, actor)
        milestones = list(account.milestones.all())
        settled = sum(1 for milestone in milestones if milestone.is_settled)
        disputed = sum(m.amount_cents for m in milestones if m.status == MilestoneStatus.DISPUTED)
        completion = Decimal("0.00")
        if milestones:
            completion = (Decimal(settled) * Decimal(100) / Decimal(len(milestones))).quantize(
                Decimal("0.01"), rounding=ROUND_HALF_UP
            )

        return EscrowSummary(
            escrow_id=account.id,
            status=account.status,
            currency=account.currency,
            total_cents=account.total_amount_cents,
            released_cents=account.released_amount_cents,
            pending_cents=account.pending_amount_cents,
            released_to_talent_cents=account.talent_released_cents,
            refunded_cents=account.refunded_amount_cents,
            disputed_cents=disputed,
            fees_collected_cents=LedgerService.get_fees_collected(account.id),
            net_paid_to_talent_cents=LedgerService.get_net_paid(account.id),
            milestone_count=len(milestones),
            settled_milestone_count=settled,
            completion_percentage=completion,
        )


# =============================================================================
# Finalizers
# =============================================================================


@register_finalizer("escrow_funding")
def finalize_funding(entry: Transaction) -> None:
    account = EscrowAccount.objects.select_for_update().get(pk=entry.escrow_account_id)
    if account.status != EscrowStatus.CREATED:
        return
    instruction = entry.get_meta("gateway_instruction") or {}
    account.mark_funded(
        funding_reference=entry.processor_reference,
        payment_method_ref=instruction.get("target_ref"),
    )
    account.save()


@register_finalizer("milestone_release")
def finalize_milestone_release(entry: Transaction) -> None:
    account = EscrowAccount.objects.select_for_update().get(pk=entry.escrow_account_id)
    milestone = Milestone.objects.select_for_update().get(pk=entry.milestone_id)
    if milestone.status == MilestoneStatus.RELEASED:
        return

    account.move_to_released(-entry.amount_cents)
    milestone.release()
    milestone.save()
    # A disputed account recomputes its status when the dispute clears
    if account.accepts_releases:
        account.record_release()
    account.save()
    LedgerService.record_fee(entry)


@register_finalizer("escrow_cancellation")
def finalize_cancellation(entry: Transaction) -> None:
    account = EscrowAccount.objects.select_for_update().get(pk=entry.escrow_account_id)
    if account.status != EscrowStatus.FUNDED:
        return
    account.cancel(reason=entry.get_meta("reason"), refunded=True)
    account.save()

"""
Shared plumbing for the escrow services.

EscrowServiceBase gives every service:
- an injected payment gateway (StripeGateway by default)
- authorization checks against the account's parties
- lookups that raise escrow NotFoundError
- translation of django-fsm TransitionNotAllowed into InvalidStateError
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.core.exceptions import ValidationError as DjangoValidationError
from django_fsm import TransitionNotAllowed

from core.services import BaseService

from escrow.adapters import StripeGateway
from escrow.exceptions import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from escrow.models import EscrowAccount, Milestone, PayeeAccount
from escrow.state_machines import DeliverableStatus

if TYPE_CHECKING:
    import uuid
    from typing import Any

    from django.db import models

    from escrow.adapters import PaymentGateway
    from escrow.services.types import Actor

# Raised by a lookup with a malformed primary key
LOOKUP_ERRORS = (ValueError, TypeError, DjangoValidationError)


class EscrowServiceBase(BaseService):
    """
    Base class for escrow services.

    Args:
        gateway: PaymentGateway implementation (defaults to StripeGateway)
    """

    def __init__(self, gateway: PaymentGateway | None = None) -> None:
        self.gateway = gateway or StripeGateway()

    # =========================================================================
    # Lookups
    # =========================================================================

    @staticmethod
    def load_account(escrow_id: uuid.UUID | str, for_update: bool = False) -> EscrowAccount:
        queryset = EscrowAccount.objects.all()
        if for_update:
            queryset = queryset.select_for_update()
        try:
            return queryset.get(pk=escrow_id)
        except (EscrowAccount.DoesNotExist, *LOOKUP_ERRORS):
            raise NotFoundError(
                "Escrow account not found",
                error_code="ESCROW_NOT_FOUND",
                details={"escrow_id": str(escrow_id)},
            ) from None

    @staticmethod
    def load_milestone(
        account: EscrowAccount,
        milestone_id: uuid.UUID | str,
        for_update: bool = False,
    ) -> Milestone:
        queryset = Milestone.objects.filter(escrow_account=account)
        if for_update:
            queryset = queryset.select_for_update()
        try:
            return queryset.get(pk=milestone_id)
        except (Milestone.DoesNotExist, *LOOKUP_ERRORS):
            raise NotFoundError(
                "Milestone not found",
                error_code="MILESTONE_NOT_FOUND",
                details={"escrow_id": str(account.id), "milestone_id": str(milestone_id)},
            ) from None

    # =========================================================================
    # Authorization
    # =========================================================================

    @staticmethod
    def require_business(account: EscrowAccount, actor: Actor, action: str) -> None:
        if actor.actor_id != account.business_id:
            raise AuthorizationError(
                f"Only the business can {action}",
                details={"action": action},
            )

    @staticmethod
    def require_talent(account: EscrowAccount, actor: Actor, action: str) -> None:
        if actor.actor_id != account.talent_id:
            raise AuthorizationError(
                f"Only the talent can {action}",
                details={"action": action},
            )

    @staticmethod
    def require_business_or_admin(account: EscrowAccount, actor: Actor, action: str) -> None:
        if not actor.is_admin and actor.actor_id != account.business_id:
            raise AuthorizationError(
                f"Only the business or an admin can {action}",
                details={"action": action},
            )

    @staticmethod
    def require_admin(actor: Actor, action: str) -> None:
        if not actor.is_admin:
            raise AuthorizationError(
                f"Only an admin can {action}",
                details={"action": action},
            )

    @staticmethod
    def require_party_or_admin(account: EscrowAccount, actor: Actor) -> None:
        if not actor.is_admin and account.party_for(actor.actor_id) is None:
            raise AuthorizationError("You are not a party to this escrow account")

    # =========================================================================
    # State Transitions
    # =========================================================================

    @staticmethod
    def transition(instance: models.Model, method: str, *args: Any, **kwargs: Any) -> None:
        """
        Call an FSM transition, translating TransitionNotAllowed.

        Example:
            self.transition(milestone, "approve", notes=notes)
        """
        try:
            getattr(instance, method)(*args, **kwargs)
        except TransitionNotAllowed:
            label = instance._meta.verbose_name
            raise InvalidStateError(
                f"Cannot {method.replace('_', ' ')} {label} in '{instance.status}' status",
                details={
                    "entity": instance.__class__.__name__,
                    "id": str(instance.pk),
                    "status": instance.status,
                    "action": method,
                },
            ) from None

    @staticmethod
    def review_deliverables(milestone: Milestone, approved: bool, reason: str | None = None) -> None:
        """Approve or reject the deliverables submitted with a milestone."""
        for deliverable in milestone.deliverables.filter(status=DeliverableStatus.SUBMITTED):
            if approved:
                deliverable.approve()
            else:
                deliverable.reject(reason=reason)
            deliverable.save()

    @staticmethod
    def get_ready_payee(talent_id: str) -> PayeeAccount:
        """The talent's payout account, which must have payouts enabled."""
        payee = PayeeAccount.objects.filter(talent_id=talent_id).first()
        if payee is None or not payee.is_ready_for_payouts:
            raise ValidationError(
                "The talent has no payout account ready to receive funds",
                error_code="PAYEE_NOT_READY",
                details={"talent_id": talent_id},
            )
        return payee

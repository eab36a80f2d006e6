"""
Milestone workflow between business and talent.

Talent: start, add deliverables, submit, resume after a rejection.
Business: approve, reject (with a reason).

Paying a milestone out is EscrowAccountService.release_milestone.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from escrow.exceptions import InvalidStateError, ValidationError
from escrow.locks import escrow_account_lock
from escrow.models import Deliverable
from escrow.services.base import EscrowServiceBase
from escrow.state_machines import DeliverableStatus, EscrowStatus, MilestoneStatus

if TYPE_CHECKING:
    import uuid

    from escrow.models import EscrowAccount, Milestone
    from escrow.services.types import Actor

WORKABLE_ACCOUNT_STATUSES = (
    EscrowStatus.FUNDED,
    EscrowStatus.PARTIALLY_RELEASED,
    EscrowStatus.DISPUTED,
)


class MilestoneService(EscrowServiceBase):
    """
    Service for milestone transitions and deliverables.

    All methods take the account lock and return the updated milestone.
    Illegal transitions raise InvalidStateError.
    """

    def start(self, escrow_id: uuid.UUID | str, milestone_id: uuid.UUID | str, actor: Actor) -> Milestone:
        """Talent starts work on a milestone of a funded account."""
        with escrow_account_lock(escrow_id), self.atomic():
            account = self.load_account(escrow_id, for_update=True)
            self.require_talent(account, actor, "start milestones")
            self._ensure_workable(account)
            milestone = self.load_milestone(account, milestone_id, for_update=True)
            self.transition(milestone, "start")
            milestone.save()
        self._log_transition(milestone, "started")
        return milestone

    def add_deliverable(
        self,
        escrow_id: uuid.UUID | str,
        milestone_id: uuid.UUID | str,
        actor: Actor,
        title: str,
        description: str = "",
        file_ref: str | None = None,
        file_name: str | None = None,
    ) -> Deliverable:
        """Attach a pending deliverable to a milestone being worked on."""
        if not title or not title.strip():
            raise ValidationError("Deliverable title is required")

        with escrow_account_lock(escrow_id), self.atomic():
            account = self.load_account(escrow_id, for_update=True)
            self.require_talent(account, actor, "add deliverables")
            milestone = self.load_milestone(account, milestone_id, for_update=True)
            if milestone.status not in (MilestoneStatus.IN_PROGRESS, MilestoneStatus.REJECTED) or milestone.is_closed:
                raise InvalidStateError(
                    f"Cannot add deliverables to a milestone in '{milestone.status}' status",
                    details={"milestone_id": str(milestone.id), "status": milestone.status},
                )
            deliverable = Deliverable.objects.create(
                milestone=milestone,
                title=title,
                description=description,
                file_ref=file_ref,
                file_name=file_name,
            )
        return deliverable

    def submit(
        self,
        escrow_id: uuid.UUID | str,
        milestone_id: uuid.UUID | str,
        actor: Actor,
        notes: str | None = None,
    ) -> Milestone:
        """
        Talent submits the milestone for review.

        At least one new (pending) deliverable is required; the pending
        deliverables move to submitted with it.
        """
        with escrow_account_lock(escrow_id), self.atomic():
            account = self.load_account(escrow_id, for_update=True)
            self.require_talent(account, actor, "submit milestones")
            milestone = self.load_milestone(account, milestone_id, for_update=True)

            pending = list(milestone.deliverables.filter(status=DeliverableStatus.PENDING))
            if milestone.status == MilestoneStatus.IN_PROGRESS and not pending:
                raise ValidationError(
                    "Add at least one deliverable before submitting",
                    error_code="NO_DELIVERABLES",
                    details={"milestone_id": str(milestone.id)},
                )
            self.transition(milestone, "submit", notes=notes)
            milestone.save()
            for deliverable in pending:
                deliverable.submit()
                deliverable.save()
        self._log_transition(milestone, "submitted")
        return milestone

    def approve(
        self,
        escrow_id: uuid.UUID | str,
        milestone_id: uuid.UUID | str,
        actor: Actor,
        notes: str | None = None,
    ) -> Milestone:
        with escrow_account_lock(escrow_id), self.atomic():
            account = self.load_account(escrow_id, for_update=True)
            self.require_business(account, actor, "approve milestones")
            milestone = self.load_milestone(account, milestone_id, for_update=True)
            self.transition(milestone, "approve", notes=notes)
            milestone.save()
            self.review_deliverables(milestone, approved=True)
        self._log_transition(milestone, "approved")
        return milestone

    def reject(
        self,
        escrow_id: uuid.UUID | str,
        milestone_id: uuid.UUID | str,
        actor: Actor,
        reason: str,
    ) -> Milestone:
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")

        with escrow_account_lock(escrow_id), self.atomic():
            account = self.load_account(escrow_id, for_update=True)
            self.require_business(account, actor, "reject milestones")
            milestone = self.load_milestone(account, milestone_id, for_update=True)
            self.transition(milestone, "reject", reason=reason)
            milestone.save()
            self.review_deliverables(milestone, approved=False, reason=reason)
        self._log_transition(milestone, "rejected")
        return milestone

    def resume(self, escrow_id: uuid.UUID | str, milestone_id: uuid.UUID | str, actor: Actor) -> Milestone:
        """Talent goes back to work on a rejected milestone."""
        with escrow_account_lock(escrow_id), self.atomic():
            account = self.load_account(escrow_id, for_update=True)
            self.require_talent(account, actor, "resume milestones")
            milestone = self.load_milestone(account, milestone_id, for_update=True)
            self.transition(milestone, "resume")
            milestone.save()
        self._log_transition(milestone, "resumed")
        return milestone

    @staticmethod
    def _ensure_workable(account: EscrowAccount) -> None:
        if account.status not in WORKABLE_ACCOUNT_STATUSES:
            raise InvalidStateError(
                f"Work cannot start on an escrow account in '{account.status}' status",
                details={"status": account.status},
            )

    def _log_transition(self, milestone: Milestone, action: str) -> None:
        self.get_logger().info(
            f"Milestone {milestone.id} {action}",
            extra={
                "milestone_id": str(milestone.id),
                "escrow_id": str(milestone.escrow_account_id),
                "status": milestone.status,
            },
        )

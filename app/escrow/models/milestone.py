"""
Milestone and Deliverable models.

A Milestone is one payable unit of work inside an escrow account. Its state
machine guards who may move it and when money may leave escrow for it.

State Flow:
    PENDING -> IN_PROGRESS -> SUBMITTED -> APPROVED -> RELEASED
    SUBMITTED -> REJECTED -> IN_PROGRESS (resubmission)
    SUBMITTED/APPROVED -> DISPUTED
    DISPUTED -> RELEASED | REJECTED (closed by dispute resolution)

A milestone closed by a dispute resolution has closed_at set and accepts
no further transitions.

Usage:
    milestone.submit(notes="First draft attached")
    milestone.save()
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from escrow.state_machines import DeliverableStatus, MilestoneStatus


def is_open(milestone: Milestone) -> bool:
    """FSM condition: the milestone has not been closed by a dispute."""
    return milestone.closed_at is None


class Milestone(UUIDPrimaryKeyMixin, BaseModel):
    """
    A unit of work whose amount is released on approval.

    Fields:
        escrow_account: Owning escrow account
        position: Order within the account (0-based)
        amount_cents: Amount released for this milestone (fixed once funded)
        due_date: Optional due date agreed in the contract
        status: Current FSM state
        status_before_dispute: State the milestone was disputed from
        closed_at: Set when a dispute resolution settles the milestone
    """

    escrow_account = models.ForeignKey(
        "escrow.EscrowAccount",
        on_delete=models.PROTECT,
        related_name="milestones",
    )
    position = models.PositiveIntegerField(default=0)
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    amount_cents = models.PositiveBigIntegerField()
    due_date = models.DateField(null=True, blank=True)

    status = FSMField(
        default=MilestoneStatus.PENDING,
        choices=MilestoneStatus.choices,
        db_index=True,
        protected=True,
    )
    status_before_dispute = models.CharField(
        max_length=32,
        choices=MilestoneStatus.choices,
        null=True,
        blank=True,
    )

    submission_notes = models.TextField(null=True, blank=True)
    approval_notes = models.TextField(null=True, blank=True)
    rejection_reason = models.TextField(null=True, blank=True)

    started_at = models.DateTimeField(null=True, blank=True)
    submitted_at = models.DateTimeField(null=True, blank=True)
    approved_at = models.DateTimeField(null=True, blank=True)
    rejected_at = models.DateTimeField(null=True, blank=True)
    disputed_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(null=True, blank=True)
    closed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["position", "created_at"]
        verbose_name = "Milestone"
        verbose_name_plural = "Milestones"
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="milestone_amount_positive",
            ),
            models.UniqueConstraint(
                fields=["escrow_account", "position"],
                name="milestone_unique_position",
            ),
        ]

    def __str__(self) -> str:
        return f"Milestone({self.id}, {self.title!r}, {self.status})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=MilestoneStatus.PENDING,
        target=MilestoneStatus.IN_PROGRESS,
    )
    def start(self):
        """Transition: PENDING -> IN_PROGRESS"""
        self.started_at = timezone.now()

    @transition(
        field=status,
        source=MilestoneStatus.IN_PROGRESS,
        target=MilestoneStatus.SUBMITTED,
    )
    def submit(self, notes: str | None = None):
        """
        Talent submits the work for review.

        Transition: IN_PROGRESS -> SUBMITTED

        Clears the reason of any earlier rejection.
        """
        self.submission_notes = notes
        self.rejection_reason = None
        self.submitted_at = timezone.now()

    @transition(
        field=status,
        source=MilestoneStatus.SUBMITTED,
        target=MilestoneStatus.APPROVED,
    )
    def approve(self, notes: str | None = None):
        """Transition: SUBMITTED -> APPROVED"""
        self.approval_notes = notes
        self.approved_at = timezone.now()

    @transition(
        field=status,
        source=MilestoneStatus.SUBMITTED,
        target=MilestoneStatus.REJECTED,
    )
    def reject(self, reason: str):
        """Transition: SUBMITTED -> REJECTED"""
        self.rejection_reason = reason
        self.rejected_at = timezone.now()

    @transition(
        field=status,
        source=MilestoneStatus.REJECTED,
        target=MilestoneStatus.IN_PROGRESS,
        conditions=[is_open],
    )
    def resume(self):
        """
        Talent resumes work after a rejection.

        Transition: REJECTED -> IN_PROGRESS (not after a dispute closed it)
        """

    @transition(
        field=status,
        source=[MilestoneStatus.SUBMITTED, MilestoneStatus.APPROVED],
        target=MilestoneStatus.DISPUTED,
    )
    def dispute(self):
        """Transition: SUBMITTED/APPROVED -> DISPUTED"""
        self.status_before_dispute = self.status
        self.disputed_at = timezone.now()

    @transition(
        field=status,
        source=MilestoneStatus.APPROVED,
        target=MilestoneStatus.RELEASED,
    )
    def release(self):
        """Transition: APPROVED -> RELEASED"""
        self.released_at = timezone.now()

    @transition(
        field=status,
        source=MilestoneStatus.DISPUTED,
        target=MilestoneStatus.RELEASED,
    )
    def close_released(self):
        """
        Dispute resolved with money (all or part) going to the talent.

        Transition: DISPUTED -> RELEASED (closed)
        """
        now = timezone.now()
        self.released_at = now
        self.closed_at = now

    @transition(
        field=status,
        source=MilestoneStatus.DISPUTED,
        target=MilestoneStatus.REJECTED,
    )
    def close_refunded(self, reason: str):
        """
        Dispute resolved with the full amount refunded to the business.

        Transition: DISPUTED -> REJECTED (closed)
        """
        now = timezone.now()
        self.rejection_reason = reason
        self.rejected_at = now
        self.closed_at = now

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def percentage(self) -> Decimal:
        """Share of the account total, in percent with two decimals."""
        total = self.escrow_account.total_amount_cents
        if not total:
            return Decimal("0.00")
        share = Decimal(self.amount_cents) * Decimal(100) / Decimal(total)
        return share.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    @property
    def is_settled(self) -> bool:
        return self.status == MilestoneStatus.RELEASED or self.closed_at is not None

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None


class Deliverable(UUIDPrimaryKeyMixin, BaseModel):
    """
    A piece of work attached to a milestone.

    The file itself lives in external storage; only an opaque reference
    is kept here.

    State Flow:
        PENDING -> SUBMITTED -> APPROVED | REJECTED
    """

    milestone = models.ForeignKey(
        Milestone,
        on_delete=models.CASCADE,
        related_name="deliverables",
    )
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    file_ref = models.CharField(max_length=500, null=True, blank=True)
    file_name = models.CharField(max_length=255, null=True, blank=True)

    status = FSMField(
        default=DeliverableStatus.PENDING,
        choices=DeliverableStatus.choices,
        protected=True,
    )
    rejection_reason = models.TextField(null=True, blank=True)
    submitted_at = models.DateTimeField(null=True, blank=True)
    reviewed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Deliverable"
        verbose_name_plural = "Deliverables"

    def __str__(self) -> str:
        return f"Deliverable({self.id}, {self.title!r}, {self.status})"

    @transition(
        field=status,
        source=DeliverableStatus.PENDING,
        target=DeliverableStatus.SUBMITTED,
    )
    def submit(self):
        self.submitted_at = timezone.now()

    @transition(
        field=status,
        source=DeliverableStatus.SUBMITTED,
        target=DeliverableStatus.APPROVED,
    )
    def approve(self):
        self.reviewed_at = timezone.now()

    @transition(
        field=status,
        source=DeliverableStatus.SUBMITTED,
        target=DeliverableStatus.REJECTED,
    )
    def reject(self, reason: str | None = None):
        self.rejection_reason = reason
        self.reviewed_at = timezone.now()

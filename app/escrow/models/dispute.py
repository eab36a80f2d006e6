"""
DisputeCase model: a contested milestone awaiting admin arbitration.

State Flow:
    OPEN -> UNDER_REVIEW -> RESOLVED
    OPEN -> RESOLVED

A resolution is recorded (resolution, refund/release legs) before its
settlement legs are sent to the gateway; the case only becomes RESOLVED
once every leg is confirmed.
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from escrow.state_machines import DisputeParty, DisputeResolution, DisputeStatus


class DisputeCase(UUIDPrimaryKeyMixin, BaseModel):
    """
    A dispute raised by either party over one milestone.

    Fields:
        escrow_account / milestone: What is disputed
        initiated_by: business or talent
        initiator_id: Identity of the party who raised it
        resolution: Chosen outcome (set when resolution starts)
        resolution_amount_cents: Talent share for a partial split
        refund_amount_cents / release_amount_cents: Planned settlement legs
    """

    escrow_account = models.ForeignKey(
        "escrow.EscrowAccount",
        on_delete=models.PROTECT,
        related_name="disputes",
    )
    milestone = models.ForeignKey(
        "escrow.Milestone",
        on_delete=models.PROTECT,
        related_name="disputes",
    )
    initiated_by = models.CharField(max_length=16, choices=DisputeParty.choices)
    initiator_id = models.CharField(max_length=64)
    reason = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")

    status = FSMField(
        default=DisputeStatus.OPEN,
        choices=DisputeStatus.choices,
        db_index=True,
        protected=True,
    )

    resolution = models.CharField(
        max_length=32,
        choices=DisputeResolution.choices,
        null=True,
        blank=True,
    )
    resolution_amount_cents = models.PositiveBigIntegerField(null=True, blank=True)
    refund_amount_cents = models.PositiveBigIntegerField(default=0)
    release_amount_cents = models.PositiveBigIntegerField(default=0)
    admin_notes = models.TextField(blank=True, default="")

    reviewed_by = models.CharField(max_length=64, null=True, blank=True)
    resolved_by = models.CharField(max_length=64, null=True, blank=True)
    review_started_at = models.DateTimeField(null=True, blank=True)
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Dispute"
        verbose_name_plural = "Disputes"
        constraints = [
            # At most one unresolved dispute per milestone
            models.UniqueConstraint(
                fields=["milestone"],
                condition=~models.Q(status=DisputeStatus.RESOLVED),
                name="dispute_one_unresolved_per_milestone",
            ),
        ]

    def __str__(self) -> str:
        return f"DisputeCase({self.id}, milestone={self.milestone_id}, {self.status})"

    @transition(
        field=status,
        source=DisputeStatus.OPEN,
        target=DisputeStatus.UNDER_REVIEW,
    )
    def start_review(self, reviewer_id: str):
        """Transition: OPEN -> UNDER_REVIEW"""
        self.reviewed_by = reviewer_id
        self.review_started_at = timezone.now()

    @transition(
        field=status,
        source=[DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW],
        target=DisputeStatus.RESOLVED,
    )
    def resolve(self):
        """
        All settlement legs confirmed.

        Transition: OPEN/UNDER_REVIEW -> RESOLVED
        """
        self.resolved_at = timezone.now()

    def plan_resolution(
        self,
        resolution: str,
        refund_amount_cents: int,
        release_amount_cents: int,
        resolved_by: str,
        resolution_amount_cents: int | None = None,
        admin_notes: str = "",
    ) -> None:
        """Record the chosen outcome before its settlement legs are sent."""
        self.resolution = resolution
        self.refund_amount_cents = refund_amount_cents
        self.release_amount_cents = release_amount_cents
        self.resolution_amount_cents = resolution_amount_cents
        self.resolved_by = resolved_by
        if admin_notes:
            self.admin_notes = admin_notes

    @property
    def is_resolved(self) -> bool:
        return self.status == DisputeStatus.RESOLVED

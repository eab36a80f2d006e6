"""
Data types shared by the escrow services.

Types:
    Actor: Who is calling (identity + admin flag)
    MilestoneSpec: One milestone of a new escrow account
    EscrowSummary: Balance summary of an account
    PeriodSummary: Preview of the current biweekly period
"""

from __future__ import annotations

import datetime
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from escrow.exceptions import ValidationError

if TYPE_CHECKING:
    from escrow.fees import FeeBreakdown
    from escrow.models import TimeEntry


@dataclass(frozen=True)
class Actor:
    """
    The caller of a service operation.

    Identity is owned by an external service; the engine only compares
    actor_id with an account's business_id / talent_id.

    Example:
        actor = Actor(actor_id=str(request.user.pk), is_admin=request.user.is_staff)
    """

    actor_id: str
    is_admin: bool = False

    @classmethod
    def system(cls) -> Actor:
        """Actor used by background jobs such as reconciliation."""
        return cls(actor_id="system", is_admin=True)


@dataclass
class MilestoneSpec:
    """
    One milestone of a new escrow account.

    Attributes:
        title: Short name of the deliverable work
        amount_cents: Amount released on approval (must be positive)
        description: Optional details
        due_date: Optional agreed due date
    """

    title: str
    amount_cents: int
    description: str = ""
    due_date: datetime.date | None = None

    def __post_init__(self) -> None:
        if isinstance(self.amount_cents, bool) or not isinstance(self.amount_cents, int):
            raise ValidationError(
                "Milestone amount must be an integer number of cents",
                details={"title": self.title},
            )
        if self.amount_cents <= 0:
            raise ValidationError(
                "Milestone amount must be positive",
                details={"title": self.title, "amount_cents": self.amount_cents},
            )
        if not self.title or not self.title.strip():
            raise ValidationError("Milestone title is required")


@dataclass(frozen=True)
class EscrowSummary:
    """
    Balance summary of an escrow account. All amounts in cents.

    Attributes:
        released_to_talent_cents: Gross released to the talent
        refunded_cents: Returned to the business
        disputed_cents: Amount of milestones currently disputed
        fees_collected_cents: Platform and processing fees on releases
        net_paid_to_talent_cents: What the talent actually received
        completion_percentage: Share of milestones settled (0-100)
    """

    escrow_id: uuid.UUID
    status: str
    currency: str
    total_cents: int
    released_cents: int
    pending_cents: int
    released_to_talent_cents: int
    refunded_cents: int
    disputed_cents: int
    fees_collected_cents: int
    net_paid_to_talent_cents: int
    milestone_count: int
    settled_milestone_count: int
    completion_percentage: Decimal


@dataclass
class PeriodSummary:
    """Approved, unbilled work of a contract within one period window."""

    contract_id: str
    period_start: datetime.date
    period_end: datetime.date
    entries: list[TimeEntry] = field(default_factory=list)
    total_hours: Decimal = Decimal("0")
    gross_cents: int = 0
    fees: FeeBreakdown | None = None
    already_paid: bool = False

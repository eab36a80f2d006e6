"""
State enums for escrow models.

These are Django TextChoices used as django-fsm field choices.

State Machines Overview:

EscrowAccount:
    created → funded → partially_released → completed
    funded/partially_released → disputed → funded/partially_released/completed
    created/funded → cancelled (only while nothing has been released)

Milestone:
    pending → in_progress → submitted → approved → released
    submitted → rejected → in_progress (resubmission)
    submitted/approved → disputed → released | rejected (closed by resolution)

Deliverable:
    pending → submitted → approved | rejected

DisputeCase:
    open → under_review → resolved
    open → resolved

Transaction (ledger entry):
    pending → completed | failed

TimeEntry:
    pending → approved → settled
    pending → rejected

PaymentPeriod:
    open → processing → paid
    processing → open (gateway rejected the payout)
"""

from django.db import models


class EscrowStatus(models.TextChoices):
    """
    States for the EscrowAccount lifecycle.

    Terminal states: COMPLETED, CANCELLED
    """

    CREATED = "created", "Created"
    FUNDED = "funded", "Funded"
    PARTIALLY_RELEASED = "partially_released", "Partially Released"
    COMPLETED = "completed", "Completed"
    DISPUTED = "disputed", "Disputed"
    CANCELLED = "cancelled", "Cancelled"


class MilestoneStatus(models.TextChoices):
    """
    States for the Milestone lifecycle.

    Terminal state: RELEASED (and REJECTED once closed by a dispute)
    """

    PENDING = "pending", "Pending"
    IN_PROGRESS = "in_progress", "In Progress"
    SUBMITTED = "submitted", "Submitted"
    APPROVED = "approved", "Approved"
    REJECTED = "rejected", "Rejected"
    DISPUTED = "disputed", "Disputed"
    RELEASED = "released", "Released"


class DeliverableStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    SUBMITTED = "submitted", "Submitted"
    APPROVED = "approved", "Approved"
    REJECTED = "rejected", "Rejected"


class DisputeStatus(models.TextChoices):
    OPEN = "open", "Open"
    UNDER_REVIEW = "under_review", "Under Review"
    RESOLVED = "resolved", "Resolved"


class DisputeResolution(models.TextChoices):
    """Outcome chosen by the admin resolving a dispute."""

    REFUND_BUSINESS = "refund_business", "Refund Business"
    RELEASE_TALENT = "release_talent", "Release to Talent"
    PARTIAL_SPLIT = "partial_split", "Partial Split"


class DisputeParty(models.TextChoices):
    BUSINESS = "business", "Business"
    TALENT = "talent", "Talent"


class TransactionType(models.TextChoices):
    """
    Kinds of ledger entries.

    Amounts are signed from the escrow's point of view: FUNDING is positive,
    releases, refunds, settlements and biweekly payouts are negative. FEE
    entries record the platform's share of a payout and are excluded from the
    escrow balance.
    """

    FUNDING = "funding", "Funding"
    MILESTONE_RELEASE = "milestone_release", "Milestone Release"
    BIWEEKLY_PAYMENT = "biweekly_payment", "Biweekly Payment"
    REFUND = "refund", "Refund"
    FEE = "fee", "Fee"
    DISPUTE_SETTLEMENT = "dispute_settlement", "Dispute Settlement"


class TransactionStatus(models.TextChoices):
    """
    States for ledger entries.

    Terminal states: COMPLETED, FAILED
    """

    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class TimeEntryStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    APPROVED = "approved", "Approved"
    REJECTED = "rejected", "Rejected"
    SETTLED = "settled", "Settled"


class PaymentPeriodStatus(models.TextChoices):
    OPEN = "open", "Open"
    PROCESSING = "processing", "Processing"
    PAID = "paid", "Paid"

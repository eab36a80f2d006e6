"""
State machine definitions for escrow models.

Usage:
    from escrow.state_machines import EscrowStatus, MilestoneStatus
"""

from escrow.state_machines.states import (
    DeliverableStatus,
    DisputeParty,
    DisputeResolution,
    DisputeStatus,
    EscrowStatus,
    MilestoneStatus,
    PaymentPeriodStatus,
    TimeEntryStatus,
    TransactionStatus,
    TransactionType,
)

__all__ = [
    "DeliverableStatus",
    "DisputeParty",
    "DisputeResolution",
    "DisputeStatus",
    "EscrowStatus",
    "MilestoneStatus",
    "PaymentPeriodStatus",
    "TimeEntryStatus",
    "TransactionStatus",
    "TransactionType",
]

"""
Escrow service layer.

Importing this package registers every gateway finalizer, so stored ledger
entries can always be settled.

Usage:
    from escrow.services import Actor, EscrowAccountService, MilestoneSpec
"""

from escrow.services.biweekly_service import BiweeklyPaymentService, period_bounds
from escrow.services.dispatcher import GatewayDispatcher, GatewayInstruction, GatewayOperation
from escrow.services.dispute_service import DisputeService
from escrow.services.escrow_service import EscrowAccountService
from escrow.services.milestone_service import MilestoneService
from escrow.services.reconciliation_service import ReconciliationService
from escrow.services.types import Actor, EscrowSummary, MilestoneSpec, PeriodSummary

__all__ = [
    "Actor",
    "BiweeklyPaymentService",
    "DisputeService",
    "EscrowAccountService",
    "EscrowSummary",
    "GatewayDispatcher",
    "GatewayInstruction",
    "GatewayOperation",
    "MilestoneService",
    "MilestoneSpec",
    "PeriodSummary",
    "ReconciliationService",
    "period_bounds",
]

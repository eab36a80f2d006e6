"""
Escrow models.

Usage:
    from escrow.models import EscrowAccount, Milestone, Transaction
"""

from escrow.ledger.models import Transaction
from escrow.models.dispute import DisputeCase
from escrow.models.escrow_account import EscrowAccount
from escrow.models.milestone import Deliverable, Milestone
from escrow.models.payee_account import PayeeAccount
from escrow.models.time_tracking import PaymentPeriod, TimeEntry

__all__ = [
    "Deliverable",
    "DisputeCase",
    "EscrowAccount",
    "Milestone",
    "PayeeAccount",
    "PaymentPeriod",
    "TimeEntry",
    "Transaction",
]

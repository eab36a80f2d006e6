"""
Escrow app configuration.

This app provides:
- Escrow accounts with milestone-based releases
- Dispute resolution with refund / release / split settlements
- Biweekly hourly payouts from approved time entries
- Append-only transaction ledger and gateway reconciliation
"""

from django.apps import AppConfig


class EscrowConfig(AppConfig):
    """Configuration for the escrow application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "escrow"
    verbose_name = "Escrow"

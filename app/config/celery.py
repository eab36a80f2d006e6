"""
Celery configuration for the escrow payment service.

Background work is limited to ledger reconciliation: pending transactions
whose gateway outcome was unknown are re-issued with their original
idempotency key on a beat schedule (see escrow.tasks).

Redis is both the message broker and result backend. Tasks are
auto-discovered from all installed Django apps.

Usage:
    from escrow.tasks import reconcile_transaction

    reconcile_transaction.delay(str(transaction_id))
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()

"""
Add celery-beat schedule for reconciling pending ledger entries.

Creates the periodic task for reconcile_pending_transactions, which runs
every 15 minutes to settle gateway operations whose outcome was unknown.
"""

from django.db import migrations

TASK_NAME = "Reconcile Pending Escrow Transactions"


def create_periodic_task(apps, schema_editor):
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    schedule, _ = IntervalSchedule.objects.get_or_create(
        every=15,
        period="minutes",
    )

    PeriodicTask.objects.get_or_create(
        name=TASK_NAME,
        defaults={
            "task": "escrow.tasks.reconcile_pending_transactions",
            "interval": schedule,
            "enabled": True,
            "description": (
                "Re-issues the stored gateway instruction of pending ledger "
                "entries with their original idempotency key."
            ),
        },
    )


def remove_periodic_task(apps, schema_editor):
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")
    PeriodicTask.objects.filter(name=TASK_NAME).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("escrow", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_task, remove_periodic_task),
    ]

"""
Add celery-beat schedules for the settlement workers.

Creates the periodic tasks that keep transactions moving without a caller:
- start provider reviews for escrowed transactions (every 5 minutes)
- queue escrow releases past their deadline (every 15 minutes)
- reconcile stale PENDING checkouts (every 30 minutes)
- follow up payout batches until they settle (every 60 minutes)
- retry failed gateway webhooks (every 10 minutes)
"""

from django.db import migrations

SCHEDULES = [
    {
        "name": "Start Provider Reviews",
        "task": "settlement.workers.escrow_scheduler.start_provider_reviews",
        "every": 5,
        "description": "Moves captured ESCROW transactions into PROVIDER_REVIEW.",
    },
    {
        "name": "Process Escrow Releases",
        "task": "settlement.workers.escrow_scheduler.process_escrow_releases",
        "every": 15,
        "description": (
            "Finds transactions whose review deadline has passed and queues "
            "a release task for each."
        ),
    },
    {
        "name": "Reconcile Pending Transactions",
        "task": "settlement.workers.reconciliation.reconcile_pending_transactions",
        "every": 30,
        "description": (
            "Checks stale PENDING transactions against the gateway, recording "
            "missed captures and declining abandoned checkouts."
        ),
    },
    {
        "name": "Check Payout Statuses",
        "task": "settlement.workers.reconciliation.check_payout_statuses",
        "every": 60,
        "description": (
            "Reads the status of payout batches that have not settled and "
            "flags denied or returned payouts for manual settlement."
        ),
    },
    {
        "name": "Retry Failed Gateway Webhooks",
        "task": "settlement.workers.webhook_processor.retry_failed_webhooks",
        "every": 10,
        "description": "Re-queues FAILED gateway webhook events that have attempts left.",
    },
]


def create_periodic_tasks(apps, schema_editor):
    """Create the periodic tasks for the settlement workers."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for entry in SCHEDULES:
        schedule, _ = IntervalSchedule.objects.get_or_create(
            every=entry["every"],
            period="minutes",
        )
        PeriodicTask.objects.get_or_create(
            name=entry["name"],
            defaults={
                "task": entry["task"],
                "interval": schedule,
                "enabled": True,
                "description": entry["description"],
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    """Remove the periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(
        name__in=[entry["name"] for entry in SCHEDULES],
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("settlement", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]

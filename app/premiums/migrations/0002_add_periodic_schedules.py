"""
Add Celery Beat schedules for the premium engine.

This migration creates periodic task schedules for:
- Daily settlement (00:30 Africa/Nairobi, with catch-up)
- Payout dispatch of due line items
- Stale transfer sweep
- STK status query for collections with no callback
- Callback event retry and stuck-event recovery
"""

from django.db import migrations

PERIODIC_TASKS = [
    "Premiums: Generate Daily Settlement",
    "Premiums: Process Pending Payouts",
    "Premiums: Sweep Stale Transfers",
    "Premiums: Query Stale Collections",
    "Premiums: Retry Failed Callbacks",
    "Premiums: Cleanup Stuck Callbacks",
]


def create_periodic_tasks(apps, schema_editor):
    """Create periodic tasks for the premium engine."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    CrontabSchedule = apps.get_model("django_celery_beat", "CrontabSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    # =========================================================================
    # Schedules
    # =========================================================================

    schedule_5min, _ = IntervalSchedule.objects.get_or_create(every=5, period="minutes")
    schedule_10min, _ = IntervalSchedule.objects.get_or_create(every=10, period="minutes")
    schedule_15min, _ = IntervalSchedule.objects.get_or_create(every=15, period="minutes")
    schedule_30min, _ = IntervalSchedule.objects.get_or_create(every=30, period="minutes")

    # Daily at 00:30 Nairobi time
    crontab_daily_0030, _ = CrontabSchedule.objects.get_or_create(
        minute="30",
        hour="0",
        day_of_week="*",
        day_of_month="*",
        month_of_year="*",
        timezone="Africa/Nairobi",
    )

    # =========================================================================
    # Periodic Tasks
    # =========================================================================

    PeriodicTask.objects.get_or_create(
        name="Premiums: Generate Daily Settlement",
        defaults={
            "task": "premiums.workers.settlement_worker.generate_daily_settlement",
            "crontab": crontab_daily_0030,
            "enabled": True,
            "description": (
                "Settles yesterday's confirmed payments and catches up any "
                "missed days in the SETTLEMENT_CATCH_UP_DAYS window."
            ),
        },
    )

    PeriodicTask.objects.get_or_create(
        name="Premiums: Process Pending Payouts",
        defaults={
            "task": "premiums.workers.payout_executor.process_pending_payouts",
            "interval": schedule_5min,
            "enabled": True,
            "description": "Queues B2C dispatch for due commission line items.",
        },
    )

    PeriodicTask.objects.get_or_create(
        name="Premiums: Sweep Stale Transfers",
        defaults={
            "task": "premiums.workers.payout_executor.sweep_stale_transfers",
            "interval": schedule_15min,
            "enabled": True,
            "description": (
                "Marks in-flight B2C transfers with no result as timed out "
                "and escalates their line items for operator review."
            ),
        },
    )

    PeriodicTask.objects.get_or_create(
        name="Premiums: Query Stale Collections",
        defaults={
            "task": "premiums.workers.reconciliation_worker.query_stale_collections",
            "interval": schedule_5min,
            "enabled": True,
            "description": (
                "Runs an STK status query for initiated payments whose "
                "callback has not arrived."
            ),
        },
    )

    PeriodicTask.objects.get_or_create(
        name="Premiums: Retry Failed Callbacks",
        defaults={
            "task": "premiums.tasks.retry_failed_callbacks",
            "interval": schedule_10min,
            "enabled": True,
            "description": "Re-queues failed callback events within the retry budget.",
        },
    )

    PeriodicTask.objects.get_or_create(
        name="Premiums: Cleanup Stuck Callbacks",
        defaults={
            "task": "premiums.tasks.cleanup_stuck_callbacks",
            "interval": schedule_30min,
            "enabled": True,
            "description": (
                "Resets callbacks stuck in PROCESSING and re-queues callbacks "
                "that were never queued."
            ),
        },
    )


def remove_periodic_tasks(apps, schema_editor):
    """Remove the periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")
    PeriodicTask.objects.filter(name__in=PERIODIC_TASKS).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("premiums", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]

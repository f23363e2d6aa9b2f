"""
CandleScan — Celery Application Factory

Celery app for the scheduled roll-up and scan-cache jobs, brokered by Redis.
The beat schedule below drives the nightly roll-ups, the scan pre-compute
and the expired-entry cleanup. All times are UTC.
"""

from __future__ import annotations

from celery import Celery
from celery.schedules import crontab

from candlescan.config import get_settings


def make_celery() -> Celery:
    """Celery app with JSON serialization and the beat schedule attached.

    REDIS_URL serves as broker and result backend.
    Scheduled jobs never retry inline: a failed run is picked up by the next
    scheduled one.
    """
    settings = get_settings()

    app = Celery(
        "candlescan",
        broker=settings.redis_url,
        backend=settings.redis_url,
        include=[
            "candlescan.tasks.aggregation_tasks",
            "candlescan.tasks.precompute_tasks",
        ],
    )

    app.conf.update(
        # Serialization
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,

        # Reliability
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_reject_on_worker_lost=True,

        # Result expiry
        result_expires=3600,  # 1 hour

        # Nightly jobs, all UTC
        beat_schedule={
            # ── Candle roll-up ──
            "rollup-15min-to-1hour": {
                "task": "candlescan.tasks.aggregation_tasks.rollup_15min_to_1hour",
                "schedule": crontab(hour=1, minute=0),
            },
            "rollup-1hour-to-1day": {
                "task": "candlescan.tasks.aggregation_tasks.rollup_1hour_to_1day",
                "schedule": crontab(hour=2, minute=0),
            },
            "purge-rollup-backups": {
                "task": "candlescan.tasks.aggregation_tasks.purge_backups",
                "schedule": crontab(day_of_week=0, hour=3, minute=0),  # Sunday
            },
            # ── Scan result cache ──
            "precompute-scans": {
                "task": "candlescan.tasks.precompute_tasks.precompute_scans",
                "schedule": crontab(hour=4, minute=0),
            },
            "cleanup-scan-cache": {
                "task": "candlescan.tasks.precompute_tasks.cleanup_scan_cache",
                "schedule": crontab(hour=5, minute=0),
            },
        },
    )

    return app


# Imported by the task modules and the worker entry point
celery_app = make_celery()

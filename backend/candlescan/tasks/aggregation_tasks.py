"""
CandleScan — Roll-up Tasks

Nightly timeframe roll-ups and the weekly backup purge. Each roll-up converts
the configured default day for every stored symbol; per-symbol failures are
isolated inside the aggregator and reported in the summary.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

import structlog

from candlescan.tasks.celery_app import celery_app

log = structlog.get_logger(__name__)


def _rollup(source: str, target: str, day: Optional[str] = None) -> dict:
    from candlescan.container import get_service

    summary = get_service().trigger_aggregation(
        None, source, target, date.fromisoformat(day) if day else None,
    )
    log.info(
        "rollup_task.complete",
        source=source, target=target, day=str(summary.day),
        succeeded=summary.succeeded, skipped=summary.skipped, failed=summary.failed,
    )
    return summary.model_dump(mode="json")


@celery_app.task(max_retries=0)
def rollup_15min_to_1hour(day: Optional[str] = None) -> dict:
    """Roll 15min candles older than the retention age into 1hour candles."""
    return _rollup("15min", "1hour", day)


@celery_app.task(max_retries=0)
def rollup_1hour_to_1day(day: Optional[str] = None) -> dict:
    """Roll 1hour candles older than the retention age into 1day candles."""
    return _rollup("1hour", "1day", day)


@celery_app.task(max_retries=0)
def purge_backups() -> dict:
    from candlescan.container import get_service

    purged = get_service().purge_backups()
    return {"purged": purged}

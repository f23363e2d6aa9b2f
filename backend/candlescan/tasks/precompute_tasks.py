"""
CandleScan — Scan Cache Tasks

Daily pre-compute sweep over the configured (timeframe × confidence × phase)
grid so user-facing lookups hit a warm cache, and the expired-entry cleanup.
"""

from __future__ import annotations

import structlog

from candlescan.tasks.celery_app import celery_app

log = structlog.get_logger(__name__)


@celery_app.task(max_retries=0)
def precompute_scans() -> dict:
    from candlescan.config import get_settings
    from candlescan.container import get_service

    settings = get_settings()
    return get_service().precompute(
        timeframes=settings.precompute_timeframe_list,
        confidences=settings.precompute_confidence_list,
        phases=settings.precompute_phase_list,
    )


@celery_app.task(max_retries=0)
def cleanup_scan_cache() -> dict:
    from candlescan.container import get_service

    deleted = get_service().cleanup_cache()
    log.info("cache_cleanup_task.complete", deleted=deleted)
    return {"deleted": deleted}

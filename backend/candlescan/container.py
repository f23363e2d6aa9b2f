"""
CandleScan — Service Wiring

Builds the store, result cache and service from Settings. Each process
(API worker, Celery worker, CLI) gets one instance via get_service().
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

import structlog

from candlescan.cache import create_document_cache
from candlescan.config import Settings, get_settings
from candlescan.db import create_store
from candlescan.engines.aggregator import TimeframeAggregator
from candlescan.engines.result_cache import ResultCache
from candlescan.services import CandleScanService

log = structlog.get_logger(__name__)


def build_service(settings: Optional[Settings] = None) -> CandleScanService:
    settings = settings or get_settings()
    store = create_store(settings)
    result_cache = ResultCache(
        create_document_cache(settings.cache_backend, settings.redis_url),
        ttl_hours=settings.scan_cache_ttl_hours,
    )
    aggregator = TimeframeAggregator(
        store,
        age_15min_days=settings.rollup_15min_age_days,
        age_1hour_days=settings.rollup_1hour_age_days,
        backup_retention_days=settings.backup_retention_days,
    )
    log.info("container.built", store=settings.store_backend, cache=settings.cache_backend)
    return CandleScanService(
        store,
        result_cache,
        aggregator=aggregator,
        universe_limit=settings.scan_universe_limit,
        batch_size=settings.scan_batch_size,
        lookback_days=settings.accumulation_lookback_days,
        min_confidence=settings.accumulation_min_confidence,
    )


@lru_cache
def get_service() -> CandleScanService:
    """Process-wide service instance."""
    return build_service()

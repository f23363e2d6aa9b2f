"""
CandleScan — API Routes

All HTTP endpoints. Thin layer — delegates to the CandleScanService.
Domain errors propagate to the handlers in error_handlers.py.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from candlescan.config import get_settings
from candlescan.container import get_service
from candlescan.models import ScanConfig, ScanPhase, Timeframe
from candlescan.services import CandleScanService
from candlescan.utils.validators import validate_day, validate_symbol, validate_symbols

# ──────────────────────────────────────────────
# Request bodies
# ──────────────────────────────────────────────


class CandleIngestRequest(BaseModel):
    timeframe: Timeframe
    candles: list[dict[str, Any]] = Field(min_length=1)


class AggregationRequest(BaseModel):
    source_timeframe: Timeframe
    target_timeframe: Timeframe
    symbols: Optional[list[str]] = None  # None → every stored symbol
    day: Optional[date] = None           # None → scheduled default day


# ──────────────────────────────────────────────
# Health
# ──────────────────────────────────────────────

health_router = APIRouter()


@health_router.get("/health")
def health_check():
    """Liveness plus the configured backends."""
    settings = get_settings()
    return {
        "status": "ok",
        "env": settings.app_env,
        "store": settings.store_backend,
        "cache": settings.cache_backend,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ──────────────────────────────────────────────
# Scans
# ──────────────────────────────────────────────

scan_router = APIRouter()


@scan_router.post("/scan")
def run_scan(config: ScanConfig, service: CandleScanService = Depends(get_service)):
    """Run a full universe scan (uncached)."""
    report = service.run_scan(config)
    return {
        **report.model_dump(mode="json"),
        "matched_count": report.matched_count,
    }


@scan_router.get("/scan/accumulation")
def get_accumulation(
    timeframe: Timeframe = Query(Timeframe.D1, description="Candle timeframe: 15min, 1hour, 1day"),
    min_confidence: Optional[int] = Query(None, ge=0, le=100, description="Defaults to ACCUMULATION_MIN_CONFIDENCE"),
    phase: Optional[ScanPhase] = Query(None, description="Restrict to phase C or D"),
    lookback_days: Optional[int] = Query(None, ge=1, le=3650),
    refresh: bool = Query(False, description="Bypass the cache and rescan"),
    service: CandleScanService = Depends(get_service),
):
    """Cache-through accumulation scan."""
    config = service.scan_config(
        timeframe=timeframe, min_confidence=min_confidence, phase=phase, lookback_days=lookback_days,
    )
    entry, cached = service.run_cached_scan(config, force_refresh=refresh)
    return {"cached": cached, **entry.model_dump(mode="json")}


# ──────────────────────────────────────────────
# Data pipeline
# ──────────────────────────────────────────────

data_router = APIRouter()


@data_router.post("/candles/{symbol}")
def ingest_candles(symbol: str, body: CandleIngestRequest, service: CandleScanService = Depends(get_service)):
    """Upsert OHLCV candles and their computed features."""
    return service.ingest_candles(validate_symbol(symbol), body.timeframe, body.candles)


@data_router.post("/aggregation")
def trigger_aggregation(body: AggregationRequest, service: CandleScanService = Depends(get_service)):
    """Roll one UTC day of candles into the next coarser timeframe."""
    summary = service.trigger_aggregation(
        validate_symbols(body.symbols),
        body.source_timeframe,
        body.target_timeframe,
        validate_day(body.day),
    )
    return summary.model_dump(mode="json")


# ──────────────────────────────────────────────
# Cache
# ──────────────────────────────────────────────

cache_router = APIRouter()


@cache_router.get("/cache/stats")
def cache_stats(service: CandleScanService = Depends(get_service)):
    return service.get_cache_stats()


@cache_router.delete("/cache")
def invalidate_cache(
    scan_type: Optional[str] = Query(None, description="accumulation or custom"),
    timeframe: Optional[str] = Query(None, description="15min, 1hour or 1day"),
    service: CandleScanService = Depends(get_service),
):
    """Invalidate cached scans by type and/or timeframe (all when omitted)."""
    deleted = service.invalidate_cache(scan_type=scan_type, timeframe=timeframe)
    return {"deleted": deleted}

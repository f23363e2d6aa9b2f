"""
CandleScan — Service Layer

The single entry point used by the API routes, the Celery tasks and the CLI.
Wires the engines together: cache-through scans, roll-up triggers, ingestion,
and the scheduled pre-compute / cleanup sweeps.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Iterable, Optional, Union

import structlog

from candlescan.db.base import CandleStore
from candlescan.engines.aggregator import TimeframeAggregator
from candlescan.engines.ingest import CandleIngestor
from candlescan.engines.result_cache import ResultCache
from candlescan.engines.scan_orchestrator import ScanOrchestrator
from candlescan.errors import ConfigurationError
from candlescan.models import (
    AccumulationConfig,
    AggregationSummary,
    CacheEntry,
    CacheMetadata,
    ScanConfig,
    ScanPhase,
    ScanReport,
    ScanType,
    Timeframe,
)

log = structlog.get_logger(__name__)


def build_scan_config(
    timeframe: Union[Timeframe, str] = Timeframe.D1,
    min_confidence: int = 70,
    phase: Union[ScanPhase, str, None] = None,
    lookback_days: int = 90,
    universe_limit: int = 100,
    batch_size: int = 10,
) -> ScanConfig:
    """ScanConfig for the common accumulation query shape.

    Used by both the HTTP lookup and the pre-compute sweep so the two produce
    identical cache keys for the same parameters.
    """
    accumulation = AccumulationConfig.from_filters({
        "timeframe": Timeframe.parse(timeframe),
        "min_confidence": min_confidence,
        "lookback_days": lookback_days,
    })
    phases = None
    if phase:
        try:
            phases = [ScanPhase(phase) if isinstance(phase, ScanPhase) else ScanPhase(str(phase).strip().upper())]
        except ValueError:
            raise ConfigurationError(f"Unknown phase '{phase}'. Expected C or D")
    return ScanConfig(
        accumulation=accumulation,
        phases=phases,
        universe_limit=universe_limit,
        batch_size=batch_size,
    )


class CandleScanService:
    """Facade over the store, engines and result cache."""

    def __init__(
        self,
        store: CandleStore,
        result_cache: ResultCache,
        aggregator: Optional[TimeframeAggregator] = None,
        orchestrator: Optional[ScanOrchestrator] = None,
        ingestor: Optional[CandleIngestor] = None,
        universe_limit: int = 100,
        batch_size: int = 10,
        lookback_days: int = 90,
        min_confidence: int = 70,
    ):
        self.store = store
        self.result_cache = result_cache
        self.aggregator = aggregator or TimeframeAggregator(store)
        self.orchestrator = orchestrator or ScanOrchestrator(store)
        self.ingestor = ingestor or CandleIngestor(store)
        self.universe_limit = universe_limit
        self.batch_size = batch_size
        self.lookback_days = lookback_days
        self.min_confidence = min_confidence

    # ──────────────────────────────────────────────
    # Scans
    # ──────────────────────────────────────────────

    def scan_config(
        self,
        timeframe: Union[Timeframe, str] = Timeframe.D1,
        min_confidence: Optional[int] = None,
        phase: Union[ScanPhase, str, None] = None,
        lookback_days: Optional[int] = None,
    ) -> ScanConfig:
        return build_scan_config(
            timeframe=timeframe,
            min_confidence=self.min_confidence if min_confidence is None else min_confidence,
            phase=phase,
            lookback_days=lookback_days or self.lookback_days,
            universe_limit=self.universe_limit,
            batch_size=self.batch_size,
        )

    def run_scan(self, config: ScanConfig) -> ScanReport:
        return self.orchestrator.scan(config)

    def run_cached_scan(
        self,
        config: ScanConfig,
        scan_type: Union[ScanType, str] = ScanType.ACCUMULATION,
        force_refresh: bool = False,
    ) -> tuple[CacheEntry, bool]:
        """Return (entry, served_from_cache). A miss scans and stores the result."""
        st = ScanType.parse(scan_type)
        timeframe = config.accumulation.timeframe
        filters = config.cache_filters()

        if not force_refresh:
            hit = self.result_cache.get(st, timeframe, filters)
            if hit is not None:
                return hit, True

        report = self.run_scan(config)
        entry = self.result_cache.build_entry(
            st, timeframe, filters, report.matches, metadata=self._metadata(report),
        )
        self.result_cache.put_entry(entry)
        return entry, False

    @staticmethod
    def _metadata(report: ScanReport) -> CacheMetadata:
        return CacheMetadata(
            total_stocks=report.scanned_count,
            matched_stocks=report.matched_count,
            execution_time_ms=report.duration_ms,
            data_date=report.started_at,
        )

    # ──────────────────────────────────────────────
    # Data pipeline
    # ──────────────────────────────────────────────

    def trigger_aggregation(
        self,
        symbols: Optional[Iterable[str]],
        source_timeframe: Union[Timeframe, str],
        target_timeframe: Union[Timeframe, str],
        day: Optional[date] = None,
    ) -> AggregationSummary:
        """Roll up *day* (scheduled default when None) for the symbols, or all."""
        return self.aggregator.run(symbols, source_timeframe, target_timeframe, day)

    def ingest_candles(self, symbol: str, timeframe: Union[Timeframe, str], rows: list[dict[str, Any]]) -> dict:
        return self.ingestor.ingest(symbol, timeframe, rows)

    def purge_backups(self) -> int:
        return self.aggregator.purge_backups()

    # ──────────────────────────────────────────────
    # Cache maintenance
    # ──────────────────────────────────────────────

    def get_cache_stats(self) -> dict:
        return self.result_cache.stats()

    def invalidate_cache(
        self,
        scan_type: Union[ScanType, str, None] = None,
        timeframe: Union[Timeframe, str, None] = None,
    ) -> int:
        return self.result_cache.invalidate(scan_type, timeframe)

    def cleanup_cache(self) -> int:
        return self.result_cache.cleanup_expired()

    def precompute(
        self,
        timeframes: Iterable[Union[Timeframe, str]] = ("15min", "1hour", "1day"),
        confidences: Iterable[int] = (60, 70, 80),
        phases: Iterable[Union[ScanPhase, str]] = ("C", "D"),
    ) -> dict:
        """Warm the cache for every (timeframe, confidence, phase) cell.

        A failing cell is logged and skipped; the sweep always completes.
        """
        summary = {"cells": 0, "stored": 0, "failed": 0, "errors": []}
        for timeframe in timeframes:
            for confidence in confidences:
                for phase in phases:
                    summary["cells"] += 1
                    cell = f"{timeframe}/{confidence}/{phase}"
                    try:
                        config = self.scan_config(timeframe=timeframe, min_confidence=confidence, phase=phase)
                        report = self.run_scan(config)
                    except Exception as exc:
                        summary["failed"] += 1
                        summary["errors"].append(f"{cell}: {exc}")
                        log.error("precompute.cell_failed", cell=cell, error=str(exc))
                        continue
                    stored = self.result_cache.put(
                        ScanType.ACCUMULATION, config.accumulation.timeframe, config.cache_filters(),
                        report.matches, metadata=self._metadata(report),
                    )
                    if stored:
                        summary["stored"] += 1
                    else:
                        summary["failed"] += 1
                        summary["errors"].append(f"{cell}: cache write failed")

        log.info("precompute.complete", cells=summary["cells"], stored=summary["stored"], failed=summary["failed"])
        return summary

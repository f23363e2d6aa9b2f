"""
CandleScan — Scan Orchestrator

Runs the accumulation detector across the instrument universe. Symbols are
processed in sequential batches; within a batch every symbol is scanned on
its own worker thread. A failing symbol is logged and dropped, never fatal.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Optional

import structlog

from candlescan.db.base import CandleStore
from candlescan.engines.accumulation import AccumulationScanner
from candlescan.engines.candle_provider import CandleProvider, StoreCandleProvider
from candlescan.models import ScanConfig, ScanMatch, ScanReport

log = structlog.get_logger(__name__)

# Progress is logged every this many symbols
PROGRESS_EVERY = 50


class ScanOrchestrator:
    """Batched, concurrent universe scan.

    Usage:
        orchestrator = ScanOrchestrator(store)
        report = orchestrator.scan(ScanConfig(universe_limit=200))
    """

    def __init__(self, store: CandleStore, provider: Optional[CandleProvider] = None):
        self._store = store
        self._provider = provider or StoreCandleProvider(store)

    def universe(self, config: ScanConfig) -> list[str]:
        """Active equities up to the limit, else every symbol stored at the scan timeframe."""
        instruments = self._store.list_instruments("EQ", active_only=True, limit=config.universe_limit)
        if instruments:
            return [i.symbol for i in instruments]
        symbols = self._store.distinct_symbols(config.accumulation.timeframe)
        log.info("scan.universe_fallback", symbols=len(symbols), timeframe=config.accumulation.timeframe.value)
        return symbols[: config.universe_limit]

    def scan(self, config: ScanConfig) -> ScanReport:
        started_at = datetime.now(timezone.utc)
        t0 = time.perf_counter()

        symbols = self.universe(config)
        scanner = AccumulationScanner(self._provider, config.accumulation)
        wanted = set(config.phases) if config.phases else None

        log.info("scan.started", symbols=len(symbols), batch_size=config.batch_size,
                 timeframe=config.accumulation.timeframe.value)

        matches: list[ScanMatch] = []
        processed = 0
        for i in range(0, len(symbols), config.batch_size):
            batch = symbols[i:i + config.batch_size]
            with ThreadPoolExecutor(max_workers=config.batch_size) as pool:
                futures = [pool.submit(scanner.apply, symbol) for symbol in batch]

            # Merge in universe order
            for symbol, future in zip(batch, futures):
                try:
                    match = future.result()
                except Exception as exc:
                    log.warning("scan.symbol_failed", symbol=symbol,
                                error_type=type(exc).__name__, error=str(exc))
                    continue
                if match is not None and (wanted is None or match.phase in wanted):
                    matches.append(match)

            processed += len(batch)
            if processed % PROGRESS_EVERY == 0:
                log.info("scan.progress", processed=processed, total=len(symbols))

        duration_ms = round((time.perf_counter() - t0) * 1000, 2)
        log.info("scan.complete", scanned=len(symbols), matched=len(matches), duration_ms=duration_ms)
        return ScanReport(
            scanned_count=len(symbols),
            matches=matches,
            duration_ms=duration_ms,
            started_at=started_at,
        )

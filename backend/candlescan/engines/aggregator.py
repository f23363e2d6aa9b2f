"""
CandleScan — Timeframe Aggregator

Rolls one UTC day of fine candles into the next coarser timeframe:

    fetch → guard → roll up → recompute features → backup → upsert → delete source

The source rows are deleted last, so readers never see a day with neither
granularity present. A day whose source rows are gone has nothing to do,
which makes a repeated run for the same day a no-op.

The backup is write-once and doubles as the day's completion marker. Source
rows that show up for a day whose backup holds different rows, or whose
target candles already exist without a backup, are late deliveries: the day
is refused with DataQualityError and nothing is written or deleted.
"""

from __future__ import annotations

import time
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Callable, Iterable, Optional

import structlog

from candlescan.db.base import CandleStore
from candlescan.engines.feature_engine import FeatureEngine, normalize_candles, profile_for
from candlescan.engines.rollup import aggregate_features, merge_features, rollup_candles
from candlescan.errors import DataQualityError
from candlescan.models import (
    AggregationSummary,
    Candle,
    CandleBackup,
    ConversionStatus,
    DayConversion,
    Timeframe,
    check_rollup_pair,
)

log = structlog.get_logger(__name__)

# Target-timeframe candles loaded as warm-up for the recomputed indicators
HISTORY_CANDLES = 250


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def day_window(day: date) -> tuple[datetime, datetime]:
    """Half-open UTC window [day 00:00, next day 00:00)."""
    start = datetime.combine(day, dt_time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def default_target_day(
    source: Timeframe,
    now: datetime,
    age_15min_days: int = 30,
    age_1hour_days: int = 182,
) -> date:
    """The day a scheduled roll-up of *source* data should convert."""
    age = age_15min_days if Timeframe.parse(source) is Timeframe.M15 else age_1hour_days
    return (now - timedelta(days=age)).date()


def _row_signature(candles: Iterable[Candle]) -> set[tuple]:
    return {
        (c.timestamp, c.open, c.high, c.low, c.close, c.volume, c.open_interest)
        for c in candles
    }


class TimeframeAggregator:
    """Per symbol-day roll-up with backup.

    Usage:
        aggregator = TimeframeAggregator(store)
        summary = aggregator.run(None, "15min", "1hour", date(2024, 1, 2))
    """

    def __init__(
        self,
        store: CandleStore,
        engine: Optional[FeatureEngine] = None,
        age_15min_days: int = 30,
        age_1hour_days: int = 182,
        backup_retention_days: int = 730,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._store = store
        self._engine = engine or FeatureEngine()
        self._age_15min_days = age_15min_days
        self._age_1hour_days = age_1hour_days
        self._backup_retention_days = backup_retention_days
        self._clock = clock

    # ──────────────────────────────────────────────
    # Single symbol-day
    # ──────────────────────────────────────────────

    def convert_day(
        self,
        symbol: str,
        source_timeframe: Timeframe | str,
        target_timeframe: Timeframe | str,
        day: date,
    ) -> DayConversion:
        """Roll up one symbol's source candles for *day*.

        Raises the underlying error (after logging it) if any step fails;
        the source rows are only deleted once the backup and the coarse rows
        are written. Late rows for a finished day raise DataQualityError
        before anything is written.

        An existing backup holding exactly the current source rows means an
        earlier run stopped part way; the conversion is repeated and yields
        the same coarse rows.
        """
        src, tgt = check_rollup_pair(source_timeframe, target_timeframe)
        symbol = symbol.strip().upper()
        start, end = day_window(day)

        try:
            candles = self._store.query_candles(symbol, src, start, end)
            if not candles:
                log.debug("aggregator.nothing_to_do", symbol=symbol, source=src.value, day=str(day))
                return DayConversion(
                    symbol=symbol, source_timeframe=src, target_timeframe=tgt,
                    day=day, status=ConversionStatus.NOTHING_TO_DO,
                )
            self._guard_finished_day(symbol, src, tgt, day, candles)
            features = self._store.query_features(symbol, src, start, end)

            coarse = rollup_candles(candles, tgt)
            rolled = aggregate_features(features, tgt)

            # Recompute the target profile over stored history + new buckets
            history = self._store.query_candles(symbol, tgt, end=end, limit=HISTORY_CANDLES)
            series = normalize_candles(history + coarse)
            profile = profile_for(tgt)
            recomputed = self._engine.compute(series, profile)
            coarse_features = merge_features(
                rolled, recomputed, profile, timestamps=[c.timestamp for c in coarse],
            )

            backup = CandleBackup(
                symbol=symbol,
                source_timeframe=src,
                target_timeframe=tgt,
                day=day,
                candles=candles,
                features=features,
                compression_ratio=round(len(candles) / len(coarse), 4),
                created_at=self._clock(),
            )
            if not self._store.save_backup(backup):
                log.info("aggregator.resumed", symbol=symbol, source=src.value, day=str(day))

            self._store.upsert_candles(coarse)
            self._store.upsert_features(coarse_features)
            self._store.delete_candles(symbol, src, before=end, after=start)

        except Exception as exc:
            log.error(
                "aggregator.day_failed",
                symbol=symbol, source=src.value, target=tgt.value, day=str(day),
                error_type=type(exc).__name__, error=str(exc),
            )
            raise

        log.info(
            "aggregator.day_converted",
            symbol=symbol, source=src.value, target=tgt.value, day=str(day),
            source_rows=len(candles), target_rows=len(coarse),
        )
        return DayConversion(
            symbol=symbol,
            source_timeframe=src,
            target_timeframe=tgt,
            day=day,
            status=ConversionStatus.DONE,
            source_rows=len(candles),
            target_rows=len(coarse),
        )

    def _guard_finished_day(
        self,
        symbol: str,
        src: Timeframe,
        tgt: Timeframe,
        day: date,
        candles: list[Candle],
    ) -> None:
        """Refuse source rows that arrived after *day* was rolled up."""
        backup = self._store.find_backup(symbol, src, tgt, day)
        if backup is not None:
            late = _row_signature(candles) - _row_signature(backup.candles)
            if late or len(candles) != len(backup.candles):
                raise DataQualityError(
                    f"{symbol} {day}: {len(candles)} {src.value} rows differ from the "
                    f"{len(backup.candles)} already rolled up to {tgt.value}"
                )
            return

        start, end = day_window(day)
        if self._store.query_candles(symbol, tgt, start, end, limit=1):
            raise DataQualityError(
                f"{symbol} {day}: {tgt.value} candles exist without a roll-up backup; "
                f"{len(candles)} {src.value} rows left in place"
            )

    # ──────────────────────────────────────────────
    # Batch run
    # ──────────────────────────────────────────────

    def run(
        self,
        symbols: Optional[Iterable[str]],
        source_timeframe: Timeframe | str,
        target_timeframe: Timeframe | str,
        day: Optional[date] = None,
    ) -> AggregationSummary:
        """Convert *day* for every symbol (all stored symbols when None).

        A failing symbol is logged and counted; the run continues. Days
        refused for data quality count as skipped.
        """
        src, tgt = check_rollup_pair(source_timeframe, target_timeframe)
        if day is None:
            day = default_target_day(src, self._clock(), self._age_15min_days, self._age_1hour_days)

        t0 = time.perf_counter()
        universe = list(symbols) if symbols is not None else self._store.distinct_symbols(src)
        summary = AggregationSummary(source_timeframe=src, target_timeframe=tgt, day=day)

        for symbol in universe:
            try:
                result = self.convert_day(symbol, src, tgt, day)
            except DataQualityError as exc:
                summary.skipped += 1
                summary.errors.append(f"{symbol}: {exc}")
                continue
            except Exception as exc:
                summary.failed += 1
                summary.errors.append(f"{symbol}: {exc}")
                continue
            if result.status is ConversionStatus.DONE:
                summary.succeeded += 1
            else:
                summary.skipped += 1

        summary.duration_ms = round((time.perf_counter() - t0) * 1000, 2)
        log.info(
            "aggregator.run_complete",
            source=src.value, target=tgt.value, day=str(day), symbols=len(universe),
            succeeded=summary.succeeded, skipped=summary.skipped, failed=summary.failed,
            duration_ms=summary.duration_ms,
        )
        return summary

    def purge_backups(self) -> int:
        """Drop backups older than the retention window."""
        cutoff = self._clock() - timedelta(days=self._backup_retention_days)
        purged = self._store.purge_backups(cutoff)
        log.info("aggregator.backups_purged", rows=purged, cutoff=cutoff.isoformat())
        return purged

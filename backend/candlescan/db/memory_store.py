"""
CandleScan — In-Memory Candle Store

Dict-backed implementation of the CandleStore contract. Used for local
development (STORE_BACKEND=memory) and as the collaborator in tests.
Thread-safe: the scan orchestrator reads from worker threads.
"""

from __future__ import annotations

import threading
from datetime import date, datetime
from typing import Optional

import structlog

from candlescan.models import Candle, CandleBackup, CandleFeatures, Instrument, Timeframe, ensure_utc

log = structlog.get_logger(__name__)


def _in_window(ts: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is not None and ts < ensure_utc(start):
        return False
    if end is not None and ts >= ensure_utc(end):
        return False
    return True


class MemoryCandleStore:
    """Process-local CandleStore."""

    def __init__(self):
        self._candles: dict[tuple[str, str, datetime], Candle] = {}
        self._features: dict[tuple[str, str, datetime], CandleFeatures] = {}
        self._instruments: dict[str, Instrument] = {}
        self._backups: dict[tuple[str, str, str, date], CandleBackup] = {}
        self._lock = threading.RLock()

    # ──────────────────────────────────────────────
    # Candles
    # ──────────────────────────────────────────────

    def upsert_candles(self, candles: list[Candle]) -> int:
        with self._lock:
            for candle in candles:
                self._candles[candle.key] = candle
        return len(candles)

    def query_candles(
        self,
        symbol: str,
        timeframe: Timeframe,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Candle]:
        symbol = symbol.upper()
        tf = Timeframe.parse(timeframe).value
        with self._lock:
            rows = [
                c for (s, t, ts), c in self._candles.items()
                if s == symbol and t == tf and _in_window(ts, start, end)
            ]
        rows.sort(key=lambda c: c.timestamp)
        if limit is not None:
            rows = rows[-limit:] if limit > 0 else []
        return rows

    def delete_candles(
        self,
        symbol: str,
        timeframe: Timeframe,
        before: datetime,
        after: Optional[datetime] = None,
    ) -> int:
        symbol = symbol.upper()
        tf = Timeframe.parse(timeframe).value
        with self._lock:
            doomed = [
                key for key in self._candles
                if key[0] == symbol and key[1] == tf and _in_window(key[2], after, before)
            ]
            for key in doomed:
                del self._candles[key]
                self._features.pop(key, None)
        log.debug("memory_store.deleted", symbol=symbol, timeframe=tf, rows=len(doomed))
        return len(doomed)

    def distinct_symbols(self, timeframe: Timeframe) -> list[str]:
        tf = Timeframe.parse(timeframe).value
        with self._lock:
            return sorted({s for (s, t, _) in self._candles if t == tf})

    # ──────────────────────────────────────────────
    # Features
    # ──────────────────────────────────────────────

    def upsert_features(self, features: list[CandleFeatures]) -> int:
        with self._lock:
            for f in features:
                self._features[f.key] = f
        return len(features)

    def query_features(
        self,
        symbol: str,
        timeframe: Timeframe,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[CandleFeatures]:
        symbol = symbol.upper()
        tf = Timeframe.parse(timeframe).value
        with self._lock:
            rows = [
                f for (s, t, ts), f in self._features.items()
                if s == symbol and t == tf and _in_window(ts, start, end)
            ]
        rows.sort(key=lambda f: f.timestamp)
        return rows

    # ──────────────────────────────────────────────
    # Instruments
    # ──────────────────────────────────────────────

    def upsert_instruments(self, instruments: list[Instrument]) -> int:
        with self._lock:
            for inst in instruments:
                self._instruments[inst.symbol] = inst
        return len(instruments)

    def list_instruments(
        self,
        instrument_type: str = "EQ",
        active_only: bool = True,
        limit: Optional[int] = None,
    ) -> list[Instrument]:
        with self._lock:
            rows = [
                i for i in self._instruments.values()
                if i.instrument_type == instrument_type and (i.is_active or not active_only)
            ]
        rows.sort(key=lambda i: i.symbol)
        return rows[:limit] if limit is not None else rows

    # ──────────────────────────────────────────────
    # Backups
    # ──────────────────────────────────────────────

    def save_backup(self, backup: CandleBackup) -> bool:
        with self._lock:
            if backup.key in self._backups:
                return False
            self._backups[backup.key] = backup
        return True

    def find_backup(
        self,
        symbol: str,
        source_timeframe: Timeframe,
        target_timeframe: Timeframe,
        day: date,
    ) -> Optional[CandleBackup]:
        key = (
            symbol.upper(),
            Timeframe.parse(source_timeframe).value,
            Timeframe.parse(target_timeframe).value,
            day,
        )
        with self._lock:
            return self._backups.get(key)

    def purge_backups(self, older_than: datetime) -> int:
        cutoff = ensure_utc(older_than)
        with self._lock:
            doomed = [k for k, b in self._backups.items() if b.created_at < cutoff]
            for key in doomed:
                del self._backups[key]
        return len(doomed)

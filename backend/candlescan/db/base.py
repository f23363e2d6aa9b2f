"""
CandleScan — Candle Store Contract

The narrow persistence surface every engine depends on. Concrete stores
(PostgreSQL, in-memory) implement it; engines receive one in their constructor.

Conventions shared by all implementations:
  - time windows are half-open: start <= ts < end
  - query results are ordered oldest → newest
  - upserts are last-write-wins on (symbol, timeframe, timestamp)
  - connectivity failures raise TransientStoreError
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional, Protocol, runtime_checkable

from candlescan.models import Candle, CandleBackup, CandleFeatures, Instrument, Timeframe


@runtime_checkable
class CandleStore(Protocol):

    # ── Candles ──

    def upsert_candles(self, candles: list[Candle]) -> int: ...

    def query_candles(
        self,
        symbol: str,
        timeframe: Timeframe,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Candle]:
        """Candles in [start, end). With *limit*, the most recent rows only."""
        ...

    def delete_candles(
        self,
        symbol: str,
        timeframe: Timeframe,
        before: datetime,
        after: Optional[datetime] = None,
    ) -> int:
        """Delete candles (and their features) with after <= ts < before."""
        ...

    def distinct_symbols(self, timeframe: Timeframe) -> list[str]: ...

    # ── Features ──

    def upsert_features(self, features: list[CandleFeatures]) -> int: ...

    def query_features(
        self,
        symbol: str,
        timeframe: Timeframe,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[CandleFeatures]: ...

    # ── Instruments ──

    def upsert_instruments(self, instruments: list[Instrument]) -> int: ...

    def list_instruments(
        self,
        instrument_type: str = "EQ",
        active_only: bool = True,
        limit: Optional[int] = None,
    ) -> list[Instrument]: ...

    # ── Backups ──

    def save_backup(self, backup: CandleBackup) -> bool:
        """Persist a backup. Returns False when one already exists for its key."""
        ...

    def find_backup(
        self,
        symbol: str,
        source_timeframe: Timeframe,
        target_timeframe: Timeframe,
        day: date,
    ) -> Optional[CandleBackup]: ...

    def purge_backups(self, older_than: datetime) -> int: ...

"""
CandleScan — Candle Provider

Supplies the detector with a single-timeframe candle series. When a symbol
has too little native data at the requested timeframe, lower timeframes are
rolled up on the fly.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

import structlog

from candlescan.db.base import CandleStore
from candlescan.engines.feature_engine import normalize_candles
from candlescan.engines.rollup import rollup_candles
from candlescan.models import Candle, Timeframe

log = structlog.get_logger(__name__)

# Fewer native candles than this triggers on-the-fly conversion
MIN_NATIVE_CANDLES = 30

# Lower timeframes to try, in order, for each target
_FALLBACK_SOURCES: dict[Timeframe, tuple[Timeframe, ...]] = {
    Timeframe.D1: (Timeframe.H1, Timeframe.M15),
    Timeframe.H1: (Timeframe.M15,),
    Timeframe.M15: (),
}


class CandleProvider(Protocol):

    def get_unified_candles(self, symbol: str, timeframe: Timeframe, lookback_days: int) -> list[Candle]:
        """Candles for the last *lookback_days*, oldest first, one timeframe."""
        ...


class StoreCandleProvider:
    """CandleProvider over a CandleStore."""

    def __init__(self, store: CandleStore, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._store = store
        self._clock = clock

    def get_unified_candles(self, symbol: str, timeframe: Timeframe, lookback_days: int) -> list[Candle]:
        tf = Timeframe.parse(timeframe)
        start = self._clock() - timedelta(days=lookback_days)

        native = self._store.query_candles(symbol, tf, start=start)
        if len(native) >= MIN_NATIVE_CANDLES:
            return native

        for source in _FALLBACK_SOURCES[tf]:
            rows = self._store.query_candles(symbol, source, start=start)
            if not rows:
                continue
            converted = rollup_candles(rows, tf)
            log.debug(
                "candle_provider.converted",
                symbol=symbol, source=source.value, target=tf.value,
                native=len(native), converted=len(converted),
            )
            # Stored native candles win over converted ones for the same bucket
            return normalize_candles(converted + native)

        return native

"""
CandleScan — Candle Ingestion

Validates incoming OHLCV rows, computes their features against the stored
history of the same series, and upserts both. A batch that lands before
already stored candles (a backfilled gap) also refreshes the features of
those later candles.
"""

from __future__ import annotations

from typing import Any, Optional, Union

import structlog

from candlescan.db.base import CandleStore
from candlescan.engines.feature_engine import FeatureEngine, normalize_candles, profile_for
from candlescan.models import Candle, Timeframe, build_candle

log = structlog.get_logger(__name__)

# Stored candles loaded as indicator warm-up (covers sma200)
HISTORY_CANDLES = 250


class CandleIngestor:
    """Upsert candles for one symbol/timeframe with freshly computed features."""

    def __init__(self, store: CandleStore, engine: Optional[FeatureEngine] = None):
        self._store = store
        self._engine = engine or FeatureEngine()

    def ingest(
        self,
        symbol: str,
        timeframe: Union[Timeframe, str],
        rows: list[Union[Candle, dict[str, Any]]],
    ) -> dict:
        """Ingest *rows* (Candle objects or OHLCV dicts with a ``timestamp``).

        Raises DataQualityError on the first malformed row; nothing is written
        in that case.
        """
        tf = Timeframe.parse(timeframe)
        symbol = symbol.strip().upper()

        candles = []
        for row in rows:
            if isinstance(row, Candle):
                fields = row.model_dump(include={"timestamp", "open", "high", "low", "close", "volume", "open_interest"})
            else:
                fields = dict(row)
            fields.update(symbol=symbol, timeframe=tf)
            candles.append(build_candle(**fields))
        candles = normalize_candles(candles)

        if not candles:
            return {"symbol": symbol, "timeframe": tf.value, "candles": 0, "features": 0}

        first = candles[0].timestamp
        history = self._store.query_candles(symbol, tf, end=first, limit=HISTORY_CANDLES)
        tail = self._store.query_candles(symbol, tf, start=first)
        # New rows go last so they replace stored rows with the same timestamp
        series = normalize_candles(history + tail + candles)
        refresh_ts = {c.timestamp for c in candles} | {c.timestamp for c in tail}
        features = [f for f in self._engine.compute(series, profile_for(tf)) if f.timestamp in refresh_ts]

        self._store.upsert_candles(candles)
        self._store.upsert_features(features)

        log.info("ingest.complete", symbol=symbol, timeframe=tf.value,
                 candles=len(candles), history=len(history), refreshed=len(features) - len(candles))
        return {"symbol": symbol, "timeframe": tf.value, "candles": len(candles), "features": len(features)}

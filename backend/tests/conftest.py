"""
Shared fixtures — candle series builders for the engine and service tests.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from candlescan.models import Candle, Timeframe

BASE_DAY = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _candle(symbol, timeframe, ts, open_, high, low, close, volume=1000.0, open_interest=None):
    return Candle(
        symbol=symbol, timeframe=timeframe, timestamp=ts,
        open=open_, high=high, low=low, close=close,
        volume=volume, open_interest=open_interest,
    )


def _range_candles(symbol: str, count: int) -> list[Candle]:
    """Daily candles oscillating inside [100, 110]; the extremes touch both edges."""
    out = []
    for i in range(count):
        close = 103.0 if i % 2 == 0 else 107.0
        open_ = 107.0 if i % 2 == 0 else 103.0
        low = 100.0 if i % 10 == 0 else 101.0
        high = 110.0 if i % 10 == 5 else 108.0
        out.append(_candle(symbol, Timeframe.D1, BASE_DAY + timedelta(days=i), open_, high, low, close))
    return out


@pytest.fixture
def make_candle():
    """make_candle(ts, close, symbol='X', timeframe=D1, spread=1.0, volume=1000.0)"""

    def _make(ts, close, symbol="X", timeframe=Timeframe.D1, spread=1.0, volume=1000.0, open_interest=None):
        return _candle(symbol, timeframe, ts, close, close + spread, close - spread, close, volume, open_interest)

    return _make


@pytest.fixture
def daily_series(make_candle):
    """daily_series(closes, symbol='X') → one D1 candle per close starting 2024-01-01."""

    def _series(closes, symbol="X", volume=1000.0):
        return [
            make_candle(BASE_DAY + timedelta(days=i), float(c), symbol=symbol, volume=volume)
            for i, c in enumerate(closes)
        ]

    return _series


@pytest.fixture
def spring_candles():
    """90 daily candles: range [100, 110] then a high-volume spring at index 85.

    Index 85 pierces support (low 97) and closes back above it on 1.6× volume,
    index 86 tests support (low 100.5) and the series ends at 103.
    """

    def _series(symbol="X", spring_volume=1600.0, last_close=103.0):
        candles = _range_candles(symbol, 80)
        for i in range(80, 90):
            ts = BASE_DAY + timedelta(days=i)
            if i == 85:
                candles.append(_candle(symbol, Timeframe.D1, ts, 100.5, 101.5, 97.0, 101.0, spring_volume))
            elif i == 86:
                candles.append(_candle(symbol, Timeframe.D1, ts, 101.0, 103.0, 100.5, 102.0))
            elif i == 89:
                candles.append(_candle(symbol, Timeframe.D1, ts, 102.0, last_close + 0.5, 101.0, last_close))
            else:
                candles.append(_candle(symbol, Timeframe.D1, ts, 104.0, 106.0, 101.0, 105.0))
        return candles

    return _series


@pytest.fixture
def sos_candles():
    """90 daily candles: range [100, 110] then a close above resistance at index 84.

    Index 84 closes at 111 on 1.4× volume, index 85 pulls back while holding
    far above support, and the series ends 5.5% above resistance.
    """

    def _series(symbol="X"):
        candles = _range_candles(symbol, 80)
        for i in range(80, 90):
            ts = BASE_DAY + timedelta(days=i)
            if i < 84:
                candles.append(_candle(symbol, Timeframe.D1, ts, 104.0, 106.0, 101.0, 105.0))
            elif i == 84:
                candles.append(_candle(symbol, Timeframe.D1, ts, 108.0, 112.0, 107.0, 111.0, 1400.0))
            elif i == 85:
                candles.append(_candle(symbol, Timeframe.D1, ts, 111.0, 112.0, 108.0, 111.5))
            else:
                close = 113.0 + (i - 86)
                candles.append(_candle(symbol, Timeframe.D1, ts, close - 1, close + 0.5, close - 1.5, close))
        candles[-1] = _candle(symbol, Timeframe.D1, candles[-1].timestamp, 115.0, 117.0, 114.0, 116.0)
        return candles

    return _series

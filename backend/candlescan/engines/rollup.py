"""
CandleScan — Candle Roll-up

Pure functions that compress fine candles (and their features) into coarser
buckets. Bucket boundaries are UTC: hourly buckets truncate to the hour,
daily buckets truncate to midnight.
"""

from __future__ import annotations

from datetime import datetime
from itertools import groupby
from statistics import fmean
from typing import Any, Optional

from candlescan.engines.feature_engine import IndicatorProfile, normalize_candles
from candlescan.errors import ConfigurationError
from candlescan.models import FEATURE_FIELDS, Candle, CandleFeatures, Timeframe, build_candle

# Feature roll-up rules. Anything not listed is point-in-time: last value wins.
MEAN_FEATURES = frozenset({"atr14", "volume_sma20", "volume_ratio"})
OR_FEATURES = frozenset({"higher_high", "higher_low", "lower_high", "lower_low"})
SUM_FEATURES = frozenset({"money_flow"})


def bucket_start(ts: datetime, target: Timeframe) -> datetime:
    """Start of the *target* bucket containing *ts*."""
    target = Timeframe.parse(target)
    if target is Timeframe.H1:
        return ts.replace(minute=0, second=0, microsecond=0)
    if target is Timeframe.D1:
        return ts.replace(hour=0, minute=0, second=0, microsecond=0)
    raise ConfigurationError(f"Cannot roll up into {target.value}")


def rollup_candles(candles: list[Candle], target: Timeframe) -> list[Candle]:
    """OHLCV roll-up: open first, close last, high max, low min, volume sum.

    Open interest is summed when any source candle carries it.
    """
    ordered = normalize_candles(candles)
    out: list[Candle] = []
    for start, group in groupby(ordered, key=lambda c: bucket_start(c.timestamp, target)):
        rows = list(group)
        ois = [c.open_interest for c in rows if c.open_interest is not None]
        out.append(build_candle(
            symbol=rows[0].symbol,
            timeframe=target,
            timestamp=start,
            open=rows[0].open,
            high=max(c.high for c in rows),
            low=min(c.low for c in rows),
            close=rows[-1].close,
            volume=sum(c.volume for c in rows),
            open_interest=sum(ois) if ois else None,
        ))
    return out


def _roll_value(name: str, values: list[Any]) -> Any:
    present = [v for v in values if v is not None]
    if not present:
        return None
    if name in MEAN_FEATURES:
        return round(fmean(present), 4)
    if name in OR_FEATURES:
        return any(present)
    if name in SUM_FEATURES:
        return round(sum(present), 4)
    return present[-1]


def aggregate_features(features: list[CandleFeatures], target: Timeframe) -> list[CandleFeatures]:
    """Roll feature rows into *target* buckets using the per-indicator rules."""
    ordered = sorted(features, key=lambda f: f.timestamp)
    out: list[CandleFeatures] = []
    for start, group in groupby(ordered, key=lambda f: bucket_start(f.timestamp, target)):
        rows = list(group)
        values = {name: _roll_value(name, [getattr(r, name) for r in rows]) for name in FEATURE_FIELDS}
        out.append(CandleFeatures(symbol=rows[0].symbol, timeframe=target, timestamp=start, **values))
    return out


def merge_features(
    rolled: list[CandleFeatures],
    recomputed: list[CandleFeatures],
    profile: IndicatorProfile,
    timestamps: Optional[list[datetime]] = None,
) -> list[CandleFeatures]:
    """Overlay recomputed values on rolled ones, restricted to *profile*.

    Recomputed non-None values win. Output covers *timestamps* (default: the
    rolled rows' timestamps), oldest first.
    """
    by_ts_rolled = {f.timestamp: f for f in rolled}
    by_ts_fresh = {f.timestamp: f for f in recomputed}
    if timestamps is None:
        timestamps = sorted(by_ts_rolled)

    out: list[CandleFeatures] = []
    for ts in timestamps:
        base = by_ts_rolled.get(ts)
        fresh = by_ts_fresh.get(ts)
        if base is None and fresh is None:
            continue
        values: dict[str, Any] = {}
        for name in profile.indicators:
            value = getattr(fresh, name) if fresh is not None else None
            if value is None and base is not None:
                value = getattr(base, name)
            values[name] = value
        ref = fresh or base
        out.append(CandleFeatures(symbol=ref.symbol, timeframe=profile.timeframe, timestamp=ts, **values))
    return out

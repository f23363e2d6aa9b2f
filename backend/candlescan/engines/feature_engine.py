"""
CandleScan — Feature Engine

Pure domain logic that derives per-candle indicators for a timeframe.
No I/O. Each timeframe has an indicator profile; only the indicators in the
profile are populated, everything else stays None.

Uses the `ta` library for indicator calculations on pandas Series.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import pandas as pd
from ta.momentum import RSIIndicator
from ta.trend import EMAIndicator, MACD, SMAIndicator
from ta.volatility import AverageTrueRange, BollingerBands

from candlescan.errors import DataQualityError
from candlescan.models import FEATURE_FIELDS, Candle, CandleFeatures, Timeframe


# ──────────────────────────────────────────────
# Profiles
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class IndicatorProfile:
    """Which indicators a timeframe carries and how they are parameterised."""
    timeframe: Timeframe
    indicators: frozenset
    trend_period: int
    session_vwap: bool  # reset VWAP at each UTC day

    def __contains__(self, name: str) -> bool:
        return name in self.indicators


_STRUCTURE = ("higher_high", "higher_low", "lower_high", "lower_low")

PROFILES: dict[Timeframe, IndicatorProfile] = {
    Timeframe.M15: IndicatorProfile(
        timeframe=Timeframe.M15,
        indicators=frozenset({
            "sma5", "sma10", "ema9", "rsi14", "atr14", "vwap",
            "volume_sma20", "volume_ratio", "trend_direction",
        }),
        trend_period=4,
        session_vwap=True,
    ),
    Timeframe.H1: IndicatorProfile(
        timeframe=Timeframe.H1,
        indicators=frozenset({
            "sma20", "ema21", "rsi14",
            "macd", "macd_signal", "macd_histogram",
            "bb_upper", "bb_middle", "bb_lower",
            "atr14", "vwap", "volume_sma20", "volume_ratio", "money_flow",
            "trend_direction", *_STRUCTURE,
        }),
        trend_period=7,
        session_vwap=True,
    ),
    Timeframe.D1: IndicatorProfile(
        timeframe=Timeframe.D1,
        indicators=frozenset(FEATURE_FIELDS),
        trend_period=10,
        session_vwap=False,
    ),
}


def profile_for(timeframe: Union[Timeframe, str]) -> IndicatorProfile:
    return PROFILES[Timeframe.parse(timeframe)]


def normalize_candles(candles: list[Candle]) -> list[Candle]:
    """Sort by timestamp and keep the last occurrence of each identity."""
    latest: dict = {}
    for candle in candles:
        latest[candle.key] = candle
    return sorted(latest.values(), key=lambda c: c.timestamp)


# ──────────────────────────────────────────────
# Engine
# ──────────────────────────────────────────────

class FeatureEngine:
    """Indicator derivation for one symbol's candle series.

    Usage:
        engine = FeatureEngine()
        features = engine.compute(candles, Timeframe.H1)
    """

    def compute(
        self,
        candles: list[Candle],
        profile_or_timeframe: Union[IndicatorProfile, Timeframe, str, None] = None,
    ) -> list[CandleFeatures]:
        """Compute features for every candle.

        Args:
            candles: One symbol, one timeframe, strictly increasing timestamps.
            profile_or_timeframe: Indicator profile to apply. Defaults to the
                profile of the candles' own timeframe.

        Returns:
            One CandleFeatures per input candle, in input order.
        """
        if not candles:
            return []
        self._check_series(candles)

        if isinstance(profile_or_timeframe, IndicatorProfile):
            profile = profile_or_timeframe
        else:
            profile = profile_for(profile_or_timeframe or candles[0].timeframe)

        df = self._candles_to_dataframe(candles)
        columns = self._indicator_columns(df, profile)

        symbol = candles[0].symbol
        timeframe = candles[0].timeframe
        out = []
        for i, candle in enumerate(candles):
            values = {name: col[i] for name, col in columns.items()}
            out.append(CandleFeatures(symbol=symbol, timeframe=timeframe, timestamp=candle.timestamp, **values))
        return out

    # ──────────────────────────────────────────────
    # Indicators
    # ──────────────────────────────────────────────

    def _indicator_columns(self, df: pd.DataFrame, profile: IndicatorProfile) -> dict[str, list]:
        n = len(df)
        close, high, low, volume = df["close"], df["high"], df["low"], df["volume"]
        cols: dict[str, list] = {}

        # ── Trend ──
        for name, window in (("sma5", 5), ("sma10", 10), ("sma20", 20), ("sma50", 50), ("sma200", 200)):
            if name in profile:
                cols[name] = self._column(SMAIndicator(close, window=window).sma_indicator(), n, window)
        for name, window in (("ema9", 9), ("ema12", 12), ("ema21", 21), ("ema26", 26)):
            if name in profile:
                cols[name] = self._column(EMAIndicator(close, window=window).ema_indicator(), n, window)

        if {"macd", "macd_signal", "macd_histogram"} & profile.indicators:
            macd_obj = MACD(close, window_slow=26, window_fast=12, window_sign=9)
            cols["macd"] = self._column(macd_obj.macd(), n, 26)
            cols["macd_signal"] = self._column(macd_obj.macd_signal(), n, 34)
            cols["macd_histogram"] = self._column(macd_obj.macd_diff(), n, 34)

        if "trend_direction" in profile:
            cols["trend_direction"] = self._trend_direction(close, profile.trend_period)

        # ── Momentum ──
        if "rsi14" in profile:
            # 14 price changes need 15 closes
            cols["rsi14"] = self._column(RSIIndicator(close, window=14).rsi(), n, 15)

        # ── Volatility ──
        if {"bb_upper", "bb_middle", "bb_lower"} & profile.indicators:
            bb = BollingerBands(close, window=20, window_dev=2)
            cols["bb_upper"] = self._column(bb.bollinger_hband(), n, 20)
            cols["bb_middle"] = self._column(bb.bollinger_mavg(), n, 20)
            cols["bb_lower"] = self._column(bb.bollinger_lband(), n, 20)

        if "atr14" in profile:
            if n >= 14:
                atr = AverageTrueRange(high, low, close, window=14).average_true_range()
                cols["atr14"] = self._column(atr, n, 14)
            else:
                cols["atr14"] = [None] * n

        # ── Volume ──
        typical = (high + low + close) / 3
        if "vwap" in profile:
            cols["vwap"] = self._vwap(df, typical, profile.session_vwap)
        if {"volume_sma20", "volume_ratio"} & profile.indicators:
            vol_sma = volume.rolling(20).mean()
            cols["volume_sma20"] = self._column(vol_sma, n, 20)
            ratio = (volume / vol_sma.where(vol_sma > 0))
            cols["volume_ratio"] = self._column(ratio, n, 20)
        if "money_flow" in profile:
            cols["money_flow"] = self._column(typical * volume, n, 1)

        # ── Support / resistance (floor pivots from the previous candle) ──
        if {"pivot", "support1", "resistance1"} & profile.indicators:
            prev_high, prev_low = high.shift(1), low.shift(1)
            pivot = (prev_high + prev_low + close.shift(1)) / 3
            cols["pivot"] = self._column(pivot, n, 2)
            cols["support1"] = self._column(2 * pivot - prev_high, n, 2)
            cols["resistance1"] = self._column(2 * pivot - prev_low, n, 2)

        # ── Market structure ──
        if set(_STRUCTURE) & profile.indicators:
            cols["higher_high"] = self._flag(high > high.shift(1))
            cols["higher_low"] = self._flag(low > low.shift(1))
            cols["lower_high"] = self._flag(high < high.shift(1))
            cols["lower_low"] = self._flag(low < low.shift(1))

        if "price_position" in profile:
            hi = high.rolling(20).max()
            lo = low.rolling(20).min()
            span = hi - lo
            position = ((close - lo) / span.where(span > 0) * 100).where(span > 0, 50.0)
            cols["price_position"] = self._column(position, n, 20)

        return {name: values for name, values in cols.items() if name in profile}

    @staticmethod
    def _trend_direction(close: pd.Series, period: int) -> list[Optional[str]]:
        change = close.diff(period)
        out: list[Optional[str]] = []
        for i, delta in enumerate(change.tolist()):
            if i < period or delta is None or np.isnan(delta):
                out.append(None)
            elif delta > 0:
                out.append("up")
            elif delta < 0:
                out.append("down")
            else:
                out.append("sideways")
        return out

    def _vwap(self, df: pd.DataFrame, typical: pd.Series, session: bool) -> list[Optional[float]]:
        pv = typical * df["volume"]
        if session:
            day = df["timestamp"].map(lambda ts: ts.date())
            cum_pv = pv.groupby(day).cumsum()
            cum_vol = df["volume"].groupby(day).cumsum()
        else:
            cum_pv = pv.cumsum()
            cum_vol = df["volume"].cumsum()
        return self._column(cum_pv / cum_vol.where(cum_vol > 0), len(df), 1)

    @staticmethod
    def _flag(series: pd.Series) -> list[Optional[bool]]:
        values = [bool(v) for v in series.tolist()]
        if values:
            values[0] = None  # no previous candle
        return values

    @classmethod
    def _column(cls, series: pd.Series, n: int, min_history: int) -> list[Optional[float]]:
        """Series → list, None before *min_history* candles and for NaN/inf."""
        values = series.tolist()
        return [
            cls._safe_round(v) if i >= min_history - 1 else None
            for i, v in enumerate(values[:n])
        ]

    # ──────────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────────

    @staticmethod
    def _check_series(candles: list[Candle]) -> None:
        first = candles[0]
        for prev, cur in zip(candles, candles[1:]):
            if cur.symbol != first.symbol or cur.timeframe != first.timeframe:
                raise DataQualityError(
                    f"Mixed series: {first.symbol}/{first.timeframe.value} and "
                    f"{cur.symbol}/{cur.timeframe.value}"
                )
            if cur.timestamp <= prev.timestamp:
                raise DataQualityError(
                    f"{first.symbol}: timestamps not strictly increasing at {cur.timestamp.isoformat()}"
                )

    @staticmethod
    def _candles_to_dataframe(candles: list[Candle]) -> pd.DataFrame:
        """Convert candles to a positionally indexed DataFrame."""
        return pd.DataFrame({
            "timestamp": [c.timestamp for c in candles],
            "open": [c.open for c in candles],
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
            "volume": [float(c.volume) for c in candles],
        })

    @staticmethod
    def _safe_round(value, decimals: int = 4):
        """Safely round a value, handling None and NaN."""
        if value is None:
            return None
        try:
            if np.isnan(value) or np.isinf(value):
                return None
            return round(float(value), decimals)
        except (TypeError, ValueError):
            return None

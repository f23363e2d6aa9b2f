"""
CandleScan — Compact Feature Encoding

Stored feature rows use 1-4 character keys to keep the JSON column small.
Engines only ever see fully named CandleFeatures; the store encodes on write
and decodes on read. Each timeframe has an allowed key set, so indicators
outside a timeframe's profile are dropped at the storage boundary.
"""

from __future__ import annotations

from typing import Any

from candlescan.models import CandleFeatures, Timeframe

FEATURE_KEYS: dict[str, str] = {
    # Moving averages
    "sma5": "s5",
    "sma10": "s10",
    "sma20": "s20",
    "sma50": "s50",
    "sma200": "s200",
    "ema9": "e9",
    "ema12": "e12",
    "ema21": "e21",
    "ema26": "e26",
    # Momentum / trend
    "rsi14": "r14",
    "macd": "m",
    "macd_signal": "ms",
    "macd_histogram": "mh",
    "trend_direction": "td",
    # Volatility
    "bb_upper": "bbu",
    "bb_middle": "bbm",
    "bb_lower": "bbl",
    "atr14": "atr",
    # Volume
    "vwap": "vw",
    "volume_sma20": "vs",
    "volume_ratio": "vr",
    "money_flow": "mf",
    # Support / resistance
    "pivot": "piv",
    "support1": "s1",
    "resistance1": "r1",
    # Market structure
    "higher_high": "hh",
    "higher_low": "hl",
    "lower_high": "lh",
    "lower_low": "ll",
    "price_position": "pp",
}

REVERSE_FEATURE_KEYS: dict[str, str] = {short: full for full, short in FEATURE_KEYS.items()}


def allowed_keys(timeframe: Timeframe) -> frozenset[str]:
    """Short keys a timeframe may persist (derived from its indicator profile)."""
    from candlescan.engines.feature_engine import profile_for

    return frozenset(FEATURE_KEYS[name] for name in profile_for(timeframe).indicators)


def encode_features(features: CandleFeatures) -> dict[str, Any]:
    """Full-name indicators → compact dict restricted to the timeframe profile."""
    allowed = allowed_keys(features.timeframe)
    compact: dict[str, Any] = {}
    for name, value in features.indicators().items():
        short = FEATURE_KEYS[name]
        if short in allowed:
            compact[short] = value
    return compact


def decode_features(symbol: str, timeframe: Timeframe | str, timestamp, compact: dict[str, Any]) -> CandleFeatures:
    """Compact dict → CandleFeatures. Unknown short keys are ignored."""
    full = {
        REVERSE_FEATURE_KEYS[short]: value
        for short, value in compact.items()
        if short in REVERSE_FEATURE_KEYS
    }
    return CandleFeatures(symbol=symbol, timeframe=timeframe, timestamp=timestamp, **full)

"""
CandleScan — Accumulation Detector

Pure pattern detection over a unified candle series. Two sub-patterns of a
consolidation range are scored:

  Phase C (spring)            false breakdown below support, then recovery
  Phase D (sign of strength)  close above resistance

The range is measured over the 60 most recent candles excluding the final
10-candle signal window, so the signals being scored cannot move the levels
they are scored against.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from candlescan.engines.candle_provider import CandleProvider
from candlescan.models import (
    AccumulationConfig,
    AnalysisFlags,
    Candle,
    ScanMatch,
    ScanPhase,
)

log = structlog.get_logger(__name__)

RANGE_WINDOW = 60
SIGNAL_WINDOW = 10
PHASE_C_WINDOW = 30
PHASE_D_WINDOW = 20


@dataclass(frozen=True)
class TradingRange:
    support: float
    resistance: float
    avg_volume: float

    @property
    def width_percent(self) -> float:
        return (self.resistance - self.support) / self.support * 100


def identify_range(candles: list[Candle], config: AccumulationConfig) -> Optional[TradingRange]:
    """Consolidation zone before the signal window, or None if out of band."""
    if len(candles) < 30:
        return None
    window = candles[-RANGE_WINDOW:-SIGNAL_WINDOW]
    support = min(c.low for c in window)
    resistance = max(c.high for c in window)
    trading_range = TradingRange(
        support=support,
        resistance=resistance,
        avg_volume=sum(c.volume for c in window) / len(window),
    )
    if not config.min_range_percent <= trading_range.width_percent <= config.max_range_percent:
        return None
    return trading_range


def detect_phase_c(candles: list[Candle], trading_range: TradingRange, config: AccumulationConfig) -> Optional[ScanMatch]:
    """Spring: low pierces support by at least 2% and the close recovers above it."""
    recent = candles[-PHASE_C_WINDOW:]
    last = recent[-1]
    support = trading_range.support

    spring = test = volume_increase = False
    # last 10 of the window, excluding the final 2
    for i in range(len(recent) - SIGNAL_WINDOW, len(recent) - 2):
        candle = recent[i]
        if candle.low < support * 0.98 and candle.close > support:
            spring = True
            following = recent[i + 1]
            if following.close > support and following.low > support * 0.99:
                test = True
            if candle.volume > trading_range.avg_volume * 1.5:
                volume_increase = True

    if not spring:
        return None

    confidence = 50
    if test:
        confidence += 20
    if volume_increase:
        confidence += 15
    if last.close >= support * 1.02:
        confidence += 15

    return _match(
        last, ScanPhase.SPRING, confidence, trading_range, config,
        price_action=f"Spring at {support:.2f}",
        analysis=AnalysisFlags(spring=True, test=test, volume_increase=volume_increase),
    )


def detect_phase_d(candles: list[Candle], trading_range: TradingRange, config: AccumulationConfig) -> Optional[ScanMatch]:
    """Sign of strength: a close above resistance, optionally with a backup."""
    recent = candles[-PHASE_D_WINDOW:]
    last = recent[-1]
    support, resistance = trading_range.support, trading_range.resistance

    sos = backup = volume_increase = False
    for i in range(len(recent) - SIGNAL_WINDOW, len(recent)):
        candle = recent[i]
        if candle.close > resistance:
            sos = True
            if candle.volume > trading_range.avg_volume * 1.3:
                volume_increase = True
        if sos and i > 0:
            # pullback after a close above resistance that holds above support
            if recent[i - 1].close > resistance and candle.low > support * 1.02:
                backup = True

    if not sos:
        return None

    confidence = 60
    if volume_increase:
        confidence += 20
    if backup:
        confidence += 10
    if last.close >= resistance * 1.05:
        confidence += 10

    return _match(
        last, ScanPhase.SIGN_OF_STRENGTH, confidence, trading_range, config,
        price_action=f"SOS at {resistance:.2f}",
        analysis=AnalysisFlags(sos=True, backup=backup, volume_increase=volume_increase, range_breakout=True),
    )


def _match(
    last: Candle,
    phase: ScanPhase,
    confidence: int,
    trading_range: TradingRange,
    config: AccumulationConfig,
    price_action: str,
    analysis: AnalysisFlags,
) -> ScanMatch:
    return ScanMatch(
        symbol=last.symbol,
        phase=phase,
        confidence=min(confidence, 100),
        support_level=trading_range.support,
        resistance_level=trading_range.resistance,
        last_price=last.close,
        volume=last.volume,
        price_action=price_action,
        analysis=analysis,
        timestamp=last.timestamp,
        timeframe=config.timeframe,
    )


def detect(candles: list[Candle], config: Optional[AccumulationConfig] = None) -> Optional[ScanMatch]:
    """Score *candles* (oldest first) for accumulation.

    Phase C is evaluated first and wins when it meets ``min_confidence``;
    otherwise Phase D is evaluated. Returns None when neither qualifies.
    """
    config = config or AccumulationConfig()
    if len(candles) < config.min_candles:
        return None

    trading_range = identify_range(candles, config)
    if trading_range is None:
        return None

    phase_c = detect_phase_c(candles, trading_range, config)
    if phase_c is not None and phase_c.confidence >= config.min_confidence:
        return phase_c

    phase_d = detect_phase_d(candles, trading_range, config)
    if phase_d is not None and phase_d.confidence >= config.min_confidence:
        return phase_d

    return None


class AccumulationScanner:
    """Fetch a symbol's unified candles and run the detector.

    Usage:
        scanner = AccumulationScanner(provider, AccumulationConfig(min_confidence=80))
        match = scanner.apply("RELIANCE")
    """

    def __init__(self, provider: CandleProvider, config: Optional[AccumulationConfig] = None):
        self._provider = provider
        self.config = config or AccumulationConfig()

    def apply(self, symbol: str) -> Optional[ScanMatch]:
        candles = self._provider.get_unified_candles(
            symbol, self.config.timeframe, self.config.lookback_days,
        )
        if len(candles) < self.config.min_candles:
            log.debug("accumulation.not_enough_candles", symbol=symbol, candles=len(candles))
            return None
        return detect(candles, self.config)

"""
CandleScan — Pydantic Models

All domain records for the application. Stores persist these, engines
compute over these, the service layer and API routes serialize these.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    computed_field,
    field_validator,
    model_validator,
)

from candlescan.errors import ConfigurationError, DataQualityError


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class Timeframe(str, Enum):
    """Stored candle granularities, finest first."""
    M15 = "15min"
    H1 = "1hour"
    D1 = "1day"

    @classmethod
    def parse(cls, value: "str | Timeframe") -> "Timeframe":
        """Return the Timeframe for *value* or raise ConfigurationError."""
        if isinstance(value, Timeframe):
            return value
        try:
            return cls(str(value).strip())
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise ConfigurationError(f"Unknown timeframe '{value}'. Expected one of: {valid}")


# Supported roll-up pairs: source → target
ROLLUP_PAIRS: dict[Timeframe, Timeframe] = {
    Timeframe.M15: Timeframe.H1,
    Timeframe.H1: Timeframe.D1,
}


def check_rollup_pair(source: "str | Timeframe", target: "str | Timeframe") -> tuple[Timeframe, Timeframe]:
    """Validate a source→target roll-up pair."""
    src = Timeframe.parse(source)
    tgt = Timeframe.parse(target)
    if ROLLUP_PAIRS.get(src) != tgt:
        raise ConfigurationError(f"Invalid conversion: {src.value} to {tgt.value}")
    return src, tgt


class ScanPhase(str, Enum):
    """Accumulation phases reported by the scanner."""
    SPRING = "C"
    SIGN_OF_STRENGTH = "D"


class ScanType(str, Enum):
    """Cacheable scan families."""
    ACCUMULATION = "accumulation"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: "str | ScanType") -> "ScanType":
        if isinstance(value, ScanType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(f"Unknown scan type '{value}'")


def ensure_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ──────────────────────────────────────────────
# Market Data Models
# ──────────────────────────────────────────────

class Candle(BaseModel):
    """Single OHLCV candle, identified by (symbol, timeframe, timestamp)."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    timeframe: Timeframe
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    open_interest: Optional[float] = None

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, v: str) -> str:
        symbol = v.strip().upper()
        if not symbol:
            raise DataQualityError("Candle symbol cannot be empty")
        return symbol

    @field_validator("timestamp")
    @classmethod
    def _utc_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def _check_ohlc(self) -> "Candle":
        where = f"{self.symbol} {self.timeframe.value} {self.timestamp.isoformat()}"
        if min(self.open, self.high, self.low, self.close) <= 0:
            raise DataQualityError(f"{where}: prices must be positive")
        if self.high < max(self.open, self.close):
            raise DataQualityError(f"{where}: high {self.high} below open/close")
        if self.low > min(self.open, self.close):
            raise DataQualityError(f"{where}: low {self.low} above open/close")
        if self.volume < 0:
            raise DataQualityError(f"{where}: negative volume")
        if self.open_interest is not None and self.open_interest < 0:
            raise DataQualityError(f"{where}: negative open interest")
        return self

    @property
    def key(self) -> tuple[str, str, datetime]:
        return (self.symbol, self.timeframe.value, self.timestamp)

    # Derived metrics

    @computed_field
    @property
    def price_change(self) -> float:
        return self.close - self.open

    @computed_field
    @property
    def price_change_percent(self) -> float:
        return (self.close - self.open) / self.open * 100

    @computed_field
    @property
    def range(self) -> float:
        return self.high - self.low

    @computed_field
    @property
    def body_size(self) -> float:
        return abs(self.close - self.open)

    @computed_field
    @property
    def upper_shadow(self) -> float:
        return self.high - max(self.open, self.close)

    @computed_field
    @property
    def lower_shadow(self) -> float:
        return min(self.open, self.close) - self.low


def build_candle(**fields: Any) -> Candle:
    """Construct a Candle, reporting any malformed field as DataQualityError."""
    try:
        return Candle(**fields)
    except ValidationError as exc:
        raise DataQualityError(f"Malformed candle row: {exc.errors()[0].get('msg', exc)}") from exc


class CandleFeatures(BaseModel):
    """Indicator values for one candle. None means unavailable."""

    symbol: str
    timeframe: Timeframe
    timestamp: datetime

    # ── Moving averages ──
    sma5: Optional[float] = None
    sma10: Optional[float] = None
    sma20: Optional[float] = None
    sma50: Optional[float] = None
    sma200: Optional[float] = None
    ema9: Optional[float] = None
    ema12: Optional[float] = None
    ema21: Optional[float] = None
    ema26: Optional[float] = None

    # ── Momentum / trend ──
    rsi14: Optional[float] = None
    macd: Optional[float] = None
    macd_signal: Optional[float] = None
    macd_histogram: Optional[float] = None
    trend_direction: Optional[str] = None  # 'up' | 'down' | 'sideways'

    # ── Volatility ──
    bb_upper: Optional[float] = None
    bb_middle: Optional[float] = None
    bb_lower: Optional[float] = None
    atr14: Optional[float] = None

    # ── Volume ──
    vwap: Optional[float] = None
    volume_sma20: Optional[float] = None
    volume_ratio: Optional[float] = None
    money_flow: Optional[float] = None

    # ── Support / resistance ──
    pivot: Optional[float] = None
    support1: Optional[float] = None
    resistance1: Optional[float] = None

    # ── Market structure ──
    higher_high: Optional[bool] = None
    higher_low: Optional[bool] = None
    lower_high: Optional[bool] = None
    lower_low: Optional[bool] = None
    price_position: Optional[float] = None

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("timestamp")
    @classmethod
    def _utc_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def key(self) -> tuple[str, str, datetime]:
        return (self.symbol, self.timeframe.value, self.timestamp)

    def indicators(self) -> dict[str, Any]:
        """Populated indicators only, keyed by full name."""
        return {
            name: value
            for name, value in self.model_dump(include=set(FEATURE_FIELDS)).items()
            if value is not None
        }


FEATURE_FIELDS: tuple[str, ...] = tuple(
    name for name in CandleFeatures.model_fields if name not in ("symbol", "timeframe", "timestamp")
)


class CandleBackup(BaseModel):
    """Source rows consumed by one roll-up of a symbol-day. Write-once."""

    symbol: str
    source_timeframe: Timeframe
    target_timeframe: Timeframe
    day: date
    candles: list[Candle] = []
    features: list[CandleFeatures] = []
    compression_ratio: float
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> tuple[str, str, str, date]:
        return (self.symbol, self.source_timeframe.value, self.target_timeframe.value, self.day)


class Instrument(BaseModel):
    """Tradeable instrument in the scan universe."""
    symbol: str
    name: str = ""
    exchange: str = "NSE"
    instrument_type: str = "EQ"
    is_active: bool = True

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()


# ──────────────────────────────────────────────
# Scanner Models
# ──────────────────────────────────────────────

class AccumulationConfig(BaseModel):
    """Tunables for the accumulation (spring / sign-of-strength) detector."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    min_confidence: int = Field(default=70, ge=0, le=100)
    timeframe: Timeframe = Timeframe.D1
    lookback_days: int = Field(default=90, ge=1)
    min_range_percent: float = Field(default=5.0, ge=0)
    max_range_percent: float = Field(default=30.0, gt=0)
    min_candles: int = Field(default=50, ge=30)

    @model_validator(mode="after")
    def _check_band(self) -> "AccumulationConfig":
        if self.min_range_percent >= self.max_range_percent:
            raise ValueError("min_range_percent must be below max_range_percent")
        return self

    @classmethod
    def from_filters(cls, filters: dict) -> "AccumulationConfig":
        """Build from a user-supplied filter dict; bad input is a ConfigurationError."""
        try:
            return cls(**filters)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid accumulation filters: {exc.errors()[0].get('msg', exc)}") from exc
        except TypeError as exc:
            raise ConfigurationError(f"Invalid accumulation filters: {exc}") from exc


class AnalysisFlags(BaseModel):
    """Which corroborating signals contributed to a match."""
    spring: bool = False
    test: bool = False
    sos: bool = False
    backup: bool = False
    volume_increase: bool = False
    range_breakout: bool = False


class ScanMatch(BaseModel):
    """One instrument that qualified for an accumulation phase."""
    symbol: str
    phase: ScanPhase
    confidence: int = Field(ge=0, le=100)
    support_level: float
    resistance_level: float
    last_price: float
    volume: float
    price_action: str
    analysis: AnalysisFlags = Field(default_factory=AnalysisFlags)
    timestamp: datetime
    timeframe: Timeframe


class ScanConfig(BaseModel):
    """Universe scan request."""
    accumulation: AccumulationConfig = Field(default_factory=AccumulationConfig)
    phases: Optional[list[ScanPhase]] = None
    universe_limit: int = Field(default=100, ge=1)
    batch_size: int = Field(default=10, ge=1)

    def cache_filters(self) -> dict:
        """Filters that identify this scan's result set in the cache."""
        filters = self.accumulation.model_dump(mode="json")
        filters["phases"] = sorted(p.value for p in self.phases) if self.phases else None
        filters["universe_limit"] = self.universe_limit
        return filters


class ScanReport(BaseModel):
    """Outcome of one universe scan."""
    scanned_count: int
    matches: list[ScanMatch] = []
    duration_ms: float
    started_at: datetime

    @property
    def matched_count(self) -> int:
        return len(self.matches)


# ──────────────────────────────────────────────
# Cache Models
# ──────────────────────────────────────────────

class CacheMetadata(BaseModel):
    total_stocks: int = 0
    matched_stocks: int = 0
    execution_time_ms: float = 0.0
    data_date: datetime
    last_updated: Optional[datetime] = None


class CacheEntry(BaseModel):
    """Cached scan result set, addressed by a content hash."""
    cache_key: str
    scan_type: ScanType
    filters: dict
    timeframe: Timeframe
    results: list[dict] = []
    metadata: CacheMetadata
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def _utc_expiry(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > ensure_utc(now)


# ──────────────────────────────────────────────
# Roll-up Models
# ──────────────────────────────────────────────

class ConversionStatus(str, Enum):
    DONE = "done"           # converted in this run
    NOTHING_TO_DO = "nothing_to_do"


class DayConversion(BaseModel):
    """Result of rolling up one symbol-day."""
    symbol: str
    source_timeframe: Timeframe
    target_timeframe: Timeframe
    day: date
    status: ConversionStatus
    source_rows: int = 0
    target_rows: int = 0


class AggregationSummary(BaseModel):
    """Totals for a roll-up run across many symbols."""
    source_timeframe: Timeframe
    target_timeframe: Timeframe
    day: date
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = []
    duration_ms: float = 0.0

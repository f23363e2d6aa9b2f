"""
CandleScan — Error Taxonomy

Three failure families, each with its own handling rule:

    TransientStoreError  → logged; the next scheduled run retries
    DataQualityError     → the affected symbol/day is skipped
    ConfigurationError   → rejected synchronously to the caller
"""

from __future__ import annotations


class CandleScanError(Exception):
    """Base class for all candlescan errors."""


class TransientStoreError(CandleScanError):
    """Store or cache unreachable, timed out, or dropped the connection."""

    def __init__(self, operation: str, detail: str = ""):
        self.operation = operation
        self.detail = detail
        msg = f"Store operation '{operation}' failed"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class DataQualityError(CandleScanError):
    """Malformed OHLC rows, unordered input, or not enough history."""


class ConfigurationError(CandleScanError):
    """Invalid filter, unknown timeframe or scan type, unsupported roll-up pair."""

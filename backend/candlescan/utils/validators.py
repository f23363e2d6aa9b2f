"""
CandleScan — Input Validators

Reusable validation helpers for symbols, roll-up days and symbol lists.
Raise ConfigurationError on invalid input so callers map it to a 400.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Iterable, Optional, Union

from candlescan.errors import ConfigurationError

# NSE trading symbols: letters, digits, '&' and '-' (e.g. M&M, BAJAJ-AUTO)
_SYMBOL_RE = re.compile(r"^[A-Z0-9][A-Z0-9&\-]{0,19}$")


def validate_symbol(raw: str) -> str:
    """Clean and validate a trading symbol.

    >>> validate_symbol(' reliance ')
    'RELIANCE'
    >>> validate_symbol('m&m')
    'M&M'
    """
    symbol = (raw or "").strip().upper()
    if not symbol:
        raise ConfigurationError("Symbol cannot be empty")
    if not _SYMBOL_RE.match(symbol):
        raise ConfigurationError(
            f"Invalid symbol '{symbol}'. Expected up to 20 letters, digits, '&' or '-'"
        )
    return symbol


def validate_symbols(raw: Optional[Iterable[str]]) -> Optional[list[str]]:
    """Validate a symbol list, dropping duplicates. None means 'all symbols'."""
    if raw is None:
        return None
    seen: dict[str, None] = {}
    for item in raw:
        seen[validate_symbol(item)] = None
    return list(seen)


def validate_day(raw: Union[str, date, None], today: Optional[date] = None) -> Optional[date]:
    """Parse an ISO day for a roll-up. Today and future days are rejected.

    The current UTC day is still receiving candles, so it cannot be rolled up.
    """
    if raw is None:
        return None
    if isinstance(raw, datetime):
        day = raw.date()
    elif isinstance(raw, date):
        day = raw
    else:
        try:
            day = date.fromisoformat(raw.strip())
        except ValueError:
            raise ConfigurationError(f"Cannot parse day '{raw}'. Expected YYYY-MM-DD.")

    today = today or datetime.now(timezone.utc).date()
    if day >= today:
        raise ConfigurationError(f"Day {day.isoformat()} is not complete yet")
    return day

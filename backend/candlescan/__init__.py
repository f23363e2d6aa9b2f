"""
CandleScan — multi-timeframe candle roll-up and accumulation scanner.
"""

__version__ = "1.0.0"

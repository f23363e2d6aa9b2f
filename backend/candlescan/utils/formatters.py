"""
CandleScan — Shared Formatters

Human-readable formatting for prices, volumes and scan reports. Used by the
command-line runner and in log-friendly summaries.
"""

from __future__ import annotations

import math

from candlescan.models import ScanPhase, ScanReport


def format_price(value: float, decimals: int = 2, symbol: str = "₹") -> str:
    """Format a price with currency symbol.

    >>> format_price(1234.5)
    '₹1,234.50'
    """
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.{decimals}f}"


_SUFFIXES = [
    (10_000_000, "Cr"),
    (100_000, "L"),
    (1_000, "K"),
]


def format_volume(value: float | int, decimals: int = 2) -> str:
    """Abbreviate volumes with Indian-style K / L / Cr suffixes.

    >>> format_volume(2_500_000)
    '25.00L'
    >>> format_volume(999)
    '999'
    """
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "N/A"

    for threshold, suffix in _SUFFIXES:
        if abs(value) >= threshold:
            return f"{value / threshold:.{decimals}f}{suffix}"
    return f"{value:.0f}"


def format_scan_report(report: ScanReport, width: int = 80) -> str:
    """Multi-line text summary of a scan, matches grouped by phase."""
    rule = "=" * width
    lines = [
        rule,
        "SCREENER RESULTS",
        rule,
        f"Timestamp: {report.started_at.isoformat()}",
        f"Total Scanned: {report.scanned_count}",
        f"Total Matched: {report.matched_count}",
        f"Duration: {report.duration_ms / 1000:.2f}s",
        "",
    ]

    if report.matches:
        lines.append(f"Accumulation: {report.matched_count} matches")
        lines.append("-" * width)

        springs = [m for m in report.matches if m.phase is ScanPhase.SPRING]
        strength = [m for m in report.matches if m.phase is ScanPhase.SIGN_OF_STRENGTH]

        if springs:
            lines.append(f"Phase C (Spring): {len(springs)} stocks")
            for m in springs:
                lines.append(
                    f"  • {m.symbol:<25} | Price: {format_price(m.last_price):>10} | "
                    f"Support: {format_price(m.support_level):>10} | Confidence: {m.confidence}%"
                )
        if strength:
            lines.append(f"Phase D (SOS): {len(strength)} stocks")
            for m in strength:
                lines.append(
                    f"  • {m.symbol:<25} | Price: {format_price(m.last_price):>10} | "
                    f"Resistance: {format_price(m.resistance_level):>10} | Confidence: {m.confidence}%"
                )

    lines.append(rule)
    return "\n".join(lines)

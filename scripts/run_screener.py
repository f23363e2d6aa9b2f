#!/usr/bin/env python3
"""
CandleScan — Command-line Screener

Runs an accumulation scan over the instrument universe and prints a text
report, or rolls one day of candles up a timeframe.

Usage:
    python scripts/run_screener.py scan --timeframe 1day --min-confidence 80
    python scripts/run_screener.py scan --phase C --limit 500 --cached
    python scripts/run_screener.py rollup --source 15min --target 1hour --day 2024-01-02
"""

from __future__ import annotations

import argparse
import sys

import structlog

log = structlog.get_logger("run_screener")


def run_scan(args) -> int:
    from candlescan.container import get_service
    from candlescan.models import ScanMatch, ScanReport
    from candlescan.utils.formatters import format_scan_report

    service = get_service()
    service.universe_limit = args.limit
    service.batch_size = args.batch_size
    config = service.scan_config(
        timeframe=args.timeframe,
        min_confidence=args.min_confidence,
        phase=args.phase,
        lookback_days=args.lookback_days,
    )

    if args.cached:
        entry, cached = service.run_cached_scan(config)
        log.info("scan.cache", cached=cached, key=entry.cache_key)
        report = ScanReport(
            scanned_count=entry.metadata.total_stocks,
            matches=[ScanMatch.model_validate(r) for r in entry.results],
            duration_ms=entry.metadata.execution_time_ms,
            started_at=entry.metadata.data_date,
        )
    else:
        report = service.run_scan(config)

    print(format_scan_report(report))
    return 0


def run_rollup(args) -> int:
    from candlescan.container import get_service
    from candlescan.utils.validators import validate_day, validate_symbols

    summary = get_service().trigger_aggregation(
        validate_symbols(args.symbols),
        args.source,
        args.target,
        validate_day(args.day),
    )
    log.info(
        "rollup.complete",
        day=str(summary.day),
        succeeded=summary.succeeded,
        skipped=summary.skipped,
        failed=summary.failed,
    )
    for error in summary.errors:
        log.warning("rollup.symbol_failed", detail=error)
    return 1 if summary.failed else 0


def main():
    parser = argparse.ArgumentParser(description="CandleScan accumulation screener")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Scan the universe for accumulation patterns")
    scan.add_argument("--timeframe", default="1day", choices=["15min", "1hour", "1day"])
    scan.add_argument("--min-confidence", type=int, default=None)
    scan.add_argument("--phase", choices=["C", "D"], default=None, help="Only report this phase")
    scan.add_argument("--lookback-days", type=int, default=None)
    scan.add_argument("--limit", type=int, default=100, help="Universe size (default: 100)")
    scan.add_argument("--batch-size", type=int, default=10)
    scan.add_argument("--cached", action="store_true", help="Serve from / populate the result cache")
    scan.set_defaults(handler=run_scan)

    rollup = sub.add_parser("rollup", help="Roll one UTC day up a timeframe")
    rollup.add_argument("--source", required=True, choices=["15min", "1hour"])
    rollup.add_argument("--target", required=True, choices=["1hour", "1day"])
    rollup.add_argument("--day", default=None, help="YYYY-MM-DD (default: configured age)")
    rollup.add_argument("--symbols", nargs="+", default=None, help="Symbols (default: all stored)")
    rollup.set_defaults(handler=run_rollup)

    args = parser.parse_args()
    sys.exit(args.handler(args))


if __name__ == "__main__":
    main()

"""CandleScan — Shared utilities."""

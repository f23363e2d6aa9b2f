"""CandleScan — Celery tasks."""

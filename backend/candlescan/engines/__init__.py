"""CandleScan — Domain engines (pure computation plus store-backed pipelines)."""

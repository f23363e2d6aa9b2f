"""
Tests for the service layer: scan config building, cache-through scans,
the pre-compute sweep, ingestion and service wiring.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest


def _report(matches=()):
    from candlescan.models import ScanReport

    return ScanReport(
        scanned_count=5, matches=list(matches), duration_ms=12.5,
        started_at=datetime(2024, 1, 2, tzinfo=timezone.utc),
    )


def _service(orchestrator=None, store=None):
    from candlescan.cache import MemoryDocumentCache
    from candlescan.db.memory_store import MemoryCandleStore
    from candlescan.engines.result_cache import ResultCache
    from candlescan.services import CandleScanService

    if orchestrator is None:
        orchestrator = MagicMock()
        orchestrator.scan.return_value = _report()
    return CandleScanService(
        store or MemoryCandleStore(),
        ResultCache(MemoryDocumentCache()),
        orchestrator=orchestrator,
    )


# ════════════════════════════════════════════════
# Scan config
# ════════════════════════════════════════════════


class TestBuildScanConfig:

    def test_phase_and_timeframe(self):
        from candlescan.models import ScanPhase, Timeframe
        from candlescan.services import build_scan_config

        config = build_scan_config("1hour", 80, "c")
        assert config.accumulation.timeframe is Timeframe.H1
        assert config.accumulation.min_confidence == 80
        assert config.phases == [ScanPhase.SPRING]

    def test_no_phase(self):
        from candlescan.services import build_scan_config

        assert build_scan_config().phases is None

    def test_unknown_phase(self):
        from candlescan.errors import ConfigurationError
        from candlescan.services import build_scan_config

        with pytest.raises(ConfigurationError, match="Unknown phase"):
            build_scan_config(phase="E")

    def test_bad_confidence(self):
        from candlescan.errors import ConfigurationError
        from candlescan.services import build_scan_config

        with pytest.raises(ConfigurationError):
            build_scan_config(min_confidence=101)


# ════════════════════════════════════════════════
# Cache-through scans
# ════════════════════════════════════════════════


class TestCachedScan:

    def test_miss_then_hit(self):
        service = _service()
        config = service.scan_config("1day", 70)

        entry, cached = service.run_cached_scan(config)
        assert cached is False
        assert entry.metadata.total_stocks == 5
        assert entry.metadata.execution_time_ms == 12.5

        again, cached = service.run_cached_scan(config)
        assert cached is True
        assert again.cache_key == entry.cache_key
        service.orchestrator.scan.assert_called_once()

    def test_force_refresh_rescans(self):
        service = _service()
        config = service.scan_config()
        service.run_cached_scan(config)
        service.run_cached_scan(config, force_refresh=True)
        assert service.orchestrator.scan.call_count == 2

    def test_different_filters_different_entries(self):
        service = _service()
        service.run_cached_scan(service.scan_config(min_confidence=70))
        _, cached = service.run_cached_scan(service.scan_config(min_confidence=80))
        assert cached is False

    def test_scan_results_cached(self, spring_candles):
        from candlescan.engines.accumulation import detect

        orchestrator = MagicMock()
        orchestrator.scan.return_value = _report([detect(spring_candles("TCS"))])
        service = _service(orchestrator)

        entry, _ = service.run_cached_scan(service.scan_config())
        assert entry.results[0]["symbol"] == "TCS"
        assert entry.metadata.matched_stocks == 1


# ════════════════════════════════════════════════
# Pre-compute
# ════════════════════════════════════════════════


class TestPrecompute:

    def test_full_grid(self):
        service = _service()
        summary = service.precompute()

        assert summary["cells"] == 18
        assert summary["stored"] == 18
        assert summary["failed"] == 0
        assert service.get_cache_stats()["total_entries"] == 18

    def test_failing_cell_does_not_stop_sweep(self):
        orchestrator = MagicMock()

        def scan(config):
            if config.accumulation.timeframe.value == "1hour" and config.accumulation.min_confidence == 70:
                raise RuntimeError("store timeout")
            return _report()

        orchestrator.scan.side_effect = scan
        service = _service(orchestrator)

        summary = service.precompute()
        assert summary["cells"] == 18
        assert summary["failed"] == 2      # both phases of the failing cell
        assert summary["stored"] == 16
        assert all("1hour/70" in e for e in summary["errors"])

    def test_precomputed_entry_serves_lookup(self):
        service = _service()
        service.precompute(timeframes=["1day"], confidences=[70], phases=["C"])

        _, cached = service.run_cached_scan(service.scan_config("1day", 70, "C"))
        assert cached is True

    def test_cache_write_failure_counted(self):
        from candlescan.engines.result_cache import ResultCache
        from candlescan.errors import TransientStoreError

        backend = MagicMock()
        backend.upsert.side_effect = TransientStoreError("cache.upsert", "down")
        service = _service()
        service.result_cache = ResultCache(backend)

        summary = service.precompute(timeframes=["1day"], confidences=[70], phases=["C", "D"])
        assert summary["stored"] == 0
        assert summary["failed"] == 2


# ════════════════════════════════════════════════
# Data pipeline
# ════════════════════════════════════════════════


class TestIngest:

    def _rows(self, start, count):
        return [
            {
                "timestamp": (start + timedelta(days=i)).isoformat(),
                "open": 100.0 + i, "high": 101.0 + i, "low": 99.0 + i, "close": 100.0 + i,
                "volume": 1000,
            }
            for i in range(count)
        ]

    def test_ingest_stores_candles_and_features(self):
        from candlescan.models import Timeframe

        service = _service()
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        result = service.ingest_candles("tcs", "1day", self._rows(start, 30))

        assert result == {"symbol": "TCS", "timeframe": "1day", "candles": 30, "features": 30}
        assert len(service.store.query_candles("TCS", Timeframe.D1)) == 30
        assert service.store.query_features("TCS", Timeframe.D1)[-1].sma5 == 127.0

    def test_ingest_uses_stored_history(self):
        from candlescan.models import Timeframe

        service = _service()
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        service.ingest_candles("TCS", "1day", self._rows(start, 10))
        service.ingest_candles("TCS", "1day", [self._rows(start, 11)[-1]])

        latest = service.store.query_features("TCS", Timeframe.D1)[-1]
        assert latest.sma5 == 108.0

    def test_backfill_refreshes_later_features(self):
        from candlescan.models import Timeframe

        service = _service()
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        rows = self._rows(start, 10)
        service.ingest_candles("TCS", "1day", rows[5:])
        assert service.store.query_features("TCS", Timeframe.D1)[3].sma5 is None

        result = service.ingest_candles("TCS", "1day", rows[:5])
        assert result["features"] == 10

        features = service.store.query_features("TCS", Timeframe.D1)
        assert len(features) == 10
        assert features[8].sma5 == 106.0
        assert features[9].sma5 == 107.0

    def test_malformed_row_writes_nothing(self):
        from candlescan.errors import DataQualityError
        from candlescan.models import Timeframe

        service = _service()
        rows = self._rows(datetime(2024, 1, 1, tzinfo=timezone.utc), 3)
        rows[1]["high"] = 50.0

        with pytest.raises(DataQualityError):
            service.ingest_candles("TCS", "1day", rows)
        assert service.store.query_candles("TCS", Timeframe.D1) == []

    def test_trigger_aggregation_validates_pair(self):
        from candlescan.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            _service().trigger_aggregation(None, "15min", "1day")


# ════════════════════════════════════════════════
# Wiring
# ════════════════════════════════════════════════


class TestContainer:

    def test_memory_backends(self):
        from candlescan.cache import MemoryDocumentCache
        from candlescan.config import Settings
        from candlescan.container import build_service
        from candlescan.db.memory_store import MemoryCandleStore

        service = build_service(Settings(store_backend="memory", cache_backend="memory", scan_batch_size=4))
        assert isinstance(service.store, MemoryCandleStore)
        assert isinstance(service.result_cache._backend, MemoryDocumentCache)
        assert service.batch_size == 4
        assert service.scan_config().batch_size == 4

    def test_postgres_backend_is_lazy(self):
        from candlescan.config import Settings
        from candlescan.container import build_service
        from candlescan.db.sql_store import PostgresCandleStore

        service = build_service(Settings(store_backend="postgres", cache_backend="memory",
                                         database_url="postgresql://nowhere/db"))
        assert isinstance(service.store, PostgresCandleStore)

    def test_min_confidence_setting_is_scan_default(self):
        from candlescan.config import Settings
        from candlescan.container import build_service

        service = build_service(Settings(store_backend="memory", cache_backend="memory",
                                         accumulation_min_confidence=85))
        assert service.scan_config().accumulation.min_confidence == 85
        assert service.scan_config(min_confidence=60).accumulation.min_confidence == 60

"""
Tests for the TimeframeAggregator: per-day roll-up, backup, idempotence and
per-symbol failure isolation. Runs against the in-memory store.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

DAY = date(2024, 1, 2)
NOW = datetime(2024, 3, 1, 6, 0, tzinfo=timezone.utc)


def _intraday_day(symbol: str = "X"):
    """24 fifteen-minute candles from 09:00; highs cycle 10, 12, 9, 11."""
    from candlescan.models import Candle, Timeframe

    start = datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)
    highs = [10.0, 12.0, 9.0, 11.0] * 6
    return [
        Candle(
            symbol=symbol, timeframe=Timeframe.M15, timestamp=start + timedelta(minutes=15 * i),
            open=8.5, high=high, low=8.0, close=8.5, volume=float(i + 1),
        )
        for i, high in enumerate(highs)
    ]


def _store_with_day(*symbols):
    from candlescan.db.memory_store import MemoryCandleStore
    from candlescan.engines.feature_engine import FeatureEngine

    store = MemoryCandleStore()
    engine = FeatureEngine()
    for symbol in symbols or ("X",):
        candles = _intraday_day(symbol)
        store.upsert_candles(candles)
        store.upsert_features(engine.compute(candles))
    return store


def _aggregator(store):
    from candlescan.engines.aggregator import TimeframeAggregator
    return TimeframeAggregator(store, clock=lambda: NOW)


def _write_calls(watched) -> int:
    """Writes and deletes recorded on a MagicMock(wraps=store)."""
    return sum(
        getattr(watched, name).call_count
        for name in ("upsert_candles", "upsert_features", "save_backup", "delete_candles")
    )


# ════════════════════════════════════════════════
# Single symbol-day
# ════════════════════════════════════════════════


class TestConvertDay:

    def test_intraday_day_becomes_hourly(self):
        from candlescan.models import ConversionStatus, Timeframe

        store = _store_with_day()
        result = _aggregator(store).convert_day("X", "15min", "1hour", DAY)

        assert result.status is ConversionStatus.DONE
        assert result.source_rows == 24
        assert result.target_rows == 6

        hourly = store.query_candles("X", Timeframe.H1)
        assert len(hourly) == 6
        assert max(c.high for c in hourly) == 12.0
        assert all(c.high == 12.0 for c in hourly)
        assert sum(c.volume for c in hourly) == sum(range(1, 25))

    def test_source_rows_deleted(self):
        from candlescan.models import Timeframe

        store = _store_with_day()
        _aggregator(store).convert_day("X", "15min", "1hour", DAY)

        assert store.query_candles("X", Timeframe.M15) == []
        assert store.query_features("X", Timeframe.M15) == []

    def test_backup_holds_source_rows(self):
        from candlescan.models import Timeframe

        store = _store_with_day()
        _aggregator(store).convert_day("X", "15min", "1hour", DAY)

        backup = store.find_backup("X", Timeframe.M15, Timeframe.H1, DAY)
        assert backup is not None
        assert len(backup.candles) == 24
        assert len(backup.features) == 24
        assert backup.compression_ratio == 4.0
        assert backup.created_at == NOW

    def test_hourly_features_follow_hourly_profile(self):
        from candlescan.models import Timeframe

        store = _store_with_day()
        _aggregator(store).convert_day("X", "15min", "1hour", DAY)

        features = store.query_features("X", Timeframe.H1)
        assert len(features) == 6
        assert all(f.sma5 is None for f in features)
        assert all(f.money_flow is not None for f in features)

    def test_second_run_is_noop(self):
        from unittest.mock import MagicMock

        from candlescan.engines.aggregator import TimeframeAggregator
        from candlescan.models import ConversionStatus, Timeframe

        store = _store_with_day()
        _aggregator(store).convert_day("X", "15min", "1hour", DAY)
        hourly = store.query_candles("X", Timeframe.H1)

        watched = MagicMock(wraps=store)
        again = TimeframeAggregator(watched, clock=lambda: NOW).convert_day("X", "15min", "1hour", DAY)

        assert again.status is ConversionStatus.NOTHING_TO_DO
        assert _write_calls(watched) == 0
        assert store.query_candles("X", Timeframe.H1) == hourly

    def test_late_row_for_finished_day_is_refused(self):
        from unittest.mock import MagicMock

        from candlescan.engines.aggregator import TimeframeAggregator
        from candlescan.errors import DataQualityError
        from candlescan.models import Candle, Timeframe

        store = _store_with_day()
        _aggregator(store).convert_day("X", "15min", "1hour", DAY)
        hourly = store.query_candles("X", Timeframe.H1)

        late = Candle(
            symbol="X", timeframe=Timeframe.M15, timestamp=datetime(2024, 1, 2, 9, 15, tzinfo=timezone.utc),
            open=10.0, high=10.5, low=9.5, close=10.0, volume=500.0,
        )
        store.upsert_candles([late])

        watched = MagicMock(wraps=store)
        with pytest.raises(DataQualityError, match="already rolled up"):
            TimeframeAggregator(watched, clock=lambda: NOW).convert_day("X", "15min", "1hour", DAY)

        assert _write_calls(watched) == 0
        assert store.query_candles("X", Timeframe.H1) == hourly
        assert sum(c.volume for c in store.query_candles("X", Timeframe.H1)) == sum(range(1, 25))
        assert store.query_candles("X", Timeframe.M15) == [late]
        assert len(store.find_backup("X", "15min", "1hour", DAY).candles) == 24

    def test_target_candles_without_backup_are_kept(self):
        from candlescan.errors import DataQualityError
        from candlescan.models import Candle, Timeframe

        store = _store_with_day()
        hourly = Candle(
            symbol="X", timeframe=Timeframe.H1, timestamp=datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc),
            open=8.5, high=12.0, low=8.0, close=8.5, volume=10.0,
        )
        store.upsert_candles([hourly])

        with pytest.raises(DataQualityError, match="without a roll-up backup"):
            _aggregator(store).convert_day("X", "15min", "1hour", DAY)
        assert store.query_candles("X", Timeframe.H1) == [hourly]
        assert len(store.query_candles("X", Timeframe.M15)) == 24

    def test_interrupted_day_resumes(self):
        from candlescan.models import CandleBackup, ConversionStatus, Timeframe

        store = _store_with_day()
        store.save_backup(CandleBackup(
            symbol="X", source_timeframe=Timeframe.M15, target_timeframe=Timeframe.H1,
            day=DAY, candles=_intraday_day(), compression_ratio=4.0,
        ))

        result = _aggregator(store).convert_day("X", "15min", "1hour", DAY)
        assert result.status is ConversionStatus.DONE
        assert len(store.query_candles("X", Timeframe.H1)) == 6
        assert store.query_candles("X", Timeframe.M15) == []
        assert len(store.find_backup("X", "15min", "1hour", DAY).candles) == 24

    def test_other_days_untouched(self):
        from candlescan.models import Candle, Timeframe

        store = _store_with_day()
        next_day = Candle(
            symbol="X", timeframe=Timeframe.M15, timestamp=datetime(2024, 1, 3, 9, 0, tzinfo=timezone.utc),
            open=8.5, high=9.0, low=8.0, close=8.5, volume=1.0,
        )
        store.upsert_candles([next_day])

        _aggregator(store).convert_day("X", "15min", "1hour", DAY)
        assert store.query_candles("X", Timeframe.M15) == [next_day]

    def test_hourly_to_daily(self):
        from candlescan.models import Timeframe

        store = _store_with_day()
        aggregator = _aggregator(store)
        aggregator.convert_day("X", "15min", "1hour", DAY)
        result = aggregator.convert_day("X", "1hour", "1day", DAY)

        assert result.target_rows == 1
        (daily,) = store.query_candles("X", Timeframe.D1)
        assert daily.timestamp == datetime(2024, 1, 2, tzinfo=timezone.utc)
        assert daily.high == 12.0
        assert daily.volume == sum(range(1, 25))
        assert store.query_candles("X", Timeframe.H1) == []

    def test_failure_keeps_source_rows(self):
        from candlescan.db.memory_store import MemoryCandleStore
        from candlescan.errors import TransientStoreError
        from candlescan.models import Timeframe

        class FlakyStore(MemoryCandleStore):
            def upsert_candles(self, candles):
                if candles and candles[0].timeframe is Timeframe.H1:
                    raise TransientStoreError("upsert_candles", "connection reset")
                return super().upsert_candles(candles)

        store = FlakyStore()
        store.upsert_candles(_intraday_day())

        with pytest.raises(TransientStoreError):
            _aggregator(store).convert_day("X", "15min", "1hour", DAY)
        assert len(store.query_candles("X", Timeframe.M15)) == 24

    def test_invalid_pair(self):
        from candlescan.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            _aggregator(_store_with_day()).convert_day("X", "15min", "1day", DAY)


# ════════════════════════════════════════════════
# Batch run
# ════════════════════════════════════════════════


class TestRun:

    def test_all_stored_symbols(self):
        store = _store_with_day("A", "B")
        summary = _aggregator(store).run(None, "15min", "1hour", DAY)

        assert summary.succeeded == 2
        assert summary.failed == 0
        assert summary.day == DAY

    def test_failure_isolated_per_symbol(self):
        from candlescan.db.memory_store import MemoryCandleStore
        from candlescan.errors import TransientStoreError

        class BrokenForBad(MemoryCandleStore):
            def query_candles(self, symbol, timeframe, start=None, end=None, limit=None):
                if symbol == "BAD":
                    raise TransientStoreError("query_candles", "timeout")
                return super().query_candles(symbol, timeframe, start, end, limit)

        store = BrokenForBad()
        store.upsert_candles(_intraday_day("GOOD"))
        summary = _aggregator(store).run(["BAD", "GOOD"], "15min", "1hour", DAY)

        assert summary.failed == 1
        assert summary.succeeded == 1
        assert summary.errors[0].startswith("BAD:")

    def test_symbols_without_data_are_skipped(self):
        summary = _aggregator(_store_with_day()).run(["X", "EMPTY"], "15min", "1hour", DAY)
        assert summary.succeeded == 1
        assert summary.skipped == 1

    def test_late_rows_count_as_skipped(self):
        from candlescan.models import Candle, Timeframe

        store = _store_with_day("A", "B")
        aggregator = _aggregator(store)
        aggregator.run(None, "15min", "1hour", DAY)
        store.upsert_candles([Candle(
            symbol="A", timeframe=Timeframe.M15, timestamp=datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc),
            open=9.0, high=9.5, low=8.5, close=9.0, volume=50.0,
        )])

        summary = aggregator.run(None, "15min", "1hour", DAY)
        assert summary.skipped == 1
        assert summary.failed == 0
        assert summary.errors[0].startswith("A:")

    def test_invalid_pair_rejected_up_front(self):
        from candlescan.errors import ConfigurationError

        with pytest.raises(ConfigurationError, match="Invalid conversion"):
            _aggregator(_store_with_day()).run(None, "15min", "1day")

    def test_default_day_from_clock(self):
        summary = _aggregator(_store_with_day()).run(None, "15min", "1hour")
        assert summary.day == date(2024, 1, 31)

    def test_default_target_day(self):
        from candlescan.engines.aggregator import default_target_day

        assert default_target_day("15min", NOW) == date(2024, 1, 31)
        assert default_target_day("1hour", NOW) == (NOW - timedelta(days=182)).date()
        assert default_target_day("15min", NOW, age_15min_days=1) == date(2024, 2, 29)


# ════════════════════════════════════════════════
# Backup retention
# ════════════════════════════════════════════════


class TestPurgeBackups:

    def test_purges_only_expired(self):
        from candlescan.db.memory_store import MemoryCandleStore
        from candlescan.engines.aggregator import TimeframeAggregator
        from candlescan.models import CandleBackup, Timeframe

        store = MemoryCandleStore()
        for day, created in ((date(2021, 1, 4), NOW - timedelta(days=800)), (date(2024, 1, 2), NOW)):
            store.save_backup(CandleBackup(
                symbol="X", source_timeframe=Timeframe.M15, target_timeframe=Timeframe.H1,
                day=day, compression_ratio=4.0, created_at=created,
            ))

        purged = TimeframeAggregator(store, backup_retention_days=730, clock=lambda: NOW).purge_backups()
        assert purged == 1
        assert store.find_backup("X", "15min", "1hour", date(2024, 1, 2)) is not None
        assert store.find_backup("X", "15min", "1hour", date(2021, 1, 4)) is None

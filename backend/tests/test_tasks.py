"""
Tests for the Celery app factory and the scheduled tasks. Tasks are invoked
synchronously with the service patched out.
"""

from datetime import date
from unittest.mock import MagicMock, patch


# ════════════════════════════════════════════════
# Celery app
# ════════════════════════════════════════════════


class TestCeleryApp:

    def test_beat_schedule(self):
        from candlescan.tasks.celery_app import celery_app

        schedule = celery_app.conf.beat_schedule
        assert set(schedule) == {
            "rollup-15min-to-1hour",
            "rollup-1hour-to-1day",
            "purge-rollup-backups",
            "precompute-scans",
            "cleanup-scan-cache",
        }
        assert schedule["rollup-15min-to-1hour"]["schedule"].hour == {1}
        assert schedule["rollup-1hour-to-1day"]["schedule"].hour == {2}
        assert schedule["precompute-scans"]["schedule"].hour == {4}
        assert schedule["cleanup-scan-cache"]["schedule"].hour == {5}
        assert schedule["purge-rollup-backups"]["schedule"].day_of_week == {0}

    def test_scheduled_tasks_registered(self):
        from candlescan.tasks.celery_app import celery_app
        import candlescan.tasks.aggregation_tasks  # noqa: F401
        import candlescan.tasks.precompute_tasks  # noqa: F401

        for job in celery_app.conf.beat_schedule.values():
            assert job["task"] in celery_app.tasks

    def test_utc_and_json(self):
        from candlescan.tasks.celery_app import celery_app

        assert celery_app.conf.timezone == "UTC"
        assert celery_app.conf.task_serializer == "json"


# ════════════════════════════════════════════════
# Roll-up tasks
# ════════════════════════════════════════════════


class TestAggregationTasks:

    def _summary(self, source, target, day):
        from candlescan.models import AggregationSummary

        return AggregationSummary(source_timeframe=source, target_timeframe=target, day=day, succeeded=3)

    def test_rollup_15min_default_day(self):
        from candlescan.tasks.aggregation_tasks import rollup_15min_to_1hour

        service = MagicMock()
        service.trigger_aggregation.return_value = self._summary("15min", "1hour", date(2024, 1, 2))

        with patch("candlescan.container.get_service", return_value=service):
            result = rollup_15min_to_1hour()

        service.trigger_aggregation.assert_called_once_with(None, "15min", "1hour", None)
        assert result["succeeded"] == 3
        assert result["day"] == "2024-01-02"

    def test_rollup_1hour_explicit_day(self):
        from candlescan.tasks.aggregation_tasks import rollup_1hour_to_1day

        service = MagicMock()
        service.trigger_aggregation.return_value = self._summary("1hour", "1day", date(2023, 7, 1))

        with patch("candlescan.container.get_service", return_value=service):
            result = rollup_1hour_to_1day("2023-07-01")

        service.trigger_aggregation.assert_called_once_with(None, "1hour", "1day", date(2023, 7, 1))
        assert result["target_timeframe"] == "1day"

    def test_purge_backups(self):
        from candlescan.tasks.aggregation_tasks import purge_backups

        service = MagicMock()
        service.purge_backups.return_value = 4

        with patch("candlescan.container.get_service", return_value=service):
            assert purge_backups() == {"purged": 4}


# ════════════════════════════════════════════════
# Cache tasks
# ════════════════════════════════════════════════


class TestPrecomputeTasks:

    def test_precompute_uses_settings_grid(self):
        from candlescan.config import Settings
        from candlescan.tasks.precompute_tasks import precompute_scans

        service = MagicMock()
        service.precompute.return_value = {"cells": 2, "stored": 2, "failed": 0, "errors": []}
        settings = Settings(precompute_timeframes="1day", precompute_confidences="60, 75", precompute_phases="c")

        with patch("candlescan.container.get_service", return_value=service), \
             patch("candlescan.config.get_settings", return_value=settings):
            result = precompute_scans()

        service.precompute.assert_called_once_with(timeframes=["1day"], confidences=[60, 75], phases=["C"])
        assert result["stored"] == 2

    def test_cleanup(self):
        from candlescan.tasks.precompute_tasks import cleanup_scan_cache

        service = MagicMock()
        service.cleanup_cache.return_value = 7

        with patch("candlescan.container.get_service", return_value=service):
            assert cleanup_scan_cache() == {"deleted": 7}

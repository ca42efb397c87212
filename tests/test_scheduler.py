"""Tests for the sync orchestrator and scheduler configuration."""

import threading
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import yaml
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import func, select

from estate_sync.config import settings
from estate_sync.db.lease import acquire_lease, release_lease
from estate_sync.db.models import SyncLease, SyncRun
from estate_sync.errors import ConcurrentRunError
from estate_sync.scheduler import (
    FULL_PASS_JOB_ID,
    SWEEP_JOB_ID,
    SchedulerConfig,
    SyncOrchestrator,
    cron_trigger,
)
from tests.conftest import FakeSource, make_raw


class BlockingSource(FakeSource):
    """Holds the first fetch until ``release`` is set."""

    def __init__(self, pages):
        super().__init__(pages)
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch_all(self, feed_filter, max_pages=1):
        self.entered.set()
        self.release.wait(5)
        return super().fetch_all(feed_filter, max_pages)


def write_config(tmp_path, sync=None, scheduling=None) -> Path:
    config = {
        "sync": {"cities": ["Moscow"], "pass_budget_seconds": None, **(sync or {})},
        "scheduling": {"enabled": False, **(scheduling or {})},
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config, allow_unicode=True))
    return path


def raws():
    return {"Москва": [make_raw(listing_id="1"), make_raw(listing_id="2")]}


@pytest.fixture
def make_orchestrator(tmp_path, db_session, session_factory):
    created = []

    def factory(source=None, source_factory=None, sync=None, scheduling=None, **kwargs):
        source = source or FakeSource(raws())
        orchestrator = SyncOrchestrator(
            config_path=write_config(tmp_path, sync, scheduling),
            session_factory=session_factory,
            source_factory=source_factory or (lambda: source),
            **kwargs,
        )
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        orchestrator.shutdown(wait=False)


def run_in_thread(target):
    results = []
    thread = threading.Thread(target=lambda: results.append(target()))
    thread.start()
    return thread, results


class TestSchedulerConfig:
    def test_reads_yaml(self, tmp_path):
        path = write_config(
            tmp_path,
            sync={"resync_mode": "create_only", "rate_limit": 2.5, "use_storage_lease": True},
            scheduling={"enabled": True, "cron": "30 3 * * *", "sweep_cron": "0 */4 * * *", "timezone": "UTC"},
        )
        config = SchedulerConfig(path)

        assert config.cities == ["Moscow"]
        assert config.resync_mode == "create_only"
        assert config.rate_limit == 2.5
        assert config.use_storage_lease is True
        assert config.pass_budget_seconds is None
        assert config.schedule_enabled is True
        assert config.cron_expression == "30 3 * * *"
        assert config.sweep_cron_expression == "0 */4 * * *"
        assert config.timezone == "UTC"

    def test_missing_file_uses_settings(self, tmp_path):
        config = SchedulerConfig(tmp_path / "missing.yaml")

        assert config.cities == settings.allowed_city_list
        assert config.resync_mode == settings.resync_mode
        assert config.cron_expression == settings.schedule_cron
        assert config.sweep_cron_expression == settings.sweep_cron

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert SchedulerConfig(path).cities == settings.allowed_city_list


class TestCronTrigger:
    def test_valid_expression(self):
        assert isinstance(cron_trigger("0 2 * * *", "Europe/Moscow"), CronTrigger)

    @pytest.mark.parametrize("expression", ["0 2 * *", "0 2 * * * *", ""])
    def test_wrong_field_count(self, expression):
        with pytest.raises(ValueError, match="Invalid cron expression"):
            cron_trigger(expression, "UTC")

    def test_out_of_range_field(self):
        with pytest.raises(ValueError):
            cron_trigger("61 2 * * *", "UTC")


class TestManualSync:
    def test_runs_full_pass_and_records_run(self, db_session, make_orchestrator):
        source = FakeSource(raws())
        source_factory = MagicMock(return_value=source)
        orchestrator = make_orchestrator(source_factory=source_factory)

        summary = orchestrator.trigger_manual_sync()

        source_factory.assert_called_once_with()
        assert summary.kind == "manual"
        assert summary.imported == 2
        assert summary.analytics_computed == 2
        assert source.closed

        run = db_session.execute(select(SyncRun)).scalar_one()
        assert run.kind == "manual"
        assert run.imported == 2
        assert run.finished_at is not None
        assert run.errors == []

    def test_status_after_run(self, make_orchestrator):
        orchestrator = make_orchestrator()
        orchestrator.trigger_manual_sync()
        status = orchestrator.get_status()

        assert status["is_running"] is False
        assert status["next_scheduled_run"] is None
        assert status["last_run"]["kind"] == "manual"
        assert status["last_run"]["imported"] == 2
        assert orchestrator.get_scheduler_status() == status

    def test_unexpected_error_recorded(self, db_session, make_orchestrator):
        def broken_source():
            raise RuntimeError("boom")

        orchestrator = make_orchestrator(source_factory=broken_source)
        summary = orchestrator.trigger_manual_sync()

        assert summary.errors == ["Unexpected error: boom"]
        assert not orchestrator.is_running
        run = db_session.execute(select(SyncRun)).scalar_one()
        assert run.errors == ["Unexpected error: boom"]


class TestSingleFlight:
    def test_manual_trigger_during_scheduled_pass(self, make_orchestrator):
        source = BlockingSource(raws())
        orchestrator = make_orchestrator(source)

        thread, results = run_in_thread(orchestrator.run_full_pass)
        assert source.entered.wait(5)
        assert orchestrator.is_running

        with pytest.raises(ConcurrentRunError):
            orchestrator.trigger_manual_sync()
        assert orchestrator.run_sweep() is None
        assert orchestrator.run_full_pass() is None

        source.release.set()
        thread.join(5)

        assert len(source.calls) == 1
        assert results[0].imported == 2
        assert not orchestrator.is_running

    def test_cancel_stops_running_pass(self, make_orchestrator):
        source = BlockingSource(raws())
        orchestrator = make_orchestrator(source)

        thread, results = run_in_thread(orchestrator.run_full_pass)
        assert source.entered.wait(5)
        orchestrator.cancel()
        source.release.set()
        thread.join(5)

        assert results[0].cancelled
        assert results[0].imported == 0

    def test_cancel_when_idle_is_ignored(self, make_orchestrator):
        orchestrator = make_orchestrator()
        orchestrator.cancel()
        summary = orchestrator.trigger_manual_sync()

        assert not summary.cancelled
        assert summary.imported == 2

    def test_pass_budget(self, make_orchestrator):
        ticks = iter([0.0])
        orchestrator = make_orchestrator(
            sync={"pass_budget_seconds": 10}, clock=lambda: next(ticks, 100.0)
        )
        summary = orchestrator.trigger_manual_sync()

        assert summary.cancelled
        assert summary.imported == 0


class TestStorageLease:
    def test_lease_held_elsewhere(self, db_session, make_orchestrator):
        source = FakeSource(raws())
        orchestrator = make_orchestrator(source, sync={"use_storage_lease": True})
        acquire_lease(db_session, "other-host", timedelta(hours=1))

        assert orchestrator.run_full_pass() is None
        with pytest.raises(ConcurrentRunError):
            orchestrator.trigger_manual_sync()
        assert source.calls == []
        assert not orchestrator.is_running

    def test_lease_released_after_pass(self, db_session, make_orchestrator):
        acquire_lease(db_session, "other-host", timedelta(hours=1))
        release_lease(db_session, "other-host")

        orchestrator = make_orchestrator(sync={"use_storage_lease": True})
        summary = orchestrator.trigger_manual_sync()

        assert summary.imported == 2
        count = db_session.execute(select(func.count()).select_from(SyncLease)).scalar()
        assert count == 0


class TestScheduling:
    def test_jobs_registered(self, make_orchestrator):
        orchestrator = make_orchestrator()
        orchestrator.add_jobs()

        full = orchestrator.scheduler.get_job(FULL_PASS_JOB_ID)
        sweep = orchestrator.scheduler.get_job(SWEEP_JOB_ID)
        assert full.max_instances == 1
        assert sweep.max_instances == 1

    def test_start_disabled_does_nothing(self, make_orchestrator):
        orchestrator = make_orchestrator()
        orchestrator.start()
        assert not orchestrator.scheduler.running

    def test_start_reports_next_runs(self, make_orchestrator):
        orchestrator = make_orchestrator(scheduling={"enabled": True, "timezone": "UTC"})
        orchestrator.start()
        status = orchestrator.get_status()

        assert orchestrator.scheduler.running
        assert status["next_scheduled_run"] is not None
        assert status["next_sweep_run"] is not None

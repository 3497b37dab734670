"""Tests for the auto-sync scheduler."""

import time
from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from conftest import FakeConfigStore
from termsync.sync.models import SyncAction, SyncResult
from termsync.sync.scheduler import (
    DEBOUNCE_JOB_ID,
    INTERVAL_JOB_ID,
    POLL_JOB_ID,
    STARTUP_JOB_ID,
    AutoSyncScheduler,
)


class TestAutoSyncScheduler:
    """Tests for AutoSyncScheduler wiring."""

    @pytest.fixture(autouse=True)
    def _wire(self, settings):
        self.settings = settings
        self.store = FakeConfigStore({})
        self.orchestrator = Mock()
        self.orchestrator.is_applying_remote = False
        self.orchestrator.sync_to_remote.return_value = SyncResult(True, SyncAction.UPLOAD)
        self.orchestrator.full_sync.return_value = SyncResult(True, SyncAction.UPLOAD)
        self.scheduler = Mock()
        self.scheduler.running = True
        self.auto = AutoSyncScheduler(
            self.orchestrator, self.store, self.settings, debounce_seconds=5, scheduler=self.scheduler
        )

    def job_ids(self):
        return [c.kwargs["id"] for c in self.scheduler.add_job.call_args_list]

    def test_start_schedules_jobs(self):
        """Test startup and interval jobs."""
        self.settings.sync_interval_minutes = 7

        self.auto.start()

        assert self.job_ids() == [STARTUP_JOB_ID, INTERVAL_JOB_ID]
        interval_call = self.scheduler.add_job.call_args_list[1]
        trigger = interval_call.kwargs["trigger"]
        assert isinstance(trigger, IntervalTrigger)
        assert trigger.interval == timedelta(minutes=7)
        self.scheduler.start.assert_called_once()

    def test_start_without_startup_sync(self):
        """Test that startup sync can be turned off."""
        self.settings.auto_sync_on_startup = False
        self.auto.start()
        assert STARTUP_JOB_ID not in self.job_ids()

    def test_start_polls_file_store(self):
        """Test that stores with mtime polling get a poll job."""
        store = Mock()
        auto = AutoSyncScheduler(self.orchestrator, store, self.settings, scheduler=self.scheduler)

        auto.start()

        assert POLL_JOB_ID in self.job_ids()
        store.subscribe.assert_called_once_with(auto.on_local_change)

    def test_local_change_debounced(self):
        """Test that a change schedules a one-shot upload after the quiet window."""
        before = datetime.now().astimezone()

        self.auto.on_local_change()

        call = self.scheduler.add_job.call_args
        assert call.args[0] == self.auto._run_upload
        assert call.kwargs["id"] == DEBOUNCE_JOB_ID
        assert call.kwargs["replace_existing"] is True
        trigger = call.kwargs["trigger"]
        assert isinstance(trigger, DateTrigger)
        assert trigger.run_date >= before + timedelta(seconds=5)

    def test_change_ignored_while_applying_remote(self):
        """Test that writes of merged state don't trigger uploads."""
        self.orchestrator.is_applying_remote = True
        self.auto.on_local_change()
        self.scheduler.add_job.assert_not_called()

    def test_change_ignored_when_disabled(self):
        """Test that nothing is scheduled while sync is off."""
        self.settings.enabled = False
        self.auto.on_local_change()

        self.settings.enabled = True
        self.settings.auto_sync_on_change = False
        self.auto.on_local_change()

        self.scheduler.add_job.assert_not_called()

    def test_store_writes_reach_scheduler(self):
        """Test the subscription to the config store."""
        self.auto.start()
        self.scheduler.add_job.reset_mock()

        self.store.write_raw("terminal: {fontSize: 12}\n")

        assert self.job_ids() == [DEBOUNCE_JOB_ID]

    def test_run_upload(self):
        """Test the debounced job body."""
        self.auto._run_upload()
        self.orchestrator.sync_to_remote.assert_called_once()

        self.settings.enabled = False
        self.auto._run_upload()
        self.orchestrator.sync_to_remote.assert_called_once()

    def test_run_full_sync_logs_failure(self, caplog):
        """Test that a failed periodic sync is logged."""
        self.orchestrator.full_sync.return_value = SyncResult.failed(SyncAction.DOWNLOAD, "offline")

        self.auto._run_full_sync()

        assert "offline" in caplog.text

    def test_stop(self):
        """Test that stopping unsubscribes and shuts down."""
        self.auto.start()
        self.auto.stop()

        self.scheduler.shutdown.assert_called_once_with(wait=False)
        self.scheduler.add_job.reset_mock()
        self.store.write_raw("x: 1\n")
        self.scheduler.add_job.assert_not_called()

    def test_reschedule(self):
        """Test changing the interval."""
        self.auto.reschedule(15)

        assert self.settings.sync_interval_minutes == 15
        job_id = self.scheduler.reschedule_job.call_args.args[0]
        assert job_id == INTERVAL_JOB_ID


class TestDebounceWithRealScheduler:
    """Debounce behaviour against a running BackgroundScheduler."""

    def test_burst_produces_single_upload(self, settings):
        """Test that a burst of changes results in one upload."""
        settings.auto_sync_on_startup = False
        orchestrator = Mock()
        orchestrator.is_applying_remote = False
        orchestrator.sync_to_remote.return_value = SyncResult(True, SyncAction.UPLOAD)
        store = FakeConfigStore({})
        auto = AutoSyncScheduler(
            orchestrator, store, settings, debounce_seconds=0.3, scheduler=BackgroundScheduler()
        )
        auto.start()
        try:
            for _ in range(5):
                store.write_raw("x: 1\n")
                time.sleep(0.05)
            time.sleep(1.0)
        finally:
            auto.stop()

        assert orchestrator.sync_to_remote.call_count == 1

"""Automatic sync triggers on top of APScheduler."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config import SYNC_DEBOUNCE_SECONDS, SyncSettings
from .orchestrator import SyncOrchestrator
from .protocols import ConfigStoreProtocol

__all__ = ["AutoSyncScheduler"]

logger = logging.getLogger(__name__)

DEBOUNCE_JOB_ID = "debounced_upload"
INTERVAL_JOB_ID = "interval_sync"
STARTUP_JOB_ID = "startup_sync"
POLL_JOB_ID = "config_poll"

POLL_INTERVAL_SECONDS = 2


class AutoSyncScheduler:
    """Turns local changes, timers and startup into orchestrator calls.

    Local changes are debounced: each change replaces the pending one-shot
    upload job, so a burst of edits produces a single upload once the quiet
    window has passed.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        config_store: ConfigStoreProtocol,
        settings: SyncSettings,
        debounce_seconds: float = SYNC_DEBOUNCE_SECONDS,
        scheduler: Optional[BackgroundScheduler] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.config_store = config_store
        self.settings = settings
        self.debounce_seconds = debounce_seconds
        self.scheduler = scheduler or BackgroundScheduler()
        self._unsubscribe: Optional[Callable[[], None]] = None

    def start(self) -> None:
        """Subscribe to config changes and start the timers."""
        self._unsubscribe = self.config_store.subscribe(self.on_local_change)

        if self.settings.enabled and self.settings.auto_sync_on_startup:
            self.scheduler.add_job(
                self._run_full_sync,
                id=STARTUP_JOB_ID,
                replace_existing=True,
            )

        self.scheduler.add_job(
            self._run_full_sync,
            trigger=IntervalTrigger(minutes=self.settings.sync_interval_minutes),
            id=INTERVAL_JOB_ID,
            replace_existing=True,
        )

        if hasattr(self.config_store, "poll_changes"):
            self.scheduler.add_job(
                self.config_store.poll_changes,
                trigger=IntervalTrigger(seconds=POLL_INTERVAL_SECONDS),
                id=POLL_JOB_ID,
                replace_existing=True,
            )

        self.scheduler.start()
        logger.info(
            f"Auto-sync started (interval: {self.settings.sync_interval_minutes}m, "
            f"debounce: {self.debounce_seconds}s)"
        )

    def stop(self) -> None:
        """Unsubscribe and shut down the scheduler if running."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def reschedule(self, interval_minutes: int) -> None:
        """Change the periodic sync interval on the fly."""
        self.settings.sync_interval_minutes = interval_minutes
        if self.scheduler.get_job(INTERVAL_JOB_ID) is not None:
            self.scheduler.reschedule_job(
                INTERVAL_JOB_ID, trigger=IntervalTrigger(minutes=interval_minutes)
            )
        logger.info(f"Sync interval changed to {interval_minutes}m")

    def on_local_change(self) -> None:
        """Schedule a debounced upload for a local config change."""
        if not (self.settings.enabled and self.settings.auto_sync_on_change):
            return
        if self.orchestrator.is_applying_remote:
            logger.debug("Ignoring change caused by applying remote state")
            return

        run_date = datetime.now().astimezone() + timedelta(seconds=self.debounce_seconds)
        self.scheduler.add_job(
            self._run_upload,
            trigger=DateTrigger(run_date=run_date),
            id=DEBOUNCE_JOB_ID,
            replace_existing=True,
        )
        logger.debug(f"Upload scheduled in {self.debounce_seconds}s")

    def _run_upload(self) -> None:
        if not self.settings.enabled:
            return
        result = self.orchestrator.sync_to_remote()
        if not result.success:
            logger.warning(f"Automatic upload failed: {result.error}")

    def _run_full_sync(self) -> None:
        if not self.settings.enabled:
            return
        result = self.orchestrator.full_sync()
        if not result.success:
            logger.warning(f"Automatic sync failed: {result.error}")

"""In-process job poller.

Optional alternative to an external cron hitting ``/jobs/*``: a daemon thread
runs the auto-logger and the reminder job once per configured cadence.
"""
from __future__ import annotations

import threading
import time
import logging
from datetime import datetime, timezone
from typing import Optional

from mhealth_core.autolog import AutoLogRunner
from mhealth_core.config import Settings
from mhealth_core.db import SessionLocal
from mhealth_core.errors import UpstreamFetchError
from mhealth_core.notifications import NotificationScheduler, PushSender

logger = logging.getLogger("mhealth_core.scheduler")


class JobScheduler:
    def __init__(self, settings: Optional[Settings] = None, sender: Optional[PushSender] = None, poll_interval: Optional[int] = None):
        self.settings = settings or Settings()
        self.sender = sender
        self.poll_interval = poll_interval or self.settings.poll_interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._run_lock = threading.Lock()
        self.last_run_at: Optional[datetime] = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self):
        logger.info("Scheduler thread start requested interval=%ss", self.poll_interval)
        if self._thread is None or not self._thread.is_alive():
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run, name="mhealth-jobs", daemon=True)
            self._thread.start()

    def stop(self):
        logger.info("Scheduler thread stop requested")
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2)

    def run_once(self, now: Optional[datetime] = None) -> bool:
        """Run both jobs; returns False if a previous run is still in progress."""
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Scheduler tick skipped; previous run still active")
            return False
        now = now or datetime.now(timezone.utc)
        try:
            db = SessionLocal()
            try:
                try:
                    AutoLogRunner(db, settings=self.settings).run(now)
                except UpstreamFetchError as e:
                    logger.error("Auto-log run aborted: %s", e)
                try:
                    NotificationScheduler(db, sender=self.sender, settings=self.settings).run(now)
                except UpstreamFetchError as e:
                    logger.error("Notification run aborted: %s", e)
            finally:
                db.close()
            self.last_run_at = now
            return True
        finally:
            self._run_lock.release()

    def _seconds_to_next_tick(self) -> float:
        # Align ticks to the start of a minute so exact-minute matching sees every slot
        return self.poll_interval - (time.time() % self.poll_interval) + 0.5

    def _run(self):  # pragma: no cover (timing + thread loop)
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop_event.wait(self._seconds_to_next_tick())


__all__ = ["JobScheduler"]

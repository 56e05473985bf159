"""
Periodic ledger sync.

SyncScheduler owns a background thread that runs a sync immediately and then
every interval until stopped. Create one per process and pass it to whatever
needs to control it.
"""

import threading
from typing import Optional

from .config import SYNC_INTERVAL_SECONDS, logger
from .schemas import SyncSummary
from .sync import SyncOrchestrator


class SyncScheduler:
    """Start/stop handle for repeated SyncOrchestrator runs."""

    def __init__(self, orchestrator: SyncOrchestrator, interval_seconds: float = SYNC_INTERVAL_SECONDS):
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.last_summary: Optional[SyncSummary] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> bool:
        """Start the background loop. Returns False if it was already running."""
        with self._lock:
            if self.is_running():
                logger.info("Sync scheduler already running")
                return False

            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._loop,
                args=(self._stop_event,),
                name="ledger-sync-scheduler",
                daemon=True,
            )
            self._thread.start()

        logger.info(f"Sync scheduler started - will run every {self.interval_seconds:g} seconds")
        return True

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Stop the loop and cancel any in-flight sync.

        Returns False if the scheduler was not running.
        """
        with self._lock:
            thread = self._thread
            if thread is None:
                return False
            self._stop_event.set()
            self._thread = None

        thread.join(timeout)
        logger.info("Sync scheduler stopped")
        return True

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self, cancel_event: Optional[threading.Event] = None) -> Optional[SyncSummary]:
        """Run one sync; errors are logged, never raised into the loop."""
        try:
            summary = self.orchestrator.sync_pending(cancel_event=cancel_event)
        except Exception:
            logger.exception("Scheduled ledger sync failed")
            return None

        self.last_summary = summary
        if summary.processed_count or summary.failed_count:
            logger.info(
                f"Scheduled sync: {summary.processed_count} processed, "
                f"{summary.failed_count} failed"
            )
        return summary

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            self.run_once(cancel_event=stop_event)
            stop_event.wait(self.interval_seconds)

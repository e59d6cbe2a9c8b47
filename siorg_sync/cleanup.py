"""Periodic removal of expired queue items."""
import threading
from typing import Optional

from siorg_sync import settings
from siorg_sync.logging_conf import logger


class CleanupTask:
    """Deletes PENDING items past their expires_at on its own timer."""

    def __init__(self, store, interval: Optional[float] = None):
        self.store = store
        self.interval = interval if interval is not None else settings.CLEANUP_INTERVAL
        self.thread = None
        self._stop_event = threading.Event()

    def start(self):
        """Start the cleanup task in a background thread."""
        if self.thread and self.thread.is_alive():
            logger.warning("Cleanup task is already running")
            return

        self._stop_event.clear()
        self.thread = threading.Thread(target=self._run, name="siorg-sync-cleanup", daemon=True)
        self.thread.start()
        logger.info(f"Cleanup task started (interval: {self.interval}s)")

    def stop(self, timeout: Optional[float] = 10):
        """Stop the cleanup task."""
        self._stop_event.set()
        if self.thread:
            self.thread.join(timeout=timeout)
        logger.info("Cleanup task stopped")

    def run_once(self) -> int:
        """Run one sweep. Failures are logged, never raised."""
        try:
            deleted = self.store.cleanup_expired()
        except Exception as e:
            logger.error(f"Cleanup failed, will retry next tick: {e}", exc_info=True)
            return 0

        if deleted > 0:
            logger.info(f"Cleaned up {deleted} expired items")
        return deleted

    def _run(self):
        while not self._stop_event.wait(self.interval):
            self.run_once()

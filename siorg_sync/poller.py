"""Polling service that turns the SIORG change feed into queue items."""
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from siorg_sync import settings
from siorg_sync.checkpoint import CheckpointManager
from siorg_sync.logging_conf import logger


class ChangeFeedPoller:
    """Polls the registry for changes and enqueues them."""

    def __init__(self, registry, store, checkpoint: Optional[CheckpointManager] = None,
                 interval: Optional[int] = None, item_ttl_hours: Optional[int] = None):
        self.registry = registry
        self.store = store
        self.checkpoint = checkpoint or CheckpointManager()
        self.polling_interval = interval or settings.CHANGE_FEED_INTERVAL
        self.item_ttl = timedelta(hours=item_ttl_hours or settings.QUEUE_ITEM_TTL_HOURS)
        self.thread = None
        self._stop_event = threading.Event()

    def start(self):
        """Start the poller in a background thread."""
        if self.thread and self.thread.is_alive():
            logger.warning("Poller is already running")
            return

        self._stop_event.clear()
        self.thread = threading.Thread(target=self._run, name="siorg-change-feed", daemon=True)
        self.thread.start()
        logger.info(f"Poller started (interval: {self.polling_interval}s)")

    def stop(self, timeout: Optional[float] = 10):
        """Stop the poller."""
        self._stop_event.set()
        if self.thread:
            self.thread.join(timeout=timeout)
        logger.info("Poller stopped")

    def _run(self):
        logger.info("Poller thread started")

        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Poller error: {e}", exc_info=True)
            self._stop_event.wait(self.polling_interval)

        logger.info("Poller thread stopped")

    def poll_once(self) -> int:
        """Perform one polling cycle. Returns the number of items enqueued."""
        started_at = datetime.now(timezone.utc)
        last_sync = self.checkpoint.get_last_sync_time()
        logger.info(f"Polling SIORG changes since: {last_sync.isoformat()}")

        events = self.registry.get_changes_since(last_sync)
        expires_at = started_at + self.item_ttl

        queued_count = 0
        for event in events:
            self.store.enqueue(
                event.entity_type,
                event.operation,
                event.external_code,
                event.payload,
                expires_at=expires_at,
            )
            queued_count += 1

        logger.info(f"Queued {queued_count} SIORG changes")

        # Only advance after every event is safely queued
        self.checkpoint.save_sync_time(started_at)
        return queued_count

"""Main application - runs the sync worker, the cleanup task and the change feed."""
import signal
import sys

from siorg_sync.logging_conf import logger
from siorg_sync import settings
from siorg_sync.cleanup import CleanupTask
from siorg_sync.db import Database
from siorg_sync.poller import ChangeFeedPoller
from siorg_sync.queue.store import SyncQueueStore
from siorg_sync.registry_client import RegistryClient
from siorg_sync.worker import Worker, WorkerConfig


class Application:
    """Wires the store, the registry client and the background tasks."""

    def __init__(self):
        self.db = Database()
        self.store = SyncQueueStore(self.db)
        self.registry = RegistryClient()
        self.worker = Worker(self.store, self.registry, WorkerConfig.from_settings())
        self.cleanup = CleanupTask(self.store) if settings.CLEANUP_ENABLED else None
        self.poller = ChangeFeedPoller(self.registry, self.store) if settings.CHANGE_FEED_ENABLED else None
        self.running = False

    def start(self):
        """Start the application."""
        logger.info("=" * 50)
        logger.info("SIORG Sync Worker")
        logger.info("=" * 50)
        logger.info(f"Worker: {settings.WORKER_ID}")
        logger.info(f"Registry: {settings.REGISTRY_BASE_URL}")
        logger.info(f"Batch size: {settings.BATCH_SIZE}, poll interval: {settings.POLL_INTERVAL}s")
        logger.info(f"Cleanup: {'every %ss' % settings.CLEANUP_INTERVAL if self.cleanup else 'disabled'}")
        logger.info(f"Change feed: {'enabled' if self.poller else 'disabled'}")
        logger.info("=" * 50)

        settings.validate_config()
        self.db.ensure_schema()

        if not self.registry.health_check():
            logger.warning("SIORG registry health check failed, items will retry until it recovers")

        if self.cleanup:
            self.cleanup.start()
        if self.poller:
            self.poller.start()
        self.running = True
        logger.info("Started - watching the sync queue")

    def stop(self):
        """Stop claiming, let the in-flight batch finish, then release resources."""
        if not self.running:
            return
        self.running = False
        self.worker.stop()
        if self.poller:
            self.poller.stop()
        if self.cleanup:
            self.cleanup.stop()
        self.db.close()
        logger.info("Stopped")

    def run(self):
        """Main loop, blocks until stop() is called."""
        self.start()
        try:
            self.worker.run()
        finally:
            self.stop()


def main():
    """Entry point."""
    app = Application()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}, finishing current batch")
        app.worker.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        app.run()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

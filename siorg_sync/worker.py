"""Worker for processing the SIORG sync queue."""
import random
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional, Tuple

from siorg_sync import settings
from siorg_sync.errors import ClaimLost, InfrastructureError, LocalRecordChanged, ValidationError
from siorg_sync.logging_conf import logger
from siorg_sync.queue.models import BatchStats, EntityType, LocalRecord, Operation, QueueItem
from siorg_sync.reconciler import Apply, Conflict, NoOp, reconcile
from siorg_sync.registry_client import normalize_record

LOCALLY_MANAGED = {EntityType.CATEGORY, EntityType.TYPE}
REVIEW_OPERATIONS = {Operation.MERGE, Operation.SPLIT}
HIERARCHY_FIELDS = ("parent_code", "hierarchy_level")
MAX_ERROR_LENGTH = 1000
MAX_LOCAL_RECHECKS = 3


@dataclass
class WorkerConfig:
    batch_size: int = 10
    poll_interval: float = 5.0
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0
    retry_jitter: float = 0.2
    lease_seconds: int = 300
    concurrency: int = 4
    worker_id: str = "worker"

    @classmethod
    def from_settings(cls):
        return cls(
            batch_size=settings.BATCH_SIZE,
            poll_interval=settings.POLL_INTERVAL,
            retry_base_delay=settings.RETRY_BASE_DELAY,
            retry_max_delay=settings.RETRY_MAX_DELAY,
            retry_jitter=settings.RETRY_JITTER,
            lease_seconds=settings.LEASE_SECONDS,
            concurrency=settings.WORKER_CONCURRENCY,
            worker_id=settings.WORKER_ID,
        )


@dataclass(frozen=True)
class Skip:
    reason: str


def backoff_delay(attempts: int, base_delay: float, max_delay: float, jitter: float = 0.0, rng=random) -> float:
    """Seconds to wait before the next attempt.

    `attempts` is the count before this failure, so the first retry waits
    `base_delay`. Jitter scales the delay by up to +/- `jitter`; the result
    never exceeds `max_delay`.
    """
    delay = min(base_delay * (2 ** min(max(attempts, 0), 62)), max_delay)
    if jitter:
        delay *= 1 + rng.uniform(-jitter, jitter)
    return min(delay, max_delay)


class Worker:
    """Claims batches from the queue and reconciles each item."""

    def __init__(self, store, registry, config: Optional[WorkerConfig] = None, clock=None):
        self.store = store
        self.registry = registry
        self.config = config or WorkerConfig.from_settings()
        self.totals = BatchStats()
        self.batches = 0
        self.thread = None
        self._stop_event = threading.Event()
        self._now = clock or (lambda: datetime.now(timezone.utc))
        self._rng = random.Random()

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive() and not self._stop_event.is_set()

    def start(self):
        """Start the worker in a background thread."""
        if self.running:
            logger.warning("Worker is already running")
            return

        self._stop_event.clear()
        self.thread = threading.Thread(target=self.run, name="siorg-sync-worker", daemon=True)
        self.thread.start()
        logger.info(f"Worker {self.config.worker_id} started")

    def stop(self, timeout: Optional[float] = None):
        """Stop claiming and wait for the in-flight batch to finish."""
        self._stop_event.set()
        if self.thread and self.thread is not threading.current_thread():
            self.thread.join(timeout=timeout)
        logger.info(f"Worker {self.config.worker_id} stopped")

    def run(self):
        """Main worker loop. Returns once stop() has been requested."""
        logger.info(f"Worker loop started (batch size: {self.config.batch_size}, "
                    f"poll interval: {self.config.poll_interval}s)")

        while not self._stop_event.is_set():
            try:
                self.process_batch()
            except Exception as e:
                logger.error(f"Worker error: {e}", exc_info=True)
            self._stop_event.wait(self.config.poll_interval)

        logger.info(f"Worker loop stopped after {self.batches} batches", extra={"totals": self.totals.as_dict()})

    def process_batch(self) -> BatchStats:
        """Claim one batch, process every item and log a single summary."""
        try:
            self.store.requeue_expired_leases()
        except InfrastructureError as e:
            logger.warning(f"Could not requeue expired leases: {e}")

        items = self.store.claim_batch(self.config.batch_size, self.config.lease_seconds, self.config.worker_id)
        stats = BatchStats()
        if not items:
            logger.debug("No pending items in sync queue")
            return stats

        groups = self._group_by_entity(items)
        workers = min(self.config.concurrency, len(groups))
        if workers <= 1:
            for group in groups:
                stats.merge(self._process_group(group))
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="siorg-item") as pool:
                for group_stats in pool.map(self._process_group, groups):
                    stats.merge(group_stats)

        self.totals.merge(stats)
        self.batches += 1
        logger.info(
            f"Batch complete: {stats.processed} processed, {stats.succeeded} succeeded, "
            f"{stats.failed} failed, {stats.conflicts} conflicts, {stats.skipped} skipped",
            extra={"worker_id": self.config.worker_id, **stats.as_dict()}
        )
        return stats

    def process_item(self, item: QueueItem) -> str:
        """Process one claimed item. Never raises; returns the outcome label."""
        try:
            outcome, remote, local = self._evaluate(item)
            return self._persist_reconciled(item, outcome, remote, local)
        except ClaimLost as e:
            logger.warning(f"Claim lost on item {item.id}: {e}")
            return "skipped"
        except ValidationError as e:
            return self._fail(item, e, retryable=False)
        except (InfrastructureError, LocalRecordChanged) as e:
            return self._fail(item, e, retryable=True)
        except Exception as e:
            logger.error(f"Unexpected error processing item {item.id}: {e}", exc_info=True)
            return self._fail(item, e, retryable=True)

    @staticmethod
    def _group_by_entity(items: List[QueueItem]) -> List[List[QueueItem]]:
        # Items for the same entity run in claim order on one thread
        groups = OrderedDict()
        for item in items:
            groups.setdefault(item.entity_key, []).append(item)
        return list(groups.values())

    def _process_group(self, items: List[QueueItem]) -> BatchStats:
        stats = BatchStats()
        for item in items:
            stats.record(self.process_item(item))
        return stats

    def _evaluate(self, item: QueueItem) -> Tuple[Any, Optional[Dict[str, Any]], Optional[LocalRecord]]:
        if item.entity_type in LOCALLY_MANAGED:
            return Skip(f"{item.entity_type.value} records are managed locally"), None, None

        payload = self._validated_payload(item)

        if item.operation == Operation.EXTINCTION:
            local = self.store.load_local(item.entity_type, item.external_code)
            if local is None:
                return Skip(f"{item.entity_type.value} {item.external_code} has no local record, "
                            "nothing to extinguish"), None, None
            remote = {"is_active": False}
            return reconcile(remote, local), remote, local

        if item.operation in REVIEW_OPERATIONS:
            local = self.store.load_local(item.entity_type, item.external_code)
            outcome = Conflict(
                diff=sorted(payload),
                local_value=dict(local.values) if local else {},
                remote_value=payload,
                reason=f"{item.operation.value} requires manual review",
            )
            return outcome, payload, local

        remote = self._remote_values(item, payload)
        # Local state may change between retries, so it is read on every attempt
        local = self.store.load_local(item.entity_type, item.external_code)
        return reconcile(remote, local), remote, local

    @staticmethod
    def _validated_payload(item: QueueItem) -> Dict[str, Any]:
        if not str(item.external_code or "").strip():
            raise ValidationError("Queue item has no external code")
        if not isinstance(item.payload, dict):
            raise ValidationError(f"Payload must be an object, got {type(item.payload).__name__}")
        return normalize_record(item.payload)

    def _remote_values(self, item: QueueItem, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = self.registry.fetch(item.external_code, item.entity_type)
        if record is None:
            raise ValidationError(f"{item.entity_type.value} {item.external_code} not found in SIORG")
        remote = {**payload, **record.fields}

        if item.operation == Operation.HIERARCHY_CHANGE:
            remote = {name: remote[name] for name in HIERARCHY_FIELDS if name in remote}
            if not remote:
                raise ValidationError(f"Hierarchy change for {item.external_code} carries no hierarchy fields")
        return remote

    def _persist_reconciled(self, item: QueueItem, outcome, remote: Optional[Dict[str, Any]],
                            local: Optional[LocalRecord]) -> str:
        # A local edit landing between the decision and the write sends us back to reconcile
        for _ in range(MAX_LOCAL_RECHECKS):
            try:
                return self._persist(item, outcome, remote, local)
            except LocalRecordChanged as e:
                logger.info(f"{item.entity_type.value} {item.external_code} changed locally, reconciling again")
                local = e.current
                outcome = reconcile(remote, local)
        raise LocalRecordChanged(f"{item.entity_type.value} {item.external_code} kept changing locally")

    def _persist(self, item: QueueItem, outcome, remote: Optional[Dict[str, Any]],
                 local: Optional[LocalRecord]) -> str:
        if isinstance(outcome, Skip):
            self.store.complete(item, notes=f"Skipped: {outcome.reason}")
            return "skipped"

        if isinstance(outcome, Conflict):
            self.store.mark_conflict(item, outcome.detected_changes(), outcome.local_value, outcome.remote_value)
            logger.debug(f"Conflict on {item.entity_type.value} {item.external_code}: {outcome.diff}")
            return "conflict"

        if isinstance(outcome, Apply):
            self.store.complete(item, changes=outcome.changes, remote=remote, local=local)
            return "succeeded"

        if isinstance(outcome, NoOp):
            self.store.complete(item, changes={}, remote=remote, notes="No changes")
            return "succeeded"

        raise TypeError(f"Unknown reconciliation outcome: {outcome!r}")

    def _fail(self, item: QueueItem, error: Exception, retryable: bool) -> str:
        message = (str(error) or type(error).__name__)[:MAX_ERROR_LENGTH]
        details = {
            "error": message,
            "error_type": type(error).__name__,
            "attempt": item.attempts + 1,
            "retryable": retryable,
        }
        status_code = getattr(error, "status_code", None)
        if status_code is not None:
            details["status_code"] = status_code

        try:
            if retryable and item.attempts + 1 < item.max_attempts:
                delay = backoff_delay(item.attempts, self.config.retry_base_delay,
                                      self.config.retry_max_delay, self.config.retry_jitter, self._rng)
                details["next_retry_delay_seconds"] = round(delay, 3)
                self.store.fail_retry(item, message, details, self._now() + timedelta(seconds=delay))
                logger.debug(f"Item {item.id} will retry in {delay:.1f}s: {message}")
                return "retried"

            self.store.fail_terminal(item, message, details)
            logger.warning(
                f"Item {item.id} failed after {item.attempts + 1} attempt(s): {message}",
                extra={"queue_item_id": str(item.id), "external_code": item.external_code}
            )
            return "failed"
        except ClaimLost as e:
            logger.warning(f"Claim lost while recording failure of item {item.id}: {e}")
            return "skipped"
        except InfrastructureError as e:
            logger.error(f"Could not record failure of item {item.id}, lease expiry will requeue it: {e}")
            return "failed"

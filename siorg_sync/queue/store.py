"""PostgreSQL-backed sync queue with row-locking claims."""
import uuid
from datetime import datetime
from typing import Optional, List, Dict, Any
from psycopg2.extras import Json

from siorg_sync import settings
from siorg_sync.db import Database
from siorg_sync.errors import ClaimLost, LocalRecordChanged
from siorg_sync.local_store import LocalEntityRepository
from siorg_sync.logging_conf import logger
from siorg_sync.queue.models import QueueItem, LocalRecord, Status


# Every worker-side status write is guarded by this clause. A worker whose
# lease was reclaimed no longer matches and gets ClaimLost instead of
# overwriting the new holder's state.
_CLAIM_GUARD = "id = %s AND status = 'PROCESSING' AND claim_token = %s"


def _json(value):
    return Json(value) if value is not None else None


class SyncQueueStore:
    """Durable queue of SIORG changes shared by all worker processes."""

    def __init__(self, db: Database, local: Optional[LocalEntityRepository] = None,
                 default_max_attempts: Optional[int] = None):
        self.db = db
        self.local = local or LocalEntityRepository()
        self.default_max_attempts = default_max_attempts or settings.MAX_ATTEMPTS

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def enqueue(self, entity_type, operation, external_code: str, payload: Dict[str, Any],
                max_attempts: Optional[int] = None, expires_at: Optional[datetime] = None,
                next_attempt_at: Optional[datetime] = None) -> QueueItem:
        """Insert a new PENDING item."""
        item = QueueItem.create(entity_type, operation, external_code, payload)
        with self.db.cursor() as cur:
            cur.execute("""
                INSERT INTO siorg_sync_queue (
                    id, entity_type, operation, external_code, payload,
                    max_attempts, expires_at, next_attempt_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, COALESCE(%s, NOW()))
                RETURNING *
            """, (
                item.id,
                item.entity_type.value,
                item.operation.value,
                item.external_code,
                Json(payload),
                max_attempts or self.default_max_attempts,
                expires_at,
                next_attempt_at,
            ))
            row = cur.fetchone()
        logger.debug(
            f"Enqueued {item.operation.value} {item.entity_type.value}:{item.external_code}",
            extra={"queue_item_id": str(item.id), "external_code": item.external_code}
        )
        return QueueItem.from_row(row)

    # ------------------------------------------------------------------
    # Claim protocol
    # ------------------------------------------------------------------

    def claim_batch(self, limit: int, lease_seconds: Optional[int] = None,
                    worker_id: Optional[str] = None) -> List[QueueItem]:
        """Atomically claim up to `limit` eligible items, oldest first.

        Rows locked by a concurrent claim are skipped rather than waited on,
        so N workers never receive the same item.
        """
        lease_seconds = lease_seconds if lease_seconds is not None else settings.LEASE_SECONDS
        claim_token = uuid.uuid4()
        with self.db.cursor() as cur:
            cur.execute("""
                WITH claimable AS (
                    SELECT id
                    FROM siorg_sync_queue
                    WHERE status = 'PENDING'
                      AND next_attempt_at <= NOW()
                      AND (expires_at IS NULL OR expires_at > NOW())
                    ORDER BY created_at ASC
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE siorg_sync_queue q
                SET status = 'PROCESSING',
                    claim_token = %s,
                    claimed_by = %s,
                    last_attempt_at = NOW(),
                    lease_expires_at = NOW() + make_interval(secs => %s),
                    updated_at = NOW()
                FROM claimable
                WHERE q.id = claimable.id
                RETURNING q.*
            """, (limit, claim_token, worker_id or settings.WORKER_ID, lease_seconds))
            rows = cur.fetchall()
        items = [QueueItem.from_row(row) for row in rows]
        items.sort(key=lambda item: item.created_at)
        return items

    def requeue_expired_leases(self) -> int:
        """Return PROCESSING items whose lease ran out to PENDING.

        Only the claim holder counts attempts, so `attempts` is left as is and
        the item is claimable again as soon as the lease window has elapsed.
        """
        with self.db.cursor() as cur:
            cur.execute("""
                WITH expired AS (
                    SELECT id
                    FROM siorg_sync_queue
                    WHERE status = 'PROCESSING'
                      AND lease_expires_at <= NOW()
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE siorg_sync_queue q
                SET status = 'PENDING',
                    last_error = 'Lease expired before the item was finished',
                    error_details = jsonb_build_object(
                        'claimed_by', q.claimed_by,
                        'lease_expires_at', q.lease_expires_at
                    ),
                    next_attempt_at = NOW(),
                    claim_token = NULL,
                    claimed_by = NULL,
                    lease_expires_at = NULL,
                    updated_at = NOW()
                FROM expired
                WHERE q.id = expired.id
                RETURNING q.id
            """)
            count = len(cur.fetchall())
        if count > 0:
            logger.warning(f"Requeued {count} items with expired leases")
        return count

    def load_local(self, entity_type, external_code: str) -> Optional[LocalRecord]:
        with self.db.cursor() as cur:
            return self.local.load(cur, getattr(entity_type, "value", entity_type), external_code)

    # ------------------------------------------------------------------
    # Guarded transitions out of PROCESSING
    # ------------------------------------------------------------------

    def complete(self, item: QueueItem, changes: Optional[Dict[str, Any]] = None,
                 remote: Optional[Dict[str, Any]] = None, local: Optional[LocalRecord] = None,
                 notes: Optional[str] = None) -> None:
        """Mark COMPLETED and apply `changes` locally in the same transaction.

        `local` is the snapshot the changes were decided on. The entity is
        re-read under a row lock; if it no longer matches, nothing is written
        and LocalRecordChanged carries the current record back to the caller.
        """
        with self.db.cursor() as cur:
            cur.execute(f"""
                UPDATE siorg_sync_queue
                SET status = 'COMPLETED',
                    processed_at = NOW(),
                    resolution_notes = %s,
                    last_error = NULL,
                    error_details = NULL,
                    claim_token = NULL,
                    lease_expires_at = NULL,
                    updated_at = NOW()
                WHERE {_CLAIM_GUARD}
                RETURNING id
            """, (notes, item.id, item.claim_token))
            self._check_guard(cur, item, "complete")
            if remote is None:
                return

            previous = local.values if local else None
            if changes:
                current = self.local.load(cur, item.entity_type.value, item.external_code, for_update=True)
                current_values = current.values if current else None
                if current_values != previous:
                    raise LocalRecordChanged(
                        f"{item.entity_type.value} {item.external_code} changed locally during processing",
                        current=current,
                    )
            self.local.apply(cur, item, changes or {}, remote, previous)

    def fail_retry(self, item: QueueItem, error: str, details: Optional[Dict[str, Any]],
                   next_attempt_at: datetime) -> None:
        """Count the attempt and put the item back to PENDING after a backoff."""
        with self.db.cursor() as cur:
            cur.execute(f"""
                UPDATE siorg_sync_queue
                SET status = 'PENDING',
                    attempts = attempts + 1,
                    last_error = %s,
                    error_details = %s,
                    next_attempt_at = %s,
                    claim_token = NULL,
                    claimed_by = NULL,
                    lease_expires_at = NULL,
                    updated_at = NOW()
                WHERE {_CLAIM_GUARD}
                RETURNING id
            """, (error, _json(details), next_attempt_at, item.id, item.claim_token))
            self._check_guard(cur, item, "fail_retry")

    def fail_terminal(self, item: QueueItem, error: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Count the attempt and mark the item FAILED for good."""
        with self.db.cursor() as cur:
            cur.execute(f"""
                UPDATE siorg_sync_queue
                SET status = 'FAILED',
                    attempts = attempts + 1,
                    last_error = %s,
                    error_details = %s,
                    processed_at = NOW(),
                    claim_token = NULL,
                    lease_expires_at = NULL,
                    updated_at = NOW()
                WHERE {_CLAIM_GUARD}
                RETURNING id
            """, (error, _json(details), item.id, item.claim_token))
            self._check_guard(cur, item, "fail_terminal")

    def mark_conflict(self, item: QueueItem, diff: Dict[str, Any], local_value: Optional[Dict[str, Any]],
                      remote_value: Optional[Dict[str, Any]]) -> None:
        """Park the item for an operator. Attempts are left untouched."""
        with self.db.cursor() as cur:
            cur.execute(f"""
                UPDATE siorg_sync_queue
                SET status = 'CONFLICT',
                    detected_changes = %s,
                    local_value = %s,
                    remote_value = %s,
                    claim_token = NULL,
                    lease_expires_at = NULL,
                    updated_at = NOW()
                WHERE {_CLAIM_GUARD}
                RETURNING id
            """, (_json(diff), _json(local_value), _json(remote_value), item.id, item.claim_token))
            self._check_guard(cur, item, "mark_conflict")

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup_expired(self) -> int:
        """Delete PENDING items past their expiry. Claimed rows are not touched."""
        with self.db.cursor() as cur:
            cur.execute("""
                DELETE FROM siorg_sync_queue
                WHERE id IN (
                    SELECT id
                    FROM siorg_sync_queue
                    WHERE status = 'PENDING'
                      AND expires_at IS NOT NULL
                      AND expires_at <= NOW()
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id
            """)
            return len(cur.fetchall())

    # ------------------------------------------------------------------
    # Admin surface
    # ------------------------------------------------------------------

    def get(self, item_id) -> Optional[QueueItem]:
        with self.db.cursor() as cur:
            cur.execute("SELECT * FROM siorg_sync_queue WHERE id = %s", (item_id,))
            row = cur.fetchone()
        return QueueItem.from_row(row) if row else None

    def list_items(self, status=None, entity_type=None, limit: int = 50, offset: int = 0) -> List[QueueItem]:
        with self.db.cursor() as cur:
            cur.execute("""
                SELECT *
                FROM siorg_sync_queue
                WHERE (%(status)s::text IS NULL OR status = %(status)s)
                  AND (%(entity_type)s::text IS NULL OR entity_type = %(entity_type)s)
                ORDER BY created_at ASC
                LIMIT %(limit)s OFFSET %(offset)s
            """, {
                "status": getattr(status, "value", status),
                "entity_type": getattr(entity_type, "value", entity_type),
                "limit": limit,
                "offset": offset,
            })
            return [QueueItem.from_row(row) for row in cur.fetchall()]

    def list_conflicts(self, limit: int = 50, offset: int = 0) -> List[QueueItem]:
        """Conflicts awaiting an operator, newest first."""
        with self.db.cursor() as cur:
            cur.execute("""
                SELECT *
                FROM siorg_sync_queue
                WHERE status = 'CONFLICT'
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
            """, (limit, offset))
            return [QueueItem.from_row(row) for row in cur.fetchall()]

    def stats(self) -> Dict[str, int]:
        """Item counts per status, zero-filled."""
        counts = {status.value.lower(): 0 for status in Status}
        with self.db.cursor() as cur:
            cur.execute("SELECT status, COUNT(*) AS count FROM siorg_sync_queue GROUP BY status")
            for row in cur.fetchall():
                counts[row["status"].lower()] = row["count"]
        counts["total"] = sum(counts.values())
        return counts

    def delete(self, item_id) -> bool:
        with self.db.cursor() as cur:
            cur.execute("DELETE FROM siorg_sync_queue WHERE id = %s RETURNING id", (item_id,))
            deleted = cur.fetchone() is not None
        if deleted:
            logger.info(f"Deleted queue item {item_id}")
        return deleted

    def resolve_conflict(self, item_id, notes: str) -> bool:
        """Operator closes a conflict after merging by hand."""
        with self.db.cursor() as cur:
            cur.execute("""
                UPDATE siorg_sync_queue
                SET status = 'COMPLETED',
                    resolution_notes = %s,
                    processed_at = NOW(),
                    updated_at = NOW()
                WHERE id = %s AND status = 'CONFLICT'
                RETURNING id
            """, (notes, item_id))
            return cur.fetchone() is not None

    def retry(self, item_id) -> bool:
        """Operator sends a FAILED or CONFLICT item back through the pipeline."""
        with self.db.cursor() as cur:
            cur.execute("""
                UPDATE siorg_sync_queue
                SET status = 'PENDING',
                    attempts = 0,
                    next_attempt_at = NOW(),
                    processed_at = NULL,
                    detected_changes = NULL,
                    local_value = NULL,
                    remote_value = NULL,
                    updated_at = NOW()
                WHERE id = %s AND status IN ('FAILED', 'CONFLICT')
                RETURNING id
            """, (item_id,))
            return cur.fetchone() is not None

    @staticmethod
    def _check_guard(cur, item: QueueItem, action: str) -> None:
        if cur.fetchone() is None:
            raise ClaimLost(f"{action}: item {item.id} is no longer held by claim {item.claim_token}")

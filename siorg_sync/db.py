"""Database connection pool and schema for the sync queue."""
import psycopg2
import psycopg2.extras
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool
from contextlib import contextmanager
from typing import Optional

from siorg_sync import settings
from siorg_sync.errors import StoreUnavailable
from siorg_sync.logging_conf import logger

psycopg2.extras.register_uuid()


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS siorg_sync_queue (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    entity_type TEXT NOT NULL
        CHECK (entity_type IN ('ORGANIZATION', 'UNIT', 'CATEGORY', 'TYPE')),
    operation TEXT NOT NULL
        CHECK (operation IN ('CREATION', 'UPDATE', 'EXTINCTION', 'HIERARCHY_CHANGE', 'MERGE', 'SPLIT')),
    external_code TEXT NOT NULL,
    payload JSONB NOT NULL DEFAULT '{}'::jsonb,
    status TEXT NOT NULL DEFAULT 'PENDING'
        CHECK (status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'CONFLICT')),
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    next_attempt_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    expires_at TIMESTAMPTZ,
    last_error TEXT,
    error_details JSONB,
    detected_changes JSONB,
    local_value JSONB,
    remote_value JSONB,
    claim_token UUID,
    claimed_by TEXT,
    lease_expires_at TIMESTAMPTZ,
    last_attempt_at TIMESTAMPTZ,
    processed_at TIMESTAMPTZ,
    resolution_notes TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_sync_queue_claimable
    ON siorg_sync_queue (created_at) WHERE status = 'PENDING';
CREATE INDEX IF NOT EXISTS idx_sync_queue_lease
    ON siorg_sync_queue (lease_expires_at) WHERE status = 'PROCESSING';
CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON siorg_sync_queue (status);
CREATE INDEX IF NOT EXISTS idx_sync_queue_entity ON siorg_sync_queue (entity_type, external_code);

CREATE TABLE IF NOT EXISTS siorg_local_entities (
    entity_type TEXT NOT NULL,
    external_code TEXT NOT NULL,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (entity_type, external_code)
);

CREATE TABLE IF NOT EXISTS siorg_sync_baselines (
    entity_type TEXT NOT NULL,
    external_code TEXT NOT NULL,
    fields JSONB NOT NULL DEFAULT '{}'::jsonb,
    last_synced_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (entity_type, external_code)
);

CREATE TABLE IF NOT EXISTS siorg_sync_history (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    entity_type TEXT NOT NULL,
    external_code TEXT NOT NULL,
    change_type TEXT NOT NULL,
    previous_data JSONB,
    new_data JSONB,
    affected_fields TEXT[] NOT NULL DEFAULT '{}',
    sync_queue_id UUID REFERENCES siorg_sync_queue(id) ON DELETE SET NULL,
    source TEXT NOT NULL DEFAULT 'SYNC',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_sync_history_entity
    ON siorg_sync_history (entity_type, external_code, created_at DESC);
"""


class Database:
    """Pooled database connections shared by the worker threads."""

    def __init__(self, dsn: Optional[str] = None, minconn: Optional[int] = None, maxconn: Optional[int] = None):
        self.dsn = dsn or settings.DATABASE_URL
        self.minconn = minconn or settings.DB_POOL_MIN
        self.maxconn = maxconn or settings.DB_POOL_MAX
        self._pool = None

    @property
    def pool(self) -> ThreadedConnectionPool:
        """Get or create the connection pool."""
        if self._pool is None or self._pool.closed:
            try:
                self._pool = ThreadedConnectionPool(self.minconn, self.maxconn, self.dsn)
            except psycopg2.OperationalError as e:
                raise StoreUnavailable(f"Cannot connect to database: {e}") from e
        return self._pool

    def close(self):
        """Close all pooled connections."""
        if self._pool and not self._pool.closed:
            self._pool.closeall()
            self._pool = None

    @contextmanager
    def cursor(self):
        """Context manager for a pooled cursor with auto-commit/rollback.

        Everything executed on the cursor is one transaction. Connection-level
        failures surface as StoreUnavailable so callers can treat them as
        retryable.
        """
        pool = self.pool
        try:
            conn = pool.getconn()
        except psycopg2.pool.PoolError as e:
            raise StoreUnavailable(f"Connection pool exhausted: {e}") from e
        broken = False
        cur = conn.cursor(cursor_factory=RealDictCursor)
        try:
            yield cur
            conn.commit()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            broken = True
            self._safe_rollback(conn)
            raise StoreUnavailable(str(e).strip()) from e
        except Exception:
            self._safe_rollback(conn)
            raise
        finally:
            if not conn.closed:
                cur.close()
            pool.putconn(conn, close=broken or bool(conn.closed))

    def ensure_schema(self):
        """Create the queue, local entity, baseline and history tables."""
        with self.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        logger.info("Database schema ensured")

    @staticmethod
    def _safe_rollback(conn):
        if conn.closed:
            return
        try:
            conn.rollback()
        except psycopg2.Error as e:
            logger.warning(f"Rollback failed: {e}")

"""Queue store against a real PostgreSQL. Set TEST_DATABASE_URL to run."""
import os
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
from psycopg2.extras import Json

from siorg_sync.db import Database
from siorg_sync.errors import ClaimLost, LocalRecordChanged
from siorg_sync.queue.models import Status
from siorg_sync.queue.store import SyncQueueStore

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not os.getenv("TEST_DATABASE_URL"), reason="TEST_DATABASE_URL not set"),
]


@pytest.fixture
def db():
    database = Database(dsn=os.getenv("TEST_DATABASE_URL"), minconn=1, maxconn=8)
    database.ensure_schema()
    with database.cursor() as cur:
        cur.execute("TRUNCATE siorg_sync_history, siorg_sync_baselines, siorg_local_entities, siorg_sync_queue")
    yield database
    database.close()


@pytest.fixture
def pg_store(db):
    return SyncQueueStore(db, default_max_attempts=3)


def seed_local(db, entity_type, code, data, baseline=None):
    with db.cursor() as cur:
        cur.execute(
            "INSERT INTO siorg_local_entities (entity_type, external_code, data) VALUES (%s, %s, %s)",
            (entity_type, code, Json(data)),
        )
        if baseline is not None:
            cur.execute(
                "INSERT INTO siorg_sync_baselines (entity_type, external_code, fields) VALUES (%s, %s, %s)",
                (entity_type, code, Json(baseline)),
            )


def test_claim_is_oldest_first_and_marks_processing(pg_store):
    first = pg_store.enqueue("UNIT", "UPDATE", "U1", {"name": "A"})
    second = pg_store.enqueue("UNIT", "UPDATE", "U2", {"name": "B"})
    pg_store.enqueue("UNIT", "UPDATE", "U3", {"name": "C"})

    claimed = pg_store.claim_batch(2, lease_seconds=60, worker_id="w1")

    assert [item.id for item in claimed] == [first.id, second.id]
    assert all(item.status == Status.PROCESSING for item in claimed)
    assert all(item.claimed_by == "w1" and item.claim_token for item in claimed)
    assert claimed[0].lease_expires_at > datetime.now(timezone.utc)


def test_concurrent_claims_never_share_an_item(pg_store):
    for n in range(40):
        pg_store.enqueue("UNIT", "CREATION", f"U{n}", {"name": str(n)})
    results = []
    lock = threading.Lock()

    def claim(worker_id):
        while True:
            batch = pg_store.claim_batch(3, lease_seconds=60, worker_id=worker_id)
            if not batch:
                return
            with lock:
                results.extend(item.id for item in batch)

    threads = [threading.Thread(target=claim, args=(f"w{n}",)) for n in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 40
    assert len(set(results)) == 40


def test_not_yet_due_and_expired_items_are_not_claimed(pg_store):
    now = datetime.now(timezone.utc)
    pg_store.enqueue("UNIT", "UPDATE", "later", {}, next_attempt_at=now + timedelta(hours=1))
    pg_store.enqueue("UNIT", "UPDATE", "gone", {}, expires_at=now - timedelta(seconds=1))

    assert pg_store.claim_batch(10) == []


def test_lease_expiry_requeues_and_fences_the_old_holder(pg_store):
    item = pg_store.enqueue("UNIT", "UPDATE", "U1", {"name": "A"})
    [held] = pg_store.claim_batch(1, lease_seconds=1)

    assert pg_store.requeue_expired_leases() == 0
    time.sleep(1.2)
    assert pg_store.requeue_expired_leases() == 1

    requeued = pg_store.get(item.id)
    assert requeued.status == Status.PENDING
    assert requeued.attempts == 0
    with pytest.raises(ClaimLost):
        pg_store.complete(held, notes="too late")

    [reclaimed] = pg_store.claim_batch(1)
    assert reclaimed.claim_token != held.claim_token


def test_lease_expiry_on_last_attempt_keeps_item_claimable(pg_store):
    item = pg_store.enqueue("UNIT", "UPDATE", "U1", {}, max_attempts=1)
    pg_store.claim_batch(1, lease_seconds=1)
    time.sleep(1.2)

    pg_store.requeue_expired_leases()

    stored = pg_store.get(item.id)
    assert stored.status == Status.PENDING
    assert stored.attempts == 0
    assert [i.id for i in pg_store.claim_batch(1)] == [item.id]


def test_complete_applies_changes_baseline_and_history(db, pg_store):
    seed_local(db, "UNIT", "U123", {"name": "Dept A (old)", "acronym": "DA"},
               baseline={"name": "Dept A (old)", "acronym": "DA"})
    item = pg_store.enqueue("UNIT", "UPDATE", "U123", {"name": "Dept A"})
    [held] = pg_store.claim_batch(1)
    snapshot = pg_store.load_local("UNIT", "U123")

    pg_store.complete(held, changes={"name": "Dept A"}, remote={"name": "Dept A", "acronym": "DA"},
                      local=snapshot)

    assert pg_store.get(item.id).status == Status.COMPLETED
    local = pg_store.load_local("UNIT", "U123")
    assert local.values == {"name": "Dept A", "acronym": "DA"}
    assert local.baseline == {"name": "Dept A", "acronym": "DA"}
    with db.cursor() as cur:
        history = pg_store.local.history(cur, "UNIT", "U123")
    assert len(history) == 1
    assert history[0]["affected_fields"] == ["name"]
    assert history[0]["previous_data"] == {"name": "Dept A (old)"}


def test_complete_refuses_stale_local_snapshot(db, pg_store):
    seed_local(db, "UNIT", "U1", {"name": "Old"}, baseline={"name": "Old"})
    item = pg_store.enqueue("UNIT", "UPDATE", "U1", {"name": "Remote"})
    [held] = pg_store.claim_batch(1)
    snapshot = pg_store.load_local("UNIT", "U1")
    with db.cursor() as cur:
        cur.execute("""
            UPDATE siorg_local_entities SET data = %s
            WHERE entity_type = 'UNIT' AND external_code = 'U1'
        """, (Json({"name": "Operator edit"}),))

    with pytest.raises(LocalRecordChanged) as excinfo:
        pg_store.complete(held, changes={"name": "Remote"}, remote={"name": "Remote"}, local=snapshot)

    assert excinfo.value.current.values == {"name": "Operator edit"}
    assert excinfo.value.current.baseline == {"name": "Old"}
    assert pg_store.get(item.id).status == Status.PROCESSING
    assert pg_store.load_local("UNIT", "U1").values == {"name": "Operator edit"}


def test_complete_clears_previous_error(pg_store):
    item = pg_store.enqueue("UNIT", "UPDATE", "U1", {})
    [held] = pg_store.claim_batch(1)
    pg_store.fail_retry(held, "timeout", {"error_type": "RegistryUnavailable"},
                        datetime.now(timezone.utc) - timedelta(seconds=1))
    [held] = pg_store.claim_batch(1)

    pg_store.complete(held, notes="No changes")

    stored = pg_store.get(item.id)
    assert stored.status == Status.COMPLETED
    assert stored.last_error is None
    assert stored.error_details is None


def test_claim_lost_rolls_back_local_write(db, pg_store):
    seed_local(db, "UNIT", "U1", {"name": "Local"})
    pg_store.enqueue("UNIT", "UPDATE", "U1", {"name": "Remote"})
    [held] = pg_store.claim_batch(1)
    pg_store.delete(held.id)

    with pytest.raises(ClaimLost):
        pg_store.complete(held, changes={"name": "Remote"}, remote={"name": "Remote"})

    assert pg_store.load_local("UNIT", "U1").values == {"name": "Local"}


def test_fail_retry_delays_next_claim(pg_store):
    item = pg_store.enqueue("UNIT", "UPDATE", "U1", {})
    [held] = pg_store.claim_batch(1)

    pg_store.fail_retry(held, "timeout", {"error_type": "RegistryUnavailable"},
                        datetime.now(timezone.utc) + timedelta(minutes=5))

    stored = pg_store.get(item.id)
    assert stored.status == Status.PENDING
    assert stored.attempts == 1
    assert stored.error_details == {"error_type": "RegistryUnavailable"}
    assert pg_store.claim_batch(1) == []


def test_cleanup_removes_only_expired_pending(pg_store):
    now = datetime.now(timezone.utc)
    expired = pg_store.enqueue("UNIT", "UPDATE", "U1", {}, expires_at=now - timedelta(seconds=1))
    live = pg_store.enqueue("UNIT", "UPDATE", "U2", {}, expires_at=now + timedelta(hours=1))

    assert pg_store.cleanup_expired() == 1
    assert pg_store.get(expired.id) is None
    assert pg_store.get(live.id) is not None


def test_admin_conflict_workflow(pg_store):
    first = pg_store.enqueue("UNIT", "UPDATE", "U1", {"name": "A"})
    second = pg_store.enqueue("UNIT", "UPDATE", "U2", {"name": "B"})
    for held in pg_store.claim_batch(2):
        pg_store.mark_conflict(held, {"fields": ["name"]}, {"name": "local"}, {"name": "remote"})

    assert [item.id for item in pg_store.list_conflicts()] == [second.id, first.id]
    stats = pg_store.stats()
    assert stats["conflict"] == 2 and stats["pending"] == 0 and stats["total"] == 2

    assert pg_store.resolve_conflict(first.id, "Kept local name") is True
    assert pg_store.resolve_conflict(first.id, "again") is False
    assert pg_store.get(first.id).status == Status.COMPLETED

    assert pg_store.retry(second.id) is True
    retried = pg_store.get(second.id)
    assert retried.status == Status.PENDING and retried.attempts == 0
    assert retried.detected_changes is None

    assert [item.id for item in pg_store.list_items(status=Status.PENDING)] == [second.id]
    assert pg_store.delete(second.id) is True
    assert pg_store.delete(second.id) is False

"""Local entity snapshots, sync baselines and sync history.

These methods take an open cursor so the queue store can run them inside the
same transaction that completes a queue item.
"""
from typing import Dict, Any, Optional, List
from psycopg2.extras import Json

from siorg_sync.queue.models import LocalRecord, QueueItem


class LocalEntityRepository:
    """Reads and writes the local side of a reconciliation."""

    def load(self, cur, entity_type: str, external_code: str, for_update: bool = False) -> Optional[LocalRecord]:
        # The baseline is on the nullable side of the join, so only the entity row is locked
        lock = "FOR UPDATE OF e" if for_update else ""
        cur.execute(f"""
            SELECT e.data, b.fields AS baseline, b.last_synced_at
            FROM siorg_local_entities e
            LEFT JOIN siorg_sync_baselines b
              ON b.entity_type = e.entity_type AND b.external_code = e.external_code
            WHERE e.entity_type = %s AND e.external_code = %s
            {lock}
        """, (entity_type, external_code))
        row = cur.fetchone()
        if row is None:
            return None
        return LocalRecord(values=row["data"], baseline=row["baseline"], last_synced_at=row["last_synced_at"])

    def apply(self, cur, item: QueueItem, changes: Dict[str, Any], remote: Dict[str, Any],
              previous: Optional[Dict[str, Any]]) -> None:
        """Merge `changes` into the entity, then move the baseline to `remote`."""
        entity_type = item.entity_type.value
        if changes:
            cur.execute("""
                INSERT INTO siorg_local_entities (entity_type, external_code, data)
                VALUES (%s, %s, %s)
                ON CONFLICT (entity_type, external_code)
                DO UPDATE SET data = siorg_local_entities.data || EXCLUDED.data,
                              updated_at = NOW()
            """, (entity_type, item.external_code, Json(changes)))
            self._record_history(cur, item, previous, changes)
        self._refresh_baseline(cur, entity_type, item.external_code, remote)

    def history(self, cur, entity_type: str, external_code: str, limit: int = 50) -> List[Dict[str, Any]]:
        cur.execute("""
            SELECT id, change_type, previous_data, new_data, affected_fields, sync_queue_id, created_at
            FROM siorg_sync_history
            WHERE entity_type = %s AND external_code = %s
            ORDER BY created_at DESC
            LIMIT %s
        """, (entity_type, external_code, limit))
        return cur.fetchall()

    def _refresh_baseline(self, cur, entity_type: str, external_code: str, remote: Dict[str, Any]) -> None:
        cur.execute("""
            INSERT INTO siorg_sync_baselines (entity_type, external_code, fields, last_synced_at)
            VALUES (%s, %s, %s, NOW())
            ON CONFLICT (entity_type, external_code)
            DO UPDATE SET fields = siorg_sync_baselines.fields || EXCLUDED.fields,
                          last_synced_at = NOW()
        """, (entity_type, external_code, Json(remote)))

    def _record_history(self, cur, item: QueueItem, previous: Optional[Dict[str, Any]],
                        changes: Dict[str, Any]) -> None:
        previous_data = None
        if previous is not None:
            previous_data = {name: previous.get(name) for name in changes}
        cur.execute("""
            INSERT INTO siorg_sync_history (
                entity_type, external_code, change_type, previous_data,
                new_data, affected_fields, sync_queue_id
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
        """, (
            item.entity_type.value,
            item.external_code,
            item.operation.value,
            Json(previous_data) if previous_data is not None else None,
            Json(changes),
            sorted(changes),
            item.id,
        ))

"""Queue data models."""
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional


class EntityType(str, Enum):
    ORGANIZATION = "ORGANIZATION"
    UNIT = "UNIT"
    CATEGORY = "CATEGORY"
    TYPE = "TYPE"


class Operation(str, Enum):
    CREATION = "CREATION"
    UPDATE = "UPDATE"
    EXTINCTION = "EXTINCTION"
    HIERARCHY_CHANGE = "HIERARCHY_CHANGE"
    MERGE = "MERGE"
    SPLIT = "SPLIT"


class Status(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CONFLICT = "CONFLICT"


@dataclass
class QueueItem:
    """Represents an item in the sync queue."""

    id: uuid.UUID
    entity_type: EntityType
    operation: Operation
    external_code: str  # SIORG code of the affected entity
    payload: Dict[str, Any]  # Remote snapshot as received
    status: Status = Status.PENDING
    attempts: int = 0
    max_attempts: int = 3
    next_attempt_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    detected_changes: Optional[Dict[str, Any]] = None
    local_value: Optional[Dict[str, Any]] = None
    remote_value: Optional[Dict[str, Any]] = None
    claim_token: Optional[uuid.UUID] = None
    claimed_by: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def create(cls, entity_type, operation, external_code: str, payload: Dict[str, Any], **kwargs):
        """Factory method to create a fresh PENDING QueueItem."""
        return cls(
            id=kwargs.pop("id", None) or uuid.uuid4(),
            entity_type=EntityType(entity_type),
            operation=Operation(operation),
            external_code=str(external_code),
            payload=payload,
            **kwargs
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "QueueItem":
        """Build an item from a RealDictCursor row."""
        values = {name: row[name] for name in cls.__dataclass_fields__ if name in row}
        values["entity_type"] = EntityType(row["entity_type"])
        values["operation"] = Operation(row["operation"])
        values["status"] = Status(row["status"])
        return cls(**values)

    @property
    def entity_key(self):
        return (self.entity_type, self.external_code)


@dataclass
class LocalRecord:
    """Snapshot of the local entity plus the values it had at the last sync."""

    values: Dict[str, Any]
    baseline: Optional[Dict[str, Any]] = None
    last_synced_at: Optional[datetime] = None


@dataclass
class BatchStats:
    """Outcome counters for one claimed batch."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    conflicts: int = 0
    skipped: int = 0
    retried: int = 0  # subset of failed that went back to PENDING

    def record(self, outcome: str) -> None:
        self.processed += 1
        if outcome == "succeeded":
            self.succeeded += 1
        elif outcome == "conflict":
            self.conflicts += 1
        elif outcome == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
            if outcome == "retried":
                self.retried += 1

    def merge(self, other: "BatchStats") -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.conflicts += other.conflicts
        self.skipped += other.skipped
        self.retried += other.retried

    def as_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "conflicts": self.conflicts,
            "skipped": self.skipped,
            "retried": self.retried,
        }

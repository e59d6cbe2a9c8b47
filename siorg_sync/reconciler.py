"""Conflict detection between a remote change and the local record.

The decision is field by field against the baseline, the values each field
had when the entity was last synced:

* the remote value equals the local value: nothing to do for that field
* the remote did not move away from the baseline: the local edit stands
* only the remote moved: the field is applied
* both moved to different values: the field is in conflict

One conflicting field turns the whole change into a Conflict; nothing is
applied partially. Without a baseline (entity never synced by this worker)
the current local values are taken as the baseline.
"""
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Union

from siorg_sync.queue.models import LocalRecord

_MISSING = object()


@dataclass(frozen=True)
class Apply:
    changes: Dict[str, Any]


@dataclass(frozen=True)
class NoOp:
    pass


@dataclass(frozen=True)
class Conflict:
    diff: List[str]
    local_value: Dict[str, Any] = field(default_factory=dict)
    remote_value: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None

    def detected_changes(self) -> Dict[str, Any]:
        details = {"fields": list(self.diff)}
        if self.reason:
            details["reason"] = self.reason
        return details


Outcome = Union[Apply, NoOp, Conflict]


def reconcile(remote_payload: Dict[str, Any], local_record: Optional[LocalRecord]) -> Outcome:
    """Classify a remote payload against the local record. Pure."""
    if local_record is None:
        return Apply(changes=dict(remote_payload)) if remote_payload else NoOp()

    local = local_record.values
    baseline = local_record.baseline if local_record.baseline is not None else local

    changes = {}
    conflicts = []
    for name in sorted(remote_payload):
        remote_value = remote_payload[name]
        local_value = local.get(name, _MISSING)
        if local_value == remote_value:
            continue

        base_value = baseline.get(name, _MISSING)
        if base_value == remote_value:
            continue
        if base_value != local_value:
            conflicts.append(name)
        else:
            changes[name] = remote_value

    if conflicts:
        return Conflict(
            diff=conflicts,
            local_value={name: local.get(name) for name in conflicts},
            remote_value={name: remote_payload[name] for name in conflicts},
        )
    if changes:
        return Apply(changes=changes)
    return NoOp()

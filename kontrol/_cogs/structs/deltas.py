"""
Deltas: the observed changes of individual objects, as queued for the cache.

A delta is one observed change of one object. The deltas of the same object
are accumulated in the order of arrival until they are applied to the cache.
"""
import dataclasses
import enum
from collections.abc import Mapping
from typing import Any

from kontrol._cogs.structs import bodies, references


class DeltaType(str, enum.Enum):
    ADDED = 'Added'
    UPDATED = 'Updated'
    DELETED = 'Deleted'
    SYNC = 'Sync'  # synthetic: periodic resyncs & re-listings, not necessarily real changes.

    def __str__(self) -> str:
        return self.value


@dataclasses.dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """
    A placeholder for objects deleted while the watch-stream was disconnected.

    The object is known to be gone (absent in a fresh listing), but its final
    state is unknown: only the last state seen in the cache is available.
    """
    key: references.ObjectKey
    obj: bodies.RawBody


@dataclasses.dataclass(frozen=True)
class Delta:
    type: DeltaType
    obj: Mapping[str, Any] | DeletedFinalStateUnknown

    @property
    def body(self) -> Mapping[str, Any]:
        """ The object's body, with the unknown final states unwrapped. """
        if isinstance(self.obj, DeletedFinalStateUnknown):
            return self.obj.obj
        return self.obj


Deltas = tuple[Delta, ...]


def coalesce(deltas: Deltas, delta: Delta) -> Deltas:
    """
    Append a new delta to the accumulated ones, merging the redundant ones.

    Adjacent updates (incl. syncs) are merged into the latest one: only the
    latest state matters for the cache, and the history is not lost otherwise.
    Two adjacent deletions are merged into one, preferring the one with
    the known final state. The terminal deletion is never lost.
    """
    if not deltas:
        return (delta,)
    last = deltas[-1]
    updating = (DeltaType.UPDATED, DeltaType.SYNC)
    if last.type in updating and delta.type in updating:
        # A real update is never downgraded to a sync: it is a genuine change.
        merged_type = DeltaType.UPDATED if DeltaType.UPDATED in (last.type, delta.type) else delta.type
        return deltas[:-1] + (Delta(merged_type, delta.obj),)
    if last.type == DeltaType.DELETED and delta.type == DeltaType.DELETED:
        if isinstance(delta.obj, DeletedFinalStateUnknown):
            return deltas
        return deltas[:-1] + (delta,)
    return deltas + (delta,)

"""
The delta queue: an ordered, per-key, coalescing buffer of the observed changes.

The reflector is the only producer, the informer's cache-updating loop is the
only consumer. Between them, the deltas of every key are accumulated in the
order of arrival, and are popped together as one batch per key, so that the
consumer sees the full history of the key since the last pop.

The keys are popped in the order of their first arrival: a key that is already
queued keeps its position when more deltas arrive for it. A popped key goes
to the end of the queue when its next delta arrives.
"""
import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable, Collection, Iterable, Mapping
from typing import Any, Protocol

from kontrol._cogs.aiokits import aiotoggles
from kontrol._cogs.structs import deltas, references

logger = logging.getLogger(__name__)


class Closed(enum.Enum):
    token = enum.auto()


CLOSED = Closed.token

Processor = Callable[[references.ObjectKey, deltas.Deltas], Awaitable[None]]


class KnownObjects(Protocol):
    """ What the queue needs to know from the cache: used in replacing & resyncing. """

    def list_keys(self) -> Collection[references.ObjectKey]:
        ...

    def get(self, key: references.ObjectKey) -> Mapping[str, Any] | None:
        ...


class DeltaFIFO:
    """
    A queue of the pending deltas, one slot per key.

    The known objects are usually the informer's indexer. They are used
    to detect the deletions missed while the watch-stream was disconnected
    (in :meth:`replace`), and to re-deliver all the cached objects (in :meth:`resync`).

    The optional toggle is turned on once the queue is synced (see :meth:`has_synced`).
    """

    def __init__(
            self,
            *,
            known: KnownObjects,
            key_fn: Callable[[Mapping[str, Any]], references.ObjectKey] = references.key_of,
            synced: aiotoggles.Toggle | None = None,
    ) -> None:
        super().__init__()
        self._known = known
        self._synced = synced
        self._key_fn = key_fn
        self._items: dict[references.ObjectKey, deltas.Deltas] = {}  # ordered by the 1st arrival
        self._condition = asyncio.Condition()
        self._closed = False
        self._populated = False
        self._initial_population_count = 0

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {len(self._items)} keys>'

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def list_keys(self) -> list[references.ObjectKey]:
        return list(self._items)

    def get(self, key: references.ObjectKey) -> deltas.Deltas:
        """ Peek into the accumulated deltas of a key, without popping them. """
        return self._items.get(key, ())

    @property
    def closed(self) -> bool:
        return self._closed

    def has_synced(self) -> bool:
        """
        Whether the 1st replacement (or the earliest additions) has been fully popped.

        Only the slots that were in the queue at the time of the 1st replacement
        are counted: the slots added later do not delay the synced state.
        """
        return self._populated and self._initial_population_count == 0

    def key_of(self, obj: Mapping[str, Any] | deltas.DeletedFinalStateUnknown) -> references.ObjectKey:
        if isinstance(obj, deltas.DeletedFinalStateUnknown):
            return obj.key
        return self._key_fn(obj)

    async def add(self, obj: Mapping[str, Any]) -> None:
        await self.enqueue(deltas.DeltaType.ADDED, obj)

    async def update(self, obj: Mapping[str, Any]) -> None:
        await self.enqueue(deltas.DeltaType.UPDATED, obj)

    async def delete(self, obj: Mapping[str, Any]) -> None:
        await self.enqueue(deltas.DeltaType.DELETED, obj)

    async def enqueue(
            self,
            type: deltas.DeltaType,
            obj: Mapping[str, Any] | deltas.DeletedFinalStateUnknown,
    ) -> None:
        async with self._condition:
            self._populated = True
            self._append(deltas.Delta(type, obj))

    async def replace(
            self,
            objs: Iterable[Mapping[str, Any]],
    ) -> None:
        """
        Replace the whole known state with a fresh snapshot.

        Every object of the snapshot is queued as a "sync" delta. For every key
        known to the cache (or queued) but absent in the snapshot, a "deleted"
        delta is synthesized with the last known state: the object was deleted
        while we did not watch.
        """
        async with self._condition:
            snapshot_keys: set[references.ObjectKey] = set()
            for obj in objs:
                delta = deltas.Delta(deltas.DeltaType.SYNC, obj)
                snapshot_keys.add(self._append(delta))

            # The keys queued but not yet cached, e.g. added by the previous watch-stream.
            queued_deletions = 0
            for key, queued in list(self._items.items()):
                if key in snapshot_keys or not queued:
                    continue
                last = queued[-1]
                if last.type == deltas.DeltaType.DELETED:
                    continue
                queued_deletions += 1
                body = dict(last.body)
                self._append(deltas.Delta(deltas.DeltaType.DELETED,
                                          deltas.DeletedFinalStateUnknown(key, body)))

            # The keys cached but not present anymore.
            known_keys = set(self._known.list_keys())
            for key in known_keys - snapshot_keys:
                if key in self._items:
                    continue  # handled above
                cached = self._known.get(key)
                if cached is None:
                    continue
                queued_deletions += 1
                self._append(deltas.Delta(deltas.DeltaType.DELETED,
                                          deltas.DeletedFinalStateUnknown(key, dict(cached))))

            if not self._populated:
                self._populated = True
                self._initial_population_count = len(self._items)
                await self._check_synced()

            if queued_deletions:
                logger.debug(f"Synthesized {queued_deletions} deletions of the vanished objects.")

    async def resync(self) -> None:
        """
        Re-deliver all cached objects as "sync" deltas.

        The keys that already have queued deltas are skipped: they will be
        delivered anyway, and with a fresher state than the cached one.
        """
        async with self._condition:
            for key in self._known.list_keys():
                if key in self._items:
                    continue
                cached = self._known.get(key)
                if cached is not None:
                    self._append(deltas.Delta(deltas.DeltaType.SYNC, cached))

    async def pop(self, process: Processor) -> references.ObjectKey | Closed:
        """
        Wait for the next key, and process all its accumulated deltas at once.

        The processing happens outside of the queue's lock, so the producer
        can continue adding the deltas meanwhile (they go to a new slot).
        The errors of the processing are escalated to the caller.

        Returns the processed key, or :data:`CLOSED` if the queue is closed.
        The deltas left in the closed queue are never delivered.
        """
        async with self._condition:
            await self._condition.wait_for(lambda: self._closed or bool(self._items))
            if self._closed:
                return CLOSED
            key = next(iter(self._items))
            popped = self._items.pop(key)

        try:
            await process(key, popped)
        finally:
            if self._initial_population_count > 0:
                self._initial_population_count -= 1
            await self._check_synced()
        return key

    async def close(self) -> None:
        async with self._condition:
            self._closed = True
            self._condition.notify_all()

    async def _check_synced(self) -> None:
        if self._synced is not None and self._synced.is_off() and self.has_synced():
            await self._synced.turn_to(True)

    def _append(self, delta: deltas.Delta) -> references.ObjectKey:
        # Must be called under the condition's lock.
        if self._closed:
            return self.key_of(delta.obj)  # the consumer is gone; nobody will pop it.
        key = self.key_of(delta.obj)
        self._items[key] = deltas.coalesce(self._items.get(key, ()), delta)
        self._condition.notify_all()
        return key

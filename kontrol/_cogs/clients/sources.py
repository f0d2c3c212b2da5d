"""
Contracts of the sources of truth, as required by the framework.

The framework does not define the wire format of the remote watch protocol,
only the contract it requires from it. Any class with these methods can be
used as a source: the aiohttp-based :class:`kontrol.RemoteSource` for the
REST-like APIs, the in-memory :class:`kontrol.testing.MemorySource`, or any
custom implementation over other client libraries.

All methods are per resource kind: one source can serve many kinds.
"""
import enum
from collections.abc import AsyncIterator, Collection, Mapping
from typing import Any, NamedTuple, Protocol, runtime_checkable

from kontrol._cogs.structs import bodies, references


class EventType(str, enum.Enum):
    ADDED = 'ADDED'
    MODIFIED = 'MODIFIED'
    DELETED = 'DELETED'
    BOOKMARK = 'BOOKMARK'
    ERROR = 'ERROR'


class WatchEvent(NamedTuple):
    """ One parsed event of a watch-stream. """
    type: EventType
    object: Mapping[str, Any]

    @classmethod
    def parse(cls, raw: Mapping[str, Any]) -> "WatchEvent":
        try:
            return cls(type=EventType(raw['type']), object=raw.get('object') or {})
        except (KeyError, ValueError):
            raise ValueError(f"Unrecognized watch-event: {raw!r}") from None


@runtime_checkable
class ChangeSource(Protocol):
    """
    The authoritative source of truth: listing and watching of objects.

    ``list()`` returns a full snapshot and the resource version of it.

    ``watch()`` yields the raw events (:class:`bodies.RawInput`) since the given
    resource version, with ``type`` in ADDED/MODIFIED/DELETED/BOOKMARK/ERROR.
    The stream can end at any time (e.g. closed by the server): this is normal.
    If the resource version is too old, it must either raise
    :class:`errors.ResourceVersionTooOldError`, or yield an ERROR event
    with code 410 -- both are understood as "re-list now".
    """

    async def list(
            self,
            resource: references.Resource,
            *,
            namespace: references.Namespace = None,
    ) -> tuple[Collection[bodies.RawBody], str | None]:
        ...

    def watch(
            self,
            resource: references.Resource,
            *,
            namespace: references.Namespace = None,
            since: str | None = None,
    ) -> AsyncIterator[bodies.RawInput]:
        ...


@runtime_checkable
class Mutator(Protocol):
    """
    The writing side of the source of truth, as used by the reconcilers.

    All operations must be safe to retry. The writes of stale objects
    (with an outdated resource version) fail with :class:`errors.APIConflictError`.
    The absent objects are reported as ``None`` on reads, and with
    :class:`errors.APINotFoundError` on writes.
    """

    async def get(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
    ) -> bodies.RawBody | None:
        ...

    async def create(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody:
        ...

    async def update(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody:
        ...

    async def update_status(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody:
        ...

    async def delete(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
    ) -> None:
        ...


@runtime_checkable
class EventSink(Protocol):
    """
    An optional capability of a source: posting the events about the objects.

    The events make the failures and the progress visible on the objects
    themselves, not only in the logs of the operator.
    """

    async def post_event(
            self,
            *,
            ref: bodies.ObjectReference,
            type: str,
            reason: str,
            message: str = '',
    ) -> None:
        ...


Source = Any  # ChangeSource & Mutator & (optionally) EventSink; no intersections in typing.


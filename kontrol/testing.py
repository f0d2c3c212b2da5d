"""
Helper tools to test the controllers and reconcilers without a real API server.

:class:`MemorySource` is an authoritative in-memory store of objects. It serves
both sides of the source of truth: listing & watching for the informers,
and the writes for the reconcilers. It mimics the API server's semantics
which the framework relies on:

* Every write bumps the global resource version (a monotonic integer).
* The writes of stale objects fail with a conflict (optimistic concurrency).
* The creation of an existing object fails with a conflict "AlreadyExists".
* The deletion of an object with finalizers only marks it as being deleted;
  the object is purged once its finalizers are removed.
* The purged objects' dependents are deleted too (via owner references).
* The watch-streams resume from any resource version since the last
  compaction; the older versions get an ERROR event with code 410.

Example::

    source = MemorySource()
    await source.create(resource, {'metadata': {'namespace': 'ns', 'name': 'foo'}})
    manager = kontrol.Manager(source)
    ...
"""
import asyncio
import copy
import datetime
import logging
import uuid
from collections.abc import AsyncIterator, Collection, Mapping
from typing import Any, NamedTuple

from kontrol._cogs.clients import errors
from kontrol._cogs.structs import bodies, finalizers, references

logger = logging.getLogger(__name__)


class PostedEvent(NamedTuple):
    ref: bodies.ObjectReference
    type: str
    reason: str
    message: str


class Call(NamedTuple):
    method: str
    resource: references.Resource
    key: references.ObjectKey


class _Change(NamedTuple):
    resource_version: int
    resource: references.Resource
    raw: bodies.RawInput


class MemorySource:

    def __init__(self) -> None:
        super().__init__()
        self._objects: dict[references.Resource, dict[references.ObjectKey, bodies.RawBody]] = {}
        self._history: list[_Change] = []
        self._compacted: int = 0
        self._version: int = 0
        self._watchers: list[tuple[references.Resource, asyncio.Queue[_Change | None]]] = []
        self.calls: list[Call] = []
        self.events: list[PostedEvent] = []

    def __repr__(self) -> str:
        counts = {repr(resource): len(objs) for resource, objs in self._objects.items()}
        return f'<{self.__class__.__name__}: rv={self._version}, {counts}>'

    @property
    def resource_version(self) -> str:
        return str(self._version)

    def objects(self, resource: references.Resource) -> list[bodies.RawBody]:
        """ All objects of the resource kind, as they are stored now (copies). """
        return [copy.deepcopy(obj) for obj in self._objects.get(resource, {}).values()]

    def writes(self, resource: references.Resource | None = None) -> list[Call]:
        """ The recorded mutating calls, optionally of one resource kind only. """
        return [call for call in self.calls
                if call.method != 'get' and (resource is None or call.resource == resource)]

    def compact(self) -> None:
        """ Forget the history of changes: the watches from older versions get "410 Gone". """
        self._compacted = self._version
        self._history.clear()

    def close_watches(self) -> None:
        """ Close all the active watch-streams, as the server does from time to time. """
        for _, queue in self._watchers:
            queue.put_nowait(None)

    # ChangeSource:

    async def list(
            self,
            resource: references.Resource,
            *,
            namespace: references.Namespace = None,
    ) -> tuple[Collection[bodies.RawBody], str | None]:
        items = [copy.deepcopy(obj) for key, obj in self._objects.get(resource, {}).items()
                 if namespace is None or key.namespace == namespace]
        return items, self.resource_version

    async def watch(
            self,
            resource: references.Resource,
            *,
            namespace: references.Namespace = None,
            since: str | None = None,
    ) -> AsyncIterator[bodies.RawInput]:
        since_version = int(since) if since is not None else self._version
        if since_version < self._compacted:
            yield bodies.RawInput(type='ERROR', object=bodies.RawError(
                code=410, reason='Expired', status='Failure',
                message=f"too old resource version: {since_version} ({self._compacted})"))
            return

        queue: asyncio.Queue[_Change | None] = asyncio.Queue()
        for change in self._history:
            if change.resource_version > since_version:
                queue.put_nowait(change)
        watcher = (resource, queue)
        self._watchers.append(watcher)
        try:
            while True:
                change = await queue.get()
                if change is None:
                    break
                if change.resource != resource:
                    continue
                if namespace is not None and _namespace_of(change.raw['object']) != namespace:
                    continue
                yield copy.deepcopy(change.raw)
        finally:
            self._watchers.remove(watcher)

    # Mutator:

    async def get(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
    ) -> bodies.RawBody | None:
        self.calls.append(Call('get', resource, key))
        obj = self._objects.get(resource, {}).get(key)
        return copy.deepcopy(obj) if obj is not None else None

    async def create(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody:
        key = references.key_of(body)
        self.calls.append(Call('create', resource, key))
        objects = self._objects.setdefault(resource, {})
        if key in objects:
            raise _error(errors.APIConflictError, 409, 'AlreadyExists',
                         f"{resource} {key} already exists.")

        obj: dict[str, Any] = copy.deepcopy(dict(body))
        obj.setdefault('apiVersion', resource.api_version)
        if resource.kind is not None:
            obj.setdefault('kind', resource.kind)
        metadata = obj.setdefault('metadata', {})
        metadata['uid'] = str(uuid.uuid4())
        metadata['creationTimestamp'] = _now()
        metadata.pop('deletionTimestamp', None)
        objects[key] = obj  # type: ignore[assignment]
        self._record(resource, 'ADDED', objects[key])
        return copy.deepcopy(objects[key])

    async def update(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody:
        key = references.key_of(body)
        self.calls.append(Call('update', resource, key))
        existing = self._check_write(resource, key, body)

        obj: dict[str, Any] = copy.deepcopy(dict(body))
        metadata = obj.setdefault('metadata', {})
        for field in ['uid', 'creationTimestamp', 'deletionTimestamp']:
            metadata.pop(field, None)
            if field in existing.get('metadata', {}):
                metadata[field] = existing['metadata'][field]  # type: ignore[literal-required]
        if 'status' in resource.subresources:
            obj.pop('status', None)
            if 'status' in existing:
                obj['status'] = copy.deepcopy(existing['status'])
        return self._store(resource, key, existing, obj)

    async def update_status(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody:
        key = references.key_of(body)
        self.calls.append(Call('update_status', resource, key))
        existing = self._check_write(resource, key, body)

        obj: dict[str, Any] = copy.deepcopy(dict(existing))
        obj['status'] = copy.deepcopy(body.get('status', {}))
        return self._store(resource, key, existing, obj)

    async def delete(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
    ) -> None:
        self.calls.append(Call('delete', resource, key))
        self._delete(resource, key)

    # EventSink:

    async def post_event(
            self,
            *,
            ref: bodies.ObjectReference,
            type: str,
            reason: str,
            message: str = '',
    ) -> None:
        self.events.append(PostedEvent(ref=ref, type=type, reason=reason, message=message))

    # Internals:

    def _check_write(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
            body: Mapping[str, Any],
    ) -> bodies.RawBody:
        existing = self._objects.get(resource, {}).get(key)
        if existing is None:
            raise _error(errors.APINotFoundError, 404, 'NotFound', f"{resource} {key} not found.")
        version = bodies.get_resource_version(body)
        if version is not None and version != bodies.get_resource_version(existing):
            raise _error(errors.APIConflictError, 409, 'Conflict',
                         f"{resource} {key} has been modified: {version} is outdated.")
        return existing

    def _store(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
            existing: bodies.RawBody,
            obj: dict[str, Any],
    ) -> bodies.RawBody:
        # No-op writes do not produce new versions (nor events), as in the real API servers.
        obj['metadata']['resourceVersion'] = existing['metadata']['resourceVersion']
        if obj == existing:
            return copy.deepcopy(existing)

        self._objects[resource][key] = obj  # type: ignore[assignment]
        if finalizers.is_deletion_ongoing(obj) and not obj['metadata'].get('finalizers'):
            self._purge(resource, key)
        else:
            self._record(resource, 'MODIFIED', self._objects[resource][key])
        return copy.deepcopy(obj)  # type: ignore[return-value]

    def _delete(self, resource: references.Resource, key: references.ObjectKey) -> None:
        existing = self._objects.get(resource, {}).get(key)
        if existing is None:
            raise _error(errors.APINotFoundError, 404, 'NotFound', f"{resource} {key} not found.")
        if not existing.get('metadata', {}).get('finalizers'):
            self._purge(resource, key)
        elif not finalizers.is_deletion_ongoing(existing):
            existing['metadata']['deletionTimestamp'] = _now()
            self._record(resource, 'MODIFIED', existing)

    def _purge(self, resource: references.Resource, key: references.ObjectKey) -> None:
        purged = self._objects[resource].pop(key)
        self._record(resource, 'DELETED', purged)

        # The garbage collection of the dependents, in the background propagation mode.
        uid = bodies.get_uid(purged)
        for dep_resource, objects in self._objects.items():
            for dep_key, obj in list(objects.items()):
                if any(ref.get('uid') == uid for ref in bodies.get_owner_references(obj)):
                    if dep_key in objects:
                        self._delete(dep_resource, dep_key)

    def _record(self, resource: references.Resource, type: bodies.RawEventType, obj: bodies.RawBody) -> None:
        self._version += 1
        obj['metadata']['resourceVersion'] = str(self._version)
        raw = bodies.RawInput(type=type, object=copy.deepcopy(obj))
        change = _Change(resource_version=self._version, resource=resource, raw=raw)
        self._history.append(change)
        for _, queue in self._watchers:
            queue.put_nowait(change)


def _error(cls: type[errors.APIError], code: int, reason: str, message: str) -> errors.APIError:
    return cls({'code': code, 'reason': reason, 'message': message, 'status': 'Failure'}, status=code)


def _namespace_of(body: Mapping[str, Any]) -> str | None:
    return body.get('metadata', {}).get('namespace')


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()

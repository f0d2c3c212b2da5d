"""
The event dispatcher: notifies the observers after every change of the cache.

The observers are called with ``(old, new, delta_type)`` strictly after
the cache is updated, so the cache's reads inside the observers already see
the new state (or the absence of the object for the deletions).

The dispatching is synchronous and happens in the cache-updating loop,
so the observers must be quick: they should only translate the events
into the reconciliation keys, never perform any I/O.
The errors in the observers are logged and do not break the cache updates.

The observers can be plain callables or "event handlers" with
``on_add(obj)``, ``on_update(old, new)``, ``on_delete(obj)`` methods.
"""
import dataclasses
import logging
from collections.abc import Callable, Collection, Mapping
from typing import Any, Protocol, runtime_checkable

from kontrol._cogs.structs import bodies, deltas, references

logger = logging.getLogger(__name__)

Body = Mapping[str, Any]
Observer = Callable[[Body | None, Body | None, deltas.DeltaType], None]
Predicate = Callable[[Body], bool]


@runtime_checkable
class ResourceEventHandler(Protocol):

    def on_add(self, obj: Body) -> None:
        ...

    def on_update(self, old: Body, new: Body) -> None:
        ...

    def on_delete(self, obj: Body) -> None:
        ...


class Enqueuer(Protocol):
    """ The minimal interface of the work queues, as needed for the key mappers. """

    def add(self, key: references.ObjectKey) -> None:
        ...


def is_genuine_change(
        old: Body | None,
        new: Body | None,
        delta_type: deltas.DeltaType,
) -> bool:
    """
    Whether a dispatched change is a real external change, not a periodic resync.

    The "sync" deltas of the re-listings and resyncs are treated as changes only
    if the object's resource version differs from the cached one.
    """
    if delta_type != deltas.DeltaType.SYNC:
        return True
    if old is None or new is None:
        return True
    return bodies.get_resource_version(old) != bodies.get_resource_version(new)


@dataclasses.dataclass(frozen=True)
class HandlerAdapter:
    """
    An observer that calls the event handler's methods depending on the change.
    """
    handler: ResourceEventHandler

    def __call__(self, old: Body | None, new: Body | None, delta_type: deltas.DeltaType) -> None:
        if new is None:
            if old is not None:
                self.handler.on_delete(old)
        elif old is None:
            self.handler.on_add(new)
        else:
            self.handler.on_update(old, new)


@dataclasses.dataclass(frozen=True)
class ResourceEventHandlerFuncs:
    """ An event handler made of optional functions, for the simplest cases. """
    add_func: Callable[[Body], None] | None = None
    update_func: Callable[[Body, Body], None] | None = None
    delete_func: Callable[[Body], None] | None = None

    def on_add(self, obj: Body) -> None:
        if self.add_func is not None:
            self.add_func(obj)

    def on_update(self, old: Body, new: Body) -> None:
        if self.update_func is not None:
            self.update_func(old, new)

    def on_delete(self, obj: Body) -> None:
        if self.delete_func is not None:
            self.delete_func(obj)


class Dispatcher:

    def __init__(self, *, name: str | None = None) -> None:
        super().__init__()
        self.name = name
        self._observers: list[Observer] = []

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {self.name!r}: {len(self._observers)} observers>'

    def __len__(self) -> int:
        return len(self._observers)

    @property
    def observers(self) -> Collection[Observer]:
        return tuple(self._observers)

    def add_observer(self, observer: Observer) -> Observer:
        self._observers.append(observer)
        return observer

    def add_event_handler(self, handler: ResourceEventHandler) -> Observer:
        return self.add_observer(HandlerAdapter(handler))

    def remove_observer(self, observer: Observer) -> None:
        try:
            self._observers.remove(observer)
        except ValueError:
            pass  # already removed.

    def dispatch(
            self,
            old: Body | None,
            new: Body | None,
            delta_type: deltas.DeltaType,
    ) -> None:
        for observer in list(self._observers):
            try:
                observer(old, new, delta_type)
            except Exception as e:
                logger.exception(f"Observer {observer!r} of {self.name} has failed: {e!r}")


class KeyMapper:
    """
    An event handler that turns the changes into the keys of a work queue.

    The predicate, if set, filters the objects: for the updates, the change
    is enqueued if either the old or the new state matches the predicate.
    """

    def __init__(
            self,
            queue: Enqueuer,
            *,
            predicate: Predicate | None = None,
    ) -> None:
        super().__init__()
        self.queue = queue
        self.predicate = predicate

    def keys_of(self, obj: Body) -> Collection[references.ObjectKey]:
        raise NotImplementedError

    def on_add(self, obj: Body) -> None:
        self._enqueue(obj)

    def on_update(self, old: Body, new: Body) -> None:
        keys = set()
        if self._matches(old):
            keys.update(self.keys_of(old))
        if self._matches(new):
            keys.update(self.keys_of(new))
        for key in keys:
            self.queue.add(key)

    def on_delete(self, obj: Body) -> None:
        self._enqueue(obj)

    def _matches(self, obj: Body) -> bool:
        return self.predicate is None or self.predicate(obj)

    def _enqueue(self, obj: Body) -> None:
        if self._matches(obj):
            for key in self.keys_of(obj):
                self.queue.add(key)


class ObjectKeyMapper(KeyMapper):
    """ Maps the events of the objects to their own keys. """

    def keys_of(self, obj: Body) -> Collection[references.ObjectKey]:
        return [references.key_of(obj)]


class OwnerKeyMapper(KeyMapper):
    """
    Maps the events of the dependents to the keys of their controlling owners.

    Only the owners of the specified kind are considered (by api version
    and kind). The dependents without a controlling owner of this kind
    are ignored.
    """

    def __init__(
            self,
            queue: Enqueuer,
            *,
            owner: references.Resource,
            predicate: Predicate | None = None,
    ) -> None:
        super().__init__(queue, predicate=predicate)
        self.owner = owner

    def keys_of(self, obj: Body) -> Collection[references.ObjectKey]:
        ref = bodies.get_controller_of(obj)
        if ref is None:
            return []
        if ref.get('apiVersion') != self.owner.api_version:
            return []
        if self.owner.kind is not None and ref.get('kind') != self.owner.kind:
            return []
        return [bodies.owner_key(ref, obj, resource=self.owner)]


@dataclasses.dataclass(frozen=True)
class For:
    """
    The primary resource of a controller: its objects' own keys are reconciled.
    """
    resource: references.Resource
    namespace: references.Namespace = None
    predicate: Predicate | None = None

    def make_handler(self, queue: Enqueuer, *, owner: references.Resource) -> ResourceEventHandler:
        return ObjectKeyMapper(queue, predicate=self.predicate)


@dataclasses.dataclass(frozen=True)
class Owns:
    """
    A dependent resource of a controller: its changes re-trigger the owners' reconciliation.
    """
    resource: references.Resource
    namespace: references.Namespace = None
    predicate: Predicate | None = None

    def make_handler(self, queue: Enqueuer, *, owner: references.Resource) -> ResourceEventHandler:
        return OwnerKeyMapper(queue, owner=owner, predicate=self.predicate)

"""
The reconciliation engine: converging the dependents of an object to its desired state.

Every reconciliation is for one key of the primary resource, and goes by
the object's state in the cache (never by the event that triggered it):

* Not deleted, our finalizer is absent: add the finalizer, nothing else.
  The update of the object re-triggers the reconciliation.
* Not deleted, our finalizer is present: converge the dependents (create
  the missing ones with the controlling owner reference, update the drifted
  fields of the existing ones), then publish the status if it differs.
* Deleted, our finalizer is present: tear the dependents down; once they
  are all gone, remove the finalizer. While they are going, re-check later.
* Deleted, our finalizer is absent: nothing to do, the object goes away.
* Absent in the cache: nothing to do, already converged.

All the branches are idempotent: repeated reconciliations of the same state
produce no writes. The dependents are compared by the selected fields only,
and only the differing fields are written.
"""
import copy
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Collection, Mapping, Sequence
from typing import Any, Protocol

from kontrol._cogs.clients import errors, sources
from kontrol._cogs.configs import configuration
from kontrol._cogs.helpers import typedefs
from kontrol._cogs.structs import bodies, finalizers, hierarchies, references
from kontrol._core.actions import loggers
from kontrol._core.reactor import indexing

logger = logging.getLogger(__name__)

# The default delay duration for the temporary errors.
DEFAULT_RETRY_DELAY = 1 * 60

FieldPath = tuple[str, ...]
Caches = Mapping[references.Resource, indexing.Indexer]
Observed = Mapping[str, bodies.RawBody | None]
StatusFn = Callable[[bodies.RawBody, Observed], Mapping[str, Any] | None]


class PermanentError(Exception):
    """ A fatal reconciliation error, the retries are useless. """


class TemporaryError(Exception):
    """ A potentially recoverable error, should be retried after a delay. """
    def __init__(
            self,
            __msg: str | None = None,
            delay: float | None = DEFAULT_RETRY_DELAY,
    ) -> None:
        super().__init__(__msg)
        self.delay = delay


@dataclasses.dataclass(frozen=True)
class Result:
    """
    What to do with the key after a successful reconciliation.

    By default, nothing: the key is forgotten until the next change.
    ``requeue`` re-adds it with the rate-limited delay (counts as a retry);
    ``requeue_after`` re-adds it after the exact delay (resets the retries).
    """
    requeue: bool = False
    requeue_after: float | None = None


# Any reconciling routine: the class below or a plain async function.
Reconcile = Callable[..., Awaitable[Result | None]]


@dataclasses.dataclass(frozen=True)
class Context:
    """ Everything a dependent needs to read & write the source of truth. """
    caches: Caches
    mutator: sources.Mutator
    logger: typedefs.Logger


class Dependent(Protocol):
    """
    A kind of dependent objects, which are converged by the reconciler.

    The kind is an explicit tag (the resource), not a runtime type inspection.
    The name is used as a key of the observed dependents for the statuses.
    """
    resource: references.Resource
    name: str

    def desired(self, parent: bodies.RawBody) -> bodies.RawBody:
        ...

    async def current(self, key: references.ObjectKey, context: Context) -> bodies.RawBody | None:
        ...

    def diff(self, current: bodies.RawBody, desired: bodies.RawBody) -> Collection[FieldPath]:
        ...

    async def create(self, body: bodies.RawBody, context: Context) -> bodies.RawBody:
        ...

    async def update(
            self,
            current: bodies.RawBody,
            desired: bodies.RawBody,
            fields: Collection[FieldPath],
            context: Context,
    ) -> bodies.RawBody:
        ...

    async def delete(self, key: references.ObjectKey, context: Context) -> None:
        ...


def resolve(body: Mapping[str, Any], path: FieldPath) -> Any:
    """ Get a nested field's value, or ``None`` if absent. """
    value: Any = body
    for step in path:
        if not isinstance(value, Mapping) or step not in value:
            return None
        value = value[step]
    return value


def assign(body: dict[str, Any], path: FieldPath, value: Any) -> None:
    """ Set a nested field's value, creating the intermediate dicts. """
    *parents, last = path
    target = body
    for step in parents:
        target = target.setdefault(step, {})
    target[last] = copy.deepcopy(value)


class FieldsDependent:
    """
    A dependent kind built by a function, and compared by the selected fields.

    The current state is read from the cache of the dependents' resource
    if there is such a cache (i.e. the controller owns this resource),
    or from the source of truth otherwise.
    """

    def __init__(
            self,
            resource: references.Resource,
            *,
            build: Callable[[bodies.RawBody], bodies.RawBody],
            fields: Collection[FieldPath],
            name: str | None = None,
    ) -> None:
        super().__init__()
        self.resource = resource
        self.name = name if name is not None else resource.plural
        self.build = build
        self.fields = [tuple(path) for path in fields]

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {self.name}: {self.fields}>'

    def desired(self, parent: bodies.RawBody) -> bodies.RawBody:
        body = self.build(parent)
        body.setdefault('apiVersion', self.resource.api_version)
        if self.resource.kind is not None:
            body.setdefault('kind', self.resource.kind)
        return body

    async def current(self, key: references.ObjectKey, context: Context) -> bodies.RawBody | None:
        cache = context.caches.get(self.resource)
        if cache is not None:
            return cache.get(key)
        return await context.mutator.get(self.resource, key)

    def diff(self, current: bodies.RawBody, desired: bodies.RawBody) -> Collection[FieldPath]:
        return [path for path in self.fields if resolve(current, path) != resolve(desired, path)]

    async def create(self, body: bodies.RawBody, context: Context) -> bodies.RawBody:
        return await context.mutator.create(self.resource, body)

    async def update(
            self,
            current: bodies.RawBody,
            desired: bodies.RawBody,
            fields: Collection[FieldPath],
            context: Context,
    ) -> bodies.RawBody:
        body: dict[str, Any] = copy.deepcopy(dict(current))
        for path in fields:
            assign(body, path, resolve(desired, path))
        return await context.mutator.update(self.resource, body)  # type: ignore[arg-type]

    async def delete(self, key: references.ObjectKey, context: Context) -> None:
        await context.mutator.delete(self.resource, key)


class Reconciler:
    """
    The generic convergence of an object's dependents, finalizer-gated.

    If the finalizer is ``None``, the object's deletion is not blocked:
    the dependents are then removed only by the garbage collection
    of the source of truth (via the controlling owner references).
    """

    def __init__(
            self,
            resource: references.Resource,
            *,
            mutator: sources.Mutator,
            dependents: Sequence[Dependent] = (),
            status: StatusFn | None = None,
            finalizer: str | None = None,
            settings: configuration.OperatorSettings | None = None,
    ) -> None:
        super().__init__()
        self.resource = resource
        self.mutator = mutator
        self.dependents = list(dependents)
        self.status = status
        self.finalizer = finalizer
        self.settings = settings if settings is not None else configuration.OperatorSettings()

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {self.resource}: {[d.name for d in self.dependents]}>'

    async def __call__(
            self,
            key: references.ObjectKey,
            *,
            caches: Caches,
            **_: Any,
    ) -> Result:
        cache = caches[self.resource]
        parent = cache.get(key)
        if parent is None:
            logger.debug(f"{self.resource} {key} is not found; considered converged.")
            return Result()

        objlogger = loggers.ObjectLogger(body=parent, settings=self.settings)
        context = Context(caches=caches, mutator=self.mutator, logger=objlogger)

        if not finalizers.is_deletion_ongoing(parent):
            if self.finalizer is not None and not finalizers.is_deletion_blocked(parent, self.finalizer):
                finalizers.block_deletion(parent, self.finalizer)
                await self.mutator.update(self.resource, parent)
                objlogger.debug(f"Added the finalizer {self.finalizer!r}.")
                return Result()

            observed = await self.converge(parent, context)
            await self.publish(parent, observed, context)
            return Result()

        if self.finalizer is None or not finalizers.is_deletion_blocked(parent, self.finalizer):
            objlogger.debug("Deletion is ongoing, and is not blocked by us. Nothing to do.")
            return Result()

        done = await self.teardown(parent, context)
        if not done:
            return Result(requeue_after=self.settings.reconciling.teardown_delay)

        finalizers.allow_deletion(parent, self.finalizer)
        await self.mutator.update(self.resource, parent)
        objlogger.info(f"Teardown is complete. Removed the finalizer {self.finalizer!r}.")
        return Result()

    async def converge(self, parent: bodies.RawBody, context: Context) -> dict[str, bodies.RawBody | None]:
        observed: dict[str, bodies.RawBody | None] = {}
        for dependent in self.dependents:
            desired = dependent.desired(parent)
            try:
                hierarchies.append_owner_reference(desired, parent, controller=True)
            except hierarchies.AlreadyOwnedError as e:
                raise PermanentError(f"Cannot own the {dependent.name}: {e}") from e

            key = references.key_of(desired)
            current = await dependent.current(key, context)
            if current is None:
                try:
                    current = await dependent.create(desired, context)
                except errors.APIConflictError as e:
                    if not e.already_exists:
                        raise
                    context.logger.debug(f"The {dependent.name} {key} already exists; not created.")
                else:
                    context.logger.info(f"Created the {dependent.name} {key}.")
            else:
                controller = bodies.get_controller_of(current)
                if controller is not None and controller.get('uid') != bodies.get_uid(parent):
                    raise PermanentError(f"The {dependent.name} {key} is controlled by another owner: "
                                         f"{controller.get('kind')} {controller.get('name')!r}.")
                fields = dependent.diff(current, desired)
                if fields:
                    current = await dependent.update(current, desired, fields, context)
                    shown = ', '.join('.'.join(path) for path in fields)
                    context.logger.info(f"Updated the {dependent.name} {key}: {shown}.")
            observed[dependent.name] = current
        return observed

    async def publish(self, parent: bodies.RawBody, observed: Observed, context: Context) -> None:
        if self.status is None:
            return
        fragment = self.status(parent, observed)
        if not fragment:
            return
        status = dict(parent.get('status', {}) or {})
        if all(key in status and status[key] == value for key, value in fragment.items()):
            return
        body = copy.deepcopy(parent)
        body['status'] = status | dict(fragment)
        await self.mutator.update_status(self.resource, body)
        context.logger.debug(f"Updated the status: {dict(fragment)!r}")

    async def teardown(self, parent: bodies.RawBody, context: Context) -> bool:
        """
        Delete the dependents, and report whether all of them are gone.

        The absent dependents are considered deleted (even if never created).
        The dependents being deleted (e.g. with their own finalizers) are pending.
        """
        done = True
        for dependent in reversed(self.dependents):
            key = references.key_of(dependent.desired(parent))
            current = await dependent.current(key, context)
            if current is None:
                context.logger.debug(f"The {dependent.name} {key} is already deleted.")
                continue

            done = False
            if finalizers.is_deletion_ongoing(current):
                context.logger.debug(f"The {dependent.name} {key} deletion is in progress.")
                continue

            try:
                await dependent.delete(key, context)
            except errors.APINotFoundError:
                pass
            context.logger.info(f"The {dependent.name} {key} deletion is requested.")
        return done

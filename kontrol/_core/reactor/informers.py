"""
Informers: the whole pipeline from the source of truth to the observers.

An informer consists of a reflector, a delta queue, an indexer (the cache),
and a dispatcher. The reflector feeds the delta queue, a single consumer
drains it into the cache, and notifies the observers after every change.

The informers are shared by all the controllers of an operator via
the factory: one informer per resource kind (and namespace), started
when it is needed for the first time, and stopped when it is not needed
anymore (reference-counted).
"""
import asyncio
import dataclasses
import logging
from collections.abc import Mapping

from kontrol._cogs.aiokits import aiotasks, aiotoggles
from kontrol._cogs.clients import sources
from kontrol._cogs.configs import configuration
from kontrol._cogs.structs import deltas, references
from kontrol._core.actions import loggers, throttlers
from kontrol._core.reactor import dispatching, fifo, indexing, reflecting

logger = logging.getLogger(__name__)


class Informer:

    def __init__(
            self,
            *,
            resource: references.Resource,
            source: sources.ChangeSource,
            settings: configuration.OperatorSettings,
            namespace: references.Namespace = None,
            indexers: Mapping[str, indexing.IndexFn] | None = None,
            synced: aiotoggles.Toggle | None = None,
            sleep: throttlers.Sleeper = throttlers.sleep,
    ) -> None:
        super().__init__()
        self.resource = resource
        self.namespace = namespace
        self.settings = settings
        self.synced = synced if synced is not None else aiotoggles.Toggle(name=repr(resource))
        self.indexer = indexing.Indexer(indexers)
        self.queue = fifo.DeltaFIFO(known=self.indexer, synced=self.synced)
        self.dispatcher = dispatching.Dispatcher(name=repr(resource))
        self.reflector = reflecting.Reflector(
            resource=resource,
            namespace=namespace,
            source=source,
            queue=self.queue,
            settings=settings,
            sleep=sleep,
        )
        self._stop = asyncio.Event()
        self._task: aiotasks.Task | None = None

    def __repr__(self) -> str:
        where = f'in {self.namespace!r}' if self.namespace is not None else 'cluster-wide'
        return f'<{self.__class__.__name__}: {self.resource} {where}>'

    def has_synced(self) -> bool:
        return self.synced.is_on()

    async def wait_for_sync(self) -> None:
        await self.synced.wait_for(True)

    def add_event_handler(self, handler: dispatching.ResourceEventHandler) -> dispatching.Observer:
        return self.dispatcher.add_event_handler(handler)

    def add_observer(self, observer: dispatching.Observer) -> dispatching.Observer:
        return self.dispatcher.add_observer(observer)

    def remove_observer(self, observer: dispatching.Observer) -> None:
        self.dispatcher.remove_observer(observer)

    @property
    def task(self) -> aiotasks.Task | None:
        return self._task

    def start(self) -> aiotasks.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run(self._stop), name=f'informer of {self.resource}')
        return self._task

    async def stop(self) -> None:
        """ Stop the informer gracefully, and wait until it is fully stopped. """
        self._stop.set()
        if self._task is not None:
            await aiotasks.wait([self._task])

    async def run(self, stop: asyncio.Event) -> None:
        """
        Run the reflector and the cache-updating loop until stopped.

        Both are stopped if either of them fails; the error is escalated.
        """
        reflector = asyncio.create_task(self.reflector.run(stop), name=f'reflector of {self.resource}')
        processor = asyncio.create_task(self.process(), name=f'processor of {self.resource}')
        try:
            await aiotasks.wait([reflector, processor], return_when=asyncio.FIRST_COMPLETED)
        finally:
            await self.queue.close()
            await aiotasks.stop([reflector], title='Reflector', quiet=True, logger=logger)
            await aiotasks.wait([processor])  # exits on its own once the queue is closed.
            await self.synced.turn_to(False)
        await aiotasks.reraise([reflector, processor])

    async def process(self) -> None:
        """ Drain the delta queue into the cache; the only writer of the cache. """
        while True:
            key = await self.queue.pop(self.process_deltas)
            if key is fifo.CLOSED:
                break

    async def process_deltas(self, key: references.ObjectKey, batch: deltas.Deltas) -> None:
        for delta in batch:
            if delta.type == deltas.DeltaType.DELETED:
                old = self.indexer.delete(key)
                self.notify(key, old if old is not None else delta.body, None, delta.type)
            else:
                old = self.indexer.upsert(delta.body)
                self.notify(key, old, delta.body, delta.type)

    def notify(
            self,
            key: references.ObjectKey,
            old: dispatching.Body | None,
            new: dispatching.Body | None,
            delta_type: deltas.DeltaType,
    ) -> None:
        if dispatching.is_genuine_change(old, new, delta_type):
            body = new if new is not None else old
            if body is not None:
                objlogger = loggers.TerseObjectLogger(body=body, settings=self.settings)
                objlogger.info(f"{self.resource.kind or self.resource.plural} {key} is {delta_type}.")
        self.dispatcher.dispatch(old, new, delta_type)


@dataclasses.dataclass
class _Entry:
    informer: Informer
    refcount: int = 0


class InformerFactory:
    """
    The shared informers of an operator: one per resource kind and namespace.

    The informers are created and started on their first acquisition
    (if the factory is started), and stopped on their last release.
    All informers contribute to the cache-sync barrier: it is passed
    only when all the currently acquired informers have synced their caches.
    """

    def __init__(
            self,
            *,
            source: sources.ChangeSource,
            settings: configuration.OperatorSettings | None = None,
            sleep: throttlers.Sleeper = throttlers.sleep,
    ) -> None:
        super().__init__()
        self.source = source
        self.settings = settings if settings is not None else configuration.OperatorSettings()
        self.sleep = sleep
        self.synced = aiotoggles.ToggleSet(all)
        self._entries: dict[tuple[references.Resource, references.Namespace], _Entry] = {}
        self._started = False
        self._failures: asyncio.Queue[BaseException] = asyncio.Queue()

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {len(self._entries)} informers>'

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, resource: object) -> bool:
        return any(resource == key[0] for key in self._entries)

    def get(
            self,
            resource: references.Resource,
            namespace: references.Namespace = None,
    ) -> Informer | None:
        entry = self._entries.get((resource, namespace))
        return entry.informer if entry is not None else None

    def refcount(self, resource: references.Resource, namespace: references.Namespace = None) -> int:
        entry = self._entries.get((resource, namespace))
        return entry.refcount if entry is not None else 0

    async def acquire(
            self,
            resource: references.Resource,
            namespace: references.Namespace = None,
            *,
            indexers: Mapping[str, indexing.IndexFn] | None = None,
    ) -> Informer:
        """
        Get a shared informer for the resource, create & start it if needed.

        The additional indexers are added to the cache of the existing informer.
        """
        key = (resource, namespace)
        entry = self._entries.get(key)
        if entry is None:
            toggle = await self.synced.make_toggle(name=repr(resource))
            informer = Informer(
                resource=resource,
                namespace=namespace,
                source=self.source,
                settings=self.settings,
                synced=toggle,
                sleep=self.sleep,
            )
            entry = self._entries[key] = _Entry(informer=informer)
            if self._started:
                self._start(informer)
        if indexers:
            new_indexers = {name: fn for name, fn in indexers.items()
                            if not entry.informer.indexer.has_index(name)}
            entry.informer.indexer.add_indexers(new_indexers)
        entry.refcount += 1
        return entry.informer

    async def release(
            self,
            resource: references.Resource,
            namespace: references.Namespace = None,
    ) -> None:
        """ Release a shared informer; stop & forget it once nobody uses it. """
        key = (resource, namespace)
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.refcount -= 1
        if entry.refcount <= 0:
            del self._entries[key]
            await entry.informer.stop()
            await self.synced.drop_toggle(entry.informer.synced)
            logger.debug(f"Stopped the unused informer of {resource}.")

    async def start(self) -> None:
        """ Start all the informers acquired so far, and all acquired later. """
        self._started = True
        for entry in list(self._entries.values()):
            self._start(entry.informer)

    async def stop(self) -> None:
        """ Stop all the informers, regardless of their reference counts. """
        self._started = False
        entries = list(self._entries.values())
        for entry in entries:
            await entry.informer.stop()

    async def wait_for_cache_sync(self) -> None:
        """ The cache-sync barrier: wait until all acquired informers have synced. """
        await self.synced.wait_for(True)

    async def wait_for_failure(self) -> None:
        """ Escalate the first failure of any informer (e.g. a fatal API error). """
        exc = await self._failures.get()
        raise exc

    def _start(self, informer: Informer) -> None:
        if informer.task is None:
            task = informer.start()
            task.add_done_callback(self._check_failure)

    def _check_failure(self, task: aiotasks.Task) -> None:
        exc = task.exception() if not task.cancelled() else None
        if exc is not None:
            logger.error(f"Informer {task.get_name()!r} has failed: {exc!r}")
            self._failures.put_nowait(exc)

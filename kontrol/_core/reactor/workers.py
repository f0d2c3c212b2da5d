"""
Controllers: the pools of workers reconciling the keys of one primary resource.

A controller watches its primary resource (``For``) and optionally its
dependent resources (``Owns``) via the shared informers of the factory.
The observers translate the changes into the keys of the primary objects
and put them into the controller's own work queue.

The workers start only after all the controller's informers have synced
their caches (the cache-sync barrier), so that no reconciliation misreads
a not-yet-listed object as a deleted one.

Every worker takes one key at a time from the queue, reconciles it,
and then decides on the key's fate depending on the outcome:

* Success: the retries are forgotten; the key is re-added after
  the requested delay, or rate-limited if requested, or forgotten.
* Temporary error: the key is re-added after the error's delay
  (but not sooner than the rate limiter allows); this counts as a retry.
* Permanent error: the key is forgotten, the failure is reported.
* Fatal API errors (authentication, authorization): the controller fails,
  and so does the whole operator.
* Arbitrary errors: the key is retried with the rate-limited delays
  until the retries are exhausted; then it is forgotten and reported.

The failures are reported both to the logs and as the events of the object.
"""
import asyncio
import logging
from collections.abc import Collection, Sequence

from kontrol._cogs.aiokits import aiotasks
from kontrol._cogs.clients import errors
from kontrol._cogs.configs import configuration
from kontrol._cogs.structs import references
from kontrol._core.actions import loggers
from kontrol._core.engines import reconciling
from kontrol._core.reactor import dispatching, informers, workqueue

logger = logging.getLogger(__name__)


class Controller:

    def __init__(
            self,
            name: str,
            *,
            reconcile: reconciling.Reconcile,
            for_: dispatching.For,
            owns: Sequence[dispatching.Owns] = (),
            settings: configuration.OperatorSettings | None = None,
            rate_limiter: workqueue.RateLimiter | None = None,
    ) -> None:
        super().__init__()
        self.name = name
        self.reconcile = reconcile
        self.for_ = for_
        self.owns = list(owns)
        self.settings = settings if settings is not None else configuration.OperatorSettings()
        self.queue: workqueue.WorkQueue[references.ObjectKey] = workqueue.WorkQueue(
            name=name,
            rate_limiter=(rate_limiter if rate_limiter is not None else
                          workqueue.default_rate_limiter(self.settings)),
        )
        self.caches: dict[references.Resource, informers.Informer] = {}
        self.synced = asyncio.Event()

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {self.name!r}: {self.for_.resource}>'

    @property
    def watched(self) -> Collection[dispatching.For | dispatching.Owns]:
        return [self.for_, *self.owns]

    async def run(
            self,
            factory: informers.InformerFactory,
            stop: asyncio.Event,
    ) -> None:
        """
        Run the controller until stopped: subscribe, wait for the caches, reconcile.

        On exit, the queue is shut down, the in-flight reconciliations are
        allowed to finish (within the exit timeout), and the informers
        are released (and stopped if nobody else uses them).
        """
        subscriptions: list[tuple[informers.Informer, dispatching.Observer]] = []
        worker_tasks: list[aiotasks.Task] = []
        try:
            for watched in self.watched:
                informer = await factory.acquire(watched.resource, watched.namespace)
                handler = watched.make_handler(self.queue, owner=self.for_.resource)
                observer = informer.add_event_handler(handler)
                subscriptions.append((informer, observer))
                self.caches[watched.resource] = informer

            # The cache-sync barrier: no key is taken before all the caches are listed.
            stop_waiter = asyncio.create_task(stop.wait(), name=f'stop-waiter of {self.name}')
            synced_waiter = asyncio.create_task(self._wait_for_sync(), name=f'sync-waiter of {self.name}')
            try:
                await aiotasks.wait([stop_waiter, synced_waiter], return_when=asyncio.FIRST_COMPLETED)
            finally:
                await aiotasks.stop([stop_waiter, synced_waiter], title='Waiter', quiet=True, logger=logger)
            if stop.is_set():
                return
            self.synced.set()
            logger.debug(f"Controller {self.name!r} has synced its caches; starting "
                         f"{self.settings.workers.count} worker(s).")

            for idx in range(max(1, self.settings.workers.count)):
                worker_tasks.append(asyncio.create_task(
                    self.worker(), name=f'worker #{idx} of {self.name}'))

            stop_waiter = asyncio.create_task(stop.wait(), name=f'stop-waiter of {self.name}')
            try:
                await aiotasks.wait([stop_waiter, *worker_tasks], return_when=asyncio.FIRST_COMPLETED)
            finally:
                await aiotasks.stop([stop_waiter], title='Waiter', quiet=True, logger=logger)

        finally:
            self.synced.clear()
            self.queue.shut_down()
            await self._stop_workers(worker_tasks)
            for informer, observer in subscriptions:
                informer.remove_observer(observer)
                await factory.release(informer.resource, informer.namespace)
            self.caches.clear()

        await aiotasks.reraise(worker_tasks)

    async def worker(self) -> None:
        while True:
            key, shutting_down = await self.queue.get()
            if shutting_down or key is None:
                break
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, key: references.ObjectKey) -> None:
        """
        Reconcile one key and decide on its further fate. Re-raises only the fatal errors.
        """
        caches = {resource: informer.indexer for resource, informer in self.caches.items()}
        try:
            result = await self.reconcile(key, caches=caches, queue=self.queue, settings=self.settings)
        except errors.FATAL_ERRORS:
            raise
        except reconciling.PermanentError as e:
            self.queue.forget(key)
            self._report(key, f"Reconciliation has failed permanently: {e}", exc=e)
        except reconciling.TemporaryError as e:
            if self._exhausted(key):
                self.queue.forget(key)
                self._report(key, f"Reconciliation has failed, retries exhausted: {e}", exc=e)
            else:
                delay = max(e.delay or 0, self.queue.rate_limiter.when(key))
                self.queue.add_after(key, delay)
                logger.warning(f"{self.name}: {key} has failed temporarily, retrying in {delay}s: {e}")
        except errors.APIConflictError as e:
            # A stale write: re-read the caches and reconcile again, soon.
            self.queue.add_rate_limited(key)
            logger.debug(f"{self.name}: {key} has a conflicting write, retrying: {e}")
        except Exception as e:
            if self._exhausted(key):
                self.queue.forget(key)
                self._report(key, f"Reconciliation has failed, retries exhausted: {e!r}", exc=e)
            else:
                self.queue.add_rate_limited(key)
                logger.exception(f"{self.name}: {key} has failed with an exception; will retry: {e!r}")
        else:
            self._handle_result(key, result)

    def _handle_result(self, key: references.ObjectKey, result: reconciling.Result | None) -> None:
        if result is None:
            self.queue.forget(key)
        elif result.requeue_after is not None:
            self.queue.forget(key)
            self.queue.add_after(key, result.requeue_after)
        elif result.requeue:
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)

    def _exhausted(self, key: references.ObjectKey) -> bool:
        max_retries = self.settings.queueing.max_retries
        return max_retries is not None and self.queue.num_requeues(key) >= max_retries

    def _report(self, key: references.ObjectKey, message: str, *, exc: BaseException) -> None:
        """ Make the failure visible: on the object if it is cached, in the logs anyway. """
        informer = self.caches.get(self.for_.resource)
        body = informer.indexer.get(key) if informer is not None else None
        if body is not None:
            objlogger = loggers.ObjectLogger(body=body, settings=self.settings)
            objlogger.error(message, exc_info=exc)
        else:
            logger.error(f"{self.name}: {key}: {message}", exc_info=exc)

    async def _wait_for_sync(self) -> None:
        for informer in self.caches.values():
            await informer.wait_for_sync()

    async def _stop_workers(self, tasks: Collection[aiotasks.Task]) -> None:
        # The in-flight reconciliations are let to finish; the idle workers exit on the shutdown.
        try:
            _, pending = await aiotasks.wait(tasks, timeout=self.settings.workers.exit_timeout)
        except asyncio.CancelledError:
            await aiotasks.stop(tasks, title='Worker', quiet=True, cancelled=True, logger=logger)
            raise
        if pending:
            logger.warning(f"Controller {self.name!r} has {len(pending)} reconciliation(s) "
                           f"unfinished in time; cancelling them.")
            await aiotasks.stop(pending, title='Worker', quiet=True, logger=logger)
